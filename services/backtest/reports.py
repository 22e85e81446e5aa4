from __future__ import annotations
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from libs.common import db
from libs.common.models import HistoricalTick

log = logging.getLogger(__name__)

MAX_RESULTS_PER_BOT = 5

PENDING, RUNNING, COMPLETED, FAILED = "pending", "running", "completed", "failed"


def select_evictions(completed: List[Dict[str, Any]], keep: int = MAX_RESULTS_PER_BOT) -> List[str]:
    """Ids of completed results beyond the `keep` most recent by tested_at."""
    ordered = sorted(completed, key=lambda r: r["tested_at"], reverse=True)
    return [r["id"] for r in ordered[keep:]]


class SqlBacktestStore:
    """Backtest records and price history in Postgres."""

    async def create(self, backtest_id: str, bot_id: str, config: Dict[str, Any],
                     start: datetime, end: datetime):
        async with db.get_session() as s:
            await db.insert_backtest(s, backtest_id, bot_id, config, start, end, status=PENDING)
            await s.commit()

    async def in_flight(self, bot_id: str) -> int:
        async with db.get_session() as s:
            return await db.count_in_flight(s, bot_id)

    async def blocking(self, backtest_id: str) -> int:
        """Records that must run before this one: running, or pending and older."""
        async with db.get_session() as s:
            return await db.count_blocking(s, backtest_id)

    async def mark(self, backtest_id: str, status: str, error: Optional[str] = None):
        async with db.get_session() as s:
            await db.set_backtest_status(s, backtest_id, status, error)
            await s.commit()

    async def complete(self, backtest_id: str, report: Dict[str, Any], tested_at: datetime):
        async with db.get_session() as s:
            await db.complete_backtest(s, backtest_id, report, tested_at)
            await s.commit()

    async def completed(self, bot_id: str) -> List[Dict[str, Any]]:
        async with db.get_session() as s:
            return await db.completed_backtests(s, bot_id)

    async def delete(self, ids: List[str]):
        async with db.get_session() as s:
            await db.delete_backtests(s, ids)
            await s.commit()

    async def get(self, backtest_id: str) -> Optional[Dict[str, Any]]:
        async with db.get_session() as s:
            return await db.get_backtest(s, backtest_id)

    async def list(self, bot_id: str) -> List[Dict[str, Any]]:
        async with db.get_session() as s:
            return await db.list_backtests(s, bot_id)

    async def load_ticks(self, pair: str, start: datetime, end: datetime) -> List[HistoricalTick]:
        async with db.get_session() as s:
            return await db.load_price_history(s, pair, start, end)


class MemoryBacktestStore:
    def __init__(self, ticks: Optional[Dict[str, List[HistoricalTick]]] = None):
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.ticks = ticks or {}
        self._seq = 0

    async def create(self, backtest_id, bot_id, config, start, end):
        self.rows[backtest_id] = {
            "id": backtest_id, "bot_id": bot_id, "status": PENDING, "config": config,
            "window_start": start, "window_end": end, "report": None, "error": None,
            "created_at": datetime.now(start.tzinfo), "tested_at": None, "seq": self._seq,
        }
        self._seq += 1

    async def in_flight(self, bot_id) -> int:
        return sum(1 for r in self.rows.values() if r["bot_id"] == bot_id and r["status"] in (PENDING, RUNNING))

    async def blocking(self, backtest_id) -> int:
        me = self.rows[backtest_id]
        return sum(
            1 for r in self.rows.values()
            if r["bot_id"] == me["bot_id"] and r["id"] != backtest_id
            and (r["status"] == RUNNING or (r["status"] == PENDING and r["seq"] < me["seq"]))
        )

    async def mark(self, backtest_id, status, error=None):
        self.rows[backtest_id].update(status=status, error=error)

    async def complete(self, backtest_id, report, tested_at):
        self.rows[backtest_id].update(status=COMPLETED, report=report, tested_at=tested_at, error=None)

    async def completed(self, bot_id):
        return [
            {"id": r["id"], "tested_at": r["tested_at"]}
            for r in self.rows.values() if r["bot_id"] == bot_id and r["status"] == COMPLETED
        ]

    async def delete(self, ids):
        for i in ids:
            self.rows.pop(i, None)

    async def get(self, backtest_id):
        return self.rows.get(backtest_id)

    async def list(self, bot_id):
        rows = [r for r in self.rows.values() if r["bot_id"] == bot_id]
        return sorted(rows, key=lambda r: r["created_at"], reverse=True)

    async def load_ticks(self, pair, start, end):
        return [t for t in self.ticks.get(pair, []) if start <= t.timestamp <= end]


async def enforce_rolling_cap(store, bot_id: str, keep: int = MAX_RESULTS_PER_BOT) -> List[str]:
    evict = select_evictions(await store.completed(bot_id), keep)
    if evict:
        await store.delete(evict)
        log.info("[backtest] %s rolling cap: removed %d old result(s)", bot_id, len(evict))
    return evict
