from __future__ import annotations
import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import redis.asyncio as redis

from libs.common.config import load_config, setup_logging
from libs.common.db import ensure_tables, get_engine, get_session
from libs.common.errors import BacktestInFlightError, truncate_message
from libs.common.models import BacktestReport, BotExecutionConfig
from services.backtest.engine import DEFAULT_NOTIONAL, run_backtest
from services.backtest.reports import (
    FAILED,
    MAX_RESULTS_PER_BOT,
    PENDING,
    RUNNING,
    SqlBacktestStore,
    enforce_rolling_cap,
)

log = logging.getLogger(__name__)


class RedisQueue:
    def __init__(self, r: redis.Redis, key: str):
        self.r = r
        self.key = key

    async def push(self, item: str):
        await self.r.rpush(self.key, item)

    async def pop(self, timeout: float = 5.0) -> Optional[str]:
        res = await self.r.blpop([self.key], timeout=timeout)
        return res[1] if res else None


class MemoryQueue:
    def __init__(self):
        self.q: asyncio.Queue = asyncio.Queue()

    async def push(self, item: str):
        await self.q.put(item)

    async def pop(self, timeout: float = 5.0) -> Optional[str]:
        try:
            return await asyncio.wait_for(self.q.get(), timeout)
        except asyncio.TimeoutError:
            return None


async def submit_backtest(store, queue, config: BotExecutionConfig,
                          start: Optional[datetime] = None, end: Optional[datetime] = None,
                          window_days: int = 30) -> str:
    """Record a pending backtest and enqueue it. One in flight per bot."""
    if await store.in_flight(config.bot_id):
        raise BacktestInFlightError(config.bot_id)
    end = end or datetime.now(timezone.utc)
    start = start or end - timedelta(days=window_days)
    backtest_id = uuid.uuid4().hex
    await store.create(backtest_id, config.bot_id, config.model_dump(mode="json", by_alias=True), start, end)
    await queue.push(backtest_id)
    log.info("[backtest] %s queued for bot %s (%s -> %s)", backtest_id, config.bot_id, start, end)
    return backtest_id


class BacktestRunner:
    def __init__(self, store, max_results: int = MAX_RESULTS_PER_BOT,
                 default_notional: float = DEFAULT_NOTIONAL):
        self.store = store
        self.max_results = max_results
        self.default_notional = default_notional

    async def run_one(self, backtest_id: str) -> Optional[BacktestReport]:
        row = await self.store.get(backtest_id)
        if row is None:
            log.warning("[backtest] %s not found, dropped", backtest_id)
            return None
        if row["status"] != PENDING:
            log.info("[backtest] %s already %s, skipped", backtest_id, row["status"])
            return None

        bot_id = row["bot_id"]
        if await self.store.blocking(backtest_id):
            await self.store.mark(backtest_id, FAILED, "another backtest is already in progress for this bot")
            return None
        await self.store.mark(backtest_id, RUNNING)

        try:
            config = BotExecutionConfig.model_validate(row["config"])
            start, end = row["window_start"], row["window_end"]
            ticks = await self.store.load_ticks(config.pair, start, end)
            report = await asyncio.to_thread(run_backtest, config, ticks, start, end, self.default_notional)
            report.backtest_id = backtest_id
            await self.store.complete(
                backtest_id, report.model_dump(mode="json", by_alias=True), datetime.now(timezone.utc)
            )
        except Exception as e:
            log.exception("[backtest] %s failed", backtest_id)
            await self.store.mark(backtest_id, FAILED, truncate_message(e))
            return None

        log.info("[backtest] %s completed: net=%s trades=%s", backtest_id,
                 report.summary.net_pnl, report.summary.total_trades)
        await enforce_rolling_cap(self.store, bot_id, self.max_results)
        return report

    async def consume(self, queue):
        while True:
            backtest_id = await queue.pop()
            if backtest_id is None:
                continue
            try:
                await self.run_one(backtest_id)
            except Exception:
                log.exception("[backtest] worker error on %s", backtest_id)


async def main():
    setup_logging()
    cfg = load_config()
    r = redis.from_url(cfg.redis_url, decode_responses=True)
    get_engine(cfg.database_url)
    async with get_session() as s:
        await ensure_tables(s)

    runner = BacktestRunner(
        SqlBacktestStore(),
        max_results=cfg.backtest.max_results_per_bot,
        default_notional=cfg.backtest.default_notional,
    )
    queue = RedisQueue(r, cfg.backtest.queue)
    log.info("[backtest] %d worker(s) on %s", cfg.backtest.workers, cfg.backtest.queue)
    await asyncio.gather(*(runner.consume(queue) for _ in range(max(1, cfg.backtest.workers))))


if __name__ == "__main__":
    asyncio.run(main())
