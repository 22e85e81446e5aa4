from __future__ import annotations
from typing import List

from libs.common.db import get_session, insert_trade, recent_trades
from libs.common.models import TradeRecord


class SqlTradeLog:
    """Append-only trades table."""

    async def append(self, record: TradeRecord) -> None:
        async with get_session() as s:
            await insert_trade(s, record)
            await s.commit()

    async def recent(self, bot_id: str, limit: int = 50) -> List[TradeRecord]:
        async with get_session() as s:
            return await recent_trades(s, bot_id, limit)


class MemoryTradeLog:
    def __init__(self):
        self.records: List[TradeRecord] = []

    async def append(self, record: TradeRecord) -> None:
        self.records.append(record)

    async def recent(self, bot_id: str, limit: int = 50) -> List[TradeRecord]:
        rows = [r for r in self.records if r.bot_id == bot_id]
        return sorted(rows, key=lambda r: r.timestamp, reverse=True)[:limit]
