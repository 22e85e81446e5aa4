"""Builders shared by the test modules."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from libs.common.models import (
    BotExecutionConfig,
    HistoricalTick,
    IndicatorSnapshot,
    OrderStatus,
    Rule,
    RuleGroup,
)
from services.executor.execution import Balance, OrderOutcome

UTC = timezone.utc
T0 = datetime(2026, 1, 5, 10, 0, 0, tzinfo=UTC)

BASE_SNAPSHOT = dict(
    price=50000.0,
    volume_24h=1200.0,
    price_change_pct=1.5,
    rsi_14=55.0,
    rsi_7=60.0,
    macd_histogram=12.5,
    macd_signal="above_signal",
    sma_20=49500.0,
    sma_50=48000.0,
    sma_200=42000.0,
    ema_12=49800.0,
    ema_20=49600.0,
    ema_26=49400.0,
    bb_upper=51000.0,
    bb_lower=48000.0,
    bb_position="between_bands",
)


def make_snapshot(**over) -> IndicatorSnapshot:
    return IndicatorSnapshot(**{**BASE_SNAPSHOT, **over})


def rule(field: str, operator: str, value) -> Rule:
    return Rule(field=field, operator=operator, value=value)


def group(combinator: str, *children) -> RuleGroup:
    return RuleGroup(combinator=combinator, rules=list(children))


ALWAYS = group("and", rule("price", ">", "0"))
NEVER = group("and", rule("price", "<", "0"))


def make_bot(**over) -> BotExecutionConfig:
    kw = dict(bot_id="bot-1", pair="BTC/USDT", execution_mode="once_and_wait")
    kw.update(over)
    return BotExecutionConfig(**kw)


def make_ticks(prices: List[float], start: datetime = T0, step_minutes: int = 1) -> List[HistoricalTick]:
    return [
        HistoricalTick(timestamp=start + timedelta(minutes=i * step_minutes), snapshot=make_snapshot(price=p))
        for i, p in enumerate(prices)
    ]


def run(coro):
    return asyncio.run(coro)


class FakeGateway:
    """Order API double: scripted balance and order status, records every call."""

    def __init__(self, status: str = "filled", balance: Optional[Balance] = None,
                 balance_error: Optional[Exception] = None, order_error: Optional[Exception] = None,
                 delay: float = 0.0):
        self.status = status
        self.balance = balance or Balance(quote=10000.0, base=2.0)
        self.balance_error = balance_error
        self.order_error = order_error
        self.delay = delay
        self.orders = []
        self.balance_calls = 0

    async def get_balance(self, account_id, pair):
        self.balance_calls += 1
        if self.balance_error is not None:
            raise self.balance_error
        return self.balance

    async def place_order(self, account_id, pair, side, size):
        if self.delay:
            await asyncio.sleep(self.delay)
        self.orders.append((account_id, pair, side, size))
        if self.order_error is not None:
            raise self.order_error
        if self.status == "filled":
            return OrderOutcome(OrderStatus.FILLED, order_id=f"o-{len(self.orders)}", size=size)
        return OrderOutcome(OrderStatus.FAILED, fail_reason="rejected", size=size)
