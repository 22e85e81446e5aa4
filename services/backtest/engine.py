# services/backtest/engine.py
from __future__ import annotations
from collections import deque
from datetime import datetime
from typing import Deque, Dict, List, Optional, Tuple

from libs.common.decision import ExecutionState, apply_claim, decide, fill_update
from libs.common.errors import NoPriceHistoryError
from libs.common.models import (
    Action,
    BacktestReport,
    BacktestSummary,
    BacktestWindow,
    BotExecutionConfig,
    HistoricalTick,
    HourlyBucket,
    SimulatedTrade,
    Sizing,
)

# Interface:
# run_backtest(config, ticks, window_start?, window_end?, default_notional?)
# - ticks: HistoricalTick (timestamp + snapshot) d'une seule paire
# - la simulation rejoue la même décision que l'exécuteur live, sans claim ni ordre

DEFAULT_NOTIONAL = 1000.0


def _r2(x: float) -> float:
    return round(x, 2)


def pair_pnl(buy_price: float, sell_price: float, sizing: Optional[Sizing],
             sizing_mode: str, default_notional: float = DEFAULT_NOTIONAL) -> float:
    if sizing_mode == "configured" and sizing is not None:
        if sizing.type == "fixed":
            qty = sizing.value / buy_price
        else:
            # pourcentage appliqué au notionnel par défaut
            qty = (sizing.value * default_notional / 100.0) / buy_price
    else:
        qty = default_notional / buy_price
    return qty * (sell_price - buy_price)


def simulate_tick(config: BotExecutionConfig, state: ExecutionState,
                  tick: HistoricalTick) -> Tuple[ExecutionState, Optional[SimulatedTrade]]:
    """Buy first, sell only if no buy fired: at most one trade per tick."""
    for action in (Action.BUY, Action.SELL):
        decision = decide(config, state, action, tick.snapshot, tick.timestamp)
        if decision is None:
            continue
        before = state
        state = apply_claim(state, decision.claim)
        upd = fill_update(decision, before, tick.price)
        state = apply_claim(state, upd)
        trade = SimulatedTrade(
            timestamp=tick.timestamp,
            action=action,
            price=tick.price,
            trigger=decision.trigger,
            sizing=decision.sizing,
        )
        return state, trade
    return state, None


def _hour_start(ts: datetime) -> datetime:
    return ts.replace(minute=0, second=0, microsecond=0)


def run_backtest(
    config: BotExecutionConfig,
    ticks: List[HistoricalTick],
    window_start: Optional[datetime] = None,
    window_end: Optional[datetime] = None,
    default_notional: float = DEFAULT_NOTIONAL,
) -> BacktestReport:
    if not ticks:
        raise NoPriceHistoryError(f"no price history for {config.pair} in the requested window")

    ticks = sorted(ticks, key=lambda t: t.timestamp)
    sizing_mode = "configured" if (config.buy_sizing or config.sell_sizing) else "default"

    state = ExecutionState()
    trades: List[SimulatedTrade] = []
    open_buys: Deque[SimulatedTrade] = deque()
    buckets: Dict[datetime, HourlyBucket] = {}

    # stats des paires achat->vente
    pairs = 0
    wins = 0
    realised = 0.0
    largest_gain = 0.0
    largest_loss = 0.0
    hold_minutes = 0.0

    for tick in ticks:
        hour = _hour_start(tick.timestamp)
        bucket = buckets.get(hour)
        if bucket is None:
            bucket = HourlyBucket(hour_start=hour, open_price=tick.price, close_price=tick.price)
            buckets[hour] = bucket
        bucket.close_price = tick.price

        state, trade = simulate_tick(config, state, tick)
        if trade is None:
            continue
        trades.append(trade)
        bucket.total_trades += 1

        if trade.action is Action.BUY:
            bucket.total_buys += 1
            open_buys.append(trade)
            continue

        bucket.total_sells += 1
        if not open_buys:
            continue
        buy = open_buys.popleft()
        pnl = pair_pnl(buy.price, trade.price, buy.sizing, sizing_mode, default_notional)
        bucket.realised_pnl += pnl
        realised += pnl
        pairs += 1
        if pnl > 0:
            wins += 1
        largest_gain = max(largest_gain, pnl)
        largest_loss = min(largest_loss, pnl)
        hold_minutes += (trade.timestamp - buy.timestamp).total_seconds() / 60.0

    # positions encore ouvertes: P&L latent au dernier prix
    final_price = ticks[-1].price
    unrealised = sum(
        pair_pnl(b.price, final_price, b.sizing, sizing_mode, default_notional) for b in open_buys
    )

    hourly = []
    for hour in sorted(buckets):
        b = buckets[hour]
        b.realised_pnl = _r2(b.realised_pnl)
        hourly.append(b)

    summary = BacktestSummary(
        net_pnl=_r2(realised + unrealised),
        win_rate=_r2(wins / pairs * 100.0) if pairs else 0.0,
        total_trades=len(trades),
        total_buys=sum(1 for t in trades if t.action is Action.BUY),
        total_sells=sum(1 for t in trades if t.action is Action.SELL),
        largest_gain=_r2(largest_gain),
        largest_loss=_r2(largest_loss),
        avg_hold_time_minutes=int(round(hold_minutes / pairs)) if pairs else 0,
    )

    return BacktestReport(
        bot_id=config.bot_id,
        window=BacktestWindow(
            start=window_start or ticks[0].timestamp,
            end=window_end or ticks[-1].timestamp,
        ),
        sizing_mode=sizing_mode,
        summary=summary,
        hourly_buckets=hourly,
        trades=trades,
    )
