"""Per-tick buy/sell decision, shared by the live executor and the backtest simulator.

Nothing here touches a store: `decide` reads an `ExecutionState` and returns a
`Decision` carrying the claim the caller must win before trading. The live
controller turns the claim into a compare-and-set; the simulator just applies it.
"""
from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from libs.common.models import (
    Action,
    BotExecutionConfig,
    ExecutionMode,
    IndicatorSnapshot,
    PercentThreshold,
    Sizing,
    Trigger,
)
from libs.common.rules import evaluate

LAST_ACTION = "last_action"
BUY_COOLDOWN_UNTIL = "buy_cooldown_until"
SELL_COOLDOWN_UNTIL = "sell_cooldown_until"
ENTRY_PRICE = "entry_price"

STATE_FIELDS = (LAST_ACTION, BUY_COOLDOWN_UNTIL, SELL_COOLDOWN_UNTIL, ENTRY_PRICE)
COOLDOWN_FIELDS = (BUY_COOLDOWN_UNTIL, SELL_COOLDOWN_UNTIL)


@dataclass(frozen=True)
class ExecutionState:
    last_action: Optional[Action] = None
    buy_cooldown_until: Optional[datetime] = None
    sell_cooldown_until: Optional[datetime] = None
    entry_price: Optional[float] = None

    def cooldown_until(self, action: Action) -> Optional[datetime]:
        return getattr(self, cooldown_field(action))


@dataclass(frozen=True)
class Claim:
    """Conditional write: set `field` to `new` only if it still holds `expected` (None = absent)."""
    field: str
    expected: Any
    new: Any


@dataclass(frozen=True)
class Decision:
    action: Action
    trigger: Trigger
    sizing: Optional[Sizing]
    claim: Optional[Claim]


def cooldown_field(action: Action) -> str:
    if action is Action.BUY:
        return BUY_COOLDOWN_UNTIL
    if action is Action.SELL:
        return SELL_COOLDOWN_UNTIL
    raise ValueError(f"unknown action {action!r}")


# ---------- stop-loss / take-profit ----------

def evaluate_stop_loss_take_profit(
    entry_price: Optional[float],
    current_price: float,
    stop_loss: Optional[PercentThreshold] = None,
    take_profit: Optional[PercentThreshold] = None,
) -> Optional[Trigger]:
    if entry_price is None:
        return None
    if stop_loss is not None and current_price <= entry_price * (1 - stop_loss.percentage / 100.0):
        return Trigger.STOP_LOSS
    if take_profit is not None and current_price >= entry_price * (1 + take_profit.percentage / 100.0):
        return Trigger.TAKE_PROFIT
    return None


# ---------- decision ----------

def _rule_trigger(config: BotExecutionConfig, action: Action, snapshot: IndicatorSnapshot) -> Optional[Trigger]:
    query = config.query_for(action)
    if query is None:
        return None
    return Trigger.RULE if evaluate(query, snapshot) else None


def _decide_once_and_wait(config, state, action, snapshot) -> Optional[Decision]:
    # bot neuf: achat seulement. buy tant que lastAction != buy, sell seulement en position
    if action is Action.BUY:
        if state.last_action is Action.BUY:
            return None
        trigger = _rule_trigger(config, action, snapshot)
    elif action is Action.SELL:
        if state.last_action is not Action.BUY:
            return None
        trigger = evaluate_stop_loss_take_profit(
            state.entry_price, snapshot.price, config.stop_loss, config.take_profit
        ) or _rule_trigger(config, action, snapshot)
    else:
        raise ValueError(f"unknown action {action!r}")

    if trigger is None:
        return None
    claim = Claim(LAST_ACTION, state.last_action, action)
    return Decision(action, trigger, config.sizing_for(action), claim)


def _decide_condition_cooldown(config, state, action, snapshot, now) -> Optional[Decision]:
    if action is Action.SELL:
        sltp = evaluate_stop_loss_take_profit(
            state.entry_price, snapshot.price, config.stop_loss, config.take_profit
        )
        if sltp is not None:
            # SL/TP ignore le cooldown; le claim porte sur le prix d'entrée
            return Decision(action, sltp, config.sizing_for(action), Claim(ENTRY_PRICE, state.entry_price, None))

    claim = None
    if config.has_cooldown:
        until = state.cooldown_until(action)
        if until is not None and until > now:
            return None
        claim = Claim(
            cooldown_field(action),
            until,
            now + timedelta(minutes=float(config.cooldown_minutes)),
        )

    trigger = _rule_trigger(config, action, snapshot)
    if trigger is None:
        return None
    return Decision(action, trigger, config.sizing_for(action), claim)


def decide(
    config: BotExecutionConfig,
    state: ExecutionState,
    action: Action,
    snapshot: IndicatorSnapshot,
    now: datetime,
) -> Optional[Decision]:
    """Return the trade to attempt for `action` on this snapshot, or None."""
    mode = config.execution_mode
    if mode is ExecutionMode.ONCE_AND_WAIT:
        return _decide_once_and_wait(config, state, action, snapshot)
    if mode is ExecutionMode.CONDITION_COOLDOWN:
        return _decide_condition_cooldown(config, state, action, snapshot, now)
    raise ValueError(f"unknown execution mode {mode!r}")


# ---------- transitions ----------

def revert_claim(claim: Claim) -> Claim:
    """Undo a won claim after an order that did not fill."""
    if claim.field in COOLDOWN_FIELDS:
        return Claim(claim.field, claim.new, None)
    return Claim(claim.field, claim.new, claim.expected)


def fill_update(decision: Decision, state: ExecutionState, price: float) -> Optional[Claim]:
    """Entry-price write after a filled order; `state` is the snapshot read before the claim."""
    if decision.action is Action.BUY:
        return Claim(ENTRY_PRICE, state.entry_price, price)
    if decision.action is Action.SELL:
        if decision.claim is not None and decision.claim.field == ENTRY_PRICE:
            return None
        if state.entry_price is None:
            return None
        return Claim(ENTRY_PRICE, state.entry_price, None)
    raise ValueError(f"unknown action {decision.action!r}")


def apply_claim(state: ExecutionState, claim: Optional[Claim]) -> ExecutionState:
    if claim is None:
        return state
    return replace(state, **{claim.field: claim.new})


# ---------- store encoding ----------

def encode_value(field: str, value: Any) -> Optional[str]:
    if value is None:
        return None
    if field == LAST_ACTION:
        return Action(value).value
    if field in COOLDOWN_FIELDS:
        return value.isoformat()
    if field == ENTRY_PRICE:
        return repr(float(value))
    raise KeyError(field)


def decode_value(field: str, raw: Optional[str]) -> Any:
    if raw is None or raw == "":
        return None
    if isinstance(raw, bytes):
        raw = raw.decode()
    if field == LAST_ACTION:
        return Action(raw)
    if field in COOLDOWN_FIELDS:
        return datetime.fromisoformat(raw)
    if field == ENTRY_PRICE:
        return float(raw)
    raise KeyError(field)


def state_from_hash(data: Dict[str, Any]) -> ExecutionState:
    kwargs = {}
    for key, raw in (data or {}).items():
        k = key.decode() if isinstance(key, bytes) else key
        if k in STATE_FIELDS:
            kwargs[k] = decode_value(k, raw)
    return ExecutionState(**kwargs)
