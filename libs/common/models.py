from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import Optional, Literal, List, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, AliasChoices, field_validator
from pydantic.alias_generators import to_camel

# --- indicator vector ---

NUMERIC_FIELDS = (
    "price",
    "volume_24h",
    "price_change_pct",
    "rsi_14",
    "rsi_7",
    "macd_histogram",
    "sma_20",
    "sma_50",
    "sma_200",
    "ema_12",
    "ema_20",
    "ema_26",
    "bb_upper",
    "bb_lower",
)

STRING_FIELDS = ("macd_signal", "bb_position")

INDICATOR_FIELDS = NUMERIC_FIELDS + STRING_FIELDS

MACD_SIGNALS = ("bullish_crossover", "bearish_crossover", "above_signal", "below_signal")
BB_POSITIONS = ("above_upper", "below_lower", "near_upper", "near_lower", "between_bands")


class Action(str, Enum):
    BUY = "buy"
    SELL = "sell"


class ExecutionMode(str, Enum):
    ONCE_AND_WAIT = "once_and_wait"
    CONDITION_COOLDOWN = "condition_cooldown"


class Trigger(str, Enum):
    RULE = "rule"
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"


class OrderStatus(str, Enum):
    FILLED = "filled"
    FAILED = "failed"
    SKIPPED = "skipped"


class BotStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    DRAFT = "draft"


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class IndicatorSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    price: float
    volume_24h: float
    price_change_pct: float
    rsi_14: float
    rsi_7: float
    macd_histogram: float
    macd_signal: str
    sma_20: float
    sma_50: float
    sma_200: float
    ema_12: float
    ema_20: float
    ema_26: float
    bb_upper: float
    bb_lower: float
    bb_position: str

    def attributes(self, pair: str) -> dict:
        """Routing attributes: the pair plus every indicator value."""
        out = {"pair": pair}
        out.update(self.model_dump())
        return out


# --- rule trees ---

class Rule(BaseModel):
    field: str
    operator: str
    value: str

    @field_validator("value", mode="before")
    @classmethod
    def _stringify(cls, v):
        # le builder envoie parfois des nombres bruts
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


class RuleGroup(BaseModel):
    combinator: Literal["and", "or"]
    rules: List[Union[RuleGroup, Rule]] = Field(
        default_factory=list,
        validation_alias=AliasChoices("rules", "children"),
    )

    @field_validator("combinator", mode="before")
    @classmethod
    def _lower(cls, v):
        return v.lower() if isinstance(v, str) else v


RuleGroup.model_rebuild()


# --- bot configuration ---

class Sizing(BaseModel):
    type: Literal["fixed", "percentage"]
    value: float


class PercentThreshold(BaseModel):
    percentage: float


class BotExecutionConfig(WireModel):
    bot_id: str
    pair: str
    account_id: Optional[str] = None
    status: BotStatus = BotStatus.ACTIVE
    execution_mode: ExecutionMode
    buy_query: Optional[RuleGroup] = None
    sell_query: Optional[RuleGroup] = None
    buy_sizing: Optional[Sizing] = None
    sell_sizing: Optional[Sizing] = None
    stop_loss: Optional[PercentThreshold] = None
    take_profit: Optional[PercentThreshold] = None
    cooldown_minutes: Optional[float] = None

    @property
    def account(self) -> str:
        return self.account_id or self.bot_id

    @property
    def has_cooldown(self) -> bool:
        return self.cooldown_minutes is not None and self.cooldown_minutes > 0

    def query_for(self, action: Action) -> Optional[RuleGroup]:
        if action is Action.BUY:
            return self.buy_query
        if action is Action.SELL:
            return self.sell_query
        raise ValueError(f"unknown action {action!r}")

    def sizing_for(self, action: Action) -> Optional[Sizing]:
        if action is Action.BUY:
            return self.buy_sizing
        if action is Action.SELL:
            return self.sell_sizing
        raise ValueError(f"unknown action {action!r}")


# --- trade log ---

class TradeRecord(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    bot_id: str
    timestamp: datetime
    pair: str
    action: Action
    price: float
    trigger: Trigger
    sizing: Optional[Sizing] = None
    order_status: OrderStatus
    order_id: Optional[str] = None
    fail_reason: Optional[str] = None
    indicators_snapshot: IndicatorSnapshot


# --- backtests ---

class HistoricalTick(BaseModel):
    timestamp: datetime
    snapshot: IndicatorSnapshot

    @property
    def price(self) -> float:
        return self.snapshot.price


class BacktestWindow(WireModel):
    start: datetime
    end: datetime


class HourlyBucket(WireModel):
    hour_start: datetime
    total_trades: int = 0
    total_buys: int = 0
    total_sells: int = 0
    realised_pnl: float = 0.0
    open_price: float
    close_price: float


class BacktestSummary(WireModel):
    net_pnl: float = 0.0
    win_rate: float = 0.0
    total_trades: int = 0
    total_buys: int = 0
    total_sells: int = 0
    largest_gain: float = 0.0
    largest_loss: float = 0.0
    avg_hold_time_minutes: int = 0


class SimulatedTrade(WireModel):
    timestamp: datetime
    action: Action
    price: float
    trigger: Trigger
    sizing: Optional[Sizing] = None


class BacktestReport(WireModel):
    backtest_id: Optional[str] = None
    bot_id: Optional[str] = None
    window: BacktestWindow
    sizing_mode: Literal["configured", "default"]
    summary: BacktestSummary
    hourly_buckets: List[HourlyBucket]
    trades: List[SimulatedTrade] = Field(default_factory=list)


def split_pair(pair: str) -> Tuple[str, str]:
    """'BTC/USDT' -> ('BTC', 'USDT')."""
    base, _, quote = pair.partition("/")
    return base.upper(), quote.upper()


def exchange_symbol(pair: str) -> str:
    """'BTC/USDT' -> 'BTCUSDT'."""
    base, quote = split_pair(pair)
    return f"{base}{quote}"
