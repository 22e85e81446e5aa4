from __future__ import annotations


class ExchangeError(Exception):
    """Order API / balance call failed (transport, HTTP status or exchange rejection)."""


class NoPriceHistoryError(Exception):
    """No historical ticks in the requested backtest window."""


class BacktestInFlightError(Exception):
    """A pending or running backtest already exists for the bot."""

    def __init__(self, bot_id: str):
        super().__init__(f"backtest already in flight for bot {bot_id}")
        self.bot_id = bot_id


class StateStoreError(Exception):
    """Execution state store unavailable or compare-and-set kept colliding."""


def truncate_message(msg: str, limit: int = 500) -> str:
    msg = str(msg)
    return msg if len(msg) <= limit else msg[:limit]
