from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal, getcontext
from typing import Any, Dict, Optional

import httpx
from binance.spot import Spot
from binance.error import ClientError, ServerError

from libs.common.errors import ExchangeError
from libs.common.models import Action, OrderStatus, Sizing, exchange_symbol, split_pair

log = logging.getLogger(__name__)

# précision suffisante pour éviter les artefacts binaires
getcontext().prec = 40


@dataclass(frozen=True)
class Balance:
    quote: float
    base: float


@dataclass(frozen=True)
class OrderOutcome:
    status: OrderStatus
    order_id: Optional[str] = None
    fail_reason: Optional[str] = None
    size: Optional[float] = None

    @property
    def filled(self) -> bool:
        return self.status is OrderStatus.FILLED


# ---------- demo order API ----------

class DemoExchangeGateway:
    """HTTP order API: GET /balance, POST /orders."""

    def __init__(self, base_url: str, timeout_s: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.client = client or httpx.AsyncClient(timeout=timeout_s)

    async def get_balance(self, account_id: str, pair: str) -> Balance:
        try:
            resp = await self.client.get(
                f"{self.base_url}/balance", params={"accountId": account_id, "pair": pair}
            )
            resp.raise_for_status()
            data = resp.json()
            return Balance(quote=float(data["quote"]), base=float(data["base"]))
        except httpx.HTTPError as e:
            raise ExchangeError(f"balance {account_id}: {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            raise ExchangeError(f"balance {account_id}: bad payload ({e})") from e

    async def place_order(self, account_id: str, pair: str, side: Action, size: float) -> OrderOutcome:
        body = {"accountId": account_id, "pair": pair, "side": side.value, "size": size}
        try:
            resp = await self.client.post(f"{self.base_url}/orders", json=body)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            raise ExchangeError(f"order {account_id} {side.value} {pair}: {e}") from e
        except ValueError as e:
            raise ExchangeError(f"order {account_id}: bad payload ({e})") from e

        if data.get("status") == OrderStatus.FILLED.value:
            return OrderOutcome(OrderStatus.FILLED, order_id=data.get("orderId"), size=size)
        return OrderOutcome(
            OrderStatus.FAILED,
            order_id=data.get("orderId"),
            fail_reason=data.get("failReason") or f"status={data.get('status')}",
            size=size,
        )


# ---------- Binance spot ----------

def build_spot_client(mode: str, key: Optional[str], secret: Optional[str]) -> Spot:
    base_url = "https://api.binance.com" if mode == "mainnet" else "https://testnet.binance.vision"
    return Spot(api_key=key or "", api_secret=secret or "", base_url=base_url)


def _flt(filters, ftype):
    for f in filters:
        if f.get("filterType") == ftype:
            return f
    return None


class BinanceGateway:
    """Market orders by base quantity on Binance spot; blocking client calls run in a thread."""

    def __init__(self, mode: str, key: Optional[str], secret: Optional[str],
                 timeout_s: float = 10.0, client: Optional[Spot] = None):
        self.mode = mode
        self.timeout_s = timeout_s
        self.client = client or build_spot_client(mode, key, secret)
        self._exinfo_cache: Dict[str, dict] = {}
        self._time_offset_ms: int = 0
        self._synced = False

    def sync_time(self):
        try:
            st = self.client.time()
            self._time_offset_ms = int(st["serverTime"]) - int(time.time() * 1000)
        except (ClientError, ServerError, OSError, KeyError) as e:
            log.warning("[binance] time sync failed: %s", e)
            self._time_offset_ms = 0
        self._synced = True

    def _ts(self) -> int:
        if not self._synced:
            self.sync_time()
        return int(time.time() * 1000) + self._time_offset_ms

    def exchange_info(self, symbol: str) -> dict:
        if symbol in self._exinfo_cache:
            return self._exinfo_cache[symbol]
        data = self.client.exchange_info(symbol=symbol)
        info = data["symbols"][0]
        self._exinfo_cache[symbol] = info
        return info

    def format_qty(self, symbol: str, qty_base: float) -> str:
        """
        Quantité en décimal fixe (pas d'exponent), floor sur stepSize.
        Sous minQty -> "0".
        """
        q = Decimal(str(qty_base))
        if q <= 0:
            return "0"
        info = self.exchange_info(symbol)
        lot = _flt(info["filters"], "LOT_SIZE") or _flt(info["filters"], "MARKET_LOT_SIZE")
        if not lot:
            return format(q.normalize(), "f") or "0"

        step = Decimal(lot.get("stepSize", "0.00000001") or "0.00000001")
        min_qty = Decimal(lot.get("minQty", "0") or "0")
        if step <= 0:
            step = Decimal("0.00000001")
        q = (q // step) * step
        if q < min_qty:
            return "0"
        return format(q.normalize(), "f") or "0"

    def _balance_sync(self, pair: str) -> Balance:
        base, quote = split_pair(pair)
        acct = self.client.account(recvWindow=10000, timestamp=self._ts())
        free: Dict[str, float] = {}
        for b in acct.get("balances", []):
            free[b.get("asset", "").upper()] = float(b.get("free", 0) or 0)
        return Balance(quote=free.get(quote, 0.0), base=free.get(base, 0.0))

    def _order_sync(self, pair: str, side: Action, size: float) -> Dict[str, Any]:
        sym = exchange_symbol(pair)
        qty = self.format_qty(sym, size)
        if qty == "0":
            return {"status": "REJECTED", "reason": f"quantity below minQty/stepSize for {sym}"}
        return self.client.new_order(
            symbol=sym, side=side.value.upper(), type="MARKET",
            quantity=qty, recvWindow=10000, timestamp=self._ts(),
        )

    async def get_balance(self, account_id: str, pair: str) -> Balance:
        try:
            return await asyncio.wait_for(asyncio.to_thread(self._balance_sync, pair), self.timeout_s)
        except (ClientError, ServerError, OSError, asyncio.TimeoutError) as e:
            raise ExchangeError(f"binance balance {pair}: {e}") from e

    async def place_order(self, account_id: str, pair: str, side: Action, size: float) -> OrderOutcome:
        try:
            data = await asyncio.wait_for(asyncio.to_thread(self._order_sync, pair, side, size), self.timeout_s)
        except (ClientError, ServerError, OSError, asyncio.TimeoutError) as e:
            raise ExchangeError(f"binance order {side.value} {pair}: {e}") from e
        order_id = str(data["orderId"]) if data.get("orderId") is not None else None
        if data.get("status") == "FILLED":
            return OrderOutcome(OrderStatus.FILLED, order_id=order_id, size=size)
        return OrderOutcome(
            OrderStatus.FAILED,
            order_id=order_id,
            fail_reason=data.get("reason") or f"status={data.get('status')}",
            size=size,
        )


def build_gateway(cfg) -> Any:
    """ExchangeConfig -> gateway."""
    if cfg.kind == "binance":
        return BinanceGateway(cfg.binance_mode, cfg.api_key, cfg.api_secret, timeout_s=cfg.timeout_s)
    return DemoExchangeGateway(cfg.base_url, timeout_s=cfg.timeout_s)


# ---------- sizing & order attempt ----------

async def calculate_order_size(gateway, account_id: str, pair: str, action: Action,
                               sizing: Sizing, price: float) -> Optional[float]:
    """Base quantity for the order; None when the balance could not be read."""
    if sizing.type == "fixed":
        return sizing.value / price if price > 0 else 0.0
    try:
        bal = await gateway.get_balance(account_id, pair)
    except ExchangeError as e:
        log.warning("[exec] balance unavailable for %s: %s", account_id, e)
        return None
    pct = sizing.value / 100.0
    if action is Action.BUY:
        return (bal.quote * pct) / price if price > 0 else 0.0
    if action is Action.SELL:
        return bal.base * pct
    raise ValueError(f"unknown action {action!r}")


async def execute_order(gateway, account_id: str, pair: str, action: Action,
                        sizing: Optional[Sizing], price: float) -> OrderOutcome:
    """Size and place one market order. Never raises for exchange-side problems."""
    if sizing is None:
        return OrderOutcome(OrderStatus.SKIPPED, fail_reason="no sizing configured")
    size = await calculate_order_size(gateway, account_id, pair, action, sizing, price)
    if size is None:
        return OrderOutcome(OrderStatus.SKIPPED, fail_reason="balance unavailable")
    if size <= 0:
        return OrderOutcome(OrderStatus.SKIPPED, fail_reason="order size <= 0", size=size)
    try:
        return await gateway.place_order(account_id, pair, action, size)
    except ExchangeError as e:
        log.warning("[exec] order failed %s %s %s: %s", account_id, action.value, pair, e)
        return OrderOutcome(OrderStatus.FAILED, fail_reason=str(e), size=size)
