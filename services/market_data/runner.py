import json
import asyncio
import logging
from datetime import datetime, timezone
from collections import deque
from typing import Dict, Any, Optional

import websockets
import httpx
import redis.asyncio as redis

from libs.common.config import AppConfig, load_config, setup_logging
from libs.common.db import ensure_tables, get_engine, get_session, insert_price_tick
from libs.common.indicators import compute_snapshot
from libs.common.models import IndicatorSnapshot, exchange_symbol

log = logging.getLogger(__name__)

CLOSES_MAXLEN = 500

# ---------- STATE ----------
r: redis.Redis = None
CFG: AppConfig = None


# ---------- per-pair state ----------
class PairState:
    def __init__(self, pair: str, maxlen: int = CLOSES_MAXLEN):
        self.pair = pair
        self.closes: deque = deque(maxlen=maxlen)
        self.last_price: Optional[float] = None
        self.volume_24h: float = 0.0
        self.price_change_pct: float = 0.0

    def snapshot(self) -> Optional[IndicatorSnapshot]:
        if not self.closes:
            return None
        px = self.last_price if self.last_price is not None else self.closes[-1]
        return compute_snapshot(list(self.closes), px, self.volume_24h, self.price_change_pct)

    def apply_ticker(self, d: Dict[str, Any]):
        try:
            if d.get("c") is not None:
                self.last_price = float(d["c"])
            if d.get("v") is not None:
                self.volume_24h = float(d["v"])
            if d.get("P") is not None:
                self.price_change_pct = float(d["P"])
        except (TypeError, ValueError):
            log.debug("[md] bad ticker payload for %s: %s", self.pair, d)


STATES: Dict[str, PairState] = {}


def build_message(pair: str, snap: IndicatorSnapshot) -> Dict[str, Any]:
    return {"attributes": snap.attributes(pair), "snapshot": snap.model_dump()}


def states_by_symbol() -> Dict[str, PairState]:
    return {exchange_symbol(p): st for p, st in STATES.items()}


# ---------- REST seed ----------
async def seed_pair(client: httpx.AsyncClient, st: PairState, interval: str, limit: int):
    sym = exchange_symbol(st.pair)
    kl = await client.get("/api/v3/klines", params={"symbol": sym, "interval": interval, "limit": limit})
    kl.raise_for_status()
    st.closes.extend(float(k[4]) for k in kl.json())

    tk = await client.get("/api/v3/ticker/24hr", params={"symbol": sym})
    tk.raise_for_status()
    t = tk.json()
    st.apply_ticker({"c": t.get("lastPrice"), "v": t.get("volume"), "P": t.get("priceChangePercent")})
    log.info("[md] seeded %s with %d closes", st.pair, len(st.closes))


async def seed_all():
    async with httpx.AsyncClient(base_url=CFG.market_data.rest_base, timeout=10) as client:
        for st in STATES.values():
            try:
                await seed_pair(client, st, CFG.market_data.interval, CFG.market_data.kline_limit)
            except httpx.HTTPError as e:
                log.warning("[md] seed failed for %s: %s", st.pair, e)


# ---------- publish ----------
async def publish(st: PairState, ts: datetime):
    snap = st.snapshot()
    if snap is None:
        return
    await r.publish(CFG.executor.channel, json.dumps(build_message(st.pair, snap)))
    try:
        async with get_session() as s:
            await insert_price_tick(s, st.pair, ts, snap)
            await s.commit()
    except Exception as e:
        log.warning("[md] price history write failed for %s: %s", st.pair, e)


# ---------- LOOPS ----------
async def ticker_loop():
    """24h ticker: prix courant, volume et variation."""
    streams = "/".join(f"{s.lower()}@ticker" for s in states_by_symbol())
    url = f"{CFG.market_data.stream_base}?streams={streams}"
    while True:
        log.info("[md] ticker ws -> %s", url)
        try:
            async with websockets.connect(url, ping_interval=20, ping_timeout=20) as ws:
                while True:
                    d = (json.loads(await ws.recv()).get("data") or {})
                    st = states_by_symbol().get(d.get("s"))
                    if st:
                        st.apply_ticker(d)
        except Exception as e:
            log.warning("[md] ticker error: %s", e)
            await asyncio.sleep(2.0)


async def kline_loop():
    """Klines: une publication par bougie clôturée."""
    tf = CFG.market_data.interval
    streams = "/".join(f"{s.lower()}@kline_{tf}" for s in states_by_symbol())
    url = f"{CFG.market_data.stream_base}?streams={streams}"
    while True:
        log.info("[md] kline ws -> %s", url)
        try:
            async with websockets.connect(url, ping_interval=20, ping_timeout=20) as ws:
                while True:
                    data = json.loads(await ws.recv()).get("data") or {}
                    k = data.get("k") or {}
                    st = states_by_symbol().get(data.get("s"))
                    # only on candle close
                    if not st or not k.get("x", False):
                        continue
                    try:
                        c = float(k.get("c"))
                    except (TypeError, ValueError):
                        continue
                    st.closes.append(c)
                    if st.last_price is None:
                        st.last_price = c
                    ts = datetime.fromtimestamp(int(k.get("T", 0)) / 1000, tz=timezone.utc)
                    await publish(st, ts)
        except Exception as e:
            log.warning("[md] kline error: %s", e)
            await asyncio.sleep(2.0)


# ---------- MAIN ----------
async def main():
    global r, CFG
    setup_logging()
    CFG = load_config()
    r = redis.from_url(CFG.redis_url, decode_responses=True)
    get_engine(CFG.database_url)
    async with get_session() as s:
        await ensure_tables(s)

    for pair in CFG.market_data.pairs:
        STATES[pair] = PairState(pair)
    await seed_all()

    log.info("[md] publisher started for %s on %s", ", ".join(STATES), CFG.executor.channel)
    await asyncio.gather(ticker_loop(), kline_loop())


if __name__ == "__main__":
    asyncio.run(main())
