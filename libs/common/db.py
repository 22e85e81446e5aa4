from __future__ import annotations
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy import text, bindparam
from sqlalchemy.orm import sessionmaker
from datetime import datetime
from typing import Any, List, Dict, Optional
import json

from libs.common.models import HistoricalTick, IndicatorSnapshot, TradeRecord

_engine: AsyncEngine | None = None
_sessionmaker = None

def get_engine(dsn: str) -> AsyncEngine:
    global _engine, _sessionmaker
    if _engine is None:
        _engine = create_async_engine(dsn, echo=False, pool_pre_ping=True)
        _sessionmaker = sessionmaker(_engine, expire_on_commit=False, class_=AsyncSession)
    return _engine

def get_session() -> AsyncSession:
    if _sessionmaker is None:
        raise RuntimeError("get_engine() must be called before get_session()")
    return _sessionmaker()

def _json(val: Any) -> Any:
    if val is None or isinstance(val, (dict, list)):
        return val
    try:
        return json.loads(val)
    except (TypeError, ValueError):
        return None

# ---------- SCHEMA ----------
async def ensure_tables(session: AsyncSession):
    # Safe-guard si la migration n'a pas été appliquée
    await session.execute(text("""
        CREATE TABLE IF NOT EXISTS trades (
          id BIGSERIAL PRIMARY KEY,
          bot_id TEXT NOT NULL,
          ts TIMESTAMPTZ NOT NULL,
          pair TEXT NOT NULL,
          action TEXT NOT NULL,
          price NUMERIC NOT NULL,
          trigger TEXT NOT NULL,
          sizing JSONB,
          order_status TEXT NOT NULL,
          order_id TEXT,
          fail_reason TEXT,
          indicators JSONB NOT NULL
        )
    """))
    await session.execute(text("CREATE INDEX IF NOT EXISTS idx_trades_bot_ts ON trades(bot_id, ts DESC)"))
    await session.execute(text("""
        CREATE TABLE IF NOT EXISTS price_history (
          id BIGSERIAL PRIMARY KEY,
          pair TEXT NOT NULL,
          ts TIMESTAMPTZ NOT NULL,
          snapshot JSONB NOT NULL
        )
    """))
    await session.execute(text("CREATE INDEX IF NOT EXISTS idx_price_pair_ts ON price_history(pair, ts)"))
    await session.execute(text("""
        CREATE TABLE IF NOT EXISTS backtests (
          id TEXT PRIMARY KEY,
          bot_id TEXT NOT NULL,
          status TEXT NOT NULL,
          window_start TIMESTAMPTZ NOT NULL,
          window_end TIMESTAMPTZ NOT NULL,
          config JSONB NOT NULL,
          report JSONB,
          error TEXT,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          tested_at TIMESTAMPTZ
        )
    """))
    await session.execute(text("CREATE INDEX IF NOT EXISTS idx_backtests_bot ON backtests(bot_id, status)"))
    await session.commit()

# ---------- TRADES ----------
async def insert_trade(session: AsyncSession, rec: TradeRecord):
    q = text("""
        INSERT INTO trades (bot_id, ts, pair, action, price, trigger, sizing,
                            order_status, order_id, fail_reason, indicators)
        VALUES (:bot, :ts, :pair, :action, :px, :trig, :sizing, :st, :oid, :reason, :ind)
        RETURNING id
    """).bindparams(bindparam("sizing", type_=JSONB), bindparam("ind", type_=JSONB))
    res = await session.execute(q, {
        "bot": rec.bot_id, "ts": rec.timestamp, "pair": rec.pair,
        "action": rec.action.value, "px": rec.price, "trig": rec.trigger.value,
        "sizing": rec.sizing.model_dump() if rec.sizing else None,
        "st": rec.order_status.value, "oid": rec.order_id, "reason": rec.fail_reason,
        "ind": rec.indicators_snapshot.model_dump(),
    })
    row = res.fetchone()
    return row[0] if row else None

async def recent_trades(session: AsyncSession, bot_id: str, limit: int = 50) -> List[TradeRecord]:
    q = text("""
        SELECT bot_id, ts, pair, action, price, trigger, sizing,
               order_status, order_id, fail_reason, indicators
        FROM trades
        WHERE bot_id = :bot
        ORDER BY ts DESC, id DESC
        LIMIT :lim
    """)
    res = await session.execute(q, {"bot": bot_id, "lim": limit})
    out = []
    for r in res.fetchall():
        m = dict(r._mapping)
        out.append(TradeRecord(
            bot_id=m["bot_id"], timestamp=m["ts"], pair=m["pair"], action=m["action"],
            price=float(m["price"]), trigger=m["trigger"], sizing=_json(m["sizing"]),
            order_status=m["order_status"], order_id=m["order_id"], fail_reason=m["fail_reason"],
            indicators_snapshot=_json(m["indicators"]),
        ))
    return out

# ---------- PRICE HISTORY ----------
async def insert_price_tick(session: AsyncSession, pair: str, ts: datetime, snapshot: IndicatorSnapshot):
    q = text("""
        INSERT INTO price_history (pair, ts, snapshot)
        VALUES (:pair, :ts, :snap)
    """).bindparams(bindparam("snap", type_=JSONB))
    await session.execute(q, {"pair": pair, "ts": ts, "snap": snapshot.model_dump()})
    # pas de commit ici: laisse l'appelant décider

async def load_price_history(session: AsyncSession, pair: str, start: datetime, end: datetime) -> List[HistoricalTick]:
    q = text("""
        SELECT ts, snapshot
        FROM price_history
        WHERE pair = :pair AND ts >= :start AND ts <= :end
        ORDER BY ts ASC, id ASC
    """)
    res = await session.execute(q, {"pair": pair, "start": start, "end": end})
    return [HistoricalTick(timestamp=r.ts, snapshot=_json(r.snapshot)) for r in res.fetchall()]

# ---------- BACKTESTS ----------
async def insert_backtest(session: AsyncSession, backtest_id: str, bot_id: str, config: Dict[str, Any],
                          start: datetime, end: datetime, status: str = "pending"):
    q = text("""
        INSERT INTO backtests (id, bot_id, status, window_start, window_end, config, created_at)
        VALUES (:id, :bot, :st, :ws, :we, :cfg, now())
    """).bindparams(bindparam("cfg", type_=JSONB))
    await session.execute(q, {"id": backtest_id, "bot": bot_id, "st": status, "ws": start, "we": end, "cfg": config})

async def count_in_flight(session: AsyncSession, bot_id: str) -> int:
    q = text("""
        SELECT count(*) FROM backtests
        WHERE bot_id = :bot AND status IN ('pending', 'running')
    """)
    res = await session.execute(q, {"bot": bot_id})
    return int(res.scalar() or 0)

async def count_blocking(session: AsyncSession, backtest_id: str) -> int:
    # running, ou pending plus ancien: le plus ancien pending passe toujours
    q = text("""
        SELECT count(*) FROM backtests b JOIN backtests me ON me.id = :id
        WHERE b.bot_id = me.bot_id AND b.id <> me.id
          AND (b.status = 'running'
               OR (b.status = 'pending' AND (b.created_at, b.id) < (me.created_at, me.id)))
    """)
    res = await session.execute(q, {"id": backtest_id})
    return int(res.scalar() or 0)

async def set_backtest_status(session: AsyncSession, backtest_id: str, status: str, error: Optional[str] = None):
    q = text("UPDATE backtests SET status = :st, error = :err WHERE id = :id")
    await session.execute(q, {"id": backtest_id, "st": status, "err": error})

async def complete_backtest(session: AsyncSession, backtest_id: str, report: Dict[str, Any], tested_at: datetime):
    q = text("""
        UPDATE backtests
        SET status = 'completed', report = :rep, tested_at = :ts, error = NULL
        WHERE id = :id
    """).bindparams(bindparam("rep", type_=JSONB))
    await session.execute(q, {"id": backtest_id, "rep": report, "ts": tested_at})

async def completed_backtests(session: AsyncSession, bot_id: str) -> List[Dict[str, Any]]:
    q = text("""
        SELECT id, tested_at FROM backtests
        WHERE bot_id = :bot AND status = 'completed'
        ORDER BY tested_at DESC
    """)
    res = await session.execute(q, {"bot": bot_id})
    return [dict(r._mapping) for r in res.fetchall()]

async def delete_backtests(session: AsyncSession, ids: List[str]):
    if not ids:
        return
    q = text("DELETE FROM backtests WHERE id = ANY(:ids)")
    await session.execute(q, {"ids": list(ids)})

def _backtest_row(m: Dict[str, Any]) -> Dict[str, Any]:
    m["config"] = _json(m.get("config"))
    m["report"] = _json(m.get("report"))
    return m

async def get_backtest(session: AsyncSession, backtest_id: str) -> Optional[Dict[str, Any]]:
    q = text("""
        SELECT id, bot_id, status, window_start, window_end, config, report, error, created_at, tested_at
        FROM backtests WHERE id = :id
    """)
    res = await session.execute(q, {"id": backtest_id})
    row = res.fetchone()
    return _backtest_row(dict(row._mapping)) if row else None

async def list_backtests(session: AsyncSession, bot_id: str) -> List[Dict[str, Any]]:
    q = text("""
        SELECT id, bot_id, status, window_start, window_end, report, error, created_at, tested_at
        FROM backtests WHERE bot_id = :bot
        ORDER BY created_at DESC
    """)
    res = await session.execute(q, {"bot": bot_id})
    return [_backtest_row(dict(r._mapping)) for r in res.fetchall()]
