import logging
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
import redis.asyncio as redis

from libs.common.config import load_config, setup_logging
from libs.common.db import get_engine, get_session, ensure_tables
from libs.common.errors import BacktestInFlightError
from libs.common.models import BotExecutionConfig
from services.backtest.reports import SqlBacktestStore
from services.backtest.worker import RedisQueue, submit_backtest
from services.executor.trade_log import SqlTradeLog
from services.executor.worker import RedisBotDirectory

log = logging.getLogger(__name__)

# ---------------- Config ----------------
APP_CONFIG = load_config()

# ---------------- App & CORS ----------------
app = FastAPI(title="Rule Bot Execution API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    max_age=86400,
)

# ---------------- Globals ----------------
r = redis.from_url(APP_CONFIG.redis_url, decode_responses=True)
BOTS = RedisBotDirectory(r)
BACKTESTS = SqlBacktestStore()
QUEUE = RedisQueue(r, APP_CONFIG.backtest.queue)
TRADES = SqlTradeLog()


class BacktestRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    bot_id: Optional[str] = None
    bot: Optional[BotExecutionConfig] = None
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None


# ---------------- Routes ----------------
@app.get("/health")
async def health():
    return {"status": "ok", "env": APP_CONFIG.env, "exchange": APP_CONFIG.exchange.kind}


@app.post("/backtests", status_code=202)
async def create_backtest(req: BacktestRequest):
    config = req.bot
    if config is None:
        if not req.bot_id:
            raise HTTPException(400, "botId or bot is required")
        config = await BOTS.get(req.bot_id)
        if config is None:
            raise HTTPException(404, f"bot {req.bot_id} not found")
    if req.window_start and req.window_end and req.window_start >= req.window_end:
        raise HTTPException(400, "windowStart must be before windowEnd")
    try:
        backtest_id = await submit_backtest(
            BACKTESTS, QUEUE, config, req.window_start, req.window_end,
            window_days=APP_CONFIG.backtest.window_days,
        )
    except BacktestInFlightError as e:
        raise HTTPException(409, str(e))
    return {"backtestId": backtest_id, "botId": config.bot_id, "status": "pending"}


@app.get("/bots/{bot_id}/backtests")
async def list_bot_backtests(bot_id: str):
    return {"items": await BACKTESTS.list(bot_id)}


@app.get("/backtests/{backtest_id}")
async def get_backtest(backtest_id: str):
    row = await BACKTESTS.get(backtest_id)
    if row is None:
        raise HTTPException(404, f"backtest {backtest_id} not found")
    return row


@app.get("/bots/{bot_id}/trades")
async def list_bot_trades(bot_id: str, limit: int = Query(50, ge=1, le=500)):
    trades = await TRADES.recent(bot_id, limit)
    return {"items": [t.model_dump(mode="json", by_alias=True) for t in trades]}


# ---------------- Startup ----------------
@app.on_event("startup")
async def on_startup():
    setup_logging()
    get_engine(APP_CONFIG.database_url)
    async with get_session() as s:
        await ensure_tables(s)
    log.info("[api] ready (env=%s)", APP_CONFIG.env)


if __name__ == "__main__":
    import os
    import uvicorn

    uvicorn.run(
        "services.api.app:app",
        host=os.environ.get("API_HOST", "0.0.0.0"),
        port=int(os.environ.get("API_PORT", "8000")),
        log_level="info",
    )
