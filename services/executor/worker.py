from __future__ import annotations
import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List, Optional

import redis.asyncio as redis
from pydantic import ValidationError

from libs.common.config import AppConfig, load_config, setup_logging
from libs.common.db import ensure_tables, get_engine, get_session
from libs.common.filter_policy import policy_matches
from libs.common.models import BotExecutionConfig, BotStatus, IndicatorSnapshot, TradeRecord
from services.executor.controller import ExecutionController
from services.executor.execution import build_gateway
from services.executor.store import MemoryStateStore, RedisStateStore
from services.executor.subscriptions import RedisSubscriptionRegistry, SubscriptionReconciler
from services.executor.trade_log import SqlTradeLog

log = logging.getLogger(__name__)

BOTS_CONFIG_KEY = "bots:config"


def active_key(pair: str) -> str:
    return f"bots:active:{pair}"


class RedisBotDirectory:
    """Bot configs maintained by the CRUD layer: hash `bots:config`, set `bots:active:{pair}`."""

    def __init__(self, r: redis.Redis):
        self.r = r

    async def get(self, bot_id: str) -> Optional[BotExecutionConfig]:
        raw = await self.r.hget(BOTS_CONFIG_KEY, bot_id)
        return BotExecutionConfig.model_validate_json(raw) if raw else None

    async def active_for_pair(self, pair: str) -> List[BotExecutionConfig]:
        ids = sorted(await self.r.smembers(active_key(pair)))
        if not ids:
            return []
        raws = await self.r.hmget(BOTS_CONFIG_KEY, ids)
        out = []
        for bot_id, raw in zip(ids, raws):
            if not raw:
                continue
            try:
                cfg = BotExecutionConfig.model_validate_json(raw)
            except ValidationError as e:
                log.warning("[exec] bad config for bot %s: %s", bot_id, e)
                continue
            if cfg.status is BotStatus.ACTIVE and cfg.pair == pair:
                out.append(cfg)
        return out


class MemoryBotDirectory:
    def __init__(self, configs: Iterable[BotExecutionConfig] = ()):
        self.configs = {c.bot_id: c for c in configs}

    async def get(self, bot_id: str) -> Optional[BotExecutionConfig]:
        return self.configs.get(bot_id)

    async def active_for_pair(self, pair: str) -> List[BotExecutionConfig]:
        return [c for c in self.configs.values() if c.pair == pair and c.status is BotStatus.ACTIVE]


class ExecutorWorker:
    """Fans one indicator message out to every active bot on its pair."""

    def __init__(self, controller: ExecutionController, directory, registry=None, prefilter: bool = True):
        self.controller = controller
        self.directory = directory
        self.registry = registry
        self.prefilter = prefilter and registry is not None

    async def _routed(self, bot: BotExecutionConfig, attributes: Dict[str, Any]) -> bool:
        subs = await self.registry.get(bot.bot_id)
        if not subs:
            # pas encore de souscription connue -> on évalue quand même
            return True
        return any(policy_matches(d, attributes) for d in subs.values())

    async def _process_bot(self, bot: BotExecutionConfig, snapshot: IndicatorSnapshot) -> List[TradeRecord]:
        try:
            return await self.controller.process(bot, snapshot)
        except Exception:
            log.exception("[exec] bot %s failed on %s", bot.bot_id, bot.pair)
            return []

    async def handle_message(self, payload: Dict[str, Any]) -> List[TradeRecord]:
        attributes = payload.get("attributes") or {}
        pair = attributes["pair"]
        snapshot = IndicatorSnapshot.model_validate(payload["snapshot"])
        attributes = {**snapshot.attributes(pair), **attributes}

        bots = await self.directory.active_for_pair(pair)
        if self.prefilter:
            bots = [b for b in bots if await self._routed(b, attributes)]
        if not bots:
            return []
        results = await asyncio.gather(*(self._process_bot(b, snapshot) for b in bots))
        return [rec for recs in results for rec in recs]

    async def process_batch(self, messages: Iterable[Any]) -> List[int]:
        """Process every message; returns indexes of the ones that failed."""
        failed: List[int] = []
        for i, raw in enumerate(messages):
            try:
                payload = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
                await self.handle_message(payload)
            except Exception:
                log.exception("[exec] message %d dropped", i)
                failed.append(i)
        return failed

    async def consume(self, r: redis.Redis, channel: str):
        pubsub = r.pubsub()
        await pubsub.subscribe(channel)
        log.info("[exec] consumer started on %s", channel)
        async for msg in pubsub.listen():
            if not msg or msg["type"] != "message":
                continue
            await self.process_batch([msg["data"]])


async def consume_lifecycle(r: redis.Redis, channel: str, reconciler: SubscriptionReconciler):
    pubsub = r.pubsub()
    await pubsub.subscribe(channel)
    log.info("[subs] lifecycle listener on %s", channel)
    async for msg in pubsub.listen():
        if not msg or msg["type"] != "message":
            continue
        try:
            await reconciler.handle_event(json.loads(msg["data"]))
        except Exception:
            log.exception("[subs] lifecycle event dropped")


def build_worker(cfg: AppConfig, r: redis.Redis) -> ExecutorWorker:
    store = RedisStateStore(r) if cfg.executor.state_backend == "redis" else MemoryStateStore()
    controller = ExecutionController(store, build_gateway(cfg.exchange), SqlTradeLog())
    return ExecutorWorker(
        controller,
        RedisBotDirectory(r),
        registry=RedisSubscriptionRegistry(r),
        prefilter=cfg.executor.prefilter,
    )


async def main():
    setup_logging()
    cfg = load_config()
    r = redis.from_url(cfg.redis_url, decode_responses=True)
    get_engine(cfg.database_url)
    async with get_session() as s:
        await ensure_tables(s)

    worker = build_worker(cfg, r)
    reconciler = SubscriptionReconciler(worker.registry)
    log.info("[exec] executor started (exchange=%s, state=%s)", cfg.exchange.kind, cfg.executor.state_backend)
    await asyncio.gather(
        worker.consume(r, cfg.executor.channel),
        consume_lifecycle(r, cfg.executor.lifecycle_channel, reconciler),
    )


if __name__ == "__main__":
    asyncio.run(main())
