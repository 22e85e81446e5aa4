from __future__ import annotations
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as redis

from libs.common.filter_policy import compile_filter_policy
from libs.common.models import Action, BotExecutionConfig, BotStatus

log = logging.getLogger(__name__)

SUBSCRIPTIONS_KEY = "subscriptions"

CREATE, UPDATE, REMOVE, NOOP = "create", "update", "remove", "noop"


def required_subscriptions(config: Optional[BotExecutionConfig]) -> Dict[Action, Dict[str, Any]]:
    """Descriptor per action the bot must receive ticks for; empty for deleted or inactive bots."""
    if config is None or config.status is not BotStatus.ACTIVE:
        return {}
    out: Dict[Action, Dict[str, Any]] = {}
    if config.buy_query is not None:
        out[Action.BUY] = compile_filter_policy(config.pair, config.buy_query)
    if config.stop_loss is not None or config.take_profit is not None:
        # SL/TP doit voir chaque tick de la paire, pas seulement ceux qui passent la requête
        out[Action.SELL] = compile_filter_policy(config.pair)
    elif config.sell_query is not None:
        out[Action.SELL] = compile_filter_policy(config.pair, config.sell_query)
    return out


class MemorySubscriptionRegistry:
    def __init__(self):
        self.data: Dict[Tuple[str, Action], Dict[str, Any]] = {}

    async def get(self, bot_id: str) -> Dict[Action, Dict[str, Any]]:
        return {a: d for (b, a), d in self.data.items() if b == bot_id}

    async def put(self, bot_id: str, action: Action, descriptor: Dict[str, Any]):
        self.data[(bot_id, action)] = descriptor

    async def delete(self, bot_id: str, action: Action):
        self.data.pop((bot_id, action), None)


class RedisSubscriptionRegistry:
    """Hash `subscriptions`: field `{botId}:{action}` -> JSON descriptor."""

    def __init__(self, r: redis.Redis, key: str = SUBSCRIPTIONS_KEY):
        self.r = r
        self.key = key

    @staticmethod
    def _field(bot_id: str, action: Action) -> str:
        return f"{bot_id}:{action.value}"

    async def get(self, bot_id: str) -> Dict[Action, Dict[str, Any]]:
        actions = (Action.BUY, Action.SELL)
        raws = await self.r.hmget(self.key, [self._field(bot_id, a) for a in actions])
        out = {}
        for action, raw in zip(actions, raws):
            if raw:
                out[action] = json.loads(raw)
        return out

    async def put(self, bot_id: str, action: Action, descriptor: Dict[str, Any]):
        await self.r.hset(self.key, self._field(bot_id, action), json.dumps(descriptor))

    async def delete(self, bot_id: str, action: Action):
        await self.r.hdel(self.key, self._field(bot_id, action))


class SubscriptionReconciler:
    """Converges stored routing descriptors to what the bot config needs. Idempotent."""

    def __init__(self, registry):
        self.registry = registry

    async def reconcile(self, bot_id: str, config: Optional[BotExecutionConfig]) -> List[Tuple[Action, str]]:
        needed = required_subscriptions(config)
        current = await self.registry.get(bot_id)
        ops: List[Tuple[Action, str]] = []
        for action in (Action.BUY, Action.SELL):
            want, have = needed.get(action), current.get(action)
            if want is None and have is None:
                continue
            if have is None:
                await self.registry.put(bot_id, action, want)
                ops.append((action, CREATE))
            elif want is None:
                await self.registry.delete(bot_id, action)
                ops.append((action, REMOVE))
            elif have != want:
                await self.registry.put(bot_id, action, want)
                ops.append((action, UPDATE))
            else:
                ops.append((action, NOOP))
        for action, op in ops:
            if op != NOOP:
                log.info("[subs] %s %s %s", bot_id, action.value, op)
        return ops

    async def handle_event(self, event: Dict[str, Any]) -> List[Tuple[Action, str]]:
        """Lifecycle event `{type: created|updated|deleted, botId, bot?}`."""
        kind = event.get("type")
        bot_id = event.get("botId") or (event.get("bot") or {}).get("botId")
        if not bot_id:
            raise ValueError(f"lifecycle event without botId: {event!r}")
        if kind == "deleted":
            return await self.reconcile(bot_id, None)
        if kind in ("created", "updated"):
            return await self.reconcile(bot_id, BotExecutionConfig.model_validate(event["bot"]))
        raise ValueError(f"unknown lifecycle event type {kind!r}")
