from __future__ import annotations
import asyncio
import logging
from typing import Any, Dict

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from libs.common.decision import ExecutionState, encode_value, state_from_hash
from libs.common.errors import StateStoreError

log = logging.getLogger(__name__)

CAS_RETRIES = 5


def state_key(bot_id: str) -> str:
    return f"bot:state:{bot_id}"


class RedisStateStore:
    """Per-bot hash `bot:state:{botId}`; every write is a WATCH/MULTI compare-and-set."""

    def __init__(self, r: redis.Redis, retries: int = CAS_RETRIES):
        self.r = r
        self.retries = retries

    async def load(self, bot_id: str) -> ExecutionState:
        try:
            data = await self.r.hgetall(state_key(bot_id))
        except RedisError as e:
            raise StateStoreError(f"load {bot_id}: {e}") from e
        return state_from_hash(data)

    async def compare_and_set(self, bot_id: str, field: str, expected: Any, new: Any) -> bool:
        key = state_key(bot_id)
        want = encode_value(field, expected)
        value = encode_value(field, new)
        for _ in range(self.retries):
            try:
                async with self.r.pipeline(transaction=True) as pipe:
                    await pipe.watch(key)
                    raw = await pipe.hget(key, field)
                    if isinstance(raw, bytes):
                        raw = raw.decode()
                    if raw != want:
                        await pipe.unwatch()
                        return False
                    pipe.multi()
                    if value is None:
                        pipe.hdel(key, field)
                    else:
                        pipe.hset(key, field, value)
                    await pipe.execute()
                    return True
            except WatchError:
                # autre champ du hash modifié entre WATCH et EXEC -> relire
                log.debug("[claim] watch collision %s.%s, retry", key, field)
                continue
            except RedisError as e:
                raise StateStoreError(f"cas {key}.{field}: {e}") from e
        raise StateStoreError(f"cas {key}.{field}: too many collisions")


class MemoryStateStore:
    """Single-process store with the same compare-and-set contract."""

    def __init__(self):
        self._data: Dict[str, Dict[str, str]] = {}
        self._lock = asyncio.Lock()

    async def load(self, bot_id: str) -> ExecutionState:
        async with self._lock:
            return state_from_hash(dict(self._data.get(bot_id, {})))

    async def compare_and_set(self, bot_id: str, field: str, expected: Any, new: Any) -> bool:
        want = encode_value(field, expected)
        value = encode_value(field, new)
        async with self._lock:
            row = self._data.setdefault(bot_id, {})
            if row.get(field) != want:
                return False
            if value is None:
                row.pop(field, None)
            else:
                row[field] = value
            return True
