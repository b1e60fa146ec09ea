"""
Redis backed presence store for multi-process deployments.

Values are JSON strings under ``<ns>:data:<key>``; every write is published on
``<ns>:chan:<key>`` so watchers in any process see it. Leases are TTL keys
(``<ns>:lease:<id>``) refreshed by heartbeats and indexed in the
``<ns>:leases`` set; hooks are a JSON list per connection. Whichever process
removes a connection from the lease set first applies its hooks.
"""

import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import WatchError

from app.core.errors import NetworkUnavailable
from app.presence.records import info_key
from app.presence.store import (
    HookOp,
    PresenceStore,
    Value,
    apply_patch,
    new_connection_id,
    resolve_server_values,
)

logger = logging.getLogger(__name__)


class RedisWatch:
    def __init__(self, store: "RedisPresenceStore", key: str):
        self._store = store
        self._key = key
        self._pubsub = None
        self._initial: Value = None
        self._initial_pending = False

    async def __aenter__(self) -> "RedisWatch":
        self._pubsub = self._store.redis.pubsub()
        await self._pubsub.subscribe(self._store.channel_name(self._key))
        self._initial = await self._store.get(self._key)
        self._initial_pending = True
        return self

    async def __aexit__(self, *exc_info) -> None:
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None

    def __aiter__(self) -> "RedisWatch":
        return self

    async def __anext__(self) -> Value:
        if self._initial_pending:
            self._initial_pending = False
            return self._initial
        while True:
            message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if message is None or message.get("type") != "message":
                continue
            return json.loads(message["data"])


class RedisPresenceStore(PresenceStore):
    def __init__(
        self,
        client: redis.Redis,
        lease_seconds: float = 30.0,
        namespace: str = "presence",
        wall: Callable[[], float] = time.time,
    ):
        super().__init__(lease_seconds, wall)
        self.redis = client
        self.namespace = namespace

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisPresenceStore":
        # values are JSON text, so decode replies to str
        return cls(redis.from_url(url, decode_responses=True), **kwargs)

    def data_key(self, key: str) -> str:
        return f"{self.namespace}:data:{key}"

    def channel_name(self, key: str) -> str:
        return f"{self.namespace}:chan:{key}"

    def _lease_key(self, connection_id: str) -> str:
        return f"{self.namespace}:lease:{connection_id}"

    def _hooks_key(self, connection_id: str) -> str:
        return f"{self.namespace}:hooks:{connection_id}"

    @property
    def _lease_index(self) -> str:
        return f"{self.namespace}:leases"

    @property
    def _lease_ms(self) -> int:
        return max(1, int(self.lease_seconds * 1000))

    async def get(self, key: str) -> Value:
        raw = await self.redis.get(self.data_key(key))
        if not raw:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Value) -> None:
        if value is None:
            await self.delete(key)
            return
        payload = json.dumps(resolve_server_values(value, self._now_ms()))
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self.data_key(key), payload)
            pipe.publish(self.channel_name(key), payload)
            await pipe.execute()

    async def update(self, key: str, patch: Dict[str, Any]) -> None:
        patch = resolve_server_values(patch, self._now_ms())
        data_key = self.data_key(key)
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(data_key)
                    raw = await pipe.get(data_key)
                    merged = apply_patch(json.loads(raw) if raw else None, patch)
                    payload = json.dumps(merged)
                    pipe.multi()
                    if merged is None:
                        pipe.delete(data_key)
                    else:
                        pipe.set(data_key, payload)
                    pipe.publish(self.channel_name(key), payload)
                    await pipe.execute()
                    return
                except WatchError:
                    logger.debug("Concurrent write to %s, retrying merge", key)
                    continue

    async def delete(self, key: str) -> None:
        if await self.redis.delete(self.data_key(key)):
            await self.redis.publish(self.channel_name(key), "null")

    def watch(self, key: str) -> RedisWatch:
        return RedisWatch(self, key)

    async def open_connection(self) -> str:
        connection_id = new_connection_id()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self._lease_key(connection_id), "1", px=self._lease_ms)
            pipe.sadd(self._lease_index, connection_id)
            await pipe.execute()
        await self.set(info_key(connection_id), {"connected": True})
        return connection_id

    async def heartbeat(self, connection_id: str) -> bool:
        return bool(await self.redis.pexpire(self._lease_key(connection_id), self._lease_ms))

    async def on_disconnect(
        self, connection_id: str, key: str, value: Value, merge: bool = False
    ) -> None:
        if not await self.redis.exists(self._lease_key(connection_id)):
            raise NetworkUnavailable(f"Presence connection {connection_id} is not active")
        hook = HookOp(key=key, value=value, merge=merge)
        await self.redis.rpush(self._hooks_key(connection_id), json.dumps(hook.to_dict()))

    async def cancel_on_disconnect(self, connection_id: str) -> None:
        await self.redis.delete(self._hooks_key(connection_id))

    async def close_connection(self, connection_id: str) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._lease_key(connection_id), self._hooks_key(connection_id))
            pipe.srem(self._lease_index, connection_id)
            await pipe.execute()
        await self.delete(info_key(connection_id))

    async def _claim_hooks(self, connection_id: str) -> Optional[List[HookOp]]:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.srem(self._lease_index, connection_id)
            pipe.lrange(self._hooks_key(connection_id), 0, -1)
            pipe.delete(self._hooks_key(connection_id), self._lease_key(connection_id))
            removed, raw_hooks, _ = await pipe.execute()
        if not removed:
            return None
        return [HookOp(**json.loads(raw)) for raw in raw_hooks]

    async def expired_connections(self, now: Optional[float] = None) -> List[str]:
        # Lease expiry is tracked by Redis TTLs; ``now`` only matters in memory.
        expired = []
        for connection_id in await self.redis.smembers(self._lease_index):
            if not await self.redis.exists(self._lease_key(connection_id)):
                expired.append(connection_id)
        return expired

    async def close(self) -> None:
        await self.redis.aclose()
