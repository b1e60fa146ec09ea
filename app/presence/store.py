"""
Ephemeral presence store.

A small realtime key/value store modelled on what the pairing engine needs:
JSON values under slash separated keys, live subscriptions that deliver the
current value and then every change (``None`` when the key is absent), and
connection leases with on-disconnect hooks. A hook is a write registered in
advance against a connection; if the connection is dropped instead of being
closed, the store applies the write on the client's behalf.

Connections are leases that must be kept alive with ``heartbeat``. A lease
that is not renewed in time is dropped by ``sweep`` (``run_sweeper`` calls it
periodically), which applies the same hooks an explicit drop would.
"""

import abc
import asyncio
import copy
import logging
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional

from app.core.channels import Broadcast, Subscription
from app.core.errors import NetworkUnavailable
from app.presence.records import SERVER_TIMESTAMP, info_key

logger = logging.getLogger(__name__)

Value = Optional[Dict[str, Any]]


@dataclass
class HookOp:
    key: str
    value: Value = None
    merge: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_connection_id() -> str:
    # Time-ordered so overlapping sessions of one user can be told apart.
    return f"{time.time_ns():x}-{uuid.uuid4().hex[:8]}"


def resolve_server_values(value: Any, now_ms: int) -> Any:
    if value == SERVER_TIMESTAMP:
        return now_ms
    if isinstance(value, dict):
        return {k: resolve_server_values(v, now_ms) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_server_values(v, now_ms) for v in value]
    return value


def apply_patch(current: Value, patch: Dict[str, Any]) -> Value:
    merged = dict(current or {})
    for field, value in patch.items():
        if value is None:
            merged.pop(field, None)
        else:
            merged[field] = value
    return merged or None


class PresenceStore(abc.ABC):
    def __init__(self, lease_seconds: float = 30.0, wall: Callable[[], float] = time.time):
        self.lease_seconds = lease_seconds
        self._wall = wall

    def _now_ms(self) -> int:
        return int(self._wall() * 1000)

    @abc.abstractmethod
    async def get(self, key: str) -> Value: ...

    @abc.abstractmethod
    async def set(self, key: str, value: Value) -> None: ...

    @abc.abstractmethod
    async def update(self, key: str, patch: Dict[str, Any]) -> None:
        """Merge ``patch`` into the value at ``key``; ``None`` fields are removed."""

    @abc.abstractmethod
    async def delete(self, key: str) -> None: ...

    @abc.abstractmethod
    def watch(self, key: str) -> Any:
        """Async context manager yielding an async iterator of values for ``key``."""

    @abc.abstractmethod
    async def open_connection(self) -> str: ...

    @abc.abstractmethod
    async def heartbeat(self, connection_id: str) -> bool: ...

    @abc.abstractmethod
    async def on_disconnect(
        self, connection_id: str, key: str, value: Value, merge: bool = False
    ) -> None: ...

    @abc.abstractmethod
    async def cancel_on_disconnect(self, connection_id: str) -> None: ...

    @abc.abstractmethod
    async def close_connection(self, connection_id: str) -> None:
        """Graceful close: the lease ends and pending hooks are discarded."""

    @abc.abstractmethod
    async def _claim_hooks(self, connection_id: str) -> Optional[List[HookOp]]:
        """Remove the lease and return its hooks, or None if it is already gone."""

    @abc.abstractmethod
    async def expired_connections(self, now: Optional[float] = None) -> List[str]: ...

    async def close(self) -> None:
        pass

    async def drop_connection(self, connection_id: str) -> bool:
        """Abrupt loss of a connection: apply its hooks, then mark it gone."""
        hooks = await self._claim_hooks(connection_id)
        if hooks is None:
            return False
        for hook in hooks:
            try:
                if hook.value is None:
                    await self.delete(hook.key)
                elif hook.merge:
                    await self.update(hook.key, hook.value)
                else:
                    await self.set(hook.key, hook.value)
            except Exception:
                logger.exception("Failed to apply on-disconnect write to %s", hook.key)
        await self.delete(info_key(connection_id))
        logger.info("Dropped presence connection %s (%d hooks)", connection_id, len(hooks))
        return True

    async def sweep(self, now: Optional[float] = None) -> List[str]:
        dropped = []
        for connection_id in await self.expired_connections(now):
            if await self.drop_connection(connection_id):
                dropped.append(connection_id)
        return dropped

    async def run_sweeper(self, interval: float) -> None:
        while True:
            try:
                dropped = await self.sweep()
                if dropped:
                    logger.info("Expired %d stale presence leases", len(dropped))
            except Exception:
                logger.exception("Presence lease sweep failed")
            await asyncio.sleep(interval)


class MemoryPresenceStore(PresenceStore):
    """Single-process presence store, used in development and tests."""

    def __init__(
        self,
        lease_seconds: float = 30.0,
        wall: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        super().__init__(lease_seconds, wall)
        self._monotonic = monotonic
        self._data: Dict[str, Dict[str, Any]] = {}
        self._channels: Dict[str, Broadcast] = {}
        self._leases: Dict[str, float] = {}
        self._hooks: Dict[str, List[HookOp]] = {}

    def _publish(self, key: str) -> None:
        channel = self._channels.get(key)
        if channel is not None:
            channel.publish(self._data.get(key))

    async def get(self, key: str) -> Value:
        return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value: Value) -> None:
        if value is None:
            await self.delete(key)
            return
        self._data[key] = resolve_server_values(copy.deepcopy(value), self._now_ms())
        self._publish(key)

    async def update(self, key: str, patch: Dict[str, Any]) -> None:
        patch = resolve_server_values(copy.deepcopy(patch), self._now_ms())
        merged = apply_patch(self._data.get(key), patch)
        if merged is None:
            await self.delete(key)
            return
        self._data[key] = merged
        self._publish(key)

    async def delete(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._publish(key)

    def watch(self, key: str) -> Subscription:
        channel = self._channels.get(key)
        if channel is None:
            channel = Broadcast(on_idle=lambda: self._forget_channel(key, channel))
            self._channels[key] = channel
        return channel.subscribe(initial=lambda: self._data.get(key))

    def _forget_channel(self, key: str, channel: Broadcast) -> None:
        if self._channels.get(key) is channel and not len(channel):
            del self._channels[key]

    async def open_connection(self) -> str:
        connection_id = new_connection_id()
        self._leases[connection_id] = self._monotonic() + self.lease_seconds
        self._hooks[connection_id] = []
        await self.set(info_key(connection_id), {"connected": True})
        return connection_id

    async def heartbeat(self, connection_id: str) -> bool:
        if connection_id not in self._leases:
            return False
        self._leases[connection_id] = self._monotonic() + self.lease_seconds
        return True

    async def on_disconnect(
        self, connection_id: str, key: str, value: Value, merge: bool = False
    ) -> None:
        hooks = self._hooks.get(connection_id)
        if hooks is None:
            raise NetworkUnavailable(f"Presence connection {connection_id} is not active")
        hooks.append(HookOp(key=key, value=copy.deepcopy(value), merge=merge))

    async def cancel_on_disconnect(self, connection_id: str) -> None:
        if connection_id in self._hooks:
            self._hooks[connection_id] = []

    async def close_connection(self, connection_id: str) -> None:
        self._leases.pop(connection_id, None)
        self._hooks.pop(connection_id, None)
        await self.delete(info_key(connection_id))

    async def _claim_hooks(self, connection_id: str) -> Optional[List[HookOp]]:
        if connection_id not in self._leases and connection_id not in self._hooks:
            return None
        self._leases.pop(connection_id, None)
        return self._hooks.pop(connection_id, [])

    async def expired_connections(self, now: Optional[float] = None) -> List[str]:
        now = self._monotonic() if now is None else now
        return [cid for cid, deadline in self._leases.items() if deadline <= now]

    async def close(self) -> None:
        for channel in self._channels.values():
            channel.close()
        self._channels.clear()
