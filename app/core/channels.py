import asyncio
import copy
from typing import Any, Callable, Iterable, Optional, Set

_CLOSED = object()


class Subscription:
    """
    One subscriber's view of a ``Broadcast``.

    Use as ``async with channel.subscribe() as updates: async for value in
    updates: ...``. Leaving the block (or cancelling the task running it)
    unsubscribes.
    """

    def __init__(self, channel: "Broadcast", initial: Optional[Callable[[], Any]] = None):
        self._channel = channel
        self._initial = initial
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()

    async def __aenter__(self) -> "Subscription":
        self._channel._subscribers.add(self)
        if self._initial is not None:
            self.push(self._initial())
        return self

    async def __aexit__(self, *exc_info) -> None:
        self._channel._unsubscribe(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Any:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def push(self, value: Any) -> None:
        self._queue.put_nowait(copy.deepcopy(value))

    def close(self) -> None:
        self._queue.put_nowait(_CLOSED)


class Broadcast:
    """
    Fan-out of values to every current subscriber. ``on_idle`` runs whenever
    the last subscriber leaves.
    """

    def __init__(self, on_idle: Optional[Callable[[], None]] = None):
        self._subscribers: Set[Subscription] = set()
        self._on_idle = on_idle

    def __len__(self) -> int:
        return len(self._subscribers)

    def _unsubscribe(self, subscriber: Subscription) -> None:
        self._subscribers.discard(subscriber)
        if not self._subscribers and self._on_idle is not None:
            self._on_idle()

    def subscribe(self, initial: Optional[Callable[[], Any]] = None) -> Subscription:
        return Subscription(self, initial)

    def publish(self, value: Any) -> None:
        for subscriber in list(self._subscribers):
            subscriber.push(value)

    def close(self) -> None:
        for subscriber in list(self._subscribers):
            subscriber.close()


async def cancel_and_wait(tasks: Iterable[asyncio.Task], poll: float = 0.1) -> None:
    """
    Cancel ``tasks`` and wait until every one has finished.

    Cancellation is repeated while a task keeps running, since ``wait_for``
    on Python < 3.12 can absorb a cancel that lands as its inner call
    completes.
    """
    tasks = list(tasks)
    pending = {task for task in tasks if not task.done()}
    while pending:
        for task in pending:
            task.cancel()
        _, pending = await asyncio.wait(pending, timeout=poll)
    await asyncio.gather(*tasks, return_exceptions=True)
