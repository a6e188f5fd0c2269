"""Async in-process channels between the bridge stages.

Each stage publishes typed payloads on a named topic and every subscriber
owns a bounded ``asyncio.Queue``. Publishing never waits on a consumer: a
full subscriber queue drops its oldest entry. Payloads cross the bus as
msgpack bytes so that no stage shares mutable objects with another.

Usage example:

    bus = EventBus(default_maxsize=16)
    sub = bus.subscribe(TOPIC_SNAPSHOT)

    await bus.publish_model(TOPIC_SNAPSHOT, snapshot)

    async for env in sub:
        snap = CoverageSnapshot.model_validate(unpack(env.payload))
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from time import monotonic
from typing import Any, AsyncIterator, Dict, List

import msgpack
from pydantic import BaseModel

__all__ = [
    "EventBus",
    "Subscription",
    "Envelope",
    "pack",
    "unpack",
    "TOPIC_SNAPSHOT",
    "TOPIC_INBOUND",
    "TOPIC_STATUS",
    "TOPIC_CONNECTION",
    "TOPIC_HANDOFF",
    "TOPIC_AUTHORITY",
]

TOPIC_SNAPSHOT = "vatsim.snapshot"
TOPIC_INBOUND = "transport.message"
TOPIC_STATUS = "transport.status"
TOPIC_CONNECTION = "transport.state"
TOPIC_HANDOFF = "handoff.events"
TOPIC_AUTHORITY = "authority.changed"


@dataclass(slots=True)
class Envelope:
    topic: str
    ts: float
    payload: bytes


_Sentinel = object()


class _TopicState:
    __slots__ = ("maxsize", "subscribers", "drops", "publishes")

    def __init__(self, maxsize: int) -> None:
        self.maxsize: int = max(1, int(maxsize))
        self.subscribers: List[asyncio.Queue[Envelope | object]] = []
        self.drops: int = 0
        self.publishes: int = 0


class EventBus:
    """Per-topic bounded queues with drop-oldest backpressure.

    Parameters
    ----------
    default_maxsize:
        Queue size for new subscriptions (min 1).
    """

    def __init__(self, *, default_maxsize: int = 64) -> None:
        self._default_maxsize = max(1, int(default_maxsize))
        self._topics: Dict[str, _TopicState] = {}
        self._closed = False

    def _state(self, topic: str) -> _TopicState:
        state = self._topics.get(topic)
        if state is None:
            state = _TopicState(self._default_maxsize)
            self._topics[topic] = state
        return state

    def subscribe(self, topic: str, *, maxsize: int | None = None) -> "Subscription":
        """Create a subscription; each subscriber gets its own queue."""
        if self._closed:
            raise RuntimeError("EventBus is closed")
        state = self._state(topic)
        size = state.maxsize if maxsize is None else max(1, int(maxsize))
        queue: asyncio.Queue[Envelope | object] = asyncio.Queue(maxsize=size)
        state.subscribers.append(queue)
        return Subscription(self, topic, queue)

    async def publish(self, topic: str, payload: bytes) -> None:
        """Deliver *payload* to every subscriber of *topic* without blocking."""
        if self._closed:
            raise RuntimeError("EventBus is closed")

        env = Envelope(topic=topic, ts=monotonic(), payload=payload)
        state = self._state(topic)
        state.publishes += 1
        for q in list(state.subscribers):
            if q.full():
                try:
                    q.get_nowait()
                    state.drops += 1
                except asyncio.QueueEmpty:
                    pass
            q.put_nowait(env)

    async def publish_model(self, topic: str, model: BaseModel) -> None:
        await self.publish(topic, pack(model.model_dump(mode="json")))

    async def close(self) -> None:
        """Close the bus and end every subscription's iteration."""
        if self._closed:
            return
        self._closed = True
        for state in self._topics.values():
            for q in list(state.subscribers):
                _force_put(q, _Sentinel)

    @property
    def closed(self) -> bool:
        return self._closed

    def drops(self, topic: str) -> int:
        state = self._topics.get(topic)
        return state.drops if state else 0

    def list_topics(self) -> Dict[str, int]:
        """Return mapping of topic -> active subscriber count."""
        return {name: len(state.subscribers) for name, state in self._topics.items()}

    def _remove_subscription(
        self, topic: str, queue: asyncio.Queue[Envelope | object]
    ) -> None:
        state = self._topics.get(topic)
        if state and queue in state.subscribers:
            state.subscribers.remove(queue)


def _force_put(q: asyncio.Queue[Envelope | object], item: object) -> None:
    # The sentinel must land even on a full queue; drop the oldest message.
    if q.full():
        try:
            q.get_nowait()
        except asyncio.QueueEmpty:
            pass
    q.put_nowait(item)


class Subscription:
    """A subscription that yields Envelopes as an async iterator."""

    def __init__(
        self,
        bus: EventBus,
        topic: str,
        queue: asyncio.Queue[Envelope | object],
    ) -> None:
        self._bus = bus
        self._topic = topic
        self._queue = queue
        self._closed = False

    @property
    def topic(self) -> str:
        return self._topic

    def __aiter__(self) -> AsyncIterator[Envelope]:
        return self

    async def __anext__(self) -> Envelope:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _Sentinel:
            self._closed = True
            raise StopAsyncIteration
        assert isinstance(item, Envelope)
        return item

    def pending(self) -> int:
        return self._queue.qsize()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        _force_put(self._queue, _Sentinel)
        self._bus._remove_subscription(self._topic, self._queue)


# Serialization helpers -----------------------------------------------------


def pack(obj: Any) -> bytes:
    """Serialize an object to bytes using msgpack."""
    return msgpack.packb(obj, use_bin_type=True)


def unpack(b: bytes) -> Any:
    """Deserialize bytes into an object using msgpack."""
    return msgpack.unpackb(b, raw=False, strict_map_key=False)
