"""Snapshot broker: fans state-changed events out to presentation subscribers."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass

from pydantic import BaseModel


@dataclass
class SSEEvent:
    event: str
    data: dict


class SnapshotBroker:
    """Pub/sub broker that remembers the latest payload per event name.

    A subscriber joining late first receives the most recent ``state``
    event, so a freshly attached view renders without waiting for the
    next mutation.
    """

    REPLAYED_EVENTS = ("state",)

    def __init__(self) -> None:
        self._queues: list[asyncio.Queue[SSEEvent | None]] = []
        self._latest: dict[str, SSEEvent] = {}

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)

    def latest(self, event: str) -> SSEEvent | None:
        return self._latest.get(event)

    def publish(self, event: str, data: dict | BaseModel) -> None:
        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json")
        sse_event = SSEEvent(event=event, data=data)
        if event in self.REPLAYED_EVENTS:
            self._latest[event] = sse_event
        for q in self._queues:
            q.put_nowait(sse_event)

    async def subscribe(self, *, replay: bool = True) -> AsyncIterator[SSEEvent]:
        q: asyncio.Queue[SSEEvent | None] = asyncio.Queue()
        if replay:
            for name in self.REPLAYED_EVENTS:
                if name in self._latest:
                    q.put_nowait(self._latest[name])
        self._queues.append(q)
        try:
            while True:
                try:
                    event = await asyncio.wait_for(q.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                if event is None:
                    break
                yield event
        finally:
            if q in self._queues:
                self._queues.remove(q)

    def disconnect_all(self) -> None:
        for q in self._queues:
            q.put_nowait(None)
