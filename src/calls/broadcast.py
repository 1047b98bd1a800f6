"""Fan-out of call state changes to monitoring observers.

Each subscriber owns a bounded queue drained by its own writer task, so
``publish`` never awaits a socket. A full queue or a closed connection means the
message is skipped for that subscriber only.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Protocol

from starlette.websockets import WebSocketState

from calls.models import CallRecord

LOGGER = logging.getLogger(__name__)


class ObserverConnection(Protocol):
    async def send_text(self, data: str) -> None: ...


def _is_open(connection: Any) -> bool:
    for attr in ("client_state", "application_state"):
        state = getattr(connection, attr, WebSocketState.CONNECTED)
        if state != WebSocketState.CONNECTED:
            return False
    return True


@dataclass(eq=False)
class Subscriber:
    connection: ObserverConnection
    queue: asyncio.Queue[str]
    writer: asyncio.Task | None = None
    closed: bool = False
    dropped: int = 0

    @property
    def is_live(self) -> bool:
        return not self.closed and _is_open(self.connection)


class BroadcastHub:
    """Maintain observer connections and deliver serialized call events."""

    def __init__(self, *, queue_maxsize: int = 100) -> None:
        self._queue_maxsize = max(1, queue_maxsize)
        self._subscribers: set[Subscriber] = set()
        self._published_count = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def published_count(self) -> int:
        return self._published_count

    def subscribe(self, connection: ObserverConnection, initial_calls: Iterable[CallRecord]) -> Subscriber:
        subscriber = Subscriber(connection=connection, queue=asyncio.Queue(maxsize=self._queue_maxsize))
        snapshot = {"type": "initial", "calls": [record.to_dict() for record in initial_calls]}
        subscriber.queue.put_nowait(json.dumps(snapshot))
        subscriber.writer = asyncio.create_task(self._write_loop(subscriber))
        self._subscribers.add(subscriber)
        LOGGER.info("Monitoring client connected (%d total)", len(self._subscribers))
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        subscriber.closed = True
        if subscriber.writer and not subscriber.writer.done():
            subscriber.writer.cancel()
        if subscriber in self._subscribers:
            self._subscribers.discard(subscriber)
            LOGGER.info("Monitoring client disconnected (%d total)", len(self._subscribers))

    def publish(self, kind: str, record: CallRecord) -> int:
        """Queue ``record`` for every live subscriber; returns how many accepted it."""

        message = json.dumps({"type": kind, "data": record.to_dict()})
        delivered = 0
        for subscriber in list(self._subscribers):
            if not subscriber.is_live:
                continue
            try:
                subscriber.queue.put_nowait(message)
            except asyncio.QueueFull:
                subscriber.dropped += 1
                if subscriber.dropped % 100 == 1:
                    LOGGER.warning("Monitoring queue full, dropped %d events", subscriber.dropped)
                continue
            delivered += 1

        self._published_count += 1
        return delivered

    async def drain(self) -> None:
        """Wait until every live subscriber has flushed its queue."""

        live = [subscriber for subscriber in self._subscribers if subscriber.is_live]
        await asyncio.gather(*(subscriber.queue.join() for subscriber in live))

    async def close(self) -> None:
        subscribers = list(self._subscribers)
        for subscriber in subscribers:
            self.unsubscribe(subscriber)
        writers = [subscriber.writer for subscriber in subscribers if subscriber.writer]
        await asyncio.gather(*writers, return_exceptions=True)

    async def _write_loop(self, subscriber: Subscriber) -> None:
        while True:
            message = await subscriber.queue.get()
            try:
                await subscriber.connection.send_text(message)
            except Exception as exc:
                # The disconnect notification removes the subscriber; stop writing until then.
                LOGGER.info("Monitoring send failed: %s", exc)
                subscriber.closed = True
                subscriber.queue.task_done()
                while not subscriber.queue.empty():
                    subscriber.queue.get_nowait()
                    subscriber.queue.task_done()
                return
            subscriber.queue.task_done()
