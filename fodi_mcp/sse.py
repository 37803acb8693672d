"""Server-Sent Events connection registry.

The registry owns every subscriber channel. All operations run on the event
loop thread and never await, so the client map needs no lock; ``broadcast``
iterates over a snapshot of ids because a failing send removes entries while
the fan-out is still in progress.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, AsyncIterator, Callable, Mapping, Protocol
from uuid import uuid4

from . import metrics
from .logging import get_logger
from .models import FileChangeEvent, utc_timestamp

LOGGER = get_logger(__name__)

DEFAULT_CLIENT_TIMEOUT = timedelta(seconds=30)
DEFAULT_QUEUE_SIZE = 64

REASON_CLOSED = "closed"
REASON_DISCONNECTED = "disconnected"
REASON_SEND_FAILED = "send_failed"
REASON_EVICTED = "evicted"


class ChannelClosedError(Exception):
    """Raised when writing to a channel that can no longer accept data."""


class EventChannel(Protocol):
    def write(self, data: bytes) -> None: ...

    def close(self) -> None: ...


class QueueChannel:
    """Bounded in-memory channel drained by a streaming HTTP response.

    ``write`` never blocks: a reader that falls ``maxsize`` frames behind is
    treated as gone and the write raises ``ChannelClosedError``.
    """

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue(maxsize=max(maxsize, 1))
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, data: bytes) -> None:
        if self._closed:
            raise ChannelClosedError("channel is closed")
        try:
            self._queue.put_nowait(data)
        except asyncio.QueueFull as exc:
            raise ChannelClosedError("subscriber is not reading; backlog full") from exc

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        while True:
            try:
                self._queue.put_nowait(None)
            except asyncio.QueueFull:
                # Drop the oldest pending frame so the end-of-stream marker fits.
                self._queue.get_nowait()
            else:
                return

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item


@dataclass(slots=True)
class SseClient:
    id: str
    channel: EventChannel
    last_seen: float


def encode_event(payload: Mapping[str, Any]) -> bytes:
    """Serialize a payload as a single ``data:`` SSE frame."""

    body = json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)
    return f"data: {body}\n\n".encode("utf-8")


class ConnectionRegistry:
    """Tracks streaming subscribers, fans out events, and evicts stale ones."""

    def __init__(
        self,
        *,
        timeout: timedelta = DEFAULT_CLIENT_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clients: dict[str, SseClient] = {}
        self._timeout = timeout.total_seconds()
        self._clock = clock
        self._sequence = itertools.count(1)

    def new_client_id(self) -> str:
        """Return an identifier no other connection of this process has used."""

        return f"client_{next(self._sequence)}_{uuid4().hex[:12]}"

    def add_client(self, client_id: str, channel: EventChannel) -> None:
        if client_id in self._clients:
            raise ValueError(f"SSE client already registered: {client_id}")
        self._clients[client_id] = SseClient(id=client_id, channel=channel, last_seen=self._clock())
        metrics.record_sse_connect()
        LOGGER.info("sse.client.added", extra={"context": {"client_id": client_id, "clients": len(self._clients)}})
        self.send_to_client(
            client_id,
            {
                "type": "connected",
                "clientId": client_id,
                "timestamp": utc_timestamp(),
            },
        )

    def remove_client(self, client_id: str, *, reason: str = REASON_CLOSED) -> None:
        client = self._clients.pop(client_id, None)
        if client is None:
            return
        try:
            client.channel.close()
        except Exception:
            # Closing a channel whose peer already went away is expected.
            LOGGER.debug("sse.client.close_failed", extra={"context": {"client_id": client_id}}, exc_info=True)
        metrics.record_sse_disconnect(reason)
        LOGGER.info(
            "sse.client.removed",
            extra={"context": {"client_id": client_id, "reason": reason, "clients": len(self._clients)}},
        )

    def send_to_client(self, client_id: str, payload: Mapping[str, Any]) -> bool:
        """Write one event; a failed write evicts the client. Returns delivery success."""

        client = self._clients.get(client_id)
        if client is None:
            return False
        frame = encode_event(payload)
        try:
            client.channel.write(frame)
        except Exception as exc:
            LOGGER.debug(
                "sse.client.send_failed",
                extra={"context": {"client_id": client_id, "error": str(exc)}},
            )
            self.remove_client(client_id, reason=REASON_SEND_FAILED)
            return False
        client.last_seen = self._clock()
        return True

    def broadcast(self, payload: Mapping[str, Any]) -> int:
        delivered = 0
        for client_id in list(self._clients):
            if self.send_to_client(client_id, payload):
                delivered += 1
        return delivered

    def notify_file_change(self, event: FileChangeEvent) -> int:
        delivered = self.broadcast(event.to_payload())
        LOGGER.info(
            "sse.file_change.broadcast",
            extra={"context": {"kind": event.kind, "path": event.file.path, "delivered": delivered}},
        )
        return delivered

    def sweep(self) -> list[str]:
        """Run one liveness pass: evict timed-out clients, ping the rest."""

        now = self._clock()
        evicted: list[str] = []
        for client_id in list(self._clients):
            client = self._clients.get(client_id)
            if client is None:
                continue
            if now - client.last_seen > self._timeout:
                self.remove_client(client_id, reason=REASON_EVICTED)
                evicted.append(client_id)
            elif not self.send_to_client(client_id, {"type": "ping", "timestamp": utc_timestamp()}):
                evicted.append(client_id)
        return evicted

    def client_count(self) -> int:
        return len(self._clients)

    def status(self) -> dict[str, Any]:
        count = self.client_count()
        return {"connected_clients": count, "status": "active" if count > 0 else "idle"}

    def close_all(self) -> None:
        for client_id in list(self._clients):
            self.remove_client(client_id, reason=REASON_CLOSED)
