"""
Progress events and the channel that carries them to the HTTP stream.

The orchestrator pushes events into a ``ProgressChannel``; the transport drains
it independently. Pushing never raises: once the caller is gone, events are
dropped and the import keeps running.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator

from app.errors import DeliveryError

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@dataclass
class ProgressEvent:
    type: str
    phase: str | None = None
    message: str | None = None
    current_row: int | None = None
    total_rows: int | None = None
    row_data: dict[str, Any] | None = None
    summary: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type in {"complete", "error"}

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type}
        for key, value in (
            ("phase", self.phase),
            ("message", self.message),
            ("currentRow", self.current_row),
            ("totalRows", self.total_rows),
            ("rowData", self.row_data),
            ("summary", self.summary),
        ):
            if value is not None:
                payload[key] = value
        return payload

    def to_sse(self) -> str:
        return f"data: {json.dumps(self.to_payload(), default=str)}\n\n"


def phase_marker(phase: str, message: str) -> ProgressEvent:
    return ProgressEvent(type="progress", phase=phase, message=message)


def row_progress(
    current_row: int,
    total_rows: int,
    *,
    phase: str | None = None,
    message: str | None = None,
    row_data: dict[str, Any] | None = None,
) -> ProgressEvent:
    return ProgressEvent(
        type="progress",
        phase=phase,
        message=message,
        current_row=current_row,
        total_rows=total_rows,
        row_data=row_data,
    )


def completion(summary: dict[str, Any]) -> ProgressEvent:
    return ProgressEvent(type="complete", summary=summary)


def failure(message: str) -> ProgressEvent:
    return ProgressEvent(type="error", message=message)


_CLOSED = object()


class ProgressChannel:
    """Single-producer, single-consumer event queue.

    ``listening=False`` builds a channel nobody drains (e.g. the JSON endpoint);
    every emit is then a no-op.
    """

    def __init__(self, *, listening: bool = True):
        self.listening = listening
        self.disconnected = False
        self.delivered = 0
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def emit(self, event: ProgressEvent) -> None:
        if not self.listening or self.disconnected or self._closed:
            self.dropped += 1
            return
        try:
            self._put(event)
            self.delivered += 1
        except DeliveryError as exc:
            self.dropped += 1
            logger.debug("Dropped progress event %s: %s", event.type, exc)

    def _put(self, item: Any) -> None:
        try:
            self._queue.put_nowait(item)
        except (asyncio.QueueFull, RuntimeError) as exc:
            raise DeliveryError(str(exc)) from exc

    def close(self) -> None:
        """Signal the consumer that no more events follow."""
        if self._closed:
            return
        self._closed = True
        try:
            self._put(_CLOSED)
        except DeliveryError:
            logger.debug("Could not enqueue channel close marker")

    def disconnect(self) -> None:
        """Called by the transport once the caller has gone away."""
        if not self.disconnected and not self._closed:
            logger.info("Progress listener disconnected; further events are dropped")
        self.disconnected = True

    async def events(self) -> AsyncIterator[ProgressEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item
