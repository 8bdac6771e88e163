"""Progress events: ordered emitter, sink protocol, per-invocation streams
and a thread-safe session bus."""

from __future__ import annotations

import contextlib
import itertools
import logging
import queue
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from reelforge.errors import ErrorReport, PipelineCancelled, format_error_report

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    STAGE_START = "stage-start"
    STAGE_LOG = "stage-log"
    STAGE_COMPLETE = "stage-complete"
    STAGE_FALLBACK = "stage-fallback"
    ITEM_COMPLETE = "item-complete"
    ITEM_ERROR = "item-error"
    CHECKPOINT = "checkpoint"
    PIPELINE_COMPLETE = "pipeline-complete"
    PIPELINE_ERROR = "pipeline-error"


STREAM_END_TYPES = frozenset({EventType.CHECKPOINT})


def ends_stream(event: ProgressEvent) -> bool:
    return event.type in STREAM_END_TYPES or bool(event.data.get("terminal"))


@dataclass(frozen=True)
class ProgressEvent:
    """One immutable unit of pipeline progress."""

    seq: int
    type: EventType
    session_id: str
    stage: str = ""
    message: str = ""
    item: str | int | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "seq": self.seq,
            "type": self.type.value,
            "session_id": self.session_id,
            "stage": self.stage,
            "message": self.message,
            "item": self.item,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


class EventSink(Protocol):
    """Anything that accepts progress events (callback, queue, bus)."""

    def __call__(self, event: ProgressEvent) -> None: ...


class CancelToken:
    """Cooperative cancellation flag shared between a request and its worker."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class ProgressEmitter:
    """Append-only, strictly ordered event log for one invocation.

    Concurrent stages call ``emit`` from worker threads; the sequence number
    is assigned under a lock so the log order matches completion order.
    Sink failures are logged and swallowed — a broken observer must never
    break a phase.
    """

    def __init__(
        self,
        session_id: str,
        sinks: list[EventSink] | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        self.session_id = session_id
        self._sinks = list(sinks or [])
        self._events: list[ProgressEvent] = []
        self._counter = itertools.count(1)
        self._lock = threading.Lock()
        self.cancel_token = cancel or CancelToken()

    @property
    def events(self) -> tuple[ProgressEvent, ...]:
        with self._lock:
            return tuple(self._events)

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def emit(
        self,
        type: EventType,
        stage: str = "",
        message: str = "",
        item: str | int | None = None,
        **data: Any,
    ) -> ProgressEvent:
        with self._lock:
            event = ProgressEvent(
                seq=next(self._counter),
                type=type,
                session_id=self.session_id,
                stage=stage,
                message=message,
                item=item,
                data=data,
            )
            self._events.append(event)
            # Deliver inside the lock so every sink sees emission order.
            for sink in self._sinks:
                try:
                    sink(event)
                except Exception:
                    logger.warning("Event sink failed for %s", type.value, exc_info=True)
        logger.debug(
            "Event #%d %s stage=%s item=%s: %s",
            event.seq,
            type.value,
            stage,
            item,
            message[:120],
        )
        return event

    # ─── Convenience wrappers ────────────────────────────────

    def stage_start(self, stage: str, message: str = "", **data: Any) -> None:
        self.emit(EventType.STAGE_START, stage, message, **data)

    def log(self, stage: str, message: str, **data: Any) -> None:
        self.emit(EventType.STAGE_LOG, stage, message, **data)

    def stage_complete(self, stage: str, message: str = "", **data: Any) -> None:
        self.emit(EventType.STAGE_COMPLETE, stage, message, **data)

    def fallback(self, stage: str, message: str, **data: Any) -> None:
        self.emit(EventType.STAGE_FALLBACK, stage, message, **data)

    def item_complete(
        self, stage: str, item: str | int, message: str = "", **data: Any
    ) -> None:
        self.emit(EventType.ITEM_COMPLETE, stage, message, item=item, **data)

    def item_error(
        self, stage: str, item: str | int, report: ErrorReport, **data: Any
    ) -> None:
        self.emit(
            EventType.ITEM_ERROR,
            stage,
            report.summary,
            item=item,
            report=report.model_dump(mode="json"),
            **data,
        )
        for line in format_error_report(report)[1:]:
            logger.debug("[%s:%s] %s", stage, item, line)

    def raise_if_cancelled(self) -> None:
        if self.cancel_token.cancelled:
            logger.info("Session %s: cancellation observed", self.session_id)
            raise PipelineCancelled(f"session {self.session_id} cancelled")


class EventBus:
    """Thread-safe pub/sub from pipeline worker threads to SSE responses.

    Each subscriber gets its own ``queue.Queue`` filtered by session id, so a
    synchronous streaming generator can block on it from Starlette's
    threadpool.
    """

    def __init__(self) -> None:
        self._subscribers: list[tuple[str | None, queue.Queue[ProgressEvent]]] = []
        self._lock = threading.Lock()

    def subscribe(self, session_id: str | None = None) -> queue.Queue[ProgressEvent]:
        q: queue.Queue[ProgressEvent] = queue.Queue()
        with self._lock:
            self._subscribers.append((session_id, q))
        logger.debug("EventBus: new subscriber (total=%d)", len(self._subscribers))
        return q

    def unsubscribe(self, q: queue.Queue[ProgressEvent]) -> None:
        with self._lock:
            for entry in self._subscribers:
                if entry[1] is q:
                    self._subscribers.remove(entry)
                    break
        logger.debug("EventBus: unsubscribed (total=%d)", len(self._subscribers))

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            targets = [
                q
                for sid, q in self._subscribers
                if sid is None or sid == event.session_id
            ]
            for q in targets:
                q.put_nowait(event)
        logger.debug(
            "EventBus: published type=%s, session=%s to %d subscriber(s)",
            event.type.value,
            event.session_id,
            len(targets),
        )

    __call__ = publish

    def stream(
        self, q: queue.Queue[ProgressEvent], timeout: float | None = None
    ) -> Iterator[ProgressEvent]:
        """Yield events until a stream-ending event arrives, then unsubscribe."""
        try:
            while True:
                try:
                    event = q.get(timeout=timeout)
                except queue.Empty:
                    return
                yield event
                if ends_stream(event):
                    return
        finally:
            with contextlib.suppress(ValueError):
                self.unsubscribe(q)


class InvocationStream:
    """Private channel for the events of one invocation.

    Handed to exactly one invocation as a sink, so concurrent requests for
    the same session never read each other's events. ``terminate`` appends a
    closing ``pipeline-error`` after the last delivered sequence number.
    """

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self._queue: queue.Queue[ProgressEvent] = queue.Queue()
        self._last_seq = 0
        self._lock = threading.Lock()

    def __call__(self, event: ProgressEvent) -> None:
        with self._lock:
            self._last_seq = max(self._last_seq, event.seq)
            self._queue.put_nowait(event)

    def terminate(self, message: str, **data: Any) -> ProgressEvent:
        with self._lock:
            self._last_seq += 1
            event = ProgressEvent(
                seq=self._last_seq,
                type=EventType.PIPELINE_ERROR,
                session_id=self.session_id,
                stage="pipeline",
                message=message,
                data={"terminal": True, **data},
            )
            self._queue.put_nowait(event)
        return event

    def stream(self, timeout: float | None = None) -> Iterator[ProgressEvent]:
        """Yield events until the checkpoint or a terminal event, or idle timeout."""
        while True:
            try:
                event = self._queue.get(timeout=timeout)
            except queue.Empty:
                logger.info("Session %s: invocation stream idle, closing", self.session_id)
                return
            yield event
            if ends_stream(event):
                return
