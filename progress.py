"""
Progress Stream
===============
Typed progress messages and the single-subscriber channel that carries them
from a pipeline run to whoever triggered it.

The run executes on its own worker thread and pushes events into a queue.
The subscriber iterates the stream; if it goes away mid-run the worker keeps
going and later events are dropped. Wire encoding (Server-Sent Events) only
happens in ``to_sse``.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Union

from models import RunSummary

log = logging.getLogger("progress")


@dataclass(frozen=True)
class ProgressEvent:
    step: str
    message: str
    video_id: str | None = None
    current: int | None = None
    total: int | None = None
    status: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    kind = "progress"

    def to_api(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"step": self.step, "message": self.message}
        if self.video_id is not None:
            payload["videoId"] = self.video_id
        if self.current is not None:
            payload["current"] = self.current
        if self.total is not None:
            payload["total"] = self.total
        if self.status is not None:
            payload["status"] = self.status
        payload.update(self.data)
        return payload


@dataclass(frozen=True)
class CompleteEvent:
    success: bool
    summary: RunSummary
    error: str | None = None

    kind = "complete"

    def to_api(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success, **self.summary.to_api()}
        if self.error is not None:
            payload["error"] = self.error
        return payload


StreamEvent = Union[ProgressEvent, CompleteEvent]
Emit = Callable[[ProgressEvent], None]


def to_sse(event: StreamEvent) -> str:
    """Encode one event as a Server-Sent Events frame."""
    return f"event: {event.kind}\ndata: {json.dumps(event.to_api())}\n\n"


class RunAborted(Exception):
    """Raised by a run that could not start or had to stop; carries the counts so far."""

    def __init__(self, message: str, summary: RunSummary | None = None):
        super().__init__(message)
        self.summary = summary or RunSummary()


class ProgressStream:
    """
    Run ``job(emit)`` on a worker thread and expose its events to exactly one
    subscriber, in order, ending with a single CompleteEvent.
    """

    def __init__(self, job: Callable[[Emit], RunSummary], name: str = "ingest-run"):
        self._job = job
        self._queue: queue.Queue[StreamEvent] = queue.Queue()
        self._attached = threading.Event()
        self._attached.set()
        self._subscribed = False
        self._subscribe_lock = threading.Lock()
        self._thread = threading.Thread(target=self._run, name=name, daemon=False)
        self.result: CompleteEvent | None = None

    def start(self) -> "ProgressStream":
        self._thread.start()
        return self

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout)

    @property
    def attached(self) -> bool:
        return self._attached.is_set()

    def detach(self) -> None:
        """Subscriber went away. The run continues; further events are dropped."""
        if self._attached.is_set():
            log.info("Subscriber detached; run continues in background")
            self._attached.clear()

    def __iter__(self) -> Iterator[StreamEvent]:
        return self.events()

    def events(self) -> Iterator[StreamEvent]:
        with self._subscribe_lock:
            if self._subscribed:
                raise RuntimeError("ProgressStream supports a single subscriber")
            self._subscribed = True
        return self._drain()

    def _drain(self) -> Iterator[StreamEvent]:
        try:
            while True:
                event = self._queue.get()
                yield event
                if isinstance(event, CompleteEvent):
                    return
        finally:
            self.detach()

    # ---- worker ------------------------------------------------------------

    def _emit(self, event: StreamEvent) -> None:
        if self._attached.is_set():
            self._queue.put(event)

    def _run(self) -> None:
        try:
            summary = self._job(self._emit)
            final = CompleteEvent(success=True, summary=summary)
        except RunAborted as exc:
            log.error("Run aborted: %s", exc)
            final = CompleteEvent(success=False, summary=exc.summary, error=str(exc))
        except Exception as exc:
            log.exception("Run failed")
            final = CompleteEvent(success=False, summary=RunSummary(), error=str(exc))
        self.result = final
        self._emit(final)
