# events.py
from __future__ import annotations

import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol

from .model import now_utc
from .ui.console import get_console

PIPELINE_STARTED = "pipeline_started"
PIPELINE_FINISHED = "pipeline_finished"
JOB_STARTED = "job_started"
JOB_FINISHED = "job_finished"
JOB_SKIPPED = "job_skipped"
JOB_RETRY = "job_retry"
STEP_STARTED = "step_started"
STEP_FINISHED = "step_finished"


@dataclass(frozen=True)
class Event:
    """A lifecycle notification. Not part of the execution contract."""
    kind: str
    run_id: str
    job: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=now_utc)


class EventSink(Protocol):
    def handle(self, event: Event) -> None:
        ...


class EventDispatcher:
    """
    Fire-and-forget fan-out of events to sinks.

    emit() only enqueues; delivery happens on a background thread, so a slow
    or broken sink never stalls the coordinator or a job.
    """

    _STOP = object()

    def __init__(self, sinks: Iterable[EventSink] = ()):
        self.sinks: List[EventSink] = list(sinks)
        self._q: queue.Queue = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()

    def emit(self, kind: str, run_id: str, job: Optional[str] = None, **data: Any) -> None:
        if not self.sinks:
            return
        self._ensure_started()
        self._q.put(Event(kind=kind, run_id=run_id, job=job, data=data))

    def close(self, timeout: Optional[float] = None) -> None:
        """Deliver everything queued so far, then stop the delivery thread."""
        with self._start_lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        self._q.put(self._STOP)
        thread.join(timeout)

    def _ensure_started(self) -> None:
        with self._start_lock:
            if self._thread is None:
                self._thread = threading.Thread(target=self._deliver, name="runnerci-events", daemon=True)
                self._thread.start()

    def _deliver(self) -> None:
        while True:
            event = self._q.get()
            if event is self._STOP:
                return
            for sink in self.sinks:
                try:
                    sink.handle(event)
                except Exception as e:
                    get_console().print_debug(f"event sink {type(sink).__name__} failed on {event.kind}: {e}")


class ConsoleSink:
    """Renders lifecycle events with the process-wide Console."""

    def handle(self, event: Event) -> None:
        console = get_console()
        d = event.data

        if event.kind == PIPELINE_STARTED:
            console.print_run_started(
                run_id=event.run_id,
                pipeline=d.get("pipeline", ""),
                job_count=d.get("job_count", 0),
                workers=d.get("workers", 0),
            )
        elif event.kind == JOB_STARTED:
            console.print_job_start(event.job, worker=d.get("worker"), image=d.get("image"))
        elif event.kind == STEP_STARTED:
            console.print_step(event.job, d.get("command", ""), phase=d.get("phase", "script"))
        elif event.kind == STEP_FINISHED:
            if d.get("exit_code") not in (0, None) or d.get("cancelled"):
                console.print_failure(
                    event.job,
                    reason=d.get("output", ""),
                    exit_code=d.get("exit_code"),
                )
        elif event.kind == JOB_FINISHED:
            if d.get("status") == "succeeded":
                console.print_success(event.job)
            else:
                console.print_failure(
                    event.job,
                    reason=d.get("message") or d.get("reason") or "failed",
                    hint=d.get("reason"),
                    is_job=True,
                )
        elif event.kind == JOB_SKIPPED:
            console.print_job_skipped(event.job, d.get("message", ""))
        elif event.kind == JOB_RETRY:
            console.print_info(f"RETRY: {event.job} ({d.get('message', 'infrastructure failure')})")
        elif event.kind == PIPELINE_FINISHED:
            console.print_debug(f"pipeline {event.run_id} finished: {d.get('status')}")
