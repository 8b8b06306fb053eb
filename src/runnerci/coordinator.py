# coordinator.py
from __future__ import annotations

import queue
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from . import events as ev
from . import settings
from .dag import ExecutionGraph, resolve
from .events import EventDispatcher
from .executor import execute
from .model import (
    FailureReason,
    JobResult,
    JobStatus,
    PipelineDefinition,
    PipelineResult,
    Worker,
    now_utc,
)
from .pool import WorkerPool
from .runtime import CancelToken, ContainerRuntime


class PipelineRun:
    """
    Everything that belongs to one execution of a pipeline.

    Resolving happens here, so a definition error surfaces before anything
    is dispatched. Several runs may exist side by side; nothing is global.
    """

    def __init__(self, definition: PipelineDefinition, *, name: str = "pipeline", run_id: Optional[str] = None):
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.name = name
        self.definition = definition
        self.graph: ExecutionGraph = resolve(definition)
        self.results: Dict[str, JobResult] = {
            n: JobResult(name=n, allow_failure=definition[n].allow_failure) for n in definition.names
        }
        self.cancel_token = CancelToken()
        self.started_at = None
        self.finished_at = None

    def cancel(self) -> bool:
        """Abort the run: pending jobs are skipped, running jobs terminated."""
        return self.cancel_token.cancel(FailureReason.CANCELLED.value)

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.is_set()

    @property
    def done(self) -> bool:
        return all(r.is_terminal for r in self.results.values())

    def result(self) -> PipelineResult:
        return PipelineResult(
            run_id=self.run_id,
            jobs=dict(self.results),
            cancelled=self.cancelled,
            started_at=self.started_at,
            finished_at=self.finished_at,
        )


class Coordinator:
    """
    Drives PipelineRuns against a shared worker pool and runtime.

    Each call to run() gets its own control loop, so one coordinator can
    serve several runs at once (from different threads).
    """

    def __init__(
        self,
        pool: WorkerPool,
        runtime: ContainerRuntime,
        *,
        events: Optional[EventDispatcher] = None,
        max_parallel: Optional[int] = None,
        acquire_timeout: Optional[float] = None,
        max_infra_retries: int = 1,
        tick: float = 0.1,
    ):
        self.pool = pool
        self.runtime = runtime
        self.events = events or EventDispatcher()
        self.max_parallel = max(1, max_parallel or settings.MAX_PARALLEL)
        self.acquire_timeout = acquire_timeout
        self.max_infra_retries = max_infra_retries
        self.tick = tick

    def run(self, run: PipelineRun) -> PipelineResult:
        return _ControlLoop(self, run).execute()


@dataclass
class _Running:
    worker: Worker
    token: CancelToken
    started: float
    future: Future


class _ControlLoop:
    """
    Moves the jobs of one run through
    Pending -> Ready -> Running -> Succeeded | Failed | Skipped.

    Only this thread touches the run's state. Job bodies run on a thread pool;
    their completion and worker availability arrive as inbox messages.
    """

    def __init__(self, coordinator: Coordinator, run: PipelineRun):
        self.c = coordinator
        self.pool = coordinator.pool
        self.events = coordinator.events
        self.run = run
        self.inbox: queue.Queue = queue.Queue()
        self.waiting: Dict[str, float] = {}                  # ready job -> ready since (monotonic)
        self.interest: Dict[str, Callable[[], None]] = {}    # ready job -> callback registered with the pool
        self.running: Dict[str, _Running] = {}
        self.infra_failures: Dict[str, int] = {}
        self.cancel_handled = False

    def execute(self) -> PipelineResult:
        run = self.run
        run.started_at = now_utc()
        self.events.emit(
            ev.PIPELINE_STARTED,
            run.run_id,
            pipeline=run.name,
            job_count=len(run.definition),
            workers=len(self.pool),
        )

        for name in run.graph.initial_ready():
            self._make_ready(name)

        with ThreadPoolExecutor(max_workers=self.c.max_parallel, thread_name_prefix="runnerci-job") as executor:
            try:
                self._loop(executor)
            finally:
                # never leave job threads running behind an aborted loop
                for r in self.running.values():
                    r.token.cancel(FailureReason.CANCELLED.value)
                for cb in self.interest.values():
                    self.pool.withdraw(cb)
                self.interest.clear()

        run.finished_at = now_utc()
        result = run.result()
        self.events.emit(ev.PIPELINE_FINISHED, run.run_id, status=result.status.value, cancelled=result.cancelled)
        return result

    # ------------------------------------------------------------------
    # loop
    # ------------------------------------------------------------------
    def _loop(self, executor: ThreadPoolExecutor) -> None:
        run = self.run
        while not run.done:
            if run.cancelled and not self.cancel_handled:
                self._cancel_everything()

            self.pool.recheck_offline()
            self._dispatch(executor)
            self._check_timeouts()

            if run.done:
                break

            try:
                msg = self.inbox.get(timeout=self.c.tick)
            except queue.Empty:
                continue
            self._handle(msg)
            while True:
                try:
                    self._handle(self.inbox.get_nowait())
                except queue.Empty:
                    break

    def _handle(self, msg: tuple) -> None:
        kind = msg[0]
        if kind == "done":
            _, name, future = msg
            self._on_job_done(name, future)
        elif kind == "worker":
            # the pool already dropped the fired callback; next _dispatch() retries
            _, name = msg
            self.interest.pop(name, None)

    # ------------------------------------------------------------------
    # state transitions
    # ------------------------------------------------------------------
    def _make_ready(self, name: str) -> None:
        self.run.results[name].status = JobStatus.READY
        self.waiting[name] = time.monotonic()

    def _withdraw_interest(self, name: str) -> None:
        cb = self.interest.pop(name, None)
        if cb is not None:
            self.pool.withdraw(cb)

    def _dispatch(self, executor: ThreadPoolExecutor) -> None:
        run = self.run
        if run.cancelled:
            return

        for name in list(self.waiting):
            if name not in self.waiting:
                continue
            if len(self.running) >= self.c.max_parallel:
                return

            job = run.definition[name]
            on_available = None if name in self.interest else self._waker(name)

            worker = self.pool.acquire(job.tags, on_available=on_available)
            if not worker:
                if on_available is not None:
                    self.interest[name] = on_available
                if self.pool.all_matching_lost(job.tags):
                    self._fail_waiting(
                        name,
                        FailureReason.INFRASTRUCTURE,
                        f"every worker with tags {sorted(job.tags)} is offline",
                    )
                continue

            self._start(executor, name, worker)

    def _start(self, executor: ThreadPoolExecutor, name: str, worker: Worker) -> None:
        run = self.run
        job = run.definition[name]

        self.waiting.pop(name, None)
        self._withdraw_interest(name)

        res = run.results[name]
        res.status = JobStatus.RUNNING
        res.worker_id = worker.id
        res.attempts += 1

        token = CancelToken()
        self.events.emit(ev.JOB_STARTED, run.run_id, name, worker=worker.id, image=job.image, attempt=res.attempts)

        future = executor.submit(
            execute,
            job,
            worker,
            self.c.runtime,
            pool=self.pool,
            events=self.events,
            cancel=token,
            run_id=run.run_id,
        )
        self.running[name] = _Running(worker=worker, token=token, started=time.monotonic(), future=future)
        future.add_done_callback(lambda f, n=name: self.inbox.put(("done", n, f)))

    def _on_job_done(self, name: str, future: Future) -> None:
        run = self.run
        running = self.running.pop(name)
        self.pool.release(running.worker)

        previous = run.results[name]
        try:
            result: JobResult = future.result()
        except Exception as e:
            # a crashing runtime is an environment problem, not a script failure
            result = JobResult(
                name=name,
                status=JobStatus.FAILED,
                reason=FailureReason.INFRASTRUCTURE,
                message=f"{type(e).__name__}: {e}",
                worker_id=running.worker.id,
            )
        result.attempts = previous.attempts
        result.allow_failure = previous.allow_failure

        if result.reason == FailureReason.INFRASTRUCTURE and not run.cancelled:
            failures = self.infra_failures.get(name, 0) + 1
            self.infra_failures[name] = failures
            if failures <= self.c.max_infra_retries:
                run.results[name] = JobResult(
                    name=name,
                    attempts=result.attempts,
                    allow_failure=result.allow_failure,
                    message=result.message,
                )
                self.events.emit(ev.JOB_RETRY, run.run_id, name, message=result.message, attempt=result.attempts)
                self._make_ready(name)
                return

        self._finish(name, result)

    def _finish(self, name: str, result: JobResult) -> None:
        run = self.run
        if result.finished_at is None:
            result.finished_at = now_utc()
        if result.status == JobStatus.FAILED:
            exit_code = None
            if result.reason == FailureReason.COMMAND and result.failure is not None:
                exit_code = result.failure.exit_code
            result.allow_failure = run.definition[name].failure_allowed(exit_code)
        run.results[name] = result
        self.events.emit(
            ev.JOB_FINISHED,
            run.run_id,
            name,
            status=result.status.value,
            reason=result.reason.value if result.reason else None,
            message=result.message,
        )

        if result.blocks_pipeline:
            for dependent in run.graph.descendants(name):
                self._skip(dependent, f"needs '{name}' which failed")
            return

        for child in run.graph.complete(name):
            if run.results[child].status == JobStatus.PENDING:
                self._make_ready(child)

    def _skip(self, name: str, message: str) -> None:
        res = self.run.results[name]
        if res.is_terminal or name in self.running:
            return
        self.waiting.pop(name, None)
        self._withdraw_interest(name)
        res.status = JobStatus.SKIPPED
        res.message = message
        res.finished_at = now_utc()
        self.events.emit(ev.JOB_SKIPPED, self.run.run_id, name, message=message)

    def _fail_waiting(self, name: str, reason: FailureReason, message: str) -> None:
        self.waiting.pop(name, None)
        self._withdraw_interest(name)
        prev = self.run.results[name]
        self._finish(
            name,
            JobResult(
                name=name,
                status=JobStatus.FAILED,
                reason=reason,
                message=message,
                attempts=prev.attempts,
                allow_failure=prev.allow_failure,
            ),
        )

    # ------------------------------------------------------------------
    # timeouts / cancellation
    # ------------------------------------------------------------------
    def _check_timeouts(self) -> None:
        run = self.run
        now = time.monotonic()
        limit = self.c.acquire_timeout

        if limit is not None:
            for name, since in list(self.waiting.items()):
                if name not in self.waiting:
                    continue
                required = run.definition[name].tags
                if self.pool.has_live_match(required):
                    # queued behind a busy worker or the parallelism cap: not stuck
                    self.waiting[name] = now
                    continue
                if now - since >= limit:
                    tags = sorted(required)
                    if self.pool.can_ever_satisfy(required):
                        message = f"every worker with tags {tags} stayed offline for {limit:g}s"
                    else:
                        message = f"no worker with tags {tags} became available within {limit:g}s"
                    self._fail_waiting(name, FailureReason.TIMEOUT, message)

        for name, r in self.running.items():
            job_limit = run.definition[name].timeout
            if job_limit is not None and now - r.started >= job_limit:
                r.token.cancel(FailureReason.TIMEOUT.value)

    def _cancel_everything(self) -> None:
        self.cancel_handled = True
        for name in self.run.definition.names:
            self._skip(name, "pipeline cancelled")
        for r in self.running.values():
            r.token.cancel(FailureReason.CANCELLED.value)

    def _waker(self, name: str) -> Callable[[], None]:
        def _wake() -> None:
            self.inbox.put(("worker", name))
        return _wake


def run_pipeline(
    definition: PipelineDefinition,
    pool: WorkerPool,
    runtime: ContainerRuntime,
    *,
    name: str = "pipeline",
    events: Optional[EventDispatcher] = None,
    max_parallel: Optional[int] = None,
    acquire_timeout: Optional[float] = None,
    tick: float = 0.1,
) -> PipelineResult:
    """Resolve, run and aggregate a definition in one call."""
    run = PipelineRun(definition, name=name)
    coordinator = Coordinator(
        pool,
        runtime,
        events=events,
        max_parallel=max_parallel,
        acquire_timeout=acquire_timeout,
        tick=tick,
    )
    return coordinator.run(run)
