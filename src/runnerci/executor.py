# executor.py
from __future__ import annotations

from typing import Optional

from . import events as ev
from .events import EventDispatcher
from .model import ExitInfo, FailureReason, JobResult, JobSpec, JobStatus, Worker, now_utc
from .pool import WorkerPool
from .runtime import CancelToken, ContainerRuntime, InfrastructureError


def _reason_from_token(cancel: CancelToken) -> FailureReason:
    if cancel.reason == FailureReason.TIMEOUT.value:
        return FailureReason.TIMEOUT
    return FailureReason.CANCELLED


def execute(
    job: JobSpec,
    worker: Worker,
    runtime: ContainerRuntime,
    *,
    pool: Optional[WorkerPool] = None,
    events: Optional[EventDispatcher] = None,
    cancel: Optional[CancelToken] = None,
    run_id: str = "",
) -> JobResult:
    """
    Run one job's before_script then script commands on `worker`.

    Commands run strictly in order and the first failure stops the job.
    Never raises for command or infrastructure failures; those end up in the
    returned JobResult. On infrastructure failure the worker is taken out of
    the pool.
    """
    events = events or EventDispatcher()
    cancel = cancel or CancelToken()

    result = JobResult(
        name=job.name,
        status=JobStatus.RUNNING,
        worker_id=worker.id,
        allow_failure=job.allow_failure,
        started_at=now_utc(),
    )

    def _finish(status: JobStatus, reason: Optional[FailureReason] = None, **kw) -> JobResult:
        result.status = status
        result.reason = reason
        for k, v in kw.items():
            setattr(result, k, v)
        result.finished_at = now_utc()
        return result

    for phase, command in job.steps:
        if cancel.is_set():
            reason = _reason_from_token(cancel)
            return _finish(JobStatus.FAILED, reason, message=f"{reason.value} before '{command}'")

        events.emit(ev.STEP_STARTED, run_id, job.name, phase=phase, command=command)
        try:
            outcome = runtime.run(job.image, command, env=job.variables, cancel=cancel)
        except InfrastructureError as e:
            if pool is not None:
                pool.mark_offline(worker)
            events.emit(ev.STEP_FINISHED, run_id, job.name, phase=phase, command=command, exit_code=None, error=str(e))
            return _finish(
                JobStatus.FAILED,
                FailureReason.INFRASTRUCTURE,
                failure=ExitInfo(phase=phase, command=command, exit_code=None, output=str(e)),
                message=f"worker {worker.id}: {e}",
            )

        events.emit(
            ev.STEP_FINISHED,
            run_id,
            job.name,
            phase=phase,
            command=command,
            exit_code=outcome.exit_code,
            cancelled=outcome.cancelled,
            output=outcome.output,
        )

        if outcome.cancelled:
            reason = _reason_from_token(cancel)
            return _finish(
                JobStatus.FAILED,
                reason,
                failure=ExitInfo(phase=phase, command=command, exit_code=outcome.exit_code, output=outcome.output),
                message=f"{reason.value} while running '{command}'",
            )

        if outcome.exit_code != 0:
            return _finish(
                JobStatus.FAILED,
                FailureReason.COMMAND,
                failure=ExitInfo(phase=phase, command=command, exit_code=outcome.exit_code, output=outcome.output),
                message=f"{phase} command failed (exit={outcome.exit_code})",
            )

    return _finish(JobStatus.SUCCEEDED)
