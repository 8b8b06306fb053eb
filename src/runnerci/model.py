# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import DuplicateJobError, EmptyTagsError, MissingScriptError, UnknownStageError


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED})


class FailureReason(str, Enum):
    """Why a job ended up failed."""
    COMMAND = "command"                # a before_script/script command exited non-zero
    INFRASTRUCTURE = "infrastructure"  # worker lost / provisioning failed
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class WorkerState(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    OFFLINE = "offline"


@dataclass(frozen=True)
class JobSpec:
    """
    One named unit of work: an image, setup commands, script commands and the
    capability tags a worker must advertise to run it.

    `needs` lists jobs that must finish BEFORE this one starts.
    """
    name: str
    image: str
    script: Tuple[str, ...]
    tags: frozenset[str]
    before_script: Tuple[str, ...] = ()
    needs: Optional[Tuple[str, ...]] = None  # None: not given, (): explicitly none
    stage: Optional[str] = None
    allow_failure: bool = False
    allow_exit_codes: frozenset[int] = frozenset()  # failures with these codes are allowed
    timeout: Optional[float] = None  # seconds
    variables: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # accept lists/sets from callers but keep the stored value immutable
        object.__setattr__(self, "script", tuple(self.script))
        object.__setattr__(self, "before_script", tuple(self.before_script))
        if self.needs is not None:
            object.__setattr__(self, "needs", tuple(self.needs))
        object.__setattr__(self, "tags", frozenset(self.tags))
        object.__setattr__(self, "allow_exit_codes", frozenset(self.allow_exit_codes))
        object.__setattr__(self, "variables", dict(self.variables))

    def __hash__(self) -> int:
        return hash(self.name)

    @property
    def steps(self) -> List[Tuple[str, str]]:
        """(phase, command) pairs in execution order."""
        return [("before_script", c) for c in self.before_script] + [("script", c) for c in self.script]

    def failure_allowed(self, exit_code: Optional[int]) -> bool:
        """Whether a failure with this exit code (None: not a command failure) keeps the pipeline green."""
        if self.allow_failure:
            return True
        return exit_code is not None and exit_code in self.allow_exit_codes


class PipelineDefinition:
    """
    Validated, read-only set of jobs for one pipeline.

    Dependency edges are derived here so that explicit `needs` and stage
    ordering end up in the same representation.
    """

    def __init__(self, jobs: Dict[str, JobSpec], stages: Tuple[str, ...] = ()):
        self._jobs = dict(jobs)
        self.stages = tuple(stages)

    @classmethod
    def from_jobs(cls, jobs: Iterable[JobSpec], *, stages: Iterable[str] = ()) -> PipelineDefinition:
        jobs = list(jobs)
        stages = tuple(stages)

        names = [j.name for j in jobs]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise DuplicateJobError(job=dupes[0], names=dupes)

        for j in jobs:
            if not j.tags:
                raise EmptyTagsError(job=j.name)
            if not j.script:
                raise MissingScriptError(job=j.name)
            if stages and j.stage is not None and j.stage not in stages:
                raise UnknownStageError(job=j.name, stage=j.stage, stages=list(stages))

        return cls({j.name: j for j in jobs}, stages)

    # ---- mapping-ish access ----
    def __getitem__(self, name: str) -> JobSpec:
        return self._jobs[name]

    def __contains__(self, name: object) -> bool:
        return name in self._jobs

    def __iter__(self):
        return iter(self._jobs)

    def __len__(self) -> int:
        return len(self._jobs)

    @property
    def names(self) -> List[str]:
        return list(self._jobs)

    def jobs(self) -> List[JobSpec]:
        return list(self._jobs.values())

    # ---- derived edges ----
    def predecessors(self, name: str) -> List[str]:
        """
        Jobs that must finish before `name` may start.

        Explicit needs win, and `needs=()` means "start immediately". Otherwise a staged job waits for every job of the
        nearest earlier stage that has jobs. Unstaged jobs are independent.
        """
        job = self._jobs[name]
        if job.needs is not None:
            return list(dict.fromkeys(job.needs))
        if not self.stages or job.stage is None:
            return []

        idx = self.stages.index(job.stage)
        for earlier in reversed(self.stages[:idx]):
            members = [j.name for j in self._jobs.values() if j.stage == earlier]
            if members:
                return members
        return []


@dataclass
class Worker:
    """An execution agent advertising a set of capability tags."""
    id: str
    tags: frozenset[str]
    state: WorkerState = WorkerState.IDLE
    last_released: float = 0.0

    def __post_init__(self) -> None:
        self.tags = frozenset(self.tags)

    def __hash__(self) -> int:
        return hash(self.id)


@dataclass(frozen=True)
class ExitInfo:
    """The step that made a job fail."""
    phase: str  # "before_script" | "script"
    command: str
    exit_code: Optional[int]
    output: str = ""  # tail of combined stdout/stderr


@dataclass
class JobResult:
    name: str
    status: JobStatus = JobStatus.PENDING
    reason: Optional[FailureReason] = None
    failure: Optional[ExitInfo] = None
    message: Optional[str] = None
    worker_id: Optional[str] = None
    attempts: int = 0
    allow_failure: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def blocks_pipeline(self) -> bool:
        return self.status == JobStatus.FAILED and not self.allow_failure

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        d = {
            "name": self.name,
            "status": self.status.value,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "worker": self.worker_id,
            "attempts": self.attempts,
            "allow_failure": self.allow_failure,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
        if self.failure is not None:
            d["failure"] = {
                "phase": self.failure.phase,
                "command": self.failure.command,
                "exit_code": self.failure.exit_code,
                "output": self.failure.output,
            }
        return d


@dataclass
class PipelineResult:
    run_id: str
    jobs: Dict[str, JobResult]
    cancelled: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def status(self) -> JobStatus:
        if any(r.blocks_pipeline for r in self.jobs.values()):
            return JobStatus.FAILED
        return JobStatus.SUCCEEDED

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.SUCCEEDED

    def failed_jobs(self) -> List[JobResult]:
        return [r for r in self.jobs.values() if r.status == JobStatus.FAILED]

    def statuses(self) -> Dict[str, JobStatus]:
        return {name: r.status for name, r in self.jobs.items()}

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "cancelled": self.cancelled,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "jobs": [r.to_dict() for r in self.jobs.values()],
        }
