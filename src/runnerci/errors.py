# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass(eq=False)
class DefinitionError(Exception):
    """
    A pipeline definition that cannot run at all.

    Raised before any job starts. Carries enough context for clean CLI output
    without a traceback.
    """
    kind: str = "definition_error"
    job: Optional[str] = None
    message: str = ""
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigError(DefinitionError):
    def __init__(self, message: str, job: Optional[str] = None, **details):
        super().__init__(kind="config_error", job=job, message=message, details=details)


class DuplicateJobError(DefinitionError):
    def __init__(self, job: str, names: List[str]):
        super().__init__(
            kind="duplicate_job",
            job=job,
            message=f"Duplicate job names found: {names}",
            details={"names": names},
        )


class EmptyTagsError(DefinitionError):
    def __init__(self, job: str):
        super().__init__(
            kind="empty_tags",
            job=job,
            message=f"Job '{job}' has no tags and can never be matched to a worker",
        )


class MissingScriptError(DefinitionError):
    def __init__(self, job: str):
        super().__init__(
            kind="missing_script",
            job=job,
            message=f"Job '{job}' must have at least one script command",
        )


class UnknownStageError(DefinitionError):
    def __init__(self, job: str, stage: str, stages: List[str]):
        super().__init__(
            kind="unknown_stage",
            job=job,
            message=f"Job '{job}' uses stage '{stage}' which is not declared",
            details={"stage": stage, "stages": stages},
        )


class GraphError(DefinitionError):
    """Dependency graph problems found by the resolver."""


class CycleError(GraphError):
    def __init__(self, path: List[str]):
        super().__init__(
            kind="cycle",
            job=path[0] if path else None,
            message="Dependency cycle: " + " -> ".join(path),
            details={"path": path},
        )

    @property
    def path(self) -> List[str]:
        return self.details["path"]


class UnknownDependencyError(GraphError):
    def __init__(self, job: str, dependency: str, known: Optional[List[str]] = None):
        super().__init__(
            kind="unknown_dependency",
            job=job,
            message=f"Job '{job}' needs missing job '{dependency}'",
            details={"dependency": dependency, "known": known or []},
        )

    @property
    def dependency(self) -> str:
        return self.details["dependency"]
