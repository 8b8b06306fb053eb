# src/runnerci/dsl.py
from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from .model import JobSpec


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *script: str,  # allow: job("x", "cargo check", "cargo test", ...)
    image: str,
    tags: Iterable[str],
    before_script: Optional[List[str]] = None,
    script_list: Optional[List[str]] = None,  # allow: job("x", script_list=[...])
    needs: Optional[List[str]] = None,
    stage: str | None = None,
    allow_failure: bool = False,
    allow_exit_codes: Iterable[int] = (),
    timeout: float | None = None,
    variables: Optional[Dict[str, str]] = None,
) -> JobSpec:
    commands: List[str] = []
    if script_list:
        commands.extend(script_list)
    commands.extend(script)

    if not commands:
        raise ValueError(f"job({name!r}) must have at least one script command")

    return JobSpec(
        name=name,
        image=image,
        before_script=before_script or [],
        script=commands,
        tags=frozenset(tags),
        needs=needs,
        stage=stage,
        allow_failure=allow_failure,
        allow_exit_codes=frozenset(allow_exit_codes),
        timeout=timeout,
        # force values to str, they end up in a process environment
        variables={k: str(v) for k, v in (variables or {}).items()},
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._image: Optional[str] = None
        self._before: list[str] = []
        self._script: list[str] = []
        self._tags: list[str] = []
        self._needs: Optional[list[str]] = None
        self._stage: Optional[str] = None
        self._allow_failure = False
        self._allow_exit_codes: frozenset[int] = frozenset()
        self._timeout: Optional[float] = None
        self._variables: dict[str, str] = {}

    def image(self, ref: str):
        self._image = ref
        return self

    def setup(self, *commands: str):
        self._before.extend(commands)
        return self

    def run(self, *commands: str):
        self._script.extend(commands)
        return self

    def tags(self, *tags: str):
        self._tags.extend(tags)
        return self

    def depends_on(self, *job_names: str):
        # depends_on() with no names: start without waiting for earlier stages
        self._needs = (self._needs or []) + list(job_names)
        return self

    def in_stage(self, stage: str):
        self._stage = stage
        return self

    def allow_failure(self, allowed: bool = True, *, exit_codes: Iterable[int] = ()):
        """With exit_codes, only failures with one of those codes are tolerated."""
        if exit_codes:
            self._allow_failure = False
            self._allow_exit_codes = frozenset(exit_codes)
        else:
            self._allow_failure = allowed
        return self

    def timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def with_env(self, **env):
        self._variables.update({k: str(v) for k, v in env.items()})
        return self

    def build(self) -> JobSpec:
        if not self._script:
            raise ValueError(f"Job '{self.name}' has no script commands")
        if not self._image:
            raise ValueError(f"Job '{self.name}' has no image")

        return JobSpec(
            name=self.name,
            image=self._image,
            before_script=self._before,
            script=self._script,
            tags=frozenset(self._tags),
            needs=self._needs,
            stage=self._stage,
            allow_failure=self._allow_failure,
            allow_exit_codes=self._allow_exit_codes,
            timeout=self._timeout,
            variables=self._variables,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').image(...).run(...).tags(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: JobSpec) -> List[JobSpec]:
    """
    Workflow definition helper.

    Users can write:
        from runnerci import wf, job

        def workflow():
            return wf(
                job("test", "cargo test", image="rust:1.34", tags=["docker"]),
                job(...),
            )

    Or use JOBS directly:
        JOBS = wf(job(...), job(...))
    """
    return list(jobs)
