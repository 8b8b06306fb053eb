"""Shared fixtures: a scripted runtime, a recording event sink and job builders."""

from __future__ import annotations

import threading
from typing import Any, Dict, List

import pytest

from runnerci.events import EventDispatcher
from runnerci.model import JobSpec, Worker
from runnerci.pool import WorkerPool
from runnerci.runtime import ExitOutcome, InfrastructureError

DEFAULT_TAGS = ("x86_64", "docker")


class FakeRuntime:
    """
    Runtime whose behaviour is scripted per command.

    `exits` maps a command to one of:
      - an int exit code
      - "infra": raise InfrastructureError
      - "hang": block until cancelled
      - a list of the above, consumed one per call
    Unknown commands exit 0. `delay` seconds are spent in every command.
    """

    def __init__(self, exits: Dict[str, Any] | None = None, delay: float = 0.0):
        self.exits = {k: (list(v) if isinstance(v, list) else v) for k, v in (exits or {}).items()}
        self.delay = delay
        self.calls: List[tuple] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def _behaviour(self, command: str):
        with self._lock:
            b = self.exits.get(command, 0)
            if isinstance(b, list):
                return b.pop(0) if b else 0
            return b

    def commands(self) -> List[str]:
        return [c[1] for c in self.calls]

    def run(self, image, command, *, env=None, cancel=None):
        with self._lock:
            self.calls.append((image, command, dict(env or {})))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            behaviour = self._behaviour(command)
            if behaviour == "infra":
                raise InfrastructureError("worker disconnected")
            if behaviour == "hang":
                assert cancel is not None
                cancel.wait()
                return ExitOutcome(exit_code=-9, output="killed", cancelled=True)
            if self.delay:
                if cancel is not None and cancel.wait(self.delay):
                    return ExitOutcome(exit_code=-9, output="killed", cancelled=True)
            return ExitOutcome(exit_code=int(behaviour), output=f"output of {command}")
        finally:
            with self._lock:
                self.active -= 1


class RecordingSink:
    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def handle(self, event):
        with self._lock:
            self.events.append(event)

    def kinds(self, job: str | None = None) -> List[str]:
        return [e.kind for e in self.events if job is None or e.job == job]


def make_job(name: str, *script: str, tags=DEFAULT_TAGS, image: str = "rust:1.34", **kw) -> JobSpec:
    return JobSpec(
        name=name,
        image=image,
        script=script or (f"run {name}",),
        tags=frozenset(tags),
        **kw,
    )


def make_pool(*specs: tuple, health_check=None) -> WorkerPool:
    """make_pool(("w1", ["x86_64", "docker"]), ...)"""
    return WorkerPool([Worker(id=wid, tags=frozenset(tags)) for wid, tags in specs], health_check=health_check)


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def dispatcher(sink):
    d = EventDispatcher([sink])
    yield d
    d.close()


@pytest.fixture
def single_pool():
    return make_pool(("runner-1", DEFAULT_TAGS))


# The job set from the rust project's .gitlab-ci.yml
RUST_PIPELINE_YAML = """\
build-nightly:
  image: rust:1.34
  before_script:
    - rustup default nightly-2019-03-23-x86_64-unknown-linux-gnu
  script:
    - cargo +nightly-2019-03-23 check
  tags:
    - x86_64
    - docker

static-analysis:
  image: rust:1.34
  before_script:
    - rustup default nightly-2019-03-23-x86_64-unknown-linux-gnu
    - rustup component add clippy --toolchain nightly-2019-03-23-x86_64-unknown-linux-gnu
  script:
    - cargo +nightly-2019-03-23 clippy
  tags:
    - x86_64
    - docker

test-coverage:
  image: xd009642/tarpaulin:develop-nightly
  script:
    - cargo tarpaulin
  tags:
    - x86_64
    - docker

test:
  image: rust:1.34
  before_script:
    - rustup default nightly-2019-03-23-x86_64-unknown-linux-gnu
  script:
    - cargo +nightly-2019-03-23 test --lib
  tags:
    - x86_64
    - docker

# Test code in comments
test-doc:
  image: rust:1.34
  before_script:
    - rustup default nightly-2019-03-23-x86_64-unknown-linux-gnu
  script:
    - cargo +nightly-2019-03-23 test --doc
  tags:
    - x86_64
    - docker

# Enforce that code has been formatted with rustfmt
test-formatting:
  image: rust:1.34
  before_script:
    - rustup default nightly-2019-03-23-x86_64-unknown-linux-gnu
    - rustup component add rustfmt --toolchain nightly-2019-03-23-x86_64-unknown-linux-gnu
  script:
    - cargo fmt --all -- --check
  tags:
    - x86_64
    - docker
"""


@pytest.fixture
def rust_yaml():
    return RUST_PIPELINE_YAML
