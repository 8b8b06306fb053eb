# runtime.py
from __future__ import annotations

import os
import signal
import shutil
import subprocess
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Protocol

from . import settings


TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
    "sh": "A POSIX shell (sh) must be available on PATH.",
}

# `docker run` exits 125 when the daemon itself failed (bad image, pull error, ...)
DOCKER_RUN_FAILED = 125


class InfrastructureError(Exception):
    """The execution environment failed, as opposed to the command itself."""


class CancelToken:
    """
    Cooperative cancellation shared between the coordinator and a running job.

    The first cancel() wins, so a job that timed out is not later relabelled
    as cancelled by a pipeline abort.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            return True

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


@dataclass(frozen=True)
class ExitOutcome:
    exit_code: Optional[int]
    output: str = ""
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.cancelled and self.exit_code == 0


class ContainerRuntime(Protocol):
    def run(
        self,
        image: str,
        command: str,
        *,
        env: Optional[Mapping[str, str]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> ExitOutcome:
        ...

    def healthy(self) -> bool:
        """Whether the execution environment can take work again after an infrastructure failure."""
        ...


def _tail(text: Optional[str], limit: int) -> str:
    if not text:
        return ""
    return text[-limit:]


def _wait(proc: subprocess.Popen, cancel: Optional[CancelToken], poll: float, on_cancel=None):
    """
    Wait for `proc`, polling the cancel token.

    Returns (output, cancelled). communicate() may be retried after a timeout
    without losing output.
    """
    while True:
        try:
            out, _ = proc.communicate(timeout=poll)
            return out, False
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.is_set():
                if on_cancel is not None:
                    on_cancel()
                proc.kill()
                out, _ = proc.communicate()
                return out, True


class ShellRuntime:
    """
    Runs commands in the host shell. The image reference is ignored, which
    makes this the runtime for local runs and tests.
    """

    def __init__(
        self,
        workspace: str | Path | None = None,
        *,
        output_tail: int | None = None,
        poll_interval: float = 0.05,
    ):
        self.workspace = Path(workspace or settings.WORKSPACE).resolve()
        self.output_tail = output_tail or settings.OUTPUT_TAIL
        self.poll_interval = poll_interval

    def healthy(self) -> bool:
        return self.workspace.is_dir() and shutil.which("sh") is not None

    def run(
        self,
        image: str,
        command: str,
        *,
        env: Optional[Mapping[str, str]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> ExitOutcome:
        if not self.workspace.exists():
            raise InfrastructureError(f"workspace not found: {self.workspace}")

        proc_env = os.environ.copy()
        proc_env.update(env or {})

        try:
            proc = subprocess.Popen(
                command,
                shell=True,
                start_new_session=True,
                cwd=str(self.workspace),
                env=proc_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            )
        except OSError as e:
            raise InfrastructureError(f"could not start shell: {e}. {TOOL_HINTS['sh']}") from e

        def _kill_group() -> None:
            # the shell's children share its session; kill them with it
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass

        out, cancelled = _wait(proc, cancel, self.poll_interval, on_cancel=_kill_group)
        return ExitOutcome(exit_code=proc.returncode, output=_tail(out, self.output_tail), cancelled=cancelled)


class DockerRuntime:
    """Runs every command in a fresh `docker run --rm` container with the workspace mounted."""

    container_workdir = "/workspace"

    def __init__(
        self,
        workspace: str | Path | None = None,
        *,
        output_tail: int | None = None,
        poll_interval: float = 0.2,
        docker: str = "docker",
    ):
        self.workspace = Path(workspace or settings.WORKSPACE).resolve()
        self.output_tail = output_tail or settings.OUTPUT_TAIL
        self.poll_interval = poll_interval
        self.docker = docker
        self._checked = False

    def _check_docker_available(self) -> None:
        if self._checked:
            return
        try:
            subprocess.run([self.docker, "--version"], capture_output=True, check=True)
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            raise InfrastructureError(f"Docker is not available. {TOOL_HINTS['docker']}") from e
        self._checked = True

    def healthy(self) -> bool:
        # `docker info` needs the daemon, `--version` only the client
        try:
            proc = subprocess.run([self.docker, "info"], capture_output=True, check=False)
        except OSError:
            return False
        return proc.returncode == 0 and self.workspace.is_dir()

    def build_command(self, image: str, command: str, env: Mapping[str, str], name: str) -> list[str]:
        cmd = [self.docker, "run", "--rm", "--name", name]
        cmd.extend(["-v", f"{self.workspace}:{self.container_workdir}"])
        cmd.extend(["-w", self.container_workdir])
        for key, value in env.items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.append(image)
        cmd.extend(["sh", "-c", command])
        return cmd

    def run(
        self,
        image: str,
        command: str,
        *,
        env: Optional[Mapping[str, str]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> ExitOutcome:
        self._check_docker_available()

        name = f"runnerci-{uuid.uuid4().hex[:12]}"
        argv = self.build_command(image, command, dict(env or {}), name)

        def _remove_container() -> None:
            subprocess.run([self.docker, "rm", "-f", name], capture_output=True, check=False)

        try:
            proc = subprocess.Popen(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            )
        except OSError as e:
            raise InfrastructureError(f"could not start docker: {e}") from e

        out, cancelled = _wait(proc, cancel, self.poll_interval, on_cancel=_remove_container)
        if not cancelled and proc.returncode == DOCKER_RUN_FAILED:
            raise InfrastructureError(f"docker run failed for image {image}: {_tail(out, 500).strip()}")
        return ExitOutcome(exit_code=proc.returncode, output=_tail(out, self.output_tail), cancelled=cancelled)


def make_runtime(kind: str, workspace: str | Path | None = None) -> ContainerRuntime:
    if kind == "shell":
        return ShellRuntime(workspace)
    if kind == "docker":
        return DockerRuntime(workspace)
    raise ValueError(f"Unknown runtime: {kind!r} (expected 'shell' or 'docker')")
