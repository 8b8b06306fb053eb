"""Console output formatting utilities for runnerci."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from runnerci.model import PipelineResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(
        self,
        run_id: str,
        pipeline: str,
        job_count: int,
        workers: int,
    ) -> None:
        """Print run start information."""
        print("\nPIPELINE STARTED")
        print(f"Run ID: {run_id}")
        print(f"Pipeline: {pipeline}")
        print(f"Jobs: {job_count}")
        print(f"Workers: {workers}")
        print()

    def print_plan(self, levels: List[List[str]]) -> None:
        """Print the dependency levels that will be executed."""
        self.print_header("PLAN")
        for idx, level in enumerate(levels, start=1):
            print(f"  Level {idx}: {', '.join(level)}")

    def print_job_start(self, name: str, worker: Optional[str] = None, image: Optional[str] = None) -> None:
        """Print job start message."""
        print(f"\nJOB STARTED: {name}")
        if worker:
            print(f"[{name}] worker: {worker}")
        if image:
            print(f"[{name}] image: {image}")

    def print_step(self, job: str, command: str, phase: str = "script") -> None:
        """Print step start message."""
        marker = "$" if phase == "script" else "(setup) $"
        print(f"[{job}] {marker} {command}")

    def print_success(self, name: str) -> None:
        """Print success message."""
        print(f"[{name}] STATUS: success")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        print(f"{prefix}: {name}")
        if exit_code is not None:
            print(f"Exit code: {exit_code}")
        if hint:
            print(f"Hint: {hint}")
        if self.debug:
            print(f"Error details: {reason}")
        else:
            # last line of output is usually the interesting one
            lines = [ln for ln in (reason or "").splitlines() if ln.strip()]
            if lines:
                print(f"Error: {lines[-1]}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        print(f"[{name}] STATUS: skipped ({reason})")

    def print_results(self, result: PipelineResult) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for name, job in result.jobs.items():
            status_display = job.status.value.upper()
            if job.reason is not None:
                status_display += f" ({job.reason.value})"
            if job.allow_failure and job.status.value == "failed":
                status_display += " [allowed]"
            print(f"  {name}: {status_display}")
            if job.failure is not None:
                print(f"      {job.failure.phase}: {job.failure.command} (exit={job.failure.exit_code})")
            elif job.message and job.status.value != "succeeded":
                print(f"      {job.message}")
        print("-" * 40)
        print(f"PIPELINE: {result.status.value.upper()}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
