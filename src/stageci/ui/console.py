"""Console output formatting utilities for stageci."""

from __future__ import annotations

import sys
import threading
from typing import List, Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only errors and the final results are printed
        """
        self.debug = debug
        self.quiet = quiet
        # jobs report from worker threads; keep their lines whole
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        run_id: int,
        pipeline: str,
        ref: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        if self.quiet:
            return
        self._out(
            "\nRUN STARTED",
            f"Run: {run_id}",
            f"Pipeline: {pipeline}",
            f"Ref: {ref}",
            f"Jobs: {job_count}",
            "",
        )

    def print_plan(self, levels: List[List[str]]) -> None:
        """Print the topological stages of a pipeline."""
        for i, level in enumerate(levels):
            self._out(f"  stage {i + 1}: {', '.join(level)}")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        if not self.quiet:
            self._out(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        if not self.quiet:
            self._out(f"[{job}] STEP: {name}")

    def print_success(self, name: str) -> None:
        """Print success message."""
        if not self.quiet:
            self._out(f"[{name}] STATUS: success")

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
            name: Job or step name
            reason: Failure reason/error message (already masked)
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            lines.append(f"Error: {reason.splitlines()[0] if reason else 'Unknown error'}")
        self._out(*lines)

    def print_retry(self, job: str, attempt: int, delay: float, reason: str) -> None:
        """Print an infrastructure retry."""
        self._out(f"[{job}] provisioning failed (attempt {attempt}): {reason}; retrying in {delay:.1f}s")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        if not self.quiet:
            self._out(f"\nJOB SKIPPED: {name}", f"STATUS: skipped ({reason})")

    def print_results(self, report) -> None:
        """Print final results summary for a RunReport."""
        lines = ["\n" + "=" * 40, f"RESULTS (run {report.run_id}: {report.status.value.upper()})", "=" * 40]
        for name, job in report.jobs.items():
            line = f"  {name}: {job.state.value.upper()}"
            if job.detail and job.state.value != "succeeded":
                line += f" ({job.detail.splitlines()[0]})"
            lines.append(line)
        self._out(*lines)

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
        lines = [f"\nERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


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
