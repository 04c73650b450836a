"""Console output formatting utilities for relayci."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Optional

# Workers print step progress concurrently; keep lines whole.
_lock = threading.Lock()


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with _lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        run_id: str,
        event: str,
        workflows: Iterable[str],
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Run: {run_id}",
            f"Event: {event}",
            f"Workflows: {', '.join(workflows) or '(none matched)'}",
            f"Jobs: {job_count}",
            "",
        )

    def print_stage(self, index: int, names: list[str]) -> None:
        """Print one parallel stage of the plan."""
        self._out(f"  stage {index}: {', '.join(names)}")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._out(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._out(f"[{job}] STEP: {name}")

    def print_step_continued(self, job: str, name: str, exit_code: int) -> None:
        """A step failed but is allowed to."""
        self._out(f"[{job}] STEP FAILED (continuing): {name} (exit {exit_code})")

    def print_job_finished(self, name: str, status: str, duration: Optional[float] = None) -> None:
        """Print job completion message."""
        suffix = f" in {duration:.1f}s" if duration is not None else ""
        self._out(f"[{name}] STATUS: {status}{suffix}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        log_tail: Optional[str] = None,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            log_tail: Captured output of the failing step
        """
        lines = [f"JOB FAILED: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # first line only outside debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        if log_tail:
            lines.append("Output:")
            lines.extend(f"  | {line}" for line in log_tail.splitlines())
        self._out(*lines)

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._out(f"[{name}] STATUS: skipped ({reason})")

    def print_results(self, rows: list[tuple[str, str, str]], aggregate: str) -> None:
        """Print final results summary: (name, status, note) rows."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for name, status, note in rows:
            line = f"  {name}: {status.upper()}"
            if note:
                line += f" ({note})"
            lines.append(line)
        lines.append("-" * 40)
        lines.append(f"  PIPELINE: {aggregate.upper()}")
        self._out(*lines)

    def print_release(self, name: str, state: str, version: Optional[str] = None, reason: Optional[str] = None) -> None:
        """Print release coordinator outcome."""
        line = f"RELEASE {name}: {state}"
        if version:
            line += f" ({version})"
        self._out(line)
        if reason:
            self._out(f"  {reason}")

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
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            text = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            self._out(text.rstrip("\n"), err=True)
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
