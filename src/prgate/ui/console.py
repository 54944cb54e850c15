"""Console output formatting utilities for prgate."""

from __future__ import annotations

import sys
from typing import Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_run_started(
        self,
        workflow: str,
        event: str,
        branch: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Workflow: {workflow}")
        print(f"Event: {event} ({branch or '-'})")
        print(f"Jobs: {job_count}")
        print()

    def print_not_scheduled(self, event: str, branch: str, trigger_lines: list[str]) -> None:
        """Print trigger mismatch (no-op) message."""
        print(f"\nNOT SCHEDULED: {event} ({branch or '-'})")
        print("Workflow triggers on:")
        for line in trigger_lines:
            print(f"  {line}")

    def print_job_start(self, name: str, timeout_minutes: float) -> None:
        """Print job start message."""
        print(f"\nJOB STARTED: {name} (timeout {timeout_minutes:g}m)")

    def print_step(self, name: str) -> None:
        """Print step start message."""
        print(f"STEP: {name}")

    def print_output(self, line: str) -> None:
        """Print a line of stage output."""
        print(f"  | {line}")

    def print_step_done(self, name: str, duration: float) -> None:
        print(f"STEP PASSED: {name} ({duration:.1f}s)")

    def print_step_not_run(self, name: str) -> None:
        print(f"STEP NOT RUN: {name}")

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
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            print(f"Error: {error_line}")

    def print_cache_hit(self, job: str, reason: str) -> None:
        """Print cache hit message."""
        print(f"CACHE: hit ({reason})")

    def print_cache_miss(self, job: str, reason: str) -> None:
        """Print cache miss message."""
        print(f"CACHE: miss ({reason})")

    def print_cache_saved(self, job: str, key: str) -> None:
        """Print cache save message."""
        short_key = key[:12] + "..." if len(key) > 12 else key
        print(f"CACHE: saved ({short_key})")

    def print_cache_warning(self, job: str, message: str) -> None:
        print(f"CACHE: warning ({message})", file=sys.stderr)

    def print_results(self, results: dict[str, str]) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for job, status in results.items():
            print(f"  {job}: {status.upper()}")

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

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (initialized by the CLI)
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
