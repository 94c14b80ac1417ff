"""Console output formatting utilities for actionci."""

from __future__ import annotations

import sys
import threading
from typing import Any, Dict, List, Mapping, Optional

from ..context import LogRecord


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only structural lines (jobs, steps, status) are
                   printed; command output is kept in the run log only
        """
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        job_count: int,
        event: str = "",
    ) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Repository: {repository}")
        print(f"Workflow: {workflow}")
        if event:
            print(f"Event: {event}")
        print(f"Jobs: {job_count}")
        print()

    def print_record(self, record: LogRecord) -> None:
        """
        Print one (already masked) line of the run log. Used as a RunLog
        listener, so it is called from worker threads.
        """
        message = record.message
        structural = message.startswith(
            ("JOB ", "STEP", "STATUS:", "RUN ", "Hint:", "ERROR:", "WARNING:", "NOTICE:")
        )
        if self.quiet and not structural:
            return
        with self._lock:
            if message.startswith("JOB STARTED") or message.startswith("JOB SKIPPED"):
                print()
            if record.job:
                print(f"[{record.job}] {message}")
            else:
                print(message)

    def print_plan(self, levels: List[List[Dict[str, Any]]]) -> None:
        """Print the stages a run would go through."""
        for i, level in enumerate(levels, start=1):
            print(f"Stage {i}:")
            for entry in level:
                needs = entry.get("needs") or []
                suffix = f" (needs: {', '.join(needs)})" if needs else ""
                instances = entry.get("instances")
                count = "dynamic matrix" if instances is None else f"{instances} instance(s)"
                print(f"  {entry['id']}: {count}{suffix}")

    def print_results(self, result: Mapping[str, Any]) -> None:
        """Print final results summary from RunResult.to_dict()."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for job in result.get("jobs", []):
            print(f"  {job['name']}: {job['status'].upper()}")
            if self.debug:
                for step in job.get("steps", []):
                    print(f"    - {step['name']}: {step['conclusion']} (outcome: {step['outcome']})")
            if job.get("outputs"):
                for key, value in job["outputs"].items():
                    print(f"    {key} = {value}")
            if job.get("error") and job["status"] != "success":
                print(f"    error: {job['error'].splitlines()[0]}")
        print("-" * 40)
        print(f"  RUN: {result.get('status', 'unknown').upper()}")

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
