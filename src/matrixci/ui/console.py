"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from ..report import RunReport


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show full diagnostics, cache inventories and stack traces
        """
        self.debug = debug
        # workers print from several threads; keep multi-line blocks together
        self._lock = threading.Lock()

    def _emit(self, lines: Iterable[str], target: Optional[str] = None, err: bool = False) -> None:
        prefix = f"[{target}] " if target else ""
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(f"{prefix}{line}", file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(["", title, "-" * len(title)])

    def print_run_started(self, matrix: str, targets: list[str], job_count: int) -> None:
        """Print run start information."""
        self._emit([
            "",
            "RUN STARTED",
            f"Matrix: {matrix}",
            f"Targets: {', '.join(targets) if targets else '(none)'}",
            f"Jobs: {job_count}",
            "",
        ])

    def print_plan_job(self, job_id: str, commands: list[str]) -> None:
        """Print one planned job and, in debug mode, its commands."""
        lines = [f"  {job_id}"]
        if self.debug:
            lines.extend(f"      $ {c}" for c in commands)
        self._emit(lines)

    def print_job_start(self, target: str, name: str) -> None:
        """Print job start message."""
        self._emit([f"JOB STARTED: {name}"], target)

    def print_command(self, target: str, index: int, name: str, rendered: str) -> None:
        """Print command start message."""
        self._emit([f"STEP {index}: {name}"] + ([f"  $ {rendered}"] if self.debug else []), target)

    def print_success(self, target: str, name: str, duration: float) -> None:
        """Print success message."""
        self._emit([f"STATUS: success ({duration:.1f}s)"], target)

    def print_failure(
        self,
        target: str,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        index: Optional[int] = None,
    ) -> None:
        """
        Print failure message.

        Args:
            target: Architecture the job ran on
            name: Job id
            reason: Captured diagnostic text
            exit_code: Exit status of the failing command (None on timeout)
            index: Zero-based index of the failing command
        """
        lines = [f"JOB FAILED: {name}"]
        if index is not None:
            lines.append(f"Failing command: #{index}")
        lines.append(f"Exit code: {exit_code if exit_code is not None else 'timeout'}")
        if self.debug:
            lines.append("Diagnostic:")
            lines.extend(f"  {l}" for l in (reason or "").splitlines())
        else:
            # last non-empty line is usually the compiler's summary
            tail = [l for l in (reason or "").splitlines() if l.strip()]
            if tail:
                lines.append(f"Error: {tail[-1]}")
        self._emit(lines, target)

    def print_job_skipped(self, target: str, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._emit([f"JOB SKIPPED: {name} ({reason})"], target)

    def print_cache_restore(self, target: str, reason: str, entries: int) -> None:
        self._emit([f"CACHE: {reason} ({entries} artifact(s))"], target)

    def print_cache_inventory(self, target: str, title: str, inventory: list[str]) -> None:
        """Print the sorted compressed-artifact listing (debug only)."""
        if not self.debug:
            return
        self._emit([f"CACHE {title}:"] + [f"  {p}" for p in inventory], target)

    def print_cache_pruned(self, target: str, kept: int, removed: list[str]) -> None:
        lines = [f"CACHE: pruned {len(removed)} orphan(s), kept {kept}"]
        lines.extend(f"  removed {p}" for p in removed)
        self._emit(lines, target)

    def print_cache_saved(self, target: str, path: str, entries: int) -> None:
        """Print cache snapshot message."""
        self._emit([f"CACHE: snapshot saved to {path} ({entries} artifact(s))"], target)

    def print_cache_warning(self, target: str, message: str) -> None:
        self._emit([f"CACHE WARNING: {message}"], target, err=True)

    def print_worker_fatal(self, target: str, message: str) -> None:
        self._emit([f"WORKER STOPPED: {message}"], target, err=True)

    def print_results(self, report: RunReport) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        lines.append(f"  passed: {report.passed}")
        lines.append(f"  failed: {len(report.failures)}")
        if report.skipped:
            lines.append(f"  skipped: {len(report.skipped)}")
        for f in report.failures:
            lines.append("")
            lines.append(f"  FAILED {f.job_id}")
            lines.append(f"    command #{f.failed_index}: {f.failed_command}")
            lines.append(f"    exit code: {f.exit_code if f.exit_code is not None else 'timeout'}")
            for l in f.diagnostic.splitlines():
                lines.append(f"    | {l}")
        for s in report.skipped:
            lines.append(f"  SKIPPED {s.job_id} ({s.reason})")
        for w in report.worker_errors:
            lines.append(f"  WORKER ERROR {w}")
        for w in report.cache_warnings:
            lines.append(f"  CACHE WARNING [{w.target}] {w.operation}: {w.message}")
        lines.append("")
        lines.append(f"VERDICT: {report.verdict}")
        self._emit(lines)

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
        lines = ["", f"ERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.extend(["", suggestion])
        self._emit(lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            self._emit([f"Error: {exc}"], err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit([message])

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit([f"[DEBUG] {message}"], err=True)


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
