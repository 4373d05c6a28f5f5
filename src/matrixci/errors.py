# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class MatrixCIError(Exception):
    """Base class for every error raised by matrixci."""


class InvalidMatrixSpec(MatrixCIError):
    """
    The matrix configuration is unusable.

    Raised before any job is generated; the run aborts with zero jobs.
    `problems` holds one line per validation error so the CLI can list them all.
    """

    def __init__(self, message: str, problems: list[str] | None = None):
        super().__init__(message)
        self.message = message
        self.problems = list(problems or [])

    def __str__(self) -> str:
        if not self.problems:
            return self.message
        lines = [self.message]
        lines.extend(f"  - {p}" for p in self.problems)
        return "\n".join(lines)


@dataclass
class JobFailure(MatrixCIError):
    """A command inside a job exited non-zero (or timed out)."""
    job: str
    index: int
    command: str
    exit_code: int | None
    diagnostic: str = ""

    def __str__(self) -> str:
        code = "timeout" if self.exit_code is None else f"exit={self.exit_code}"
        return f"[{self.job}] command #{self.index} '{self.command}' failed ({code})"


@dataclass
class CacheIOFailure(MatrixCIError):
    """Reading or writing the dependency cache failed. Never fatal."""
    operation: str
    path: str
    message: str

    def __str__(self) -> str:
        return f"cache {self.operation} failed at {self.path}: {self.message}"


@dataclass
class FatalWorkerError(MatrixCIError):
    """
    A non-job error that stops one architecture worker.

    The remaining jobs of that worker are reported as skipped; other workers
    keep running.
    """
    kind: str
    target: str
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"target={self.target}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ToolchainUnavailable(FatalWorkerError):
    def __init__(self, target: str, toolchain: str, message: str, hint: str | None = None):
        details = {"toolchain": toolchain}
        if hint:
            details["hint"] = hint
        super().__init__(kind="toolchain_unavailable", target=target, message=message, details=details)


class CacheCorruption(FatalWorkerError):
    def __init__(self, target: str, path: str, message: str):
        super().__init__(kind="cache_corruption", target=target, message=message, details={"path": path})
