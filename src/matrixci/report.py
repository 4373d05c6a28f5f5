# report.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from pydantic import BaseModel, Field

from .model import (
    OUTCOME_FAILURE,
    OUTCOME_SKIPPED,
    OUTCOME_SUCCESS,
    CacheWarning,
    JobResult,
    WorkerReport,
)

VERDICT_ALL_PASSED = "AllPassed"
VERDICT_FAILED = "Failed"

EXIT_OK = 0
EXIT_VERIFICATION_FAILURE = 1
EXIT_INFRASTRUCTURE_FAILURE = 2
EXIT_INVALID_MATRIX = 3

# cache warning raised while reading the snapshot back
CACHE_OP_RESTORE = "restore"


@dataclass(frozen=True)
class FailureDetail:
    """Everything needed to re-run one failing job in isolation."""
    job_id: str
    toolchain: str
    target: str
    features: tuple[str, ...]
    mode: str
    profile: str
    failed_index: int
    failed_command: str
    exit_code: Optional[int]
    diagnostic: str

    @classmethod
    def from_result(cls, r: JobResult) -> FailureDetail:
        return cls(
            job_id=r.job.job_id,
            toolchain=r.job.toolchain.name,
            target=r.job.target,
            features=tuple(r.job.features),
            mode=r.job.mode,
            profile=r.job.profile,
            failed_index=r.failed_index if r.failed_index is not None else 0,
            failed_command=r.failed_command or "",
            exit_code=r.exit_code,
            diagnostic=r.diagnostic,
        )


@dataclass(frozen=True)
class SkippedJob:
    job_id: str
    reason: str


@dataclass
class RunReport:
    passed: int = 0
    failures: List[FailureDetail] = field(default_factory=list)
    skipped: List[SkippedJob] = field(default_factory=list)
    worker_errors: List[str] = field(default_factory=list)
    cache_warnings: List[CacheWarning] = field(default_factory=list)
    results: List[JobResult] = field(default_factory=list)

    @property
    def verdict(self) -> str:
        if self.failures or self.skipped or self.worker_errors:
            return VERDICT_FAILED
        return VERDICT_ALL_PASSED

    @property
    def all_passed(self) -> bool:
        return self.verdict == VERDICT_ALL_PASSED

    @property
    def snapshot_unreadable(self) -> bool:
        return any(w.operation == CACHE_OP_RESTORE for w in self.cache_warnings)

    def exit_code(self, *, strict_cache: bool = False) -> int:
        """
        0: everything passed
        1: at least one job failed verification
        2: infrastructure failure (fatal worker error, skipped jobs, an
           unreadable snapshot, or any cache I/O problem under strict_cache);
           wins over 1
        """
        if self.worker_errors or self.skipped or self.snapshot_unreadable:
            return EXIT_INFRASTRUCTURE_FAILURE
        if strict_cache and self.cache_warnings:
            return EXIT_INFRASTRUCTURE_FAILURE
        if self.failures:
            return EXIT_VERIFICATION_FAILURE
        return EXIT_OK

    def to_json(self) -> str:
        return ReportDocument.from_report(self).model_dump_json(indent=2)


def aggregate(
    results: Iterable[JobResult],
    *,
    worker_errors: Iterable[str] = (),
    cache_warnings: Iterable[CacheWarning] = (),
) -> RunReport:
    """Fold job results (any worker order) into one report in generation order."""
    ordered = sorted(results, key=lambda r: r.job.index)
    report = RunReport(
        worker_errors=list(worker_errors),
        cache_warnings=list(cache_warnings),
        results=ordered,
    )
    for r in ordered:
        if r.outcome == OUTCOME_SUCCESS:
            report.passed += 1
        elif r.outcome == OUTCOME_FAILURE:
            report.failures.append(FailureDetail.from_result(r))
        elif r.outcome == OUTCOME_SKIPPED:
            report.skipped.append(SkippedJob(job_id=r.job.job_id, reason=r.reason))
        else:
            raise ValueError(f"unknown job outcome {r.outcome!r} for {r.job.job_id}")
    return report


def aggregate_workers(workers: Iterable[WorkerReport]) -> RunReport:
    results: List[JobResult] = []
    errors: List[str] = []
    warnings: List[CacheWarning] = []
    for w in sorted(workers, key=lambda w: w.target):
        results.extend(w.results)
        if w.fatal:
            errors.append(f"{w.target}: {w.fatal}")
        warnings.extend(w.cache_warnings)
    return aggregate(results, worker_errors=errors, cache_warnings=warnings)


# -------------------- JSON schema --------------------

class JobRecord(BaseModel):
    job_id: str
    toolchain: str
    target: str
    features: list[str]
    mode: str
    profile: str
    outcome: str
    failed_index: int | None = None
    failed_command: str | None = None
    exit_code: int | None = None
    diagnostic: str = ""
    reason: str = ""
    duration: float = 0.0


class CacheWarningRecord(BaseModel):
    target: str
    operation: str
    message: str


class ReportDocument(BaseModel):
    verdict: str
    passed: int
    failed: int
    skipped: int
    jobs: list[JobRecord] = Field(default_factory=list)
    worker_errors: list[str] = Field(default_factory=list)
    cache_warnings: list[CacheWarningRecord] = Field(default_factory=list)

    @classmethod
    def from_report(cls, report: RunReport) -> ReportDocument:
        return cls(
            verdict=report.verdict,
            passed=report.passed,
            failed=len(report.failures),
            skipped=len(report.skipped),
            jobs=[
                JobRecord(
                    job_id=r.job.job_id,
                    toolchain=r.job.toolchain.name,
                    target=r.job.target,
                    features=list(r.job.features),
                    mode=r.job.mode,
                    profile=r.job.profile,
                    outcome=r.outcome,
                    failed_index=r.failed_index,
                    failed_command=r.failed_command,
                    exit_code=r.exit_code,
                    diagnostic=r.diagnostic,
                    reason=r.reason,
                    duration=round(r.duration, 3),
                )
                for r in report.results
            ],
            worker_errors=report.worker_errors,
            cache_warnings=[
                CacheWarningRecord(target=w.target, operation=w.operation, message=w.message)
                for w in report.cache_warnings
            ],
        )
