# runner.py
from __future__ import annotations

import os
import subprocess
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .cache import CacheStore, scoped_home
from .errors import (
    CacheCorruption,
    CacheIOFailure,
    FatalWorkerError,
    JobFailure,
    ToolchainUnavailable,
)
from .matrix import MatrixSpec, generate_jobs, group_by_target, render_argv, select_jobs
from .model import (
    OUTCOME_FAILURE,
    OUTCOME_SKIPPED,
    OUTCOME_SUCCESS,
    CacheWarning,
    Command,
    Job,
    JobResult,
    ToolchainSpec,
    WorkerReport,
)
from .reconcile import CacheReconciler
from .report import RunReport, aggregate_workers
from .settings import Settings
from .ui.console import Console, get_console

TOOL_HINTS = {
    "cargo": "Install the toolchain with rustup or fix PATH.",
    "rustup": "Install rustup (https://rustup.rs) or fix PATH.",
}


@dataclass
class WorkerContext:
    """Everything one architecture worker owns. Never shared between workers."""
    target: str
    project_dir: Path
    store: CacheStore
    reconciler: CacheReconciler
    env: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None
    output_limit: int = 4000
    probe: Optional[Sequence[str]] = None
    restore: bool = True
    save_snapshot: bool = True
    prune_before: bool = False
    console: Console = field(default_factory=get_console)


def make_context(
    target: str,
    settings: Settings,
    *,
    project_dir: str | Path = ".",
    probe: Optional[Sequence[str]] = None,
    restore: bool = True,
    save_snapshot: bool = True,
    prune_before: bool = False,
    console: Optional[Console] = None,
) -> WorkerContext:
    home = scoped_home(settings.toolchain_home, target)
    store = CacheStore(home)
    env = os.environ.copy()
    if settings.home_env:
        env[settings.home_env] = str(store.home)
    return WorkerContext(
        target=target,
        project_dir=Path(project_dir).resolve(),
        store=store,
        reconciler=CacheReconciler(store, Path(settings.snapshot_dir) / target),
        env=env,
        timeout=settings.timeout,
        output_limit=settings.output_limit,
        probe=probe,
        restore=restore,
        save_snapshot=save_snapshot,
        prune_before=prune_before,
        console=console or get_console(),
    )


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def _tail(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[-limit:]


def _run_command(job: Job, index: int, command: Command, ctx: WorkerContext) -> None:
    cwd = (ctx.project_dir / (command.cwd or ".")).resolve()
    if not cwd.exists():
        raise FatalWorkerError(
            kind="workspace_unavailable",
            target=ctx.target,
            message=f"[{job.job_id}] command '{command.name}' cwd not found: {cwd}",
        )

    try:
        proc = subprocess.run(
            list(command.argv),
            shell=False,
            cwd=str(cwd),
            env=ctx.env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=ctx.timeout,
        )
    except subprocess.TimeoutExpired as e:
        out = e.output if isinstance(e.output, str) else (e.output or b"").decode("utf-8", "replace")
        raise JobFailure(
            job=job.job_id,
            index=index,
            command=command.name,
            exit_code=None,
            diagnostic=_tail(f"{out}\ntimed out after {ctx.timeout}s", ctx.output_limit),
        ) from e
    except OSError as e:
        tool = command.argv[0] if command.argv else "<empty>"
        raise ToolchainUnavailable(
            target=ctx.target,
            toolchain=job.toolchain.name,
            message=f"could not launch {tool!r}: {e.strerror or e}",
            hint=TOOL_HINTS.get(Path(tool).name),
        ) from e

    if proc.returncode != 0:
        raise JobFailure(
            job=job.job_id,
            index=index,
            command=command.name,
            exit_code=proc.returncode,
            diagnostic=_tail(proc.stdout or "", ctx.output_limit),
        )


def run_job(job: Job, ctx: WorkerContext) -> JobResult:
    """
    Run the job's commands in order, stopping at the first failure.

    Returns a success/failure JobResult; raises FatalWorkerError when the
    problem is not the job's fault (missing toolchain, broken cache).
    """
    console = ctx.console
    console.print_job_start(ctx.target, job.job_id)
    started = time.monotonic()

    for index, command in enumerate(job.commands):
        console.print_command(ctx.target, index, command.name, command.render())
        try:
            _run_command(job, index, command, ctx)
        except JobFailure as e:
            result = JobResult(
                job=job,
                outcome=OUTCOME_FAILURE,
                failed_index=e.index,
                failed_command=command.render(),
                exit_code=e.exit_code,
                diagnostic=e.diagnostic,
                duration=time.monotonic() - started,
            )
            console.print_failure(ctx.target, job.job_id, e.diagnostic, e.exit_code, e.index)
            return result

    result = JobResult(job=job, outcome=OUTCOME_SUCCESS, duration=time.monotonic() - started)
    console.print_success(ctx.target, job.job_id, result.duration)
    return result


def probe_toolchain(toolchain: ToolchainSpec, ctx: WorkerContext) -> None:
    """Raise ToolchainUnavailable unless the probe command succeeds."""
    if not ctx.probe:
        return
    argv = list(render_argv(ctx.probe, toolchain))
    if not ctx.project_dir.is_dir():
        raise FatalWorkerError(
            kind="workspace_unavailable",
            target=ctx.target,
            message=f"project directory not found: {ctx.project_dir}",
        )
    try:
        proc = subprocess.run(
            argv,
            cwd=str(ctx.project_dir),
            env=ctx.env,
            text=True,
            capture_output=True,
            timeout=ctx.timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        raise ToolchainUnavailable(
            target=ctx.target,
            toolchain=toolchain.name,
            message=f"toolchain probe failed: {e}",
            hint=TOOL_HINTS.get(Path(argv[0]).name),
        ) from e
    if proc.returncode != 0:
        detail = (proc.stderr or proc.stdout or "").strip().splitlines()
        raise ToolchainUnavailable(
            target=ctx.target,
            toolchain=toolchain.name,
            message=f"toolchain {toolchain.name} is not installed"
            + (f": {detail[-1]}" if detail else ""),
            hint=TOOL_HINTS.get(Path(argv[0]).name),
        )


# ----------------------------------------------------------------------
# Worker: one architecture, jobs strictly sequential
# ----------------------------------------------------------------------

def _warn(report: WorkerReport, ctx: WorkerContext, e: CacheIOFailure) -> None:
    report.cache_warnings.append(CacheWarning(target=ctx.target, operation=e.operation, message=str(e)))
    ctx.console.print_cache_warning(ctx.target, str(e))


def _restore_cache(ctx: WorkerContext, report: WorkerReport) -> None:
    try:
        outcome = ctx.reconciler.restore(prune=ctx.prune_before)
        ctx.console.print_cache_restore(ctx.target, outcome.reason, outcome.entries)
        if outcome.pruned:
            ctx.console.print_cache_pruned(ctx.target, outcome.entries - len(outcome.pruned),
                                           [e.relpath for e in outcome.pruned])
        ctx.console.print_cache_inventory(ctx.target, "before", ctx.store.inventory())
    except CacheIOFailure as e:
        _warn(report, ctx, e)
        # proceed cold
        try:
            ctx.store.clear_compressed()
            ctx.store.clear_extracted()
        except CacheIOFailure as e2:
            _warn(report, ctx, e2)


def _finish_cache(ctx: WorkerContext, report: WorkerReport) -> None:
    try:
        outcome = ctx.reconciler.reconcile()
    except CacheIOFailure as e:
        # never snapshot a namespace we could not prune
        _warn(report, ctx, e)
        return
    report.removed = [e.relpath for e in outcome.removed]
    ctx.console.print_cache_pruned(ctx.target, len(outcome.kept), report.removed)
    if not ctx.save_snapshot:
        return
    try:
        count = ctx.reconciler.snapshot()
        ctx.console.print_cache_inventory(ctx.target, "after", ctx.store.inventory())
        ctx.console.print_cache_saved(ctx.target, str(ctx.reconciler.snapshot_dir), count)
    except CacheIOFailure as e:
        _warn(report, ctx, e)


def _skip_rest(jobs: Sequence[Job], start: int, reason: str, ctx: WorkerContext) -> List[JobResult]:
    skipped = []
    for job in jobs[start:]:
        ctx.console.print_job_skipped(ctx.target, job.job_id, reason)
        skipped.append(JobResult(job=job, outcome=OUTCOME_SKIPPED, reason=reason))
    return skipped


def run_worker(jobs: Sequence[Job], ctx: WorkerContext) -> WorkerReport:
    """
    restore cache -> run jobs in order -> prune -> snapshot.

    A FatalWorkerError skips the rest of this worker's queue; JobFailures
    are recorded and the next job runs.
    """
    report = WorkerReport(target=ctx.target)
    if ctx.restore:
        _restore_cache(ctx, report)

    probed: set[str] = set()
    corrupted = False
    for pos, job in enumerate(jobs):
        try:
            if job.toolchain.name not in probed:
                probe_toolchain(job.toolchain, ctx)
                probed.add(job.toolchain.name)
            report.results.append(run_job(job, ctx))
            try:
                ctx.store.entries()
            except CacheIOFailure as e:
                raise CacheCorruption(target=ctx.target, path=e.path, message=str(e)) from e
        except FatalWorkerError as e:
            report.fatal = f"{e.kind}: {e.message}"
            corrupted = isinstance(e, CacheCorruption)
            ctx.console.print_worker_fatal(ctx.target, str(e))
            # a job that finished before the cache broke keeps its result
            start = pos + 1 if report.results and report.results[-1].job is job else pos
            report.results.extend(_skip_rest(jobs, start, e.kind, ctx))
            break

    if corrupted:
        # the namespace is unreadable; do not carry it into the snapshot
        return report
    _finish_cache(ctx, report)
    return report


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def run_matrix(
    spec: MatrixSpec,
    settings: Settings,
    *,
    targets: Optional[Sequence[str]] = None,
    only: Optional[Sequence[str]] = None,
    project_dir: str | Path = ".",
    max_workers: Optional[int] = None,
    restore: bool = True,
    save_snapshot: bool = True,
    prune_before: bool = False,
    console: Optional[Console] = None,
) -> RunReport:
    """
    Generate jobs, run one worker per target architecture in parallel and
    aggregate. InvalidMatrixSpec propagates before anything runs.
    """
    console = console or get_console()
    jobs = select_jobs(generate_jobs(spec), targets=targets, only=only)
    groups = group_by_target(jobs)

    if max_workers is None:
        max_workers = max(1, len(groups))

    workers: List[WorkerReport] = []
    if not groups:
        return aggregate_workers(workers)

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = {}
        for target, target_jobs in groups.items():
            ctx = make_context(
                target,
                settings,
                project_dir=project_dir,
                probe=spec.probe,
                restore=restore,
                save_snapshot=save_snapshot,
                prune_before=prune_before,
                console=console,
            )
            futures[pool.submit(run_worker, target_jobs, ctx)] = target

        for fut in as_completed(futures):
            target = futures[fut]
            try:
                workers.append(fut.result())
            except Exception as e:
                # a bug inside a worker must not hide the other workers' results
                console.print_exception(e)
                done = WorkerReport(target=target, fatal=f"internal_error: {e}")
                done.results = [
                    JobResult(job=j, outcome=OUTCOME_SKIPPED, reason="internal_error")
                    for j in groups[target]
                ]
                workers.append(done)

    return aggregate_workers(workers)
