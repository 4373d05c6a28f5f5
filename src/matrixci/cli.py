# cli.py
from __future__ import annotations

import sys
from dataclasses import replace
from pathlib import Path

import click

from .cache import CacheStore, scoped_home
from .config import DEFAULT_MATRIX_FILES, find_matrix_files, load_matrix
from .errors import CacheIOFailure, InvalidMatrixSpec
from .matrix import generate_jobs, select_jobs
from .reconcile import CacheReconciler
from .report import EXIT_INFRASTRUCTURE_FAILURE, EXIT_INVALID_MATRIX
from .runner import run_matrix
from .settings import Settings
from .ui.console import Console, get_console, set_console


def discover_matrix(matrix_arg: str | None) -> Path:
    """
    Discover the matrix file from argument or default.

    Args:
        matrix_arg: Optional --matrix argument from CLI

    Returns:
        Path to matrix file

    Raises:
        SystemExit: If no file (or more than one candidate) is found
    """
    console = get_console()

    if matrix_arg:
        matrix_path = Path(matrix_arg)
        if not matrix_path.exists():
            console.print_error(
                "Matrix file not found",
                f"Could not find matrix file: {matrix_arg}",
                suggestion="Create a matrix file or specify a different path:\n  matrixci run --matrix my_matrix.toml",
            )
            sys.exit(EXIT_INVALID_MATRIX)
        return matrix_path

    candidates = find_matrix_files(".")
    if len(candidates) == 0:
        console.print_error(
            "No matrix file found",
            "Could not find any matrix files.",
            details=["Looked for:"] + [f"  {name}" for name in DEFAULT_MATRIX_FILES],
            suggestion="Specify a matrix explicitly:\n  matrixci run --matrix matrixci.toml",
        )
        sys.exit(EXIT_INVALID_MATRIX)

    if len(candidates) > 1:
        console.print_error(
            "Multiple matrix files found",
            "Found multiple matrix files. Please specify which one to use:",
            details=[str(c) for c in candidates],
            suggestion="Specify a matrix explicitly:\n  matrixci run --matrix matrixci.toml",
        )
        sys.exit(EXIT_INVALID_MATRIX)

    return candidates[0]


def _load_or_exit(matrix_arg: str | None):
    console = get_console()
    matrix_path = discover_matrix(matrix_arg)
    try:
        return matrix_path, load_matrix(matrix_path)
    except InvalidMatrixSpec as e:
        console.print_error("Invalid matrix specification", e.message, details=e.problems or None)
        sys.exit(EXIT_INVALID_MATRIX)


def _settings(ctx, toolchain_home, snapshot, timeout=None) -> Settings:
    settings: Settings = ctx.obj["settings"]
    if toolchain_home:
        settings = replace(settings, toolchain_home=Path(toolchain_home).expanduser())
    if snapshot:
        settings = replace(settings, snapshot_dir=Path(snapshot).expanduser())
    if timeout is not None:
        settings = replace(settings, timeout=timeout)
    return settings


def _targets(ctx, target: tuple) -> list[str] | None:
    if target:
        return list(target)
    base: Settings = ctx.obj["settings"]
    return [base.target] if base.target else None


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (full diagnostics, cache listings, stack traces)",
)
@click.pass_context
def cli(ctx, debug):
    """matrixci: feature-matrix build verification with a dependency cache janitor."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    try:
        ctx.obj["settings"] = Settings.from_env()
    except ValueError as e:
        raise click.UsageError(str(e)) from e


@cli.command()
@click.option("--matrix", "matrix_file", default=None, help="Matrix file (.py, .toml or .json)")
@click.option("--target", multiple=True, help="Target architecture(s) to run (default: $MATRIXCI_TARGET or all)")
@click.option("--toolchain-home", default=None, help="Toolchain home holding the dependency cache")
@click.option("--snapshot", default=None, help="Snapshot directory persisted between runs")
@click.option("--project", default=".", show_default=True, help="Directory commands run in")
@click.option("--only", multiple=True, help="Run only these job ids (repeatable)")
@click.option("--workers", default=None, type=int, help="Number of parallel architecture workers")
@click.option("--timeout", default=None, type=float, help="Per-command timeout in seconds")
@click.option("--restore/--no-restore", default=True, show_default=True, help="Restore the cache snapshot first")
@click.option("--save-snapshot/--no-save-snapshot", default=True, show_default=True, help="Save the pruned cache afterwards")
@click.option("--prune-before", is_flag=True, default=False, help="Also prune orphans right after restoring")
@click.option("--strict-cache", is_flag=True, default=False, help="Treat cache I/O failures as infrastructure failures")
@click.option("--report-json", default=None, type=click.Path(dir_okay=False), help="Write a JSON report here")
@click.pass_context
def run(ctx, matrix_file, target, toolchain_home, snapshot, project, only, workers, timeout,
        restore, save_snapshot, prune_before, strict_cache, report_json):
    """Run the feature matrix and reconcile the dependency cache."""
    console = get_console()
    matrix_path, spec = _load_or_exit(matrix_file)
    settings = _settings(ctx, toolchain_home, snapshot, timeout)
    targets = _targets(ctx, target)

    try:
        jobs = select_jobs(generate_jobs(spec), targets=targets, only=list(only) or None)
        console.print_run_started(
            matrix=matrix_path.name,
            targets=sorted({j.target for j in jobs}),
            job_count=len(jobs),
        )
        report = run_matrix(
            spec,
            settings,
            targets=targets,
            only=list(only) or None,
            project_dir=project,
            max_workers=workers,
            restore=restore,
            save_snapshot=save_snapshot,
            prune_before=prune_before,
            console=console,
        )
    except InvalidMatrixSpec as e:
        console.print_error("Invalid matrix specification", e.message, details=e.problems or None)
        sys.exit(EXIT_INVALID_MATRIX)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_INFRASTRUCTURE_FAILURE)

    console.print_results(report)

    if report_json:
        Path(report_json).write_text(report.to_json(), encoding="utf-8")
        console.print_debug(f"Report written to {report_json}")

    sys.exit(report.exit_code(strict_cache=strict_cache))


@cli.command()
@click.option("--matrix", "matrix_file", default=None, help="Matrix file (.py, .toml or .json)")
@click.option("--target", multiple=True, help="Only show these target architectures")
@click.pass_context
def plan(ctx, matrix_file, target):
    """Print the generated jobs in execution order."""
    console = get_console()
    matrix_path, spec = _load_or_exit(matrix_file)
    try:
        jobs = select_jobs(generate_jobs(spec), targets=_targets(ctx, target))
    except InvalidMatrixSpec as e:
        console.print_error("Invalid matrix specification", e.message, details=e.problems or None)
        sys.exit(EXIT_INVALID_MATRIX)

    console.print_header(f"{matrix_path.name}: {len(jobs)} job(s)")
    for j in jobs:
        console.print_plan_job(j.job_id, [c.render() for c in j.commands])


# -------------------- cache janitor --------------------

@cli.group()
@click.option("--target", required=False, default=None, help="Target architecture (default: $MATRIXCI_TARGET)")
@click.option("--toolchain-home", default=None, help="Toolchain home holding the dependency cache")
@click.option("--snapshot", default=None, help="Snapshot directory persisted between runs")
@click.pass_context
def cache(ctx, target, toolchain_home, snapshot):
    """Inspect, prune, restore or save the dependency cache of one target."""
    settings = _settings(ctx, toolchain_home, snapshot)
    target = target or settings.target
    if not target:
        raise click.UsageError("a target is required (--target or $MATRIXCI_TARGET)")
    store = CacheStore(scoped_home(settings.toolchain_home, target))
    ctx.obj["target"] = target
    ctx.obj["reconciler"] = CacheReconciler(store, Path(settings.snapshot_dir) / target)


def _cache_op(fn):
    try:
        return fn()
    except CacheIOFailure as e:
        get_console().print_error("Cache operation failed", str(e))
        sys.exit(EXIT_INFRASTRUCTURE_FAILURE)


@cache.command("list")
@click.pass_context
def cache_list(ctx):
    """List compressed artifacts and whether each is still extracted."""
    console = get_console()
    reconciler: CacheReconciler = ctx.obj["reconciler"]
    entries = _cache_op(reconciler.store.entries)
    for e in entries:
        mark = "extracted" if e.extracted else "orphan"
        console.print_info(f"{e.relpath}\t{e.artifact_id}\t{e.version or '?'}\t{mark}")
    console.print_info(f"{len(entries)} artifact(s) in {reconciler.store.compressed_root}")


@cache.command("prune")
@click.option("--workers", default=1, show_default=True, type=int, help="Threads used to check entries")
@click.pass_context
def cache_prune(ctx, workers):
    """Delete compressed artifacts that have no extracted counterpart."""
    reconciler: CacheReconciler = ctx.obj["reconciler"]
    outcome = _cache_op(lambda: reconciler.reconcile(workers=workers))
    get_console().print_cache_pruned(ctx.obj["target"], len(outcome.kept), [e.relpath for e in outcome.removed])


@cache.command("restore")
@click.option("--prune", is_flag=True, default=False, help="Prune orphans before clearing extracted trees")
@click.pass_context
def cache_restore(ctx, prune):
    """Restore the snapshot into the live cache and clear extracted trees."""
    reconciler: CacheReconciler = ctx.obj["reconciler"]
    outcome = _cache_op(lambda: reconciler.restore(prune=prune))
    get_console().print_cache_restore(ctx.obj["target"], outcome.reason, outcome.entries)


@cache.command("save")
@click.pass_context
def cache_save(ctx):
    """Write the live compressed namespace to the snapshot directory."""
    reconciler: CacheReconciler = ctx.obj["reconciler"]
    count = _cache_op(reconciler.snapshot)
    get_console().print_cache_saved(ctx.obj["target"], str(reconciler.snapshot_dir), count)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
