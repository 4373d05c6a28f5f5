"""Tests for pruning, restoring and snapshotting the dependency cache."""

from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from matrixci.cache import CacheStore
from matrixci.errors import CacheIOFailure
from matrixci.reconcile import CacheReconciler

from .conftest import make_artifact


@pytest.fixture
def reconciler(store: CacheStore, tmp_path: Path) -> CacheReconciler:
    return CacheReconciler(store, tmp_path / "snapshot")


def test_orphan_is_removed_and_backed_entry_survives_unchanged(store, reconciler) -> None:
    kept = make_artifact(store, "serde-1.0.104", extracted=True, payload=b"serde bytes")
    orphan = make_artifact(store, "half-1.4.0", extracted=False)
    before = kept.stat().st_mtime_ns

    outcome = reconciler.reconcile()

    assert [e.relpath for e in outcome.removed] == ["github.com-1ecc6299db9ec823/half-1.4.0.crate"]
    assert [e.artifact_id for e in outcome.kept] == ["serde"]
    assert not orphan.exists()
    assert kept.read_bytes() == b"serde bytes"
    assert kept.stat().st_mtime_ns == before


def test_no_orphan_survives_reconciliation(store, reconciler) -> None:
    for i in range(6):
        make_artifact(store, f"dep{i}-0.{i}.0", extracted=i % 2 == 0)

    reconciler.reconcile()

    entries = store.entries()
    assert len(entries) == 3
    assert all(e.extracted for e in entries)


def test_reconcile_is_idempotent(store, reconciler) -> None:
    make_artifact(store, "serde-1.0.104")
    make_artifact(store, "half-1.4.0", extracted=False)

    reconciler.reconcile()
    after_first = store.fingerprint()
    second = reconciler.reconcile()

    assert second.removed == []
    assert store.fingerprint() == after_first


def test_parallel_reconcile_matches_sequential(store, reconciler) -> None:
    for i in range(20):
        make_artifact(store, f"dep{i}-1.0.{i}", extracted=i % 3 == 0)

    outcome = reconciler.reconcile(workers=4)

    assert len(outcome.removed) == 13
    assert len(outcome.kept) == 7
    assert all(e.extracted for e in store.entries())


def test_snapshot_round_trip_into_fresh_home(store, reconciler, tmp_path: Path) -> None:
    make_artifact(store, "serde-1.0.104", payload=b"a" * 100)
    make_artifact(store, "libc-0.2.66", index="other-registry", payload=b"b" * 7)

    written = reconciler.snapshot()
    assert written == 2
    assert sorted(p.name for p in (tmp_path / "snapshot").iterdir()) == ["registry"]

    fresh = CacheStore(tmp_path / "fresh-home")
    outcome = CacheReconciler(fresh, tmp_path / "snapshot").restore()

    assert outcome.restored is True
    assert outcome.entries == 2
    assert fresh.fingerprint() == store.fingerprint()
    for rel in fresh.inventory():
        assert (fresh.compressed_root / rel).read_bytes() == (store.compressed_root / rel).read_bytes()


def test_restore_without_snapshot_is_a_cold_cache(store, reconciler) -> None:
    make_artifact(store, "serde-1.0.104")

    outcome = reconciler.restore()

    assert outcome.restored is False
    assert "cold" in outcome.reason
    # live compressed namespace is left alone, extracted trees are cleared
    assert store.inventory() == ["github.com-1ecc6299db9ec823/serde-1.0.104.crate"]
    assert not store.extracted_root.exists()


def test_restore_replaces_live_cache_and_clears_extracted(store, reconciler, tmp_path: Path) -> None:
    make_artifact(store, "serde-1.0.104")
    reconciler.snapshot()

    make_artifact(store, "stale-0.1.0")
    outcome = reconciler.restore()

    assert outcome.restored is True
    assert store.inventory() == ["github.com-1ecc6299db9ec823/serde-1.0.104.crate"]
    assert not store.extracted_root.exists()


def test_restore_with_prune_uses_leftover_extracted_trees(store, reconciler) -> None:
    make_artifact(store, "serde-1.0.104")
    make_artifact(store, "half-1.4.0")
    reconciler.snapshot()
    # only serde is still unpacked locally
    shutil.rmtree(store.extracted_root / "github.com-1ecc6299db9ec823" / "half-1.4.0")

    outcome = reconciler.restore(prune=True)

    assert [e.artifact_id for e in outcome.pruned] == ["half"]
    assert store.inventory() == ["github.com-1ecc6299db9ec823/serde-1.0.104.crate"]
    assert not store.extracted_root.exists()


def test_snapshot_replaces_previous_snapshot(store, reconciler, tmp_path: Path) -> None:
    make_artifact(store, "serde-1.0.104")
    make_artifact(store, "half-1.4.0", extracted=False)
    reconciler.snapshot()

    reconciler.reconcile()
    reconciler.snapshot()

    snap = CacheStore(tmp_path / "snapshot")
    assert snap.inventory() == ["github.com-1ecc6299db9ec823/serde-1.0.104.crate"]
    assert not (tmp_path / "snapshot.tmp").exists()
    assert not (tmp_path / "snapshot.old").exists()


def test_failed_snapshot_keeps_previous_snapshot(store, reconciler, tmp_path: Path, monkeypatch) -> None:
    make_artifact(store, "serde-1.0.104")
    reconciler.snapshot()
    make_artifact(store, "half-1.4.0")

    def broken_copytree(*args, **kwargs):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr("matrixci.reconcile.shutil.copytree", broken_copytree)
    with pytest.raises(CacheIOFailure) as exc:
        reconciler.snapshot()

    assert exc.value.operation == "snapshot"
    assert CacheStore(tmp_path / "snapshot").inventory() == ["github.com-1ecc6299db9ec823/serde-1.0.104.crate"]
    assert not (tmp_path / "snapshot.tmp").exists()


def test_restore_falls_back_to_old_snapshot_after_interrupted_swap(store, reconciler, tmp_path: Path) -> None:
    make_artifact(store, "serde-1.0.104")
    reconciler.snapshot()
    # crash between "current -> .old" and "tmp -> current"
    (tmp_path / "snapshot").rename(tmp_path / "snapshot.old")

    fresh = CacheStore(tmp_path / "fresh")
    outcome = CacheReconciler(fresh, tmp_path / "snapshot").restore()

    assert outcome.restored is True
    assert outcome.reason == "restored previous snapshot"
    assert fresh.inventory() == ["github.com-1ecc6299db9ec823/serde-1.0.104.crate"]


def test_failed_restore_leaves_cold_cache(store, reconciler, monkeypatch) -> None:
    make_artifact(store, "serde-1.0.104")
    reconciler.snapshot()

    def broken_copytree(*args, **kwargs):
        raise OSError(13, "Permission denied")

    monkeypatch.setattr("matrixci.reconcile.shutil.copytree", broken_copytree)
    with pytest.raises(CacheIOFailure) as exc:
        reconciler.restore()

    assert exc.value.operation == "restore"
    assert store.entries() == []


def test_snapshot_namespace_that_is_not_a_directory_fails_restore(store, reconciler, tmp_path: Path) -> None:
    make_artifact(store, "serde-1.0.104")
    registry = tmp_path / "snapshot" / "registry"
    registry.mkdir(parents=True)
    (registry / "cache").write_text("garbage", encoding="utf-8")

    with pytest.raises(CacheIOFailure) as exc:
        reconciler.restore()

    assert exc.value.operation == "restore"
    assert store.entries() == []


def test_snapshot_counts_only_artifacts(store, reconciler) -> None:
    make_artifact(store, "serde-1.0.104")
    make_artifact(store, "half-1.4.0")
    (store.compressed_root / "github.com-1ecc6299db9ec823" / ".package-cache").write_text("lock", encoding="utf-8")

    assert reconciler.snapshot() == 2
