# reconcile.py
from __future__ import annotations

import os
import shutil
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .cache import COMPRESSED_DIR, REGISTRY_DIR, CacheStore
from .errors import CacheIOFailure
from .model import CacheEntry


@dataclass
class ReconcileOutcome:
    kept: List[CacheEntry] = field(default_factory=list)
    removed: List[CacheEntry] = field(default_factory=list)


@dataclass
class RestoreOutcome:
    restored: bool
    reason: str                  # human readable
    entries: int = 0
    pruned: List[CacheEntry] = field(default_factory=list)


class CacheReconciler:
    """
    Keeps a CacheStore small and portable between runs.

    snapshot_dir/
      registry/cache/<index>/<artifact>-<version>.crate

    The snapshot holds exactly the compressed namespace. It is replaced
    by rename so a crash mid-copy leaves the previous snapshot usable.
    """

    def __init__(self, store: CacheStore, snapshot_dir: str | Path):
        self.store = store
        self.snapshot_dir = Path(snapshot_dir).expanduser().resolve()

    # ---- paths ----
    @property
    def _tmp_dir(self) -> Path:
        return self.snapshot_dir.with_name(self.snapshot_dir.name + ".tmp")

    @property
    def _old_dir(self) -> Path:
        return self.snapshot_dir.with_name(self.snapshot_dir.name + ".old")

    @staticmethod
    def _compressed_in(root: Path) -> Path:
        return root / REGISTRY_DIR / COMPRESSED_DIR

    def _readable_snapshot(self) -> Optional[Path]:
        """The snapshot to restore from, falling back to `.old` after an interrupted swap."""
        for root in (self.snapshot_dir, self._old_dir):
            if root.is_dir():
                return root
        return None

    # ---- reconciliation ----
    def _check(self, entry: CacheEntry) -> tuple[CacheEntry, bool]:
        if self.store.has_extracted(entry):
            return entry, False
        return entry, self.store.delete(entry)

    def reconcile(self, workers: int = 1) -> ReconcileOutcome:
        """
        Delete every compressed artifact that has no extracted counterpart.

        Entries are independent, so `workers > 1` checks them on a thread pool.
        Running it twice in a row removes nothing the second time.
        """
        entries = self.store.entries()
        if workers > 1 and len(entries) > 1:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                checked = list(pool.map(self._check, entries))
        else:
            checked = [self._check(e) for e in entries]

        outcome = ReconcileOutcome()
        for entry, removed in checked:
            if removed:
                outcome.removed.append(entry)
            elif self.store.has_extracted(entry):
                outcome.kept.append(entry)
        return outcome

    # ---- restore ----
    def restore(self, *, prune: bool = False) -> RestoreOutcome:
        """
        Populate the live compressed namespace from the snapshot, then clear
        the extracted namespace so jobs always extract fresh.

        With `prune`, reconcile against leftover extracted trees before they
        are cleared. A missing snapshot is a cold cache, not an error.
        """
        source = self._readable_snapshot()
        restored = False
        count = 0
        if source is not None:
            src_cache = self._compressed_in(source)
            dest = self.store.compressed_root
            if src_cache.exists() and not src_cache.is_dir():
                self.store.clear_compressed()
                raise CacheIOFailure(operation="restore", path=str(src_cache), message="not a directory")
            try:
                self.store.clear_compressed()
                dest.parent.mkdir(parents=True, exist_ok=True)
                if src_cache.is_dir():
                    shutil.copytree(src_cache, dest)
                else:
                    dest.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                # leave a clean cold cache behind rather than a half copy
                shutil.rmtree(dest, ignore_errors=True)
                raise CacheIOFailure(operation="restore", path=str(src_cache), message=str(e)) from e
            restored = True
            count = len(self.store.entries())

        pruned: List[CacheEntry] = []
        if prune:
            pruned = self.reconcile().removed

        self.store.clear_extracted()

        if not restored:
            return RestoreOutcome(restored=False, reason="no snapshot (cold cache)", pruned=pruned)
        reason = "restored snapshot" if source == self.snapshot_dir else "restored previous snapshot"
        return RestoreOutcome(restored=True, reason=reason, entries=count, pruned=pruned)

    # ---- snapshot ----
    def snapshot(self) -> int:
        """
        Copy the compressed namespace out to the snapshot location.
        Returns the number of artifacts written.
        """
        tmp = self._tmp_dir
        old = self._old_dir
        src = self.store.compressed_root
        try:
            if tmp.exists():
                shutil.rmtree(tmp)
            dest = self._compressed_in(tmp)
            dest.parent.mkdir(parents=True, exist_ok=True)
            if src.is_dir():
                shutil.copytree(src, dest)
            else:
                dest.mkdir(parents=True, exist_ok=True)

            # swap: current -> .old, tmp -> current, drop .old
            if self.snapshot_dir.exists():
                if old.exists():
                    shutil.rmtree(old)
                os.replace(self.snapshot_dir, old)
            os.replace(tmp, self.snapshot_dir)
            if old.exists():
                shutil.rmtree(old)
        except OSError as e:
            shutil.rmtree(tmp, ignore_errors=True)
            raise CacheIOFailure(operation="snapshot", path=str(self.snapshot_dir), message=str(e)) from e

        return len(CacheStore(self.snapshot_dir).entries())
