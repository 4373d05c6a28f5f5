# cache.py
from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

from .errors import CacheIOFailure
from .model import CacheEntry

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# The dependency cache under a toolchain home is two parallel namespaces
# keyed by the same artifact identity:
#
#   home/
#     registry/
#       cache/<index>/<artifact>-<version>.crate     (compressed)
#       src/<index>/<artifact>-<version>/            (extracted)
#
# A compressed artifact is only worth keeping while its extracted tree
# exists: build commands unpack every artifact they actually use, so an
# artifact without an extracted copy was not needed by this run.
#
# CacheStore only models the namespaces (scan, presence, delete).
# Pruning and snapshotting live in reconcile.py.
# ---------------------------------------------------------------------

REGISTRY_DIR = "registry"
COMPRESSED_DIR = "cache"
EXTRACTED_DIR = "src"
ARTIFACT_SUFFIX = ".crate"

# `serde-1.0.104`, `foo-2d-0.1.0-alpha.1`: the version is the first `-<semver>` tail.
_STEM_RE = re.compile(r"^(?P<name>.+?)-(?P<version>\d+\.\d+\.\d+(?:[-+].*)?)$")


def parse_stem(stem: str) -> Tuple[str, str]:
    """Split `<artifact>-<version>`; unparseable stems keep an empty version."""
    m = _STEM_RE.match(stem)
    if not m:
        return stem, ""
    return m.group("name"), m.group("version")


def _io_failure(operation: str, path: Path, exc: OSError) -> CacheIOFailure:
    return CacheIOFailure(operation=operation, path=str(path), message=exc.strerror or str(exc))


class CacheStore:
    """
    File-based view of one toolchain home's dependency cache.

    One store per worker: callers pass the architecture-scoped home
    explicitly instead of sharing a process-wide path.
    """

    def __init__(self, home: str | Path):
        self.home = Path(home).expanduser().resolve()

    @property
    def registry(self) -> Path:
        return self.home / REGISTRY_DIR

    @property
    def compressed_root(self) -> Path:
        return self.registry / COMPRESSED_DIR

    @property
    def extracted_root(self) -> Path:
        return self.registry / EXTRACTED_DIR

    def extracted_path(self, entry: CacheEntry) -> Path:
        return self.extracted_root / entry.index / entry.stem

    def has_extracted(self, entry: CacheEntry) -> bool:
        return self.extracted_path(entry).exists()

    def _iter_artifacts(self) -> Iterable[Path]:
        root = self.compressed_root
        if not root.exists():
            return []
        if not root.is_dir():
            raise CacheIOFailure(operation="scan", path=str(root), message="not a directory")
        found: List[Path] = []
        # deterministic traversal: cache/<index>/<file>.crate only
        for index_dir in sorted(root.iterdir()):
            if not index_dir.is_dir():
                continue
            for p in sorted(index_dir.iterdir()):
                if p.is_file() and p.name.endswith(ARTIFACT_SUFFIX):
                    found.append(p)
        return found

    def entries(self) -> List[CacheEntry]:
        """Scan the compressed namespace, deriving each entry's `extracted` flag."""
        try:
            out: List[CacheEntry] = []
            for p in self._iter_artifacts():
                stem = p.name[: -len(ARTIFACT_SUFFIX)]
                artifact_id, version = parse_stem(stem)
                out.append(
                    CacheEntry(
                        index=p.parent.name,
                        artifact_id=artifact_id,
                        version=version,
                        path=p,
                        extracted=(self.extracted_root / p.parent.name / stem).exists(),
                    )
                )
            return out
        except OSError as e:
            raise _io_failure("scan", self.compressed_root, e) from e

    def inventory(self) -> List[str]:
        """Sorted `<index>/<file>` listing of the compressed namespace."""
        return [e.relpath for e in self.entries()]

    def fingerprint(self) -> Dict[str, int]:
        """relpath -> size, enough to compare two namespaces."""
        return {e.relpath: e.path.stat().st_size for e in self.entries()}

    def delete(self, entry: CacheEntry) -> bool:
        """Remove a compressed artifact. Returns False if it was already gone."""
        try:
            if not entry.path.exists():
                return False
            entry.path.unlink()
        except OSError as e:
            raise _io_failure("delete", entry.path, e) from e

        # drop an index directory left empty; a parallel delete may get there first
        parent = entry.path.parent
        try:
            if parent != self.compressed_root and not any(parent.iterdir()):
                parent.rmdir()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise _io_failure("delete", parent, e) from e
        return True

    def clear_extracted(self) -> None:
        self._clear(self.extracted_root, "clear-extracted")

    def clear_compressed(self) -> None:
        self._clear(self.compressed_root, "clear-compressed")

    def _clear(self, path: Path, operation: str) -> None:
        try:
            if path.is_dir():
                shutil.rmtree(path)
            elif path.exists():
                path.unlink()
        except OSError as e:
            raise _io_failure(operation, path, e) from e


def scoped_home(home: str | Path, target: str) -> Path:
    """Architecture-scoped toolchain home so parallel workers never share a cache."""
    return Path(home).expanduser() / target
