# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Tuple

MODE_CHECK = "check"
MODE_TEST = "test"
MODE_LINT = "lint"
MODE_FORMAT_CHECK = "format-check"

MODES = (MODE_CHECK, MODE_TEST, MODE_LINT, MODE_FORMAT_CHECK)
# Modes that run once per toolchain instead of once per feature variant.
TOOLCHAIN_SCOPED_MODES = (MODE_LINT, MODE_FORMAT_CHECK)

PROFILE_DEBUG = "debug"
PROFILE_RELEASE = "release"
PROFILES = (PROFILE_DEBUG, PROFILE_RELEASE)

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"
OUTCOME_SKIPPED = "skipped"


@dataclass(frozen=True)
class FeatureSet:
    """An unordered set of feature names, rendered sorted."""
    names: frozenset[str] = frozenset()

    @classmethod
    def of(cls, names: Iterable[str] = ()) -> FeatureSet:
        return cls(frozenset(n.strip() for n in names if n.strip()))

    def __iter__(self):
        return iter(sorted(self.names))

    def __len__(self) -> int:
        return len(self.names)

    def __contains__(self, name: object) -> bool:
        return name in self.names

    def issuperset(self, other: FeatureSet) -> bool:
        return self.names >= other.names

    @property
    def label(self) -> str:
        """Stable identity used in job ids: `a+b+c` or `no-features`."""
        return "+".join(self) if self.names else "no-features"

    def render(self) -> str:
        """Space separated, the way `--features` expects it."""
        return " ".join(self)

    def __str__(self) -> str:
        return "{" + ", ".join(self) + "}"


@dataclass(frozen=True)
class ToolchainSpec:
    """
    A toolchain on one target architecture.

    `version` is empty when the channel tracks a moving release (beta,
    stable, nightly); pinned toolchains carry a numeric version instead.
    """
    channel: str
    target: str
    version: str = ""

    @property
    def name(self) -> str:
        """Toolchain selector, e.g. `beta-x86_64` or `1.39.0-i686`."""
        return f"{self.version or self.channel}-{self.target}"

    @property
    def pinned(self) -> bool:
        return bool(self.version)

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Command:
    """One explicit step of a job: a name plus an argv (never a shell string)."""
    name: str
    argv: Tuple[str, ...]
    cwd: str | None = None

    def render(self) -> str:
        return " ".join(self.argv)


@dataclass(frozen=True)
class Job:
    """
    One concrete (toolchain, feature variant, mode, profile) unit of work.

    `index` is the generation ordinal; reports are ordered by it.
    """
    index: int
    toolchain: ToolchainSpec
    features: FeatureSet
    mode: str
    profile: str
    commands: Tuple[Command, ...]

    @property
    def target(self) -> str:
        return self.toolchain.target

    @property
    def mode_label(self) -> str:
        return self.mode if self.profile == PROFILE_DEBUG else f"{self.mode}-{self.profile}"

    @property
    def job_id(self) -> str:
        """Enough to re-run exactly this job: toolchain, mode/profile, features."""
        return f"{self.toolchain.name}/{self.mode_label}/{self.features.label}"

    def __str__(self) -> str:
        return self.job_id


@dataclass
class JobResult:
    job: Job
    outcome: str
    failed_index: Optional[int] = None
    failed_command: Optional[str] = None
    exit_code: Optional[int] = None
    diagnostic: str = ""
    reason: str = ""             # why a job was skipped
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.outcome == OUTCOME_SUCCESS


@dataclass(frozen=True)
class CacheEntry:
    """
    A compressed artifact in the cache, plus whether its extracted tree exists.

    `index` is the registry directory both namespaces share
    (e.g. `github.com-1ecc6299db9ec823`).
    """
    index: str
    artifact_id: str
    version: str
    path: Path
    extracted: bool = False

    @property
    def stem(self) -> str:
        return self.path.name[: -len(self.path.suffix)] if self.path.suffix else self.path.name

    @property
    def key(self) -> Tuple[str, str]:
        return (self.index, self.stem)

    @property
    def relpath(self) -> str:
        return f"{self.index}/{self.path.name}"


@dataclass
class CacheWarning:
    """A recoverable cache problem recorded by a worker."""
    target: str
    operation: str
    message: str


@dataclass
class WorkerReport:
    target: str
    results: list[JobResult] = field(default_factory=list)
    cache_warnings: list[CacheWarning] = field(default_factory=list)
    fatal: Optional[str] = None
    removed: list[str] = field(default_factory=list)
