# matrix.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .errors import InvalidMatrixSpec
from .model import (
    MODE_CHECK,
    MODE_FORMAT_CHECK,
    MODE_LINT,
    MODE_TEST,
    MODES,
    PROFILE_DEBUG,
    PROFILE_RELEASE,
    PROFILES,
    TOOLCHAIN_SCOPED_MODES,
    Command,
    FeatureSet,
    Job,
    ToolchainSpec,
)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# A MatrixSpec is fully declarative:
#   - features:   the universe of feature names
#   - variants:   ordered FeatureSets to test (declared, never a powerset)
#   - toolchains: ordered ToolchainSpecs (channel, version, target)
#   - rules:      which mode/profile runs on which variants and tiers
#   - recipes:    command templates per mode
#
# generate_jobs() validates everything first and only then expands:
#   for toolchain in toolchains:
#       for rule in rules (applicable to the toolchain tier):
#           for variant in rule's selected variants:
#               yield Job
# ---------------------------------------------------------------------

VARIANTS_ALL = "all"
VARIANTS_BROADEST = "broadest"

VariantSelector = Union[str, Tuple[FeatureSet, ...]]

_CHANNEL_RE = re.compile(r"^[a-z][a-z0-9-]*$")
_VERSION_RE = re.compile(r"^\d+(\.\d+){0,2}$")
_TARGET_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
_PLACEHOLDER_RE = re.compile(r"\{(toolchain|channel|version|target|features|profile)\}")

# Whole-token placeholders that expand to zero or more arguments.
SPLICE_FEATURES = "{feature_args}"
SPLICE_PROFILE = "{profile_args}"
SPLICE_EXTRA = "{extra_args}"


@dataclass(frozen=True)
class CommandTemplate:
    """A command whose argv tokens may contain placeholders."""
    name: str
    argv: Tuple[str, ...]


@dataclass(frozen=True)
class ModeRule:
    """
    Declares that `mode`/`profile` runs on the selected variants of every
    toolchain whose channel is in `channels` (empty means every channel).
    """
    mode: str
    profile: str = PROFILE_DEBUG
    variants: VariantSelector = VARIANTS_ALL
    channels: Tuple[str, ...] = ()
    args: Tuple[str, ...] = ()

    def applies_to(self, toolchain: ToolchainSpec) -> bool:
        return not self.channels or toolchain.channel in self.channels


DEFAULT_RECIPES: Dict[str, Tuple[CommandTemplate, ...]] = {
    MODE_LINT: (
        CommandTemplate("clippy", ("cargo", "+{toolchain}", "clippy", "--all-targets", SPLICE_FEATURES)),
    ),
    MODE_CHECK: (
        CommandTemplate("check", ("cargo", "+{toolchain}", "check", "--all-targets", SPLICE_FEATURES)),
    ),
    MODE_TEST: (
        CommandTemplate(
            "test",
            ("cargo", "+{toolchain}", "test", SPLICE_PROFILE, SPLICE_EXTRA, SPLICE_FEATURES),
        ),
    ),
    MODE_FORMAT_CHECK: (
        CommandTemplate("fmt", ("cargo", "+{toolchain}", "fmt", "--", "--check")),
    ),
}

DEFAULT_PROBE: Tuple[str, ...] = ("cargo", "+{toolchain}", "--version")


@dataclass
class MatrixSpec:
    features: Tuple[str, ...]
    variants: Tuple[FeatureSet, ...]
    toolchains: Tuple[ToolchainSpec, ...]
    rules: Tuple[ModeRule, ...]
    # Mutually exclusive groups: a variant may hold at most one of each.
    exclusive: Tuple[frozenset, ...] = ()
    # feature -> features it cannot be enabled without
    requires: Dict[str, frozenset] = field(default_factory=dict)
    recipes: Dict[str, Tuple[CommandTemplate, ...]] = field(default_factory=lambda: dict(DEFAULT_RECIPES))
    probe: Optional[Tuple[str, ...]] = DEFAULT_PROBE
    # Pinned toolchains older than this drop lint/format-check.
    full_support_from: Optional[str] = None

    @property
    def targets(self) -> List[str]:
        seen: List[str] = []
        for tc in self.toolchains:
            if tc.target not in seen:
                seen.append(tc.target)
        return seen

    def broadest_variant(self) -> FeatureSet:
        best = self.variants[0]
        for v in self.variants[1:]:
            if len(v) > len(best):
                best = v
        return best


# ---------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------

def _parse_version(text: str) -> Tuple[int, ...]:
    # `1.40` and `1.40.0` name the same release
    return (tuple(int(p) for p in text.split(".")) + (0, 0, 0))[:3]


def _toolchain_problems(tc: ToolchainSpec) -> List[str]:
    problems: List[str] = []
    if not isinstance(tc.channel, str) or not _CHANNEL_RE.match(tc.channel or ""):
        problems.append(f"toolchain {tc!r}: malformed channel {tc.channel!r}")
    if not isinstance(tc.target, str) or not _TARGET_RE.match(tc.target or ""):
        problems.append(f"toolchain {tc!r}: malformed target {tc.target!r}")
    if tc.version and not _VERSION_RE.match(tc.version):
        problems.append(f"toolchain {tc!r}: malformed version {tc.version!r}")
    if tc.channel == "minimum-supported" and not tc.version:
        problems.append(f"toolchain {tc!r}: minimum-supported channel needs a pinned version")
    return problems


def _variant_problems(spec: MatrixSpec, variant: FeatureSet) -> List[str]:
    problems: List[str] = []
    universe = set(spec.features)
    unknown = sorted(n for n in variant.names if n not in universe)
    if unknown:
        problems.append(f"variant {variant}: unknown feature(s) {unknown}")
    for group in spec.exclusive:
        clash = sorted(variant.names & group)
        if len(clash) > 1:
            problems.append(f"variant {variant}: mutually exclusive features {clash}")
    for name in sorted(variant.names):
        missing = sorted(spec.requires.get(name, frozenset()) - variant.names)
        if missing:
            problems.append(f"variant {variant}: feature {name!r} requires {missing}")
    return problems


def _resolve_variants(spec: MatrixSpec, rule: ModeRule) -> Tuple[List[FeatureSet], List[str]]:
    sel = rule.variants
    if sel == VARIANTS_ALL:
        return list(spec.variants), []
    if sel == VARIANTS_BROADEST:
        return [spec.broadest_variant()], []
    if isinstance(sel, str):
        return [], [f"rule {rule.mode}: unknown variant selector {sel!r}"]

    picked: List[FeatureSet] = []
    problems: List[str] = []
    for wanted in sel:
        if wanted not in spec.variants:
            problems.append(f"rule {rule.mode}: variant {wanted} is not a declared variant")
            continue
        if wanted not in picked:
            picked.append(wanted)
    # keep declared order regardless of how the rule lists them
    picked.sort(key=spec.variants.index)
    return picked, problems


def validate(spec: MatrixSpec) -> None:
    """Raise InvalidMatrixSpec listing every problem found."""
    problems: List[str] = []

    if len(set(spec.features)) != len(spec.features):
        problems.append("feature universe contains duplicates")
    for group in spec.exclusive:
        unknown = sorted(set(group) - set(spec.features))
        if unknown:
            problems.append(f"exclusive group references unknown feature(s) {unknown}")
    for name, needs in spec.requires.items():
        unknown = sorted(({name} | set(needs)) - set(spec.features))
        if unknown:
            problems.append(f"prerequisites of {name!r} reference unknown feature(s) {unknown}")

    if not spec.variants:
        problems.append("no feature variants declared")
    seen_variants = set()
    for v in spec.variants:
        if v in seen_variants:
            problems.append(f"duplicate feature variant {v}")
        seen_variants.add(v)
        problems.extend(_variant_problems(spec, v))

    if not spec.toolchains:
        problems.append("no toolchains declared")
    seen_tc = set()
    for tc in spec.toolchains:
        if not isinstance(tc, ToolchainSpec):
            problems.append(f"not a toolchain: {tc!r}")
            continue
        if tc.name in seen_tc:
            problems.append(f"duplicate toolchain {tc.name}")
        seen_tc.add(tc.name)
        problems.extend(_toolchain_problems(tc))

    if spec.full_support_from is not None and not _VERSION_RE.match(spec.full_support_from):
        problems.append(f"malformed full_support_from version {spec.full_support_from!r}")

    if not spec.rules:
        problems.append("no mode rules declared")
    for rule in spec.rules:
        if rule.mode not in MODES:
            problems.append(f"unknown mode {rule.mode!r} (expected one of {list(MODES)})")
            continue
        if rule.profile not in PROFILES:
            problems.append(f"rule {rule.mode}: unknown profile {rule.profile!r}")
        if rule.mode not in spec.recipes or not spec.recipes[rule.mode]:
            problems.append(f"rule {rule.mode}: no command recipe for this mode")
        if spec.variants:
            picked, rule_problems = _resolve_variants(spec, rule)
            problems.extend(rule_problems)
            if rule.mode in TOOLCHAIN_SCOPED_MODES and len(picked) > 1:
                problems.append(f"rule {rule.mode}: must select a single variant, got {len(picked)}")

    if problems:
        raise InvalidMatrixSpec("invalid matrix specification", problems)


# ---------------------------------------------------------------------
# Expansion
# ---------------------------------------------------------------------

def _below_full_support(spec: MatrixSpec, tc: ToolchainSpec) -> bool:
    if spec.full_support_from is None or not tc.pinned:
        return False
    return _parse_version(tc.version) < _parse_version(spec.full_support_from)


def render_argv(
    template: Sequence[str],
    toolchain: ToolchainSpec,
    features: FeatureSet = FeatureSet(),
    profile: str = PROFILE_DEBUG,
    extra: Sequence[str] = (),
) -> Tuple[str, ...]:
    values = {
        "toolchain": toolchain.name,
        "channel": toolchain.channel,
        "version": toolchain.version,
        "target": toolchain.target,
        "features": features.render(),
        "profile": profile,
    }
    out: List[str] = []
    for token in template:
        if token == SPLICE_FEATURES:
            if features.names:
                out.extend(["--features", features.render()])
        elif token == SPLICE_PROFILE:
            if profile == PROFILE_RELEASE:
                out.append("--release")
        elif token == SPLICE_EXTRA:
            out.extend(extra)
        else:
            out.append(_PLACEHOLDER_RE.sub(lambda m: values[m.group(1)], token))
    return tuple(out)


def _commands_for(spec: MatrixSpec, rule: ModeRule, tc: ToolchainSpec, features: FeatureSet) -> Tuple[Command, ...]:
    return tuple(
        Command(name=t.name, argv=render_argv(t.argv, tc, features, rule.profile, rule.args))
        for t in spec.recipes[rule.mode]
    )


def generate_jobs(spec: MatrixSpec) -> List[Job]:
    """Validate `spec` and expand it into the ordered job list."""
    validate(spec)

    jobs: List[Job] = []
    for tc in spec.toolchains:
        reduced = _below_full_support(spec, tc)
        for rule in spec.rules:
            if not rule.applies_to(tc):
                continue
            if reduced and rule.mode in TOOLCHAIN_SCOPED_MODES:
                continue
            variants, _ = _resolve_variants(spec, rule)
            for features in variants:
                jobs.append(
                    Job(
                        index=len(jobs),
                        toolchain=tc,
                        features=features,
                        mode=rule.mode,
                        profile=rule.profile,
                        commands=_commands_for(spec, rule, tc, features),
                    )
                )

    ids: Dict[str, int] = {}
    dupes: List[str] = []
    for j in jobs:
        if j.job_id in ids:
            dupes.append(j.job_id)
        ids[j.job_id] = j.index
    if dupes:
        raise InvalidMatrixSpec("matrix produces duplicate jobs", sorted(set(dupes)))

    return jobs


def select_jobs(
    jobs: Iterable[Job],
    *,
    targets: Optional[Sequence[str]] = None,
    only: Optional[Sequence[str]] = None,
) -> List[Job]:
    """Filter to architectures and/or exact job ids, keeping generation order."""
    jobs = list(jobs)
    if targets:
        unknown = sorted(set(targets) - {j.target for j in jobs})
        if unknown:
            raise InvalidMatrixSpec("no jobs for requested target(s)", unknown)
    selected = [j for j in jobs if not targets or j.target in targets]
    if only:
        wanted = set(only)
        known = {j.job_id for j in selected}
        missing = sorted(wanted - known)
        if missing:
            raise InvalidMatrixSpec("unknown job id(s) requested", missing)
        selected = [j for j in selected if j.job_id in wanted]
    return selected


def group_by_target(jobs: Iterable[Job]) -> Dict[str, List[Job]]:
    groups: Dict[str, List[Job]] = {}
    for j in jobs:
        groups.setdefault(j.target, []).append(j)
    return groups
