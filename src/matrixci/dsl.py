# dsl.py
from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence, Union

from .matrix import (
    DEFAULT_PROBE,
    DEFAULT_RECIPES,
    VARIANTS_ALL,
    VARIANTS_BROADEST,
    CommandTemplate,
    MatrixSpec,
    ModeRule,
)
from .model import PROFILE_DEBUG, TOOLCHAIN_SCOPED_MODES, FeatureSet, ToolchainSpec


# ---------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------

def cmd(name: str, *argv: str) -> CommandTemplate:
    """Create a command template: cmd("check", "cargo", "+{toolchain}", "check")."""
    if not argv:
        raise ValueError(f"cmd({name!r}) needs at least one argument")
    return CommandTemplate(name=name, argv=tuple(argv))


def variant(*features: str) -> FeatureSet:
    """variant("az", "f16") or variant("az f16"); variant() is the empty set."""
    names: List[str] = []
    for f in features:
        names.extend(f.split())
    return FeatureSet.of(names)


def toolchain(channel: str, target: str, version: str = "") -> ToolchainSpec:
    return ToolchainSpec(channel=channel, target=target, version=version)


def toolchains(targets: Iterable[str], *tiers: Union[str, tuple]) -> List[ToolchainSpec]:
    """
    Cross tiers with targets, target-major so each architecture's toolchains
    stay together:

        toolchains(["x86_64", "i686"], "beta", ("minimum-supported", "1.39.0"))
    """
    out: List[ToolchainSpec] = []
    for target in targets:
        for tier in tiers:
            if isinstance(tier, tuple):
                channel, version = tier
            else:
                channel, version = tier, ""
            out.append(ToolchainSpec(channel=channel, target=target, version=version))
    return out


def rule(
    mode: str,
    *,
    profile: str = PROFILE_DEBUG,
    variants: Union[str, Sequence[Union[FeatureSet, Sequence[str], str]], None] = None,
    channels: Optional[Sequence[str]] = None,
    args: Optional[Sequence[str]] = None,
) -> ModeRule:
    """
    Declare a mode rule. Lint and format-check default to the broadest
    variant, everything else to all variants.
    """
    if variants is None:
        selector: Union[str, tuple] = VARIANTS_BROADEST if mode in TOOLCHAIN_SCOPED_MODES else VARIANTS_ALL
    elif isinstance(variants, str):
        selector = variants
    else:
        picked = []
        for v in variants:
            if isinstance(v, FeatureSet):
                picked.append(v)
            elif isinstance(v, str):
                picked.append(variant(v))
            else:
                picked.append(variant(*v))
        selector = tuple(picked)
    return ModeRule(
        mode=mode,
        profile=profile,
        variants=selector,
        channels=tuple(channels or ()),
        args=tuple(args or ()),
    )


def matrix_spec(
    *,
    features: Sequence[str],
    variants: Sequence[Union[FeatureSet, Sequence[str], str]],
    toolchains: Sequence[ToolchainSpec],
    rules: Sequence[ModeRule],
    exclusive: Sequence[Sequence[str]] = (),
    requires: Optional[Dict[str, Sequence[str]]] = None,
    recipes: Optional[Dict[str, Sequence[CommandTemplate]]] = None,
    probe: Union[Sequence[str], None, bool] = True,
    full_support_from: Optional[str] = None,
) -> MatrixSpec:
    """
    Functional constructor. `recipes` entries override the default ones
    per mode; `probe=True` keeps the default probe, `None`/False disables it.
    """
    merged = dict(DEFAULT_RECIPES)
    for mode, templates in (recipes or {}).items():
        merged[mode] = tuple(templates)

    if probe is True:
        probe_argv = DEFAULT_PROBE
    elif not probe:
        probe_argv = None
    else:
        probe_argv = tuple(probe)

    return MatrixSpec(
        features=tuple(features),
        variants=tuple(
            v if isinstance(v, FeatureSet) else (variant(v) if isinstance(v, str) else variant(*v))
            for v in variants
        ),
        toolchains=tuple(toolchains),
        rules=tuple(rules),
        exclusive=tuple(frozenset(g) for g in exclusive),
        requires={k: frozenset(v) for k, v in (requires or {}).items()},
        recipes=merged,
        probe=probe_argv,
        full_support_from=full_support_from,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class MatrixBuilder:
    """
    Fluent alternative to matrix_spec():

        MatrixBuilder(["std", "serde"])
            .variant("std serde").variant("std").variant()
            .toolchain("beta", "x86_64")
            .rule("check")
            .build()
    """

    def __init__(self, features: Iterable[str]):
        self._features = list(features)
        self._variants: List[FeatureSet] = []
        self._toolchains: List[ToolchainSpec] = []
        self._rules: List[ModeRule] = []
        self._exclusive: List[List[str]] = []
        self._requires: Dict[str, List[str]] = {}
        self._recipes: Dict[str, List[CommandTemplate]] = {}
        self._probe: Union[Sequence[str], None, bool] = True
        self._full_support_from: Optional[str] = None

    def variant(self, *features: str):
        self._variants.append(variant(*features))
        return self

    def toolchain(self, channel: str, target: str, version: str = ""):
        self._toolchains.append(toolchain(channel, target, version))
        return self

    def rule(self, mode: str, **kwargs):
        self._rules.append(rule(mode, **kwargs))
        return self

    def exclusive(self, *features: str):
        self._exclusive.append(list(features))
        return self

    def requires(self, feature: str, *prerequisites: str):
        self._requires.setdefault(feature, []).extend(prerequisites)
        return self

    def recipe(self, mode: str, *templates: CommandTemplate):
        self._recipes[mode] = list(templates)
        return self

    def probe(self, *argv: str):
        self._probe = argv or None
        return self

    def full_support_from(self, version: str):
        self._full_support_from = version
        return self

    def build(self) -> MatrixSpec:
        return matrix_spec(
            features=self._features,
            variants=self._variants,
            toolchains=self._toolchains,
            rules=self._rules,
            exclusive=self._exclusive,
            requires=self._requires,
            recipes=self._recipes,
            probe=self._probe,
            full_support_from=self._full_support_from,
        )
