"""Tests for job generation, ordering and matrix validation."""

from __future__ import annotations

import pytest

from matrixci.dsl import MatrixBuilder, cmd, matrix_spec, rule, toolchain, toolchains, variant
from matrixci.errors import InvalidMatrixSpec
from matrixci.matrix import generate_jobs, group_by_target, render_argv, select_jobs


def simple_spec(**overrides):
    kwargs = dict(
        features=["x"],
        variants=[[], ["x"]],
        toolchains=[toolchain("alpha", "x86_64"), toolchain("beta", "x86_64")],
        rules=[rule("check")],
        probe=None,
    )
    kwargs.update(overrides)
    return matrix_spec(**kwargs)


def test_two_toolchains_two_variants_one_mode_gives_four_ordered_jobs() -> None:
    jobs = generate_jobs(simple_spec())

    assert [(j.toolchain.channel, j.features.label) for j in jobs] == [
        ("alpha", "no-features"),
        ("alpha", "x"),
        ("beta", "no-features"),
        ("beta", "x"),
    ]
    assert [j.index for j in jobs] == [0, 1, 2, 3]
    assert all(j.mode == "check" for j in jobs)


def test_job_count_matches_toolchains_variants_modes() -> None:
    spec = simple_spec(
        features=["a", "b", "c"],
        variants=["a b c", "a b", "a", ""],
        toolchains=toolchains(["x86_64", "i686"], "stable", "beta"),
        rules=[rule("check"), rule("test"), rule("test", profile="release")],
    )
    jobs = generate_jobs(spec)

    assert len(jobs) == 4 * 4 * 3
    assert len({j.job_id for j in jobs}) == len(jobs)


def test_generation_is_deterministic() -> None:
    spec = simple_spec(features=["a", "b"], variants=["a b", "b", "a", ""])
    first = [j.job_id for j in generate_jobs(spec)]
    second = [j.job_id for j in generate_jobs(spec)]
    assert first == second


def test_jobs_for_one_toolchain_are_contiguous() -> None:
    spec = simple_spec(rules=[rule("lint"), rule("check"), rule("format-check")])
    names = [j.toolchain.name for j in generate_jobs(spec)]
    # once a toolchain ends it never reappears
    seen = []
    for n in names:
        if not seen or seen[-1] != n:
            assert n not in seen
            seen.append(n)
    assert seen == ["alpha-x86_64", "beta-x86_64"]


def test_lint_and_format_run_once_per_toolchain_on_broadest_variant() -> None:
    spec = simple_spec(
        features=["a", "b", "c"],
        variants=["a", "a b c", "a b"],
        rules=[rule("lint"), rule("check"), rule("format-check")],
    )
    jobs = generate_jobs(spec)
    lint = [j for j in jobs if j.mode == "lint"]
    fmt = [j for j in jobs if j.mode == "format-check"]

    assert len(lint) == 2 and len(fmt) == 2
    assert all(j.features == variant("a b c") for j in lint)
    # rule order within a toolchain: lint, then every check, then format
    assert [j.mode for j in jobs[:5]] == ["lint", "check", "check", "check", "format-check"]


def test_declared_variant_order_is_kept_within_a_rule() -> None:
    spec = simple_spec(
        features=["a", "b"],
        variants=["a b", "a", "b", ""],
        toolchains=[toolchain("beta", "x86_64")],
        rules=[rule("test", variants=["", "a b"])],
    )
    assert [j.features.label for j in generate_jobs(spec)] == ["a+b", "no-features"]


def test_channels_restrict_rules_to_tiers() -> None:
    spec = simple_spec(
        toolchains=toolchains(["x86_64"], "beta", ("minimum-supported", "1.39.0")),
        rules=[rule("lint", channels=["beta"]), rule("test", variants=["x"], channels=["minimum-supported"])],
    )
    jobs = generate_jobs(spec)
    assert [j.job_id for j in jobs] == ["beta-x86_64/lint/x", "1.39.0-x86_64/test/x"]


def test_toolchain_below_full_support_runs_reduced_subset() -> None:
    spec = simple_spec(
        toolchains=toolchains(["x86_64"], ("stable", "1.45.0"), ("minimum-supported", "1.39.0")),
        rules=[rule("lint"), rule("check"), rule("format-check")],
        full_support_from="1.40",
    )
    jobs = generate_jobs(spec)
    old = [j.mode for j in jobs if j.toolchain.version == "1.39.0"]
    new = [j.mode for j in jobs if j.toolchain.version == "1.45.0"]

    assert old == ["check", "check"]
    assert new == ["lint", "check", "check", "format-check"]


@pytest.mark.parametrize(("pinned", "threshold"), [("1.40", "1.40.0"), ("1.40.0", "1.40"), ("1.40.0", "1.40.0")])
def test_toolchain_at_full_support_version_keeps_every_mode(pinned: str, threshold: str) -> None:
    spec = simple_spec(
        toolchains=[toolchain("minimum-supported", "x86_64", pinned)],
        rules=[rule("lint"), rule("check", variants=["x"])],
        full_support_from=threshold,
    )
    assert [j.mode for j in generate_jobs(spec)] == ["lint", "check"]


def test_release_profile_is_a_separate_job() -> None:
    spec = simple_spec(
        toolchains=[toolchain("beta", "x86_64")],
        rules=[rule("test", variants=["x"]), rule("test", profile="release", variants=["x"])],
    )
    debug, release = generate_jobs(spec)

    assert debug.job_id == "beta-x86_64/test/x"
    assert release.job_id == "beta-x86_64/test-release/x"
    assert "--release" not in debug.commands[0].argv
    assert "--release" in release.commands[0].argv
    assert debug.features == release.features


def test_default_recipes_render_cargo_commands() -> None:
    spec = simple_spec(
        toolchains=[toolchain("minimum-supported", "i686", "1.39.0")],
        rules=[rule("check"), rule("test", profile="release", variants=["x"], args=["--lib"])],
    )
    jobs = generate_jobs(spec)

    assert jobs[0].commands[0].argv == ("cargo", "+1.39.0-i686", "check", "--all-targets")
    assert jobs[1].commands[0].argv == ("cargo", "+1.39.0-i686", "check", "--all-targets", "--features", "x")
    assert jobs[2].commands[0].argv == (
        "cargo", "+1.39.0-i686", "test", "--release", "--lib", "--features", "x",
    )


def test_render_argv_leaves_unknown_braces_alone() -> None:
    tc = toolchain("beta", "x86_64")
    argv = render_argv(("echo", "{target}:{features}", "{not_a_placeholder}"), tc, variant("b a"))
    assert argv == ("echo", "x86_64:a b", "{not_a_placeholder}")


def test_custom_recipe_with_several_commands() -> None:
    spec = simple_spec(
        toolchains=[toolchain("beta", "x86_64")],
        rules=[rule("test", variants=["x"])],
        recipes={"test": [cmd("build", "make", "{features}"), cmd("run", "make", "test")]},
    )
    (job,) = generate_jobs(spec)
    assert [c.name for c in job.commands] == ["build", "run"]
    assert job.commands[0].argv == ("make", "x")


def test_builder_matches_functional_form() -> None:
    built = (
        MatrixBuilder(["x"])
        .variant()
        .variant("x")
        .toolchain("alpha", "x86_64")
        .toolchain("beta", "x86_64")
        .rule("check")
        .probe()
        .build()
    )
    assert [j.job_id for j in generate_jobs(built)] == [j.job_id for j in generate_jobs(simple_spec())]


# -------------------- validation --------------------

def _problems(spec) -> list[str]:
    with pytest.raises(InvalidMatrixSpec) as exc:
        generate_jobs(spec)
    return exc.value.problems


def test_unknown_feature_is_rejected() -> None:
    problems = _problems(simple_spec(variants=[[], ["x", "nope"]]))
    assert any("unknown feature" in p and "nope" in p for p in problems)


def test_malformed_toolchain_is_rejected() -> None:
    problems = _problems(simple_spec(toolchains=[toolchain("Beta!", "x86 64"), toolchain("beta", "x86_64", "one")]))
    assert any("malformed channel" in p for p in problems)
    assert any("malformed target" in p for p in problems)
    assert any("malformed version" in p for p in problems)


def test_minimum_supported_channel_needs_a_version() -> None:
    problems = _problems(simple_spec(toolchains=[toolchain("minimum-supported", "x86_64")]))
    assert any("pinned version" in p for p in problems)


def test_lattice_rules_are_enforced() -> None:
    spec = simple_spec(
        features=["std", "alloc", "serde", "simd", "scalar"],
        variants=["serde", "simd scalar", "std serde"],
        exclusive=[["simd", "scalar"]],
        requires={"serde": ["std"]},
    )
    problems = _problems(spec)
    assert any("mutually exclusive" in p for p in problems)
    assert sum("requires" in p for p in problems) == 1


def test_duplicate_variant_and_toolchain_are_rejected() -> None:
    spec = simple_spec(
        variants=["x", "x", ""],
        toolchains=[toolchain("beta", "x86_64"), toolchain("beta", "x86_64")],
    )
    problems = _problems(spec)
    assert any("duplicate feature variant" in p for p in problems)
    assert any("duplicate toolchain" in p for p in problems)


def test_lint_over_all_variants_is_rejected() -> None:
    problems = _problems(simple_spec(rules=[rule("lint", variants="all")]))
    assert any("single variant" in p for p in problems)


def test_unknown_mode_profile_and_variant_reference() -> None:
    spec = simple_spec(rules=[rule("bench"), rule("test", profile="fast"), rule("check", variants=["y"])])
    problems = _problems(spec)
    assert any("unknown mode" in p for p in problems)
    assert any("unknown profile" in p for p in problems)
    assert any("not a declared variant" in p for p in problems)


def test_rules_producing_the_same_job_are_rejected() -> None:
    with pytest.raises(InvalidMatrixSpec, match="duplicate jobs"):
        generate_jobs(simple_spec(rules=[rule("check"), rule("check", variants=["x"])]))


def test_invalid_spec_produces_no_jobs_at_all() -> None:
    spec = simple_spec(variants=[[], ["x"], ["missing"]])
    jobs = None
    with pytest.raises(InvalidMatrixSpec):
        jobs = generate_jobs(spec)
    assert jobs is None


# -------------------- selection --------------------

def test_select_by_target_and_job_id() -> None:
    spec = simple_spec(toolchains=toolchains(["x86_64", "i686"], "beta"))
    jobs = generate_jobs(spec)

    i686 = select_jobs(jobs, targets=["i686"])
    assert [j.job_id for j in i686] == ["beta-i686/check/no-features", "beta-i686/check/x"]

    one = select_jobs(jobs, only=["beta-x86_64/check/x"])
    assert [j.index for j in one] == [1]

    assert list(group_by_target(jobs)) == ["x86_64", "i686"]


def test_select_unknown_job_id_or_target_fails() -> None:
    jobs = generate_jobs(simple_spec())
    with pytest.raises(InvalidMatrixSpec, match="unknown job id"):
        select_jobs(jobs, only=["beta-x86_64/check/zzz"])
    with pytest.raises(InvalidMatrixSpec, match="target"):
        select_jobs(jobs, targets=["riscv64"])
