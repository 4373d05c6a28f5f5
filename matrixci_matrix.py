# matrixci_matrix.py
# Feature matrix for the `az` crate: every fail-on-warnings combination is
# checked on beta, the broadest set is linted and tested in both profiles,
# and the library alone is tested on the minimum supported toolchain.
from __future__ import annotations

from itertools import combinations

from matrixci import matrix_spec, rule, toolchains

OPTIONAL = ("az", "f16", "serde", "std")


def _variants():
    # broadest first: the wide build surfaces compile errors earliest
    out = []
    for size in range(len(OPTIONAL), -1, -1):
        for combo in combinations(OPTIONAL, size):
            out.append(("fail-on-warnings",) + combo)
    return out


def matrix():
    tested = ["fail-on-warnings az f16 serde"]
    return matrix_spec(
        features=("fail-on-warnings",) + OPTIONAL,
        variants=_variants(),
        toolchains=toolchains(["x86_64", "i686"], "beta", ("minimum-supported", "1.39.0")),
        rules=[
            rule("lint", channels=["beta"]),
            rule("check", channels=["beta"]),
            rule("test", variants=tested, channels=["beta"]),
            rule("test", profile="release", variants=tested, channels=["beta"]),
            rule("format-check", channels=["beta"]),
            rule("test", variants=tested, channels=["minimum-supported"], args=["--lib"]),
            rule("test", profile="release", variants=tested, channels=["minimum-supported"], args=["--lib"]),
        ],
        full_support_from="1.40",
    )
