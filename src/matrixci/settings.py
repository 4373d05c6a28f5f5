from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_SNAPSHOT_DIR = ".matrixci/snapshot"
DEFAULT_HOME_ENV = "CARGO_HOME"
DEFAULT_OUTPUT_LIMIT = 4000


def _default_home(env: Mapping[str, str]) -> str:
    if env.get("MATRIXCI_TOOLCHAIN_HOME"):
        return env["MATRIXCI_TOOLCHAIN_HOME"]
    if env.get("CARGO_HOME"):
        return env["CARGO_HOME"]
    return str(Path("~/.cargo").expanduser())


@dataclass(frozen=True)
class Settings:
    """Runtime inputs that come from the environment rather than the matrix file."""
    toolchain_home: Path
    snapshot_dir: Path
    target: Optional[str] = None
    home_env: str = DEFAULT_HOME_ENV
    timeout: Optional[float] = None
    output_limit: int = DEFAULT_OUTPUT_LIMIT

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Settings:
        """Raises ValueError naming the variable when a numeric one does not parse."""
        env = os.environ if env is None else env
        timeout = env.get("MATRIXCI_TIMEOUT")
        return cls(
            toolchain_home=Path(_default_home(env)).expanduser(),
            snapshot_dir=Path(env.get("MATRIXCI_SNAPSHOT_DIR", DEFAULT_SNAPSHOT_DIR)).expanduser(),
            target=env.get("MATRIXCI_TARGET") or None,
            home_env=env.get("MATRIXCI_HOME_ENV", DEFAULT_HOME_ENV),
            timeout=_number(float, "MATRIXCI_TIMEOUT", timeout) if timeout else None,
            output_limit=_number(int, "MATRIXCI_OUTPUT_LIMIT", env.get("MATRIXCI_OUTPUT_LIMIT", DEFAULT_OUTPUT_LIMIT)),
        )


def _number(kind, name: str, raw):
    try:
        return kind(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
