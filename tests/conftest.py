from __future__ import annotations

import sys
from pathlib import Path

import pytest

from matrixci.cache import CacheStore
from matrixci.settings import Settings
from matrixci.ui.console import Console, set_console


def py(code: str) -> tuple[str, ...]:
    """argv running `code` with the current interpreter."""
    return (sys.executable, "-c", code)


def make_artifact(store: CacheStore, stem: str, *, index: str = "github.com-1ecc6299db9ec823",
                  extracted: bool = True, payload: bytes | None = None) -> Path:
    crate = store.compressed_root / index / f"{stem}.crate"
    crate.parent.mkdir(parents=True, exist_ok=True)
    crate.write_bytes(payload if payload is not None else stem.encode("utf-8"))
    if extracted:
        src = store.extracted_root / index / stem
        src.mkdir(parents=True, exist_ok=True)
        (src / "Cargo.toml").write_text(f'[package]\nname = "{stem}"\n', encoding="utf-8")
    return crate


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(debug=False)
    set_console(console)
    return console


@pytest.fixture
def store(tmp_path: Path) -> CacheStore:
    return CacheStore(tmp_path / "home")


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        toolchain_home=tmp_path / "toolchains",
        snapshot_dir=tmp_path / "snapshot",
        home_env="CARGO_HOME",
        timeout=30,
    )
