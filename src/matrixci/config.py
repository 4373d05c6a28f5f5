# config.py
from __future__ import annotations

import json
import runpy
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .dsl import cmd, matrix_spec, rule, toolchain
from .errors import InvalidMatrixSpec
from .matrix import MatrixSpec

DEFAULT_MATRIX_FILES = ("matrixci_matrix.py", "matrixci.toml", "matrixci.json")


# -------------------- Declarative schema --------------------

class ToolchainModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    channel: str
    version: str = ""
    target: Optional[str] = None


class RuleModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mode: str
    profile: str = "debug"
    variants: Union[str, List[Union[str, List[str]]], None] = None
    channels: List[str] = Field(default_factory=list)
    args: List[str] = Field(default_factory=list)


class CommandModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    argv: List[str] = Field(min_length=1)


class MatrixDocument(BaseModel):
    """The shape of a matrixci.toml / matrixci.json file."""
    model_config = ConfigDict(extra="forbid")

    features: List[str]
    variants: List[Union[str, List[str]]]
    targets: List[str] = Field(default_factory=list)
    toolchains: List[ToolchainModel]
    rules: List[RuleModel]
    exclusive: List[List[str]] = Field(default_factory=list)
    requires: Dict[str, List[str]] = Field(default_factory=dict)
    recipes: Dict[str, List[CommandModel]] = Field(default_factory=dict)
    probe: Union[bool, List[str], None] = True
    full_support_from: Optional[str] = None

    @model_validator(mode="after")
    def _targets_for_untargeted(self) -> MatrixDocument:
        if any(tc.target is None for tc in self.toolchains) and not self.targets:
            raise ValueError("toolchains without a target need a top-level `targets` list")
        return self

    def expanded_toolchains(self) -> list:
        """Explicitly targeted entries first, then the rest crossed with `targets`."""
        out = [toolchain(tc.channel, tc.target, tc.version) for tc in self.toolchains if tc.target]
        untargeted = [tc for tc in self.toolchains if not tc.target]
        for target in self.targets:
            for tc in untargeted:
                out.append(toolchain(tc.channel, target, tc.version))
        return out

    def to_spec(self) -> MatrixSpec:
        return matrix_spec(
            features=self.features,
            variants=self.variants,
            toolchains=self.expanded_toolchains(),
            rules=[
                rule(r.mode, profile=r.profile, variants=r.variants, channels=r.channels, args=r.args)
                for r in self.rules
            ],
            exclusive=self.exclusive,
            requires=self.requires,
            recipes={mode: [cmd(c.name, *c.argv) for c in cmds] for mode, cmds in self.recipes.items()},
            probe=self.probe,
            full_support_from=self.full_support_from,
        )


def _validation_problems(e: ValidationError) -> list[str]:
    problems = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        problems.append(f"{loc}: {err.get('msg', 'invalid value')}")
    return problems


def parse_matrix_document(data: Any, source: str = "<data>") -> MatrixSpec:
    try:
        doc = MatrixDocument.model_validate(data)
    except ValidationError as e:
        raise InvalidMatrixSpec(f"invalid matrix file {source}", _validation_problems(e)) from e
    return doc.to_spec()


# ----------------------------------------------------------------------
# Matrix loading (python file or declarative document)
# ----------------------------------------------------------------------

def _load_python(path: Path) -> MatrixSpec:
    module_name = f"matrixci_matrix_{path.stem}"
    try:
        globals_dict = runpy.run_path(str(path), run_name=module_name)
    except InvalidMatrixSpec:
        raise
    except Exception as e:
        raise InvalidMatrixSpec(f"could not execute matrix file {path.name}", [f"{type(e).__name__}: {e}"]) from e

    spec = None
    if "matrix" in globals_dict and callable(globals_dict["matrix"]):
        try:
            spec = globals_dict["matrix"]()
        except InvalidMatrixSpec:
            raise
        except Exception as e:
            raise InvalidMatrixSpec(f"matrix() in {path.name} failed", [f"{type(e).__name__}: {e}"]) from e
    elif "MATRIX" in globals_dict:
        spec = globals_dict["MATRIX"]

    if not isinstance(spec, MatrixSpec):
        raise InvalidMatrixSpec(
            f"matrix file {path.name} must define matrix() -> MatrixSpec or MATRIX = MatrixSpec(...)"
        )
    return spec


def load_matrix(path: str | Path) -> MatrixSpec:
    """
    Load a matrix from a file path.

    Supported:
      - .py    defining matrix() -> MatrixSpec or MATRIX = ...
      - .toml  / .json documents matching MatrixDocument
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Matrix file not found: {p}")

    if p.suffix == ".py":
        return _load_python(p)
    try:
        if p.suffix == ".toml":
            with p.open("rb") as f:
                data = tomllib.load(f)
        elif p.suffix == ".json":
            data = json.loads(p.read_text(encoding="utf-8"))
        else:
            raise InvalidMatrixSpec(f"unsupported matrix file type {p.suffix!r} (use .py, .toml or .json)")
    except (tomllib.TOMLDecodeError, json.JSONDecodeError) as e:
        raise InvalidMatrixSpec(f"could not parse matrix file {p.name}", [str(e)]) from e
    return parse_matrix_document(data, source=p.name)


def find_matrix_files(directory: str | Path = ".") -> list[Path]:
    d = Path(directory)
    return [d / name for name in DEFAULT_MATRIX_FILES if (d / name).exists()]
