from .dsl import cmd, variant, toolchain, toolchains, rule, matrix_spec, MatrixBuilder
from .matrix import MatrixSpec, ModeRule, generate_jobs, select_jobs
from .model import FeatureSet, ToolchainSpec, Job, JobResult, Command
from .runner import run_matrix

__all__ = [
    "cmd",
    "variant",
    "toolchain",
    "toolchains",
    "rule",
    "matrix_spec",
    "MatrixBuilder",
    "MatrixSpec",
    "ModeRule",
    "generate_jobs",
    "select_jobs",
    "FeatureSet",
    "ToolchainSpec",
    "Job",
    "JobResult",
    "Command",
    "run_matrix",
]
