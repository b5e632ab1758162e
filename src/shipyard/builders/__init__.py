"""Compiler builders."""

from .base import Builder, BuildSpec, profile_dir
from .execute import run_build
from .rust import RustBuilder
from .script import ScriptBuilder

__all__ = [
    "BuildSpec",
    "Builder",
    "RustBuilder",
    "ScriptBuilder",
    "profile_dir",
    "run_build",
]
