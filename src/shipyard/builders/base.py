"""Typed interfaces for compiler builders."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Protocol

from shipyard.models import BuildParams

# cargo names the output directory of the builtin dev profile "debug"
PROFILE_DIRS: dict[str, str] = {"dev": "debug", "test": "debug", "bench": "release"}


@dataclass(frozen=True, slots=True)
class BuildSpec:
    package: str
    binary: str
    workdir: Path
    params: BuildParams = field(default_factory=BuildParams)
    mount_root: Path | None = None
    flags: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)


class Builder(Protocol):
    name: str

    def command(self, spec: BuildSpec) -> tuple[str, ...]:
        """Return the argv that compiles exactly one binary target."""

    def environment(self, spec: BuildSpec) -> dict[str, str]:
        """Return builder-specific environment for the compile command."""

    def artifact_relpath(self, spec: BuildSpec) -> PurePosixPath:
        """Return where the artifact lands, relative to the working directory."""


def profile_dir(profile: str) -> str:
    return PROFILE_DIRS.get(profile, profile)


def target_relpath(spec: BuildSpec) -> PurePosixPath:
    return PurePosixPath("target") / profile_dir(spec.params.profile) / spec.binary
