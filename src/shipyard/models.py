"""Core typed dataclasses for pipeline definitions and run results."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Literal

from shipyard.errors import ValidationError

PanicPolicy = Literal["abort", "unwind"]
CacheScope = Literal["shared", "pipeline"]
StageKind = Literal["source", "build", "extract", "runtime"]

PANIC_POLICIES: tuple[PanicPolicy, ...] = ("abort", "unwind")
CACHE_SCOPES: tuple[CacheScope, ...] = ("shared", "pipeline")

ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
CACHE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
# The version tag doubles as the image tag.
VERSION_TAG_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")

DEFAULT_WORKDIR = "/app"


@dataclass(frozen=True, slots=True)
class CacheArea:
    """Named persistent area mounted into a build environment.

    Contents are acceleration state only: a build must succeed and produce the
    same artifact when the area is empty.
    """

    name: str
    mount_path: str
    scope: CacheScope = "shared"
    env_var: str | None = None

    def __post_init__(self) -> None:
        if not CACHE_NAME_PATTERN.fullmatch(self.name):
            raise ValidationError(
                "Cache area names must be non-empty path-safe identifiers.",
                context={"cache": self.name},
            )
        if not self.mount_path:
            raise ValidationError(
                "Cache area requires a mount path.",
                context={"cache": self.name},
            )
        if ".." in PurePosixPath(self.mount_path).parts:
            raise ValidationError(
                "Cache mount path must not escape the build environment.",
                context={"cache": self.name, "mount_path": self.mount_path},
            )
        if self.scope not in CACHE_SCOPES:
            raise ValidationError(
                "Unknown cache scope.",
                hint=f"Use one of: {', '.join(CACHE_SCOPES)}.",
                context={"cache": self.name, "scope": str(self.scope)},
            )
        if self.env_var is not None and not ENV_NAME_PATTERN.fullmatch(self.env_var):
            raise ValidationError(
                "Cache env_var must be a valid environment variable name.",
                context={"cache": self.name, "env_var": self.env_var},
            )

    @property
    def is_relative(self) -> bool:
        """Relative mounts live under the build working directory."""
        return not self.mount_path.startswith("/")

    @property
    def normalized_path(self) -> str:
        path = PurePosixPath(self.mount_path)
        if self.is_relative:
            return str(PurePosixPath(*[part for part in path.parts if part != "."]))
        return str(path)


@dataclass(frozen=True, slots=True)
class BuildParams:
    panic_policy: PanicPolicy = "abort"
    version_tag: str | None = None
    profile: str = "release"

    def __post_init__(self) -> None:
        if self.panic_policy not in PANIC_POLICIES:
            raise ValidationError(
                "Unknown panic policy.",
                hint=f"Use one of: {', '.join(PANIC_POLICIES)}.",
                context={"panic_policy": str(self.panic_policy)},
            )
        if not self.profile:
            raise ValidationError("Build profile must be non-empty.")
        if self.version_tag is not None and not VERSION_TAG_PATTERN.fullmatch(self.version_tag):
            raise ValidationError(
                "Version tag is not a valid image tag.",
                hint="Use at most 128 letters, digits, '_', '.' and '-'.",
                context={"version_tag": self.version_tag},
            )

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        profile: str = "release",
    ) -> BuildParams:
        """Read ``PANIC_POLICY`` and ``VERSION_TAG`` from the environment."""
        env = os.environ if environ is None else environ
        panic_policy = env.get("PANIC_POLICY") or "abort"
        version_tag = env.get("VERSION_TAG") or None
        return cls(
            panic_policy=panic_policy,  # type: ignore[arg-type]
            version_tag=version_tag,
            profile=profile,
        )

    @property
    def panic_env_name(self) -> str:
        return f"CARGO_PROFILE_{self.profile.upper().replace('-', '_')}_PANIC"

    def build_env(self) -> dict[str, str]:
        """Environment baked into the build stage."""
        env = {self.panic_env_name: self.panic_policy}
        if self.version_tag is not None:
            env["VERSION_TAG"] = self.version_tag
            # Older server builds read the provenance from GITHUB_SHA.
            env["GITHUB_SHA"] = self.version_tag
        return env


@dataclass(frozen=True, slots=True)
class AuxiliaryDataSet:
    """Directory copied verbatim from the source tree into the runtime image."""

    name: str
    source: str
    dest: str
    env_var: str

    def __post_init__(self) -> None:
        if not self.name:
            raise ValidationError("Dataset name must be non-empty.")
        if not self.source or self.source.startswith("/"):
            raise ValidationError(
                "Dataset source must be a path relative to the source tree.",
                context={"dataset": self.name, "source": self.source},
            )
        if ".." in PurePosixPath(self.source).parts:
            raise ValidationError(
                "Dataset source must not escape the source tree.",
                context={"dataset": self.name, "source": self.source},
            )
        if not self.dest.startswith("/"):
            raise ValidationError(
                "Dataset destination must be an absolute image path.",
                context={"dataset": self.name, "dest": self.dest},
            )
        if not ENV_NAME_PATTERN.fullmatch(self.env_var):
            raise ValidationError(
                "Dataset env_var must be a valid environment variable name.",
                context={"dataset": self.name, "env_var": self.env_var},
            )


@dataclass(frozen=True, slots=True)
class BuildStageSpec:
    stage: str
    base_image: str
    package: str
    binary: str
    workdir: str = DEFAULT_WORKDIR
    params: BuildParams = field(default_factory=BuildParams)
    caches: tuple[CacheArea, ...] = ()


@dataclass(frozen=True, slots=True)
class RuntimeSpec:
    base_image: str
    packages: tuple[str, ...] = ()
    workdir: str = DEFAULT_WORKDIR
    datasets: tuple[AuxiliaryDataSet, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    entrypoint: tuple[str, ...] = ()
    stage: str = "runtime"

    def declared_env(self) -> dict[str, str]:
        """Static env plus one path variable per dataset."""
        env = dict(sorted(self.env.items()))
        for dataset in self.datasets:
            env[dataset.env_var] = dataset.dest
        return env

    def entrypoint_for(self, binary: str) -> tuple[str, ...]:
        if self.entrypoint:
            return self.entrypoint
        return (str(PurePosixPath(self.workdir) / binary),)


@dataclass(frozen=True, slots=True)
class BuildEnvironment:
    """Disposable host directory standing in for one build stage."""

    stage: str
    base_image: str
    root: Path
    workdir: Path
    params: BuildParams
    caches: tuple[CacheArea, ...] = ()

    @property
    def mount_root(self) -> Path:
        """Host directory that absolute cache mounts are mapped under."""
        return self.root / "mounts"


@dataclass(frozen=True, slots=True)
class Artifact:
    name: str
    build_path: str
    promoted_path: Path
    sha256: str


@dataclass(frozen=True, slots=True)
class RuntimeImage:
    reference: str
    digest: str
    config: Mapping[str, object]
    root: Path | None = None
    config_path: Path | None = None

    @property
    def env(self) -> dict[str, str]:
        env = self.config.get("env", {})
        return dict(env) if isinstance(env, Mapping) else {}

    @property
    def entrypoint(self) -> tuple[str, ...]:
        entrypoint = self.config.get("entrypoint", ())
        return tuple(entrypoint) if isinstance(entrypoint, list | tuple) else ()

    def resolve(self, image_path: str) -> Path:
        """Map an absolute image path to the materialized host path."""
        if self.root is None:
            raise ValidationError(
                "Image has no materialized root filesystem.",
                context={"reference": self.reference},
            )
        return self.root / image_path.lstrip("/")


@dataclass(frozen=True, slots=True)
class StageResult:
    stage: str
    kind: StageKind
    duration_s: float
    outputs: Mapping[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class PipelineResult:
    pipeline: str
    run_id: str
    stages: list[StageResult] = field(default_factory=list)
    artifact: Artifact | None = None
    image: RuntimeImage | None = None
    report_path: Path | None = None
    cache_hits: list[str] = field(default_factory=list)
    cache_misses: list[str] = field(default_factory=list)

    def stage(self, name: str) -> StageResult | None:
        for result in self.stages:
            if result.stage == name:
                return result
        return None


__all__ = [
    "Artifact",
    "AuxiliaryDataSet",
    "BuildEnvironment",
    "BuildParams",
    "BuildStageSpec",
    "CACHE_SCOPES",
    "CacheArea",
    "CacheScope",
    "DEFAULT_WORKDIR",
    "PANIC_POLICIES",
    "PanicPolicy",
    "PipelineResult",
    "RuntimeImage",
    "RuntimeSpec",
    "StageKind",
    "StageResult",
]
