"""Frozen pipeline definition handed to graph validation, emitters and backends."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

import cbor2

from shipyard.builders.base import Builder, BuildSpec
from shipyard.models import BuildStageSpec, CacheArea, RuntimeSpec


@dataclass(frozen=True, slots=True)
class PipelineDefinition:
    name: str
    source: Path
    build: BuildStageSpec
    runtime: RuntimeSpec
    builder: Builder
    source_ignore: tuple[str, ...] = (".git",)

    def build_spec(self, *, workdir: Path, mount_root: Path | None = None) -> BuildSpec:
        return BuildSpec(
            package=self.build.package,
            binary=self.build.binary,
            workdir=workdir,
            params=self.build.params,
            mount_root=mount_root,
        )

    def artifact_relpath(self) -> PurePosixPath:
        return self.builder.artifact_relpath(
            self.build_spec(workdir=Path(self.build.workdir)),
        )

    def artifact_cache(self) -> CacheArea | None:
        """Relative cache area that shadows the artifact's location, if any."""
        relpath = self.artifact_relpath()
        for area in self.build.caches:
            if not area.is_relative:
                continue
            prefix = PurePosixPath(area.normalized_path)
            if relpath == prefix or prefix in relpath.parents:
                return area
        return None

    def payload(self) -> dict[str, object]:
        command = self.builder.command(self.build_spec(workdir=Path(self.build.workdir)))
        return {
            "name": self.name,
            "build": {
                "stage": self.build.stage,
                "base_image": self.build.base_image,
                "package": self.build.package,
                "binary": self.build.binary,
                "workdir": self.build.workdir,
                "builder": self.builder.name,
                "command": list(command),
                "artifact": str(self.artifact_relpath()),
                "params": {
                    "panic_policy": self.build.params.panic_policy,
                    "version_tag": self.build.params.version_tag,
                    "profile": self.build.params.profile,
                },
                "caches": [
                    {
                        "name": area.name,
                        "mount_path": area.normalized_path,
                        "scope": area.scope,
                        "env_var": area.env_var,
                    }
                    for area in self.build.caches
                ],
            },
            "runtime": {
                "stage": self.runtime.stage,
                "base_image": self.runtime.base_image,
                "packages": list(self.runtime.packages),
                "workdir": self.runtime.workdir,
                "datasets": [
                    {
                        "name": dataset.name,
                        "source": dataset.source,
                        "dest": dataset.dest,
                        "env_var": dataset.env_var,
                    }
                    for dataset in self.runtime.datasets
                ],
                "env": self.runtime.declared_env(),
                "entrypoint": list(self.runtime.entrypoint_for(self.build.binary)),
            },
        }

    def digest(self) -> str:
        encoded = cbor2.dumps(self.payload(), canonical=True)
        return hashlib.sha256(encoded).hexdigest()
