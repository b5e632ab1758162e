"""Script-based fallback builder."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath

from shipyard.builders.base import BuildSpec, target_relpath


@dataclass(slots=True)
class ScriptBuilder:
    script: str
    artifact: str | None = None
    shell: str = "sh"
    name: str = "script"

    def command(self, spec: BuildSpec) -> tuple[str, ...]:
        return (self.shell, "-c", self.script, *spec.flags)

    def environment(self, spec: BuildSpec) -> dict[str, str]:
        env = dict(spec.env)
        env["SHIPYARD_PACKAGE"] = spec.package
        env["SHIPYARD_BINARY"] = spec.binary
        env["SHIPYARD_ARTIFACT"] = str(self.artifact_relpath(spec))
        return env

    def artifact_relpath(self, spec: BuildSpec) -> PurePosixPath:
        if self.artifact is not None:
            return PurePosixPath(self.artifact)
        return target_relpath(spec)
