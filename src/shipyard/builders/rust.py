"""Rust builder."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath

from shipyard.builders.base import BuildSpec, target_relpath


@dataclass(slots=True)
class RustBuilder:
    name: str = "cargo"
    tool: str = "cargo"
    locked: bool = False
    cargo_home: str = "/usr/local/cargo"

    def command(self, spec: BuildSpec) -> tuple[str, ...]:
        flags = list(spec.flags)
        if self.locked and "--locked" not in flags:
            flags.append("--locked")
        if spec.params.profile == "release":
            profile_args: tuple[str, ...] = ("--release",)
        else:
            profile_args = ("--profile", spec.params.profile)
        return (
            self.tool,
            "build",
            *profile_args,
            "--package",
            spec.package,
            "--bin",
            spec.binary,
            *flags,
        )

    def environment(self, spec: BuildSpec) -> dict[str, str]:
        env = dict(spec.env)
        if spec.mount_root is not None:
            cargo_home = spec.mount_root / self.cargo_home.lstrip("/")
            if cargo_home.exists():
                env["CARGO_HOME"] = str(cargo_home)
        return env

    def artifact_relpath(self, spec: BuildSpec) -> PurePosixPath:
        return target_relpath(spec)
