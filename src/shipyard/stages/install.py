"""Runtime package installers."""

from __future__ import annotations

import os
import re
import shlex
import subprocess
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from shipyard.errors import PackageInstallError

# Debian policy: lowercase alphanumerics plus + - . and at least two characters.
PACKAGE_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9+.-]+$")


class PackageInstaller(Protocol):
    name: str

    def install(self, packages: tuple[str, ...], *, root: Path) -> tuple[str, ...]:
        """Install *packages* without recommended extras; return the installed set."""

    def render(self, packages: tuple[str, ...]) -> str:
        """Return the shell line that performs the install inside an image build."""


def normalize_packages(packages: tuple[str, ...]) -> tuple[str, ...]:
    invalid = [package for package in packages if not PACKAGE_NAME_PATTERN.fullmatch(package)]
    if invalid:
        raise PackageInstallError(
            "Invalid runtime package names.",
            hint="Use Debian package names (lowercase, digits, + - .).",
            context={"operation": "install", "packages": ",".join(invalid)},
        )
    return tuple(dict.fromkeys(packages))


@dataclass(slots=True)
class AptInstaller:
    name: str = "apt"
    apt_get: str = "apt-get"

    def render(self, packages: tuple[str, ...]) -> str:
        selected = normalize_packages(packages)
        if not selected:
            return ""
        return (
            f"{self.apt_get} update && \\\n"
            f"    {self.apt_get} install -y --no-install-recommends "
            f"{' '.join(shlex.quote(package) for package in selected)}"
        )

    def install(self, packages: tuple[str, ...], *, root: Path) -> tuple[str, ...]:
        """Install on the running system; *root* must be ``/``."""
        selected = normalize_packages(packages)
        if not selected:
            return ()
        if root != Path("/"):
            raise PackageInstallError(
                "apt installer only installs into the running system.",
                hint="Use the Docker backend to install into a separate image root.",
                context={"operation": "install", "root": str(root)},
            )
        env = dict(os.environ)
        env["DEBIAN_FRONTEND"] = "noninteractive"
        for command in (
            (self.apt_get, "update"),
            (self.apt_get, "install", "-y", "--no-install-recommends", *selected),
        ):
            self._run(command, env=env)
        return selected

    def _run(self, command: tuple[str, ...], *, env: dict[str, str]) -> None:
        try:
            result = subprocess.run(
                command,
                env=env,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise PackageInstallError(
                "Package manager is not available.",
                context={"operation": "install", "command": shlex.join(command)},
            ) from exc
        if result.returncode != 0:
            raise PackageInstallError(
                "Package installation failed.",
                hint="Package repositories may be unreachable; rerun the pipeline.",
                context={
                    "operation": "install",
                    "command": shlex.join(command),
                    "returncode": str(result.returncode),
                    "stderr": (result.stderr or "")[-2000:],
                },
            )


@dataclass(slots=True)
class ManifestInstaller:
    """Record the declared package set in the image config without installing."""

    name: str = "manifest"

    def render(self, packages: tuple[str, ...]) -> str:
        return AptInstaller().render(packages)

    def install(self, packages: tuple[str, ...], *, root: Path) -> tuple[str, ...]:
        selected = normalize_packages(packages)
        if selected:
            warnings.warn(
                (
                    "Runtime packages are recorded in the image config and are not "
                    "installed into the host image root."
                ),
                RuntimeWarning,
                stacklevel=2,
            )
        return selected
