"""Run a builder's compile command inside a build environment."""

from __future__ import annotations

import os
import shlex
import subprocess
from collections.abc import Mapping
from pathlib import Path

from shipyard.builders.base import Builder, BuildSpec
from shipyard.errors import BackendExecutionError, CompileError

STDERR_TAIL = 2000


def run_build(
    builder: Builder,
    spec: BuildSpec,
    *,
    extra_env: Mapping[str, str] | None = None,
) -> Path:
    """Compile one target and return the expected artifact path.

    A non-zero exit is fatal. The artifact path is not checked here; promotion
    reports a missing artifact.
    """
    command = builder.command(spec)
    env = dict(os.environ)
    env.update(spec.params.build_env())
    env.update(extra_env or {})
    env.update(builder.environment(spec))

    try:
        result = subprocess.run(
            command,
            cwd=str(spec.workdir),
            env=env,
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError as exc:
        raise BackendExecutionError(
            "Build tool is not available.",
            hint=f"Install `{command[0]}` or use a builder whose tool is in PATH.",
            context={"builder": builder.name, "command": shlex.join(command)},
        ) from exc

    if result.returncode != 0:
        stderr = result.stderr or ""
        raise CompileError(
            "Build command failed.",
            hint="Fix the compile error and rerun the pipeline; no image was produced.",
            context={
                "builder": builder.name,
                "package": spec.package,
                "binary": spec.binary,
                "returncode": str(result.returncode),
                "command": shlex.join(command),
                "stderr": stderr[-STDERR_TAIL:],
            },
        )
    return spec.workdir / builder.artifact_relpath(spec)
