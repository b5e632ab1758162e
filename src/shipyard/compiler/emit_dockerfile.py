"""BuildKit Dockerfile emission.

Renders a pipeline definition into a two-stage Dockerfile:
- a builder stage that snapshots the source, compiles one target with cache
  mounts, and copies the binary out of the cached target directory
- a runtime stage on a separate base image with the declared packages, the
  promoted binary, each dataset, dataset path variables, and an exec-form
  entrypoint
"""

from __future__ import annotations

import hashlib
import json
import shlex
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from shipyard.definition import PipelineDefinition
from shipyard.models import CacheArea
from shipyard.stages.install import AptInstaller

DOCKERFILE_SYNTAX = "docker/dockerfile:1.2"


@dataclass(frozen=True, slots=True)
class DockerfileEmission:
    root: Path
    dockerfile: Path
    digest: str


def render_dockerfile(definition: PipelineDefinition) -> str:
    build = definition.build
    runtime = definition.runtime
    workdir = PurePosixPath(build.workdir)
    spec = definition.build_spec(workdir=Path(build.workdir))
    command = definition.builder.command(spec)
    artifact = workdir / definition.artifact_relpath()
    promoted = workdir / build.binary

    lines: list[str] = [
        f"# syntax = {DOCKERFILE_SYNTAX}",
        "",
        f"FROM {build.base_image} as {build.stage}",
        f"WORKDIR {build.workdir}",
        "COPY . .",
        "",
        f"# Compile {build.package}",
    ]
    params_env = build.params.build_env()
    lines.append(f"ARG {build.params.panic_env_name}={build.params.panic_policy}")
    version_default = f"={build.params.version_tag}" if build.params.version_tag else ""
    lines.append(f"ARG VERSION_TAG{version_default}")
    lines.append("")
    lines.append("ENV VERSION_TAG=$VERSION_TAG GITHUB_SHA=$VERSION_TAG")
    extra_env = {
        key: value
        for key, value in sorted(definition.builder.environment(spec).items())
        if key not in params_env
    }
    for key, value in extra_env.items():
        lines.append(f"ENV {key}={_env_value(value)}")
    lines.extend(_run_with_mounts(build.caches, shlex.join(command), pipeline=definition.name))
    lines.append("")

    lines.append(f"# Copy {build.binary} out of the cached directory")
    artifact_cache = definition.artifact_cache()
    lines.extend(
        _run_with_mounts(
            (artifact_cache,) if artifact_cache is not None else (),
            f"cp {shlex.quote(str(artifact))} {shlex.quote(str(promoted))}",
            pipeline=definition.name,
        )
    )
    lines.append("")

    lines.append(f"# Copy {build.binary} to the runtime image")
    lines.append(f"FROM {runtime.base_image} as {runtime.stage}")
    install_line = AptInstaller().render(runtime.packages)
    if install_line:
        lines.append(f"RUN {install_line}")
    lines.append(f"WORKDIR {runtime.workdir}")
    binary_dest = PurePosixPath(runtime.workdir) / build.binary
    lines.append(f"COPY --from={build.stage} {promoted} {binary_dest}")
    for dataset in runtime.datasets:
        lines.append(f"COPY --from={build.stage} {workdir / dataset.source} {dataset.dest}")
    for key, value in runtime.declared_env().items():
        lines.append(f"ENV {key}={_env_value(value)}")
    lines.append(f"ENTRYPOINT {json.dumps(list(runtime.entrypoint_for(build.binary)))}")
    return "\n".join(lines) + "\n"


def emit_dockerfile(definition: PipelineDefinition, destination: Path) -> DockerfileEmission:
    destination.mkdir(parents=True, exist_ok=True)
    content = render_dockerfile(definition)
    dockerfile = destination / "Dockerfile"
    dockerfile.write_text(content, encoding="utf-8")
    dockerignore = destination / "Dockerfile.dockerignore"
    dockerignore.write_text(
        "".join(f"{pattern}\n" for pattern in definition.source_ignore),
        encoding="utf-8",
    )
    return DockerfileEmission(
        root=destination,
        dockerfile=dockerfile,
        digest=hashlib.sha256(content.encode("utf-8")).hexdigest(),
    )


def _run_with_mounts(
    caches: tuple[CacheArea, ...],
    command: str,
    *,
    pipeline: str,
) -> list[str]:
    if not caches:
        return [f"RUN {command}"]
    lines = [f"RUN --mount=type=cache,target={_mount_target(caches[0], pipeline)} \\"]
    for area in caches[1:]:
        lines.append(f"    --mount=type=cache,target={_mount_target(area, pipeline)} \\")
    lines.append(f"    {command}")
    return lines


def _mount_target(area: CacheArea, pipeline: str) -> str:
    target = f"./{area.normalized_path}" if area.is_relative else area.normalized_path
    if area.scope == "pipeline":
        return f"{target},id={pipeline}-{area.name}"
    return target


def _env_value(value: str) -> str:
    if value and all(ch.isalnum() or ch in "/._-:" for ch in value):
        return value
    return json.dumps(value)
