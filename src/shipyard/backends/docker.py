"""Docker-backed pipeline execution via BuildKit."""

from __future__ import annotations

import os
import shlex
import shutil
import subprocess
import time
from dataclasses import dataclass, field

from shipyard.backends.base import MountSpec, RunRequest
from shipyard.compiler import emit_dockerfile
from shipyard.errors import BackendExecutionError
from shipyard.models import PipelineResult, RuntimeImage, StageResult

STDERR_TAIL = 2000


@dataclass(slots=True)
class DockerBackend:
    """Render the pipeline as a multi-stage Dockerfile and hand it to ``docker build``.

    Cache areas become BuildKit cache mounts owned by the Docker daemon, so the
    host mount plan is empty.
    """

    name: str = "docker"
    docker: str = "docker"
    extra_args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)

    def mount_plan(self, request: RunRequest) -> tuple[MountSpec, ...]:
        _ = request
        return ()

    def prepare(self, request: RunRequest) -> None:
        self._ensure_docker_available()
        request.pipeline_dir.mkdir(parents=True, exist_ok=True)

    def execute(self, request: RunRequest) -> PipelineResult:
        self._ensure_docker_available()
        definition = request.definition
        result = PipelineResult(pipeline=definition.name, run_id=request.run_id)
        emission = emit_dockerfile(definition, request.pipeline_dir / "docker")
        request.logger.log(
            operation="dockerfile_emitted",
            pipeline=definition.name,
            stage=None,
            message="Emitted Dockerfile.",
            extra={"path": str(emission.dockerfile), "digest": emission.digest},
        )

        started = time.perf_counter()
        self._run(self.build_command(request, str(emission.dockerfile)), operation="build")
        image_id = self._run(
            (self.docker, "image", "inspect", "--format", "{{.Id}}", request.image_reference),
            operation="inspect",
        ).strip()
        runtime = definition.payload()["runtime"]
        result.image = RuntimeImage(
            reference=request.image_reference,
            digest=image_id.removeprefix("sha256:"),
            config=runtime if isinstance(runtime, dict) else {},
        )
        result.stages.append(
            StageResult(
                stage=definition.runtime.stage,
                kind="runtime",
                duration_s=round(time.perf_counter() - started, 6),
                outputs={"reference": result.image.reference, "digest": result.image.digest},
            )
        )
        request.logger.log(
            operation="image_built",
            pipeline=definition.name,
            stage=definition.runtime.stage,
            message="docker build completed.",
            extra={"reference": result.image.reference, "digest": result.image.digest},
        )
        return result

    def cleanup(self, request: RunRequest) -> None:
        _ = request

    def build_command(self, request: RunRequest, dockerfile: str) -> tuple[str, ...]:
        definition = request.definition
        params = definition.build.params
        command = [
            self.docker,
            "build",
            "--file",
            dockerfile,
            "--target",
            definition.runtime.stage,
            "--tag",
            request.image_reference,
            "--build-arg",
            f"{params.panic_env_name}={params.panic_policy}",
        ]
        if params.version_tag is not None:
            command.extend(["--build-arg", f"VERSION_TAG={params.version_tag}"])
        command.extend(self.extra_args)
        command.append(str(definition.source))
        return tuple(command)

    def _run(self, command: tuple[str, ...], *, operation: str) -> str:
        env = dict(os.environ)
        env["DOCKER_BUILDKIT"] = "1"
        env.update(self.env)
        try:
            completed = subprocess.run(
                command,
                env=env,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise BackendExecutionError(
                "Docker CLI could not be executed.",
                context={"backend": self.name, "operation": operation},
            ) from exc
        if completed.returncode != 0:
            raise BackendExecutionError(
                f"docker {operation} failed.",
                hint="Inspect the docker output; the runtime image was not produced.",
                context={
                    "backend": self.name,
                    "operation": operation,
                    "command": shlex.join(command),
                    "returncode": str(completed.returncode),
                    "stderr": (completed.stderr or "")[-STDERR_TAIL:],
                },
            )
        return completed.stdout or ""

    def _ensure_docker_available(self) -> None:
        if shutil.which(self.docker) is None:
            raise BackendExecutionError(
                "Docker backend requires `docker` in PATH.",
                hint="Install Docker with BuildKit support or use the local backend.",
                context={"backend": self.name, "operation": "prepare"},
            )
