import subprocess
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from shipyard import DockerBackend, Pipeline
from shipyard.errors import BackendExecutionError

PipelineFactory = Callable[..., Pipeline]


def test_docker_backend_requires_docker_cli(
    make_pipeline: PipelineFactory,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr("shipyard.backends.docker.shutil.which", lambda _: None)

    with pytest.raises(BackendExecutionError) as excinfo:
        make_pipeline().run(DockerBackend())

    assert "docker" in str(excinfo.value)
    assert excinfo.value.context["operation"] == "prepare"


def test_docker_backend_builds_runtime_target(
    tmp_path: Path,
    source_tree: Path,
    make_pipeline: PipelineFactory,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    calls: list[tuple[tuple[str, ...], dict[str, str]]] = []

    def fake_run(command: tuple[str, ...], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        calls.append((command, kwargs["env"]))
        stdout = "sha256:0123abcd\n" if command[1] == "image" else ""
        return subprocess.CompletedProcess(command, 0, stdout=stdout, stderr="")

    monkeypatch.setattr("shipyard.backends.docker.shutil.which", lambda _: "/usr/bin/docker")
    monkeypatch.setattr("shipyard.backends.docker.subprocess.run", fake_run)

    result = make_pipeline().run(DockerBackend())

    dockerfile = tmp_path / "work" / "demo" / "docker" / "Dockerfile"
    assert dockerfile.is_file()
    build_command, build_env = calls[0]
    assert build_command == (
        "docker",
        "build",
        "--file",
        str(dockerfile),
        "--target",
        "runtime",
        "--tag",
        "demo:abc123",
        "--build-arg",
        "CARGO_PROFILE_RELEASE_PANIC=abort",
        "--build-arg",
        "VERSION_TAG=abc123",
        str(source_tree),
    )
    assert build_env["DOCKER_BUILDKIT"] == "1"
    assert calls[1][0][:3] == ("docker", "image", "inspect")
    assert result.image is not None
    assert result.image.reference == "demo:abc123"
    assert result.image.digest == "0123abcd"
    assert result.image.env["PRIMARY_MIGRATIONS_PATH"] == "/app/migrations"
    assert [stage.kind for stage in result.stages] == ["runtime"]


def test_docker_build_failure_raises_backend_error(
    make_pipeline: PipelineFactory,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def fake_run(command: tuple[str, ...], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(command, 1, stdout="", stderr="failed to solve")

    monkeypatch.setattr("shipyard.backends.docker.shutil.which", lambda _: "/usr/bin/docker")
    monkeypatch.setattr("shipyard.backends.docker.subprocess.run", fake_run)
    pipeline = make_pipeline()

    with pytest.raises(BackendExecutionError) as excinfo:
        pipeline.run(DockerBackend())

    assert excinfo.value.context["operation"] == "build"
    assert "failed to solve" in excinfo.value.context["stderr"]
    assert "pipeline_failed" in pipeline.logger.operations()
