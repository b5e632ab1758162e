from collections.abc import Callable
from pathlib import Path

import pytest

from shipyard import BuildParams, Pipeline, ScriptBuilder
from shipyard.errors import ValidationError

PipelineFactory = Callable[..., Pipeline]


def _minimal(tmp_path: Path) -> Pipeline:
    return (
        Pipeline(name="demo", source=tmp_path)
        .build(package="server", binary="server", base_image="rust:1.81-bookworm")
        .runtime(base_image="debian:bookworm-slim")
    )


def test_pipeline_name_must_be_image_reference(tmp_path: Path) -> None:
    with pytest.raises(ValidationError):
        Pipeline(name="Demo Server", source=tmp_path)


def test_definition_requires_build_and_runtime(tmp_path: Path) -> None:
    pipeline = Pipeline(name="demo", source=tmp_path)

    with pytest.raises(ValidationError, match="no build stage"):
        pipeline.definition()
    pipeline.build(package="server", binary="server", base_image="rust:1.81-bookworm")
    with pytest.raises(ValidationError, match="no runtime stage"):
        pipeline.definition()


def test_install_merges_and_deduplicates_packages(tmp_path: Path) -> None:
    pipeline = _minimal(tmp_path)
    pipeline.runtime(base_image="debian:bookworm-slim", packages=("ca-certificates",))
    pipeline.install("binutils", "ca-certificates")

    assert pipeline.definition().runtime.packages == ("ca-certificates", "binutils")


def test_install_requires_packages(tmp_path: Path) -> None:
    with pytest.raises(ValidationError):
        _minimal(tmp_path).install()


def test_dataset_dest_defaults_to_runtime_workdir(tmp_path: Path) -> None:
    pipeline = _minimal(tmp_path).dataset(
        "migrations",
        "crates/server/migrations",
        env_var="PRIMARY_MIGRATIONS_PATH",
    )

    (dataset,) = pipeline.definition().runtime.datasets
    assert dataset.dest == "/app/migrations"


def test_dataset_names_and_env_vars_are_unique(tmp_path: Path) -> None:
    pipeline = _minimal(tmp_path).dataset("m", "a/migrations", env_var="A_PATH")

    with pytest.raises(ValidationError):
        pipeline.dataset("m", "b/migrations", env_var="B_PATH")
    with pytest.raises(ValidationError):
        pipeline.dataset("n", "b/migrations", env_var="A_PATH")


def test_dataset_destinations_must_not_clash(tmp_path: Path) -> None:
    pipeline = _minimal(tmp_path)
    pipeline.dataset("a", "one/migrations", env_var="A_PATH")
    pipeline.dataset("b", "two/migrations", env_var="B_PATH")

    with pytest.raises(ValidationError) as excinfo:
        pipeline.definition()

    assert excinfo.value.context["dests"] == "/app/migrations"


def test_dataset_cannot_overwrite_binary(tmp_path: Path) -> None:
    pipeline = _minimal(tmp_path).dataset("bin", "server", env_var="BIN_PATH")

    with pytest.raises(ValidationError):
        pipeline.definition()


def test_cache_names_and_paths_are_unique(tmp_path: Path) -> None:
    pipeline = Pipeline(name="demo", source=tmp_path).cache("target", "target")

    with pytest.raises(ValidationError):
        pipeline.cache("target", "other")
    with pytest.raises(ValidationError):
        pipeline.cache("target2", "./target")


def test_caches_declared_after_build_are_applied(tmp_path: Path) -> None:
    pipeline = _minimal(tmp_path).cache("target", "target")

    assert [area.name for area in pipeline.definition().build.caches] == ["target"]


def test_build_rejects_nested_binary_name(tmp_path: Path) -> None:
    with pytest.raises(ValidationError):
        Pipeline(name="demo", source=tmp_path).build(
            package="server",
            binary="bin/server",
            base_image="rust:1.81-bookworm",
        )


def test_digest_is_stable_and_tracks_definition(tmp_path: Path) -> None:
    first = _minimal(tmp_path).digest()
    second = _minimal(tmp_path).digest()
    changed = _minimal(tmp_path).install("binutils").digest()

    assert first == second
    assert len(first) == 64
    assert changed != first


def test_build_params_default_to_environment(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("VERSION_TAG", "abc123")

    definition = _minimal(tmp_path).definition()

    assert definition.build.params == BuildParams(version_tag="abc123")


def test_builder_can_be_replaced_in_build(tmp_path: Path) -> None:
    builder = ScriptBuilder(script="true")
    pipeline = Pipeline(name="demo", source=tmp_path).build(
        package="server",
        binary="server",
        base_image="rust:1.81-bookworm",
        builder=builder,
    )

    assert pipeline.builder is builder


def test_plan_validates_without_touching_disk(tmp_path: Path) -> None:
    pipeline = Pipeline(name="demo", source=tmp_path / "missing", work_dir=tmp_path / "work")
    pipeline.build(package="server", binary="server", base_image="rust:1.81-bookworm")
    pipeline.runtime(base_image="debian:bookworm-slim")

    assert pipeline.plan() == ("source", "builder", "extract", "runtime")
    assert not (tmp_path / "work").exists()
