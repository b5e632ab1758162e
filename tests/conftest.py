"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from shipyard import BuildParams, Pipeline, ScriptBuilder

# Stands in for `cargo build`: the artifact records its inputs and the
# compile leaves a trace in the absolute registry cache.
BUILD_SCRIPT = (
    "mkdir -p target/release && "
    "cat src/main.txt > target/release/server && "
    'echo "panic=$CARGO_PROFILE_RELEASE_PANIC version=$VERSION_TAG" >> target/release/server && '
    'echo built >> "$REGISTRY_CACHE/compile.log"'
)

PipelineFactory = Callable[..., Pipeline]


@pytest.fixture(autouse=True)
def _clear_build_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("PANIC_POLICY", raising=False)
    monkeypatch.delenv("VERSION_TAG", raising=False)


@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    """Minimal server repository with two migration directories."""
    root = tmp_path / "repo"
    (root / "src").mkdir(parents=True)
    (root / "src" / "main.txt").write_text("server v1\n", encoding="utf-8")
    primary = root / "crates" / "server" / "migrations"
    primary.mkdir(parents=True)
    (primary / "0001_init.sql").write_text("create table users (id int);\n", encoding="utf-8")
    secondary = root / "crates" / "server" / "migrations_llm"
    secondary.mkdir(parents=True)
    (secondary / "0001_llm.sql").write_text("create table usage (id int);\n", encoding="utf-8")
    (root / ".git").mkdir()
    (root / ".git" / "HEAD").write_text("ref: refs/heads/main\n", encoding="utf-8")
    return root


@pytest.fixture
def make_pipeline(tmp_path: Path, source_tree: Path) -> PipelineFactory:
    def _make(
        *,
        script: str = BUILD_SCRIPT,
        params: BuildParams | None = None,
        packages: tuple[str, ...] = (),
        reuse_artifacts: bool = True,
        work_dir: Path | None = None,
    ) -> Pipeline:
        pipeline = Pipeline(
            name="demo",
            source=source_tree,
            work_dir=work_dir or tmp_path / "work",
            builder=ScriptBuilder(script=script),
            reuse_artifacts=reuse_artifacts,
        )
        pipeline.cache("target", "target", scope="pipeline")
        pipeline.cache("registry", "/usr/local/cargo/registry", env_var="REGISTRY_CACHE")
        pipeline.build(
            package="server",
            binary="server",
            base_image="rust:1.81-bookworm",
            params=params or BuildParams(panic_policy="abort", version_tag="abc123"),
        )
        pipeline.runtime(base_image="debian:bookworm-slim", packages=packages)
        pipeline.dataset(
            "migrations",
            "crates/server/migrations",
            env_var="PRIMARY_MIGRATIONS_PATH",
        )
        pipeline.dataset(
            "migrations-llm",
            "crates/server/migrations_llm",
            env_var="SECONDARY_MIGRATIONS_PATH",
        )
        return pipeline

    return _make
