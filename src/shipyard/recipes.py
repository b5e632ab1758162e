"""Ready-made pipeline declarations."""

from __future__ import annotations

from pathlib import Path

from .builders import Builder, RustBuilder
from .models import BuildParams
from .pipeline import Pipeline

BUILD_IMAGE = "rust:1.81-bookworm"
RUNTIME_IMAGE = "debian:bookworm-slim"

# Needed by the server binary itself.
RUNTIME_PACKAGES: tuple[str, ...] = ("libcurl4-openssl-dev", "ca-certificates")
# Profiling and symbol tooling for debugging a running server.
DIAGNOSTIC_PACKAGES: tuple[str, ...] = ("linux-perf", "binutils")

PRIMARY_MIGRATIONS_ENV = "PRIMARY_MIGRATIONS_PATH"
SECONDARY_MIGRATIONS_ENV = "SECONDARY_MIGRATIONS_PATH"


def server_release(
    source: str | Path = ".",
    *,
    name: str = "server",
    package: str = "server",
    binary: str | None = None,
    work_dir: str | Path = "build",
    cache_dir: str | Path | None = None,
    params: BuildParams | None = None,
    builder: Builder | None = None,
    include_diagnostics: bool = True,
    build_image: str = BUILD_IMAGE,
    runtime_image: str = RUNTIME_IMAGE,
    primary_migrations: str | None = None,
    secondary_migrations: str | None = None,
) -> Pipeline:
    """Release pipeline for a server crate with two migration directories.

    Migrations default to ``crates/<package>/migrations`` and
    ``crates/<package>/migrations_llm`` and land under ``/app`` next to the
    binary.
    """
    pipeline = Pipeline(
        name=name,
        source=Path(source),
        work_dir=Path(work_dir),
        cache_dir=Path(cache_dir) if cache_dir is not None else None,
        builder=builder if builder is not None else RustBuilder(),
    )
    pipeline.cache("script-deps", "script/node_modules")
    pipeline.cache("cargo-registry", "/usr/local/cargo/registry")
    pipeline.cache("cargo-git", "/usr/local/cargo/git")
    pipeline.cache("target", "target", scope="pipeline")
    pipeline.build(
        package=package,
        binary=binary or package,
        base_image=build_image,
        params=params,
    )
    packages = RUNTIME_PACKAGES + (DIAGNOSTIC_PACKAGES if include_diagnostics else ())
    pipeline.runtime(base_image=runtime_image, packages=packages)
    pipeline.dataset(
        "migrations",
        primary_migrations or f"crates/{package}/migrations",
        env_var=PRIMARY_MIGRATIONS_ENV,
    )
    pipeline.dataset(
        "migrations-llm",
        secondary_migrations or f"crates/{package}/migrations_llm",
        env_var=SECONDARY_MIGRATIONS_ENV,
    )
    return pipeline
