from pathlib import Path

import pytest

from shipyard import BuildParams, server_release
from shipyard.recipes import DIAGNOSTIC_PACKAGES, RUNTIME_PACKAGES


def test_server_release_declares_caches_and_datasets(tmp_path: Path) -> None:
    definition = server_release(tmp_path).definition()

    assert [(area.name, area.mount_path, area.scope) for area in definition.build.caches] == [
        ("script-deps", "script/node_modules", "shared"),
        ("cargo-registry", "/usr/local/cargo/registry", "shared"),
        ("cargo-git", "/usr/local/cargo/git", "shared"),
        ("target", "target", "pipeline"),
    ]
    assert definition.artifact_cache() is not None
    assert definition.artifact_cache().name == "target"  # type: ignore[union-attr]
    assert definition.runtime.declared_env() == {
        "PRIMARY_MIGRATIONS_PATH": "/app/migrations",
        "SECONDARY_MIGRATIONS_PATH": "/app/migrations_llm",
    }
    assert definition.runtime.packages == RUNTIME_PACKAGES + DIAGNOSTIC_PACKAGES


def test_server_release_can_drop_diagnostic_packages(tmp_path: Path) -> None:
    definition = server_release(tmp_path, include_diagnostics=False).definition()

    assert definition.runtime.packages == ("libcurl4-openssl-dev", "ca-certificates")


def test_server_release_custom_package_paths(tmp_path: Path) -> None:
    definition = server_release(tmp_path, name="collab", package="collab").definition()

    assert definition.build.binary == "collab"
    assert [dataset.source for dataset in definition.runtime.datasets] == [
        "crates/collab/migrations",
        "crates/collab/migrations_llm",
    ]


def test_server_release_plan(tmp_path: Path) -> None:
    assert server_release(tmp_path).plan() == ("source", "builder", "extract", "runtime")


def test_server_release_digest_tracks_build_params(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    baseline = server_release(tmp_path).digest()
    assert server_release(tmp_path).digest() == baseline

    tagged = server_release(tmp_path, params=BuildParams(version_tag="abc123")).digest()
    monkeypatch.setenv("PANIC_POLICY", "unwind")
    unwind = server_release(tmp_path).digest()

    assert len({baseline, tagged, unwind}) == 3
