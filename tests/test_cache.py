from pathlib import Path

import pytest

from shipyard.cache import BuildCacheInput, CacheStore, cache_key
from shipyard.errors import ValidationError
from shipyard.models import CacheArea
from shipyard.observability import StructuredLogger

REGISTRY = CacheArea(name="registry", mount_path="/usr/local/cargo/registry")
TARGET = CacheArea(name="target", mount_path="target", scope="pipeline")


def _inputs(source_hash: str = "a" * 64) -> BuildCacheInput:
    return BuildCacheInput(
        source_hash=source_hash,
        toolchain="cargo",
        command=("cargo", "build", "--release"),
        env={"CARGO_PROFILE_RELEASE_PANIC": "abort"},
        target="server",
    )


def test_cache_key_is_deterministic() -> None:
    assert cache_key(_inputs()) == cache_key(_inputs())


def test_cache_key_changes_with_inputs() -> None:
    base = _inputs()
    changed_env = BuildCacheInput(
        source_hash=base.source_hash,
        toolchain=base.toolchain,
        command=base.command,
        env={"CARGO_PROFILE_RELEASE_PANIC": "unwind"},
        target=base.target,
    )
    assert cache_key(base) != cache_key(_inputs("b" * 64))
    assert cache_key(base) != cache_key(changed_env)


def test_cache_key_ignores_env_ordering() -> None:
    first = BuildCacheInput(source_hash="s", toolchain="cargo", env={"A": "1", "B": "2"})
    second = BuildCacheInput(source_hash="s", toolchain="cargo", env={"B": "2", "A": "1"})
    assert cache_key(first) == cache_key(second)


def test_store_paths_follow_area_scope(tmp_path: Path) -> None:
    store = CacheStore(tmp_path)

    assert store.path_for(REGISTRY, pipeline="demo") == tmp_path / "shared" / "registry"
    assert store.path_for(TARGET, pipeline="demo") == tmp_path / "pipelines" / "demo" / "target"
    assert store.path_for(TARGET, pipeline="other") != store.path_for(TARGET, pipeline="demo")


def test_acquire_creates_area_and_reports_cold_state(tmp_path: Path) -> None:
    logger = StructuredLogger()
    store = CacheStore(tmp_path, logger=logger)

    with store.acquire(REGISTRY, pipeline="demo") as handle:
        assert handle.path.is_dir()
    with store.acquire(REGISTRY, pipeline="demo"):
        pass

    acquires = [record for record in logger.records if record["operation"] == "cache_acquire"]
    assert [record["extra"]["cold"] for record in acquires] == [True, False]
    assert logger.operations().count("cache_release") == 2
    assert store.areas() == ["shared/registry"]


def test_blob_roundtrip_and_last_writer_wins(tmp_path: Path) -> None:
    store = CacheStore(tmp_path)
    key = cache_key(_inputs())

    with store.acquire(TARGET, pipeline="demo") as handle:
        assert handle.get(key) is None
        handle.put(key, b"first")
        handle.put(key, b"second", inputs=_inputs())
        assert handle.get(key) == b"second"
        assert handle.get(key, expected_inputs=_inputs()) == b"second"


def test_entry_with_mismatched_inputs_is_a_miss(tmp_path: Path) -> None:
    logger = StructuredLogger()
    store = CacheStore(tmp_path, logger=logger)
    key = cache_key(_inputs())

    with store.acquire(TARGET, pipeline="demo") as handle:
        handle.put(key, b"payload", inputs=_inputs())
        assert handle.get(key, expected_inputs=_inputs("c" * 64)) is None

    assert "cache_entry_discarded" in logger.operations()


def test_corrupt_blob_is_a_miss(tmp_path: Path) -> None:
    store = CacheStore(tmp_path)
    key = cache_key(_inputs())

    with store.acquire(TARGET, pipeline="demo") as handle:
        blob = handle.put(key, b"payload")
        blob.write_bytes(b"tampered")
        assert handle.get(key) is None


def test_unreadable_manifest_is_a_miss(tmp_path: Path) -> None:
    store = CacheStore(tmp_path)
    key = cache_key(_inputs())

    with store.acquire(TARGET, pipeline="demo") as handle:
        blob = handle.put(key, b"payload")
        blob.with_name(f"{key}.json").write_text("{not json", encoding="utf-8")
        assert handle.get(key) is None


def test_put_leaves_no_temporary_files(tmp_path: Path) -> None:
    store = CacheStore(tmp_path)
    key = cache_key(_inputs())

    with store.acquire(TARGET, pipeline="demo") as handle:
        handle.put(key, b"payload")
        names = sorted(path.name for path in (handle.path / ".blobs").iterdir())

    assert names == [key, f"{key}.json"]


def test_invalid_key_is_rejected(tmp_path: Path) -> None:
    store = CacheStore(tmp_path)

    with store.acquire(TARGET, pipeline="demo") as handle:
        with pytest.raises(ValidationError):
            handle.put("../escape", b"payload")


def test_checkout_gives_private_working_copy(tmp_path: Path) -> None:
    store = CacheStore(tmp_path / "cache")

    with store.acquire(TARGET, pipeline="demo") as handle:
        (handle.path / "release").mkdir()
        (handle.path / "release" / "server").write_text("cached\n", encoding="utf-8")
        handle.put("key", b"blob")
        copy = handle.checkout(tmp_path / "env" / "target")
        (copy / "release" / "server").write_text("edited\n", encoding="utf-8")

        assert not copy.is_symlink()
        assert not (copy / ".blobs").exists()
        cached = handle.path / "release" / "server"
        assert cached.read_text(encoding="utf-8") == "cached\n"


def test_publish_replaces_area_and_last_publisher_wins(tmp_path: Path) -> None:
    logger = StructuredLogger()
    store = CacheStore(tmp_path / "cache", logger=logger)

    with store.acquire(TARGET, pipeline="demo") as handle:
        handle.put("key", b"blob")
        first = handle.checkout(tmp_path / "a" / "target")
        second = handle.checkout(tmp_path / "b" / "target")
        (first / "out").write_text("a\n", encoding="utf-8")
        (second / "out").write_text("b\n", encoding="utf-8")
        (second / "only-b").write_text("b\n", encoding="utf-8")

        handle.publish(second)
        handle.publish(first)

        assert (handle.path / "out").read_text(encoding="utf-8") == "a\n"
        assert not (handle.path / "only-b").exists()
        assert handle.get("key") == b"blob"

    leftovers = [p.name for p in handle.path.parent.iterdir() if p.name.startswith(".")]
    assert leftovers == []
    assert logger.operations().count("cache_publish") == 2
