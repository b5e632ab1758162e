"""Named cache areas with a last-writer-wins blob store.

Areas persist across pipeline runs and are shared by every run that names
them. Nothing here locks: concurrent writers race, and a reader that observes
a half-replaced entry (blob and manifest from different writers) gets a miss
instead of the payload. Whole areas are checked out into a private working
copy and published back by directory swap, so a build never sees another
run's half-written output.
"""

from __future__ import annotations

import hashlib
import json
import os
import re
import shutil
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from shipyard.cache.keys import BuildCacheInput, _to_payload
from shipyard.errors import ValidationError
from shipyard.models import CacheArea
from shipyard.observability import StructuredLogger

KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


@dataclass(frozen=True, slots=True)
class CacheHandle:
    """Access to one acquired cache area for the duration of a stage."""

    area: CacheArea
    path: Path
    logger: StructuredLogger | None = None

    def get(self, key: str, *, expected_inputs: BuildCacheInput | None = None) -> bytes | None:
        blob_path, manifest_path = self._entry_paths(key)
        try:
            payload = blob_path.read_bytes()
            manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            self._discard(key, reason=f"unreadable entry: {exc}")
            return None

        if not isinstance(manifest, dict) or manifest.get("key") != key:
            self._discard(key, reason="manifest key mismatch")
            return None
        if manifest.get("sha256") != hashlib.sha256(payload).hexdigest():
            self._discard(key, reason="blob digest mismatch")
            return None
        if expected_inputs is not None and manifest.get("inputs") != _to_payload(expected_inputs):
            self._discard(key, reason="manifest inputs mismatch")
            return None
        return payload

    def put(
        self,
        key: str,
        payload: bytes,
        *,
        inputs: BuildCacheInput | None = None,
    ) -> Path:
        blob_path, manifest_path = self._entry_paths(key)
        blob_path.parent.mkdir(parents=True, exist_ok=True)
        manifest: dict[str, object] = {
            "key": key,
            "sha256": hashlib.sha256(payload).hexdigest(),
            "size": len(payload),
        }
        if inputs is not None:
            manifest["inputs"] = _to_payload(inputs)
        _replace_bytes(blob_path, payload)
        _replace_bytes(
            manifest_path,
            (json.dumps(manifest, indent=2, sort_keys=True) + "\n").encode("utf-8"),
        )
        return blob_path

    def checkout(self, destination: Path) -> Path:
        """Seed a private working copy of the area at *destination*."""
        if destination.is_symlink() or destination.is_file():
            destination.unlink()
        elif destination.exists():
            shutil.rmtree(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            shutil.copytree(self.path, destination, symlinks=True, ignore=_skip_blobs)
        except FileNotFoundError:
            # a concurrent publish swapped the area out; start cold
            destination.mkdir(parents=True, exist_ok=True)
        return destination

    def publish(self, workspace: Path) -> None:
        """Replace the area with *workspace*. The last publisher wins."""
        token = uuid.uuid4().hex
        staging = self.path.with_name(f".{self.path.name}.{token}.tmp")
        retired = self.path.with_name(f".{self.path.name}.{token}.old")
        shutil.copytree(workspace, staging, symlinks=True)
        blobs = self.path / ".blobs"
        if blobs.is_dir():
            shutil.copytree(blobs, staging / ".blobs", symlinks=True)
        try:
            os.replace(self.path, retired)
        except FileNotFoundError:
            pass
        try:
            os.replace(staging, self.path)
        except OSError:
            # another run published in between; its copy stays
            shutil.rmtree(staging, ignore_errors=True)
        shutil.rmtree(retired, ignore_errors=True)
        if self.logger is not None:
            self.logger.log(
                operation="cache_publish",
                pipeline=None,
                stage=None,
                message=f"Cache area {self.area.name} published.",
                extra={"cache": self.area.name, "scope": self.area.scope},
            )

    def _entry_paths(self, key: str) -> tuple[Path, Path]:
        if not KEY_PATTERN.fullmatch(key):
            raise ValidationError(
                "Cache keys must be path-safe identifiers.",
                context={"cache": self.area.name, "key": key},
            )
        blobs = self.path / ".blobs"
        return blobs / key, blobs / f"{key}.json"

    def _discard(self, key: str, *, reason: str) -> None:
        if self.logger is not None:
            self.logger.log(
                operation="cache_entry_discarded",
                pipeline=None,
                stage=None,
                level="warning",
                message="Cache entry failed verification and was treated as a miss.",
                extra={"cache": self.area.name, "key": key, "reason": reason},
            )


class CacheStore:
    def __init__(self, root: str | Path, *, logger: StructuredLogger | None = None) -> None:
        self.root = Path(root)
        self.logger = logger

    def path_for(self, area: CacheArea, *, pipeline: str) -> Path:
        if area.scope == "pipeline":
            return self.root / "pipelines" / pipeline / area.name
        return self.root / "shared" / area.name

    @contextmanager
    def acquire(self, area: CacheArea, *, pipeline: str) -> Iterator[CacheHandle]:
        path = self.path_for(area, pipeline=pipeline)
        cold = not path.exists()
        path.mkdir(parents=True, exist_ok=True)
        self._log("cache_acquire", pipeline, area, cold=cold)
        try:
            yield CacheHandle(area=area, path=path, logger=self.logger)
        finally:
            self._log("cache_release", pipeline, area, cold=cold)

    def areas(self) -> list[str]:
        names: list[str] = []
        shared = self.root / "shared"
        if shared.exists():
            names.extend(f"shared/{p.name}" for p in sorted(shared.iterdir()) if p.is_dir())
        pipelines = self.root / "pipelines"
        if pipelines.exists():
            for pipeline_dir in sorted(pipelines.iterdir()):
                names.extend(
                    f"{pipeline_dir.name}/{p.name}"
                    for p in sorted(pipeline_dir.iterdir())
                    if p.is_dir()
                )
        return names

    def _log(self, operation: str, pipeline: str, area: CacheArea, *, cold: bool) -> None:
        if self.logger is None:
            return
        self.logger.log(
            operation=operation,
            pipeline=pipeline,
            stage=None,
            message=f"Cache area {area.name} {operation.removeprefix('cache_')}d.",
            extra={"cache": area.name, "scope": area.scope, "cold": cold},
        )


def _replace_bytes(path: Path, payload: bytes) -> None:
    tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        tmp_path.write_bytes(payload)
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def _skip_blobs(directory: str, names: list[str]) -> set[str]:
    return {".blobs"} & set(names)
