"""Source snapshot taken once at pipeline start."""

from __future__ import annotations

import fnmatch
import hashlib
import os
import shutil
from collections.abc import Callable
from pathlib import Path, PurePosixPath

from shipyard.errors import SourceFetchError


def snapshot_source(
    source: Path,
    destination: Path,
    *,
    ignore: tuple[str, ...] = (),
    exclude: tuple[str, ...] = (),
) -> str:
    """Copy *source* into *destination* and return the snapshot tree digest.

    ``ignore`` holds basename patterns; ``exclude`` holds paths relative to the
    source root (cache mount points that are shadowed inside the build
    environment).
    """
    if not source.is_dir():
        raise SourceFetchError(
            "Source tree does not exist.",
            hint="Point the pipeline at the repository root.",
            context={"operation": "snapshot_source", "source": str(source)},
        )
    try:
        shutil.copytree(
            source,
            destination,
            symlinks=True,
            ignore=_ignore_callback(source, ignore=ignore, exclude=exclude),
            dirs_exist_ok=False,
        )
    except (OSError, shutil.Error) as exc:
        raise SourceFetchError(
            "Copying the source tree failed.",
            hint="Check permissions and free space under the work directory.",
            context={
                "operation": "snapshot_source",
                "source": str(source),
                "destination": str(destination),
                "error": str(exc),
            },
        ) from exc
    return tree_digest(destination)


def tree_digest(root: Path) -> str:
    """Digest of relative paths, executable bits and file contents."""
    digest = hashlib.sha256()
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        # os.walk lists directory symlinks with the dirs and never enters them
        linked = [name for name in dirnames if (Path(dirpath) / name).is_symlink()]
        for filename in sorted([*filenames, *linked]):
            path = Path(dirpath) / filename
            rel = path.relative_to(root).as_posix()
            digest.update(rel.encode("utf-8") + b"\0")
            if path.is_symlink():
                digest.update(b"l" + os.readlink(path).encode("utf-8") + b"\0")
                continue
            digest.update(b"x" if os.access(path, os.X_OK) else b"-")
            digest.update(hashlib.sha256(path.read_bytes()).digest())
    return digest.hexdigest()


def _ignore_callback(
    source: Path,
    *,
    ignore: tuple[str, ...],
    exclude: tuple[str, ...],
) -> Callable[[str, list[str]], set[str]]:
    excluded = {str(PurePosixPath(path)) for path in exclude}

    def _ignore(directory: str, names: list[str]) -> set[str]:
        rel_dir = Path(directory).relative_to(source).as_posix()
        skipped: set[str] = set()
        for name in names:
            rel = name if rel_dir == "." else f"{rel_dir}/{name}"
            if rel in excluded or any(fnmatch.fnmatch(name, pattern) for pattern in ignore):
                skipped.add(name)
        return skipped

    return _ignore
