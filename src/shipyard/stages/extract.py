"""Promote the compiled artifact out of the cached build directory."""

from __future__ import annotations

import hashlib
import os
import shutil
import uuid
from pathlib import Path

from shipyard.errors import ExtractionError
from shipyard.models import Artifact


def extract(
    artifact_path: Path,
    destination: Path,
    *,
    build_path: str | None = None,
) -> Artifact:
    """Copy the artifact to *destination*, replacing any previous promotion.

    The build output usually sits inside a cache mount that is not part of the
    stage's own filesystem, so the copy is what makes the binary visible to
    later stages.
    """
    if not artifact_path.is_file():
        raise ExtractionError(
            "Build stage did not leave an artifact at the expected path.",
            hint="Check the builder's target name and output directory.",
            context={"operation": "extract", "path": str(artifact_path)},
        )

    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = destination.with_name(f".{destination.name}.{uuid.uuid4().hex}.tmp")
    try:
        shutil.copyfile(artifact_path, tmp_path)
        os.chmod(tmp_path, 0o755)
        os.replace(tmp_path, destination)
    except OSError as exc:
        raise ExtractionError(
            "Copying the artifact out of the build environment failed.",
            context={
                "operation": "extract",
                "source": str(artifact_path),
                "destination": str(destination),
                "error": str(exc),
            },
        ) from exc
    finally:
        if tmp_path.exists():
            tmp_path.unlink()

    return Artifact(
        name=destination.name,
        build_path=build_path or str(artifact_path),
        promoted_path=destination,
        sha256=hashlib.sha256(destination.read_bytes()).hexdigest(),
    )
