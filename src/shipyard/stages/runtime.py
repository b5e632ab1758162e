"""Runtime image assembly on the host filesystem.

The image is materialized as a root filesystem directory plus an ``image.json``
config document. Everything is staged in a scratch directory next to the
output and swapped in only after every step succeeded.
"""

from __future__ import annotations

import hashlib
import json
import os
import shutil
import uuid
from pathlib import Path, PurePosixPath

import cbor2

from shipyard.errors import CopyError
from shipyard.models import Artifact, RuntimeImage, RuntimeSpec
from shipyard.stages.install import PackageInstaller


def assemble(
    spec: RuntimeSpec,
    *,
    artifact: Artifact,
    source_root: Path,
    output_dir: Path,
    installer: PackageInstaller,
    reference: str,
    version_tag: str | None = None,
) -> RuntimeImage:
    output_dir.parent.mkdir(parents=True, exist_ok=True)
    scratch = output_dir.parent / f".{output_dir.name}.{uuid.uuid4().hex}"
    rootfs = scratch / "rootfs"
    rootfs.mkdir(parents=True)
    try:
        packages = installer.install(spec.packages, root=rootfs)

        binary_path = PurePosixPath(spec.workdir) / artifact.name
        _copy_file(artifact.promoted_path, rootfs / str(binary_path).lstrip("/"))

        for dataset in spec.datasets:
            _copy_tree(
                source_root / dataset.source,
                rootfs / dataset.dest.lstrip("/"),
                dataset=dataset.name,
            )

        config: dict[str, object] = {
            "base_image": spec.base_image,
            "workdir": spec.workdir,
            "env": spec.declared_env(),
            "entrypoint": list(spec.entrypoint_for(artifact.name)),
            "packages": list(packages),
            "install": {"installer": installer.name, "no_install_recommends": True},
            "artifact": {"path": str(binary_path), "sha256": artifact.sha256},
            "files": _file_digests(rootfs),
            "labels": _labels(version_tag),
        }
        digest = hashlib.sha256(cbor2.dumps(config, canonical=True)).hexdigest()
        (scratch / "image.json").write_text(
            json.dumps({**config, "digest": digest}, indent=2, sort_keys=True) + "\n",
            encoding="utf-8",
        )
        _swap_into_place(scratch, output_dir)
    except BaseException:
        shutil.rmtree(scratch, ignore_errors=True)
        raise

    return RuntimeImage(
        reference=reference,
        digest=digest,
        config=config,
        root=output_dir / "rootfs",
        config_path=output_dir / "image.json",
    )


def _copy_file(source: Path, destination: Path) -> None:
    if not source.is_file():
        raise CopyError(
            "Runtime copy source does not exist.",
            hint="The build and runtime stages disagree on the artifact path.",
            context={"operation": "assemble", "source": str(source)},
        )
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(source, destination)
    os.chmod(destination, 0o755)


def _copy_tree(source: Path, destination: Path, *, dataset: str) -> None:
    if not source.is_dir():
        raise CopyError(
            "Dataset directory does not exist in the source tree.",
            hint="Check the dataset source path relative to the repository root.",
            context={"operation": "assemble", "dataset": dataset, "source": str(source)},
        )
    try:
        shutil.copytree(source, destination, symlinks=False)
    except (OSError, shutil.Error) as exc:
        raise CopyError(
            "Copying dataset into the runtime image failed.",
            context={
                "operation": "assemble",
                "dataset": dataset,
                "source": str(source),
                "error": str(exc),
            },
        ) from exc


def _file_digests(rootfs: Path) -> dict[str, str]:
    digests: dict[str, str] = {}
    for path in sorted(p for p in rootfs.rglob("*") if p.is_file()):
        image_path = "/" + path.relative_to(rootfs).as_posix()
        digests[image_path] = hashlib.sha256(path.read_bytes()).hexdigest()
    return digests


def _labels(version_tag: str | None) -> dict[str, str]:
    if version_tag is None:
        return {}
    return {"org.opencontainers.image.revision": version_tag}


def _swap_into_place(scratch: Path, output_dir: Path) -> None:
    previous = None
    if output_dir.exists():
        previous = output_dir.parent / f".{output_dir.name}.{uuid.uuid4().hex}.old"
        os.replace(output_dir, previous)
    os.replace(scratch, output_dir)
    if previous is not None:
        shutil.rmtree(previous)
