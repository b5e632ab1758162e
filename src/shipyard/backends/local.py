"""Host filesystem execution of the pipeline stages.

Each run gets a disposable build environment under ``<work_dir>/envs/<run-id>``.
Cache areas are attached for the build stage: relative mount paths get a
private copy under the working directory, absolute mount paths are linked
under ``<env>/mounts``. The snapshot skips the work and cache directories
when they live inside the source tree. The environment is removed in
``cleanup()`` whether the run succeeded or not; only the promoted artifact and
the runtime image outlive it.
"""

from __future__ import annotations

import json
import os
import shutil
import time
from collections.abc import Callable
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from shipyard.backends.base import MountSpec, RunRequest
from shipyard.builders import run_build
from shipyard.cache import BuildCacheInput, CacheHandle, CacheStore, cache_key
from shipyard.errors import SourceFetchError, ValidationError
from shipyard.graph import StageNode, stage_graph_for
from shipyard.models import (
    Artifact,
    BuildEnvironment,
    CacheArea,
    PipelineResult,
    RuntimeImage,
    StageResult,
)
from shipyard.stages import ManifestInstaller, PackageInstaller, assemble, extract, snapshot_source

# Store-internal area holding compiled artifacts keyed by source digest and build inputs.
ARTIFACT_BLOBS = CacheArea(
    name="compiled-artifacts",
    mount_path="/.shipyard/artifacts",
    scope="pipeline",
)


@dataclass(slots=True)
class _RunState:
    env: BuildEnvironment | None = None
    source_digest: str = ""
    artifact: Artifact | None = None
    image: RuntimeImage | None = None


@dataclass(frozen=True, slots=True)
class _Mount:
    handle: CacheHandle
    path: Path
    private: bool = False


_StageHandler = Callable[[RunRequest, CacheStore, _RunState, PipelineResult], dict[str, str]]


@dataclass(slots=True)
class LocalBackend:
    name: str = "local"
    installer: PackageInstaller = field(default_factory=ManifestInstaller)

    def mount_plan(self, request: RunRequest) -> tuple[MountSpec, ...]:
        store = CacheStore(request.cache_dir)
        mounts = [
            MountSpec(
                source=store.path_for(area, pipeline=request.definition.name),
                target=area.normalized_path,
            )
            for area in request.definition.build.caches
        ]
        return tuple(sorted(mounts, key=lambda mount: mount.target))

    def prepare(self, request: RunRequest) -> None:
        request.work_dir.mkdir(parents=True, exist_ok=True)
        request.cache_dir.mkdir(parents=True, exist_ok=True)
        if request.env_root.exists():
            raise SourceFetchError(
                "Build environment for this run id already exists.",
                hint="Use a fresh run id.",
                context={"run_id": request.run_id, "path": str(request.env_root)},
            )

    def execute(self, request: RunRequest) -> PipelineResult:
        graph = stage_graph_for(request.definition)
        graph.validate()
        store = CacheStore(request.cache_dir, logger=request.logger)
        state = _RunState()
        result = PipelineResult(pipeline=request.definition.name, run_id=request.run_id)
        handlers: dict[str, _StageHandler] = {
            "source": self._run_source,
            "build": self._run_build,
            "extract": self._run_extract,
            "runtime": self._run_runtime,
        }

        for name in graph.order():
            node = graph.node(name)
            self._log(request, node, "stage_start", f"Starting {node.kind} stage.")
            started = time.perf_counter()
            outputs = handlers[node.kind](request, store, state, result)
            result.stages.append(
                StageResult(
                    stage=node.name,
                    kind=node.kind,
                    duration_s=round(time.perf_counter() - started, 6),
                    outputs=outputs,
                )
            )
            self._log(request, node, "stage_complete", f"Completed {node.kind} stage.", outputs)

        result.artifact = state.artifact
        result.image = state.image
        result.report_path = self._write_report(request, result)
        return result

    def cleanup(self, request: RunRequest) -> None:
        if request.env_root.exists():
            shutil.rmtree(request.env_root)

    def _run_source(
        self,
        request: RunRequest,
        store: CacheStore,
        state: _RunState,
        result: PipelineResult,
    ) -> dict[str, str]:
        definition = request.definition
        workdir = request.env_root / definition.build.workdir.lstrip("/")
        excluded = tuple(
            area.normalized_path for area in definition.build.caches if area.is_relative
        ) + _nested_outputs(definition.source, (request.work_dir, request.cache_dir))
        state.source_digest = snapshot_source(
            definition.source,
            workdir,
            ignore=definition.source_ignore,
            exclude=excluded,
        )
        state.env = BuildEnvironment(
            stage=definition.build.stage,
            base_image=definition.build.base_image,
            root=request.env_root,
            workdir=workdir,
            params=definition.build.params,
            caches=definition.build.caches,
        )
        return {"digest": state.source_digest, "path": str(workdir)}

    def _run_build(
        self,
        request: RunRequest,
        store: CacheStore,
        state: _RunState,
        result: PipelineResult,
    ) -> dict[str, str]:
        definition = request.definition
        env = _require_env(state)
        builder = definition.builder
        with ExitStack() as stack:
            mounts = self._mount(request, store, env, env.caches, stack)
            spec = definition.build_spec(workdir=env.workdir, mount_root=env.mount_root)
            artifact_path = env.workdir / builder.artifact_relpath(spec)
            extra_env = {
                area.env_var: str(mounts[area.name].path)
                for area in env.caches
                if area.env_var is not None
            }
            inputs = BuildCacheInput(
                source_hash=state.source_digest,
                toolchain=builder.name,
                command=builder.command(spec),
                env=env.params.build_env(),
                target=definition.build.binary,
                profile=env.params.profile,
            )
            key = cache_key(inputs)
            restored = request.reuse_artifacts and self._restore(
                request, store, key, inputs, artifact_path
            )
            if restored:
                result.cache_hits.append(definition.build.binary)
                return {"artifact": str(artifact_path), "cache": "hit", "key": key}

            result.cache_misses.append(definition.build.binary)
            run_build(builder, spec, extra_env=extra_env)
            if request.reuse_artifacts and artifact_path.is_file():
                with store.acquire(ARTIFACT_BLOBS, pipeline=definition.name) as blobs:
                    blobs.put(key, artifact_path.read_bytes(), inputs=inputs)
            for mount in mounts.values():
                if mount.private:
                    mount.handle.publish(mount.path)
            return {"artifact": str(artifact_path), "cache": "miss", "key": key}

    def _run_extract(
        self,
        request: RunRequest,
        store: CacheStore,
        state: _RunState,
        result: PipelineResult,
    ) -> dict[str, str]:
        definition = request.definition
        env = _require_env(state)
        relpath = definition.builder.artifact_relpath(
            definition.build_spec(workdir=env.workdir, mount_root=env.mount_root),
        )
        # relative cache areas left their private copy in the workdir
        state.artifact = extract(
            env.workdir / relpath,
            request.artifact_path,
            build_path=str(PurePosixPath(definition.build.workdir) / relpath),
        )
        return {"path": str(state.artifact.promoted_path), "sha256": state.artifact.sha256}

    def _run_runtime(
        self,
        request: RunRequest,
        store: CacheStore,
        state: _RunState,
        result: PipelineResult,
    ) -> dict[str, str]:
        env = _require_env(state)
        if state.artifact is None:
            raise SourceFetchError("Runtime stage started without a promoted artifact.")
        state.image = assemble(
            request.definition.runtime,
            artifact=state.artifact,
            source_root=env.workdir,
            output_dir=request.image_dir,
            installer=self.installer,
            reference=request.image_reference,
            version_tag=env.params.version_tag,
        )
        return {"reference": state.image.reference, "digest": state.image.digest}

    def _mount(
        self,
        request: RunRequest,
        store: CacheStore,
        env: BuildEnvironment,
        areas: tuple[CacheArea, ...],
        stack: ExitStack,
    ) -> dict[str, _Mount]:
        """Attach cache areas to the build environment.

        Relative areas sit inside the source tree, where the build writes its
        outputs, so each run works on a private copy that is published back
        after a successful build. Absolute areas (toolchain registries) are
        linked in directly and unlinked when *stack* closes.
        """
        mounts: dict[str, _Mount] = {}
        for area in areas:
            handle = stack.enter_context(store.acquire(area, pipeline=request.definition.name))
            if area.is_relative:
                mount_point = handle.checkout(env.workdir / area.normalized_path)
                mounts[area.name] = _Mount(handle=handle, path=mount_point, private=True)
                continue
            mount_point = env.mount_root / area.normalized_path.lstrip("/")
            mount_point.parent.mkdir(parents=True, exist_ok=True)
            if mount_point.is_symlink():
                mount_point.unlink()
            elif mount_point.exists():
                shutil.rmtree(mount_point)
            mount_point.symlink_to(handle.path.resolve(), target_is_directory=True)
            stack.callback(_unmount, mount_point)
            mounts[area.name] = _Mount(handle=handle, path=mount_point)
        return mounts

    def _restore(
        self,
        request: RunRequest,
        store: CacheStore,
        key: str,
        inputs: BuildCacheInput,
        artifact_path: Path,
    ) -> bool:
        with store.acquire(ARTIFACT_BLOBS, pipeline=request.definition.name) as blobs:
            payload = blobs.get(key, expected_inputs=inputs)
        if payload is None:
            return False
        artifact_path.parent.mkdir(parents=True, exist_ok=True)
        artifact_path.write_bytes(payload)
        os.chmod(artifact_path, 0o755)
        return True

    def _log(
        self,
        request: RunRequest,
        node: StageNode,
        operation: str,
        message: str,
        extra: dict[str, str] | None = None,
    ) -> None:
        request.logger.log(
            operation=operation,
            pipeline=request.definition.name,
            stage=node.name,
            message=message,
            extra={"kind": node.kind, **(extra or {})},
        )

    def _write_report(self, request: RunRequest, result: PipelineResult) -> Path:
        artifact = result.artifact
        image = result.image
        payload = {
            "pipeline": request.definition.name,
            "run_id": request.run_id,
            "backend": self.name,
            "definition_digest": request.definition.digest(),
            "stages": [
                {
                    "stage": stage.stage,
                    "kind": stage.kind,
                    "duration_s": stage.duration_s,
                    "outputs": dict(stage.outputs),
                }
                for stage in result.stages
            ],
            "cache": {"hits": result.cache_hits, "misses": result.cache_misses},
            "artifact": None
            if artifact is None
            else {
                "name": artifact.name,
                "build_path": artifact.build_path,
                "path": str(artifact.promoted_path),
                "sha256": artifact.sha256,
            },
            "image": None
            if image is None
            else {
                "reference": image.reference,
                "digest": image.digest,
                "config_path": str(image.config_path),
            },
            "logs": request.logger.records_for_pipeline(request.definition.name),
        }
        request.report_path.parent.mkdir(parents=True, exist_ok=True)
        request.report_path.write_text(
            json.dumps(payload, indent=2, sort_keys=True) + "\n",
            encoding="utf-8",
        )
        return request.report_path


def _require_env(state: _RunState) -> BuildEnvironment:
    if state.env is None:
        raise SourceFetchError("Build environment was not created before use.")
    return state.env


def _unmount(mount_point: Path) -> None:
    if mount_point.is_symlink():
        mount_point.unlink()


def _nested_outputs(source: Path, outputs: tuple[Path, ...]) -> tuple[str, ...]:
    """Paths of *outputs* that live inside *source*, relative to it."""
    root = source.resolve()
    nested: list[str] = []
    for output in outputs:
        try:
            rel = output.resolve().relative_to(root)
        except ValueError:
            continue
        if rel == Path("."):
            raise ValidationError(
                "The work directory cannot be the source root.",
                hint="Point work_dir and cache_dir at a subdirectory or outside the source.",
                context={"source": str(source), "path": str(output)},
            )
        nested.append(rel.as_posix())
    return tuple(nested)
