"""Fluent pipeline declaration and execution entry point."""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path, PurePosixPath
from typing import Self

from .backends import LocalBackend, PipelineBackend, RunRequest
from .builders import Builder, RustBuilder
from .compiler import DockerfileEmission, emit_dockerfile
from .definition import PipelineDefinition
from .errors import ShipyardError, ValidationError
from .graph import stage_graph_for
from .models import (
    DEFAULT_WORKDIR,
    AuxiliaryDataSet,
    BuildParams,
    BuildStageSpec,
    CacheArea,
    CacheScope,
    PipelineResult,
    RuntimeSpec,
)
from .observability import StructuredLogger

# Pipeline names double as image repository names.
PIPELINE_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._-]*$")


@dataclass(slots=True)
class _PendingDataSet:
    name: str
    source: str
    dest: str | None
    env_var: str


@dataclass(slots=True)
class Pipeline:
    """Build-and-release pipeline for one server binary."""

    name: str
    source: Path = field(default_factory=lambda: Path("."))
    work_dir: Path = field(default_factory=lambda: Path("build"))
    cache_dir: Path | None = None
    builder: Builder = field(default_factory=RustBuilder)
    source_ignore: tuple[str, ...] = (".git",)
    reuse_artifacts: bool = True
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    _caches: list[CacheArea] = field(init=False, default_factory=list, repr=False)
    _build: BuildStageSpec | None = field(init=False, default=None, repr=False)
    _runtime: RuntimeSpec | None = field(init=False, default=None, repr=False)
    _packages: list[str] = field(init=False, default_factory=list, repr=False)
    _datasets: list[_PendingDataSet] = field(init=False, default_factory=list, repr=False)
    _last_result: PipelineResult | None = field(init=False, default=None, repr=False)

    def __post_init__(self) -> None:
        if not PIPELINE_NAME_PATTERN.fullmatch(self.name):
            raise ValidationError(
                "Pipeline names must be lowercase image repository names.",
                hint="Use lowercase letters, digits, '.', '_' and '-'.",
                context={"pipeline": self.name},
            )
        self.source = Path(self.source)
        self.work_dir = Path(self.work_dir)
        if self.cache_dir is not None:
            self.cache_dir = Path(self.cache_dir)

    @property
    def last_result(self) -> PipelineResult | None:
        return self._last_result

    def cache(
        self,
        name: str,
        mount_path: str,
        *,
        scope: CacheScope = "shared",
        env_var: str | None = None,
    ) -> Self:
        area = CacheArea(name=name, mount_path=mount_path, scope=scope, env_var=env_var)
        for existing in self._caches:
            if existing.name == area.name:
                raise ValidationError(
                    "cache() names must be unique within a pipeline.",
                    context={"cache": name},
                )
            if existing.normalized_path == area.normalized_path:
                raise ValidationError(
                    "Two cache areas cannot share a mount path.",
                    context={"cache": name, "conflicts_with": existing.name},
                )
        self._caches.append(area)
        if self._build is not None:
            self._build = replace(self._build, caches=tuple(self._caches))
        return self

    def build(
        self,
        *,
        package: str,
        binary: str,
        base_image: str,
        params: BuildParams | None = None,
        stage: str = "builder",
        workdir: str = DEFAULT_WORKDIR,
        builder: Builder | None = None,
    ) -> Self:
        if not package or not binary:
            raise ValidationError("build() requires a package and a binary name.")
        if "/" in binary:
            raise ValidationError(
                "build() binary must be a file name.",
                context={"binary": binary},
            )
        if not base_image:
            raise ValidationError("build() requires a base image.")
        if not workdir.startswith("/"):
            raise ValidationError(
                "build() workdir must be an absolute path.",
                context={"workdir": workdir},
            )
        if builder is not None:
            self.builder = builder
        self._build = BuildStageSpec(
            stage=stage,
            base_image=base_image,
            package=package,
            binary=binary,
            workdir=workdir,
            params=params if params is not None else BuildParams.from_env(),
            caches=tuple(self._caches),
        )
        return self

    def runtime(
        self,
        *,
        base_image: str,
        packages: tuple[str, ...] = (),
        workdir: str = DEFAULT_WORKDIR,
        env: dict[str, str] | None = None,
        entrypoint: tuple[str, ...] = (),
        stage: str = "runtime",
    ) -> Self:
        if not base_image:
            raise ValidationError("runtime() requires a base image.")
        if not workdir.startswith("/"):
            raise ValidationError(
                "runtime() workdir must be an absolute path.",
                context={"workdir": workdir},
            )
        self._runtime = RuntimeSpec(
            base_image=base_image,
            packages=tuple(packages),
            workdir=workdir,
            env=dict(env or {}),
            entrypoint=tuple(entrypoint),
            stage=stage,
        )
        return self

    def install(self, *packages: str) -> Self:
        if not packages:
            raise ValidationError("install() requires at least one package.")
        for package in packages:
            if not package:
                raise ValidationError("Package names must be non-empty.")
        self._packages.extend(packages)
        return self

    def dataset(
        self,
        name: str,
        source: str,
        *,
        env_var: str,
        dest: str | None = None,
    ) -> Self:
        for existing in self._datasets:
            if existing.name == name:
                raise ValidationError("dataset() names must be unique.", context={"dataset": name})
            if existing.env_var == env_var:
                raise ValidationError(
                    "Two datasets cannot declare the same env var.",
                    context={"dataset": name, "env_var": env_var},
                )
        self._datasets.append(
            _PendingDataSet(name=name, source=source, dest=dest, env_var=env_var),
        )
        return self

    def definition(self) -> PipelineDefinition:
        if self._build is None:
            raise ValidationError(
                "Pipeline has no build stage.",
                hint="Call build(package=..., binary=..., base_image=...) first.",
                context={"pipeline": self.name},
            )
        if self._runtime is None:
            raise ValidationError(
                "Pipeline has no runtime stage.",
                hint="Call runtime(base_image=...) first.",
                context={"pipeline": self.name},
            )
        runtime = self._runtime
        datasets = tuple(
            AuxiliaryDataSet(
                name=pending.name,
                source=pending.source,
                dest=pending.dest or str(
                    PurePosixPath(runtime.workdir) / PurePosixPath(pending.source).name
                ),
                env_var=pending.env_var,
            )
            for pending in self._datasets
        )
        dests = [dataset.dest for dataset in datasets]
        binary_path = str(PurePosixPath(runtime.workdir) / self._build.binary)
        clashing = sorted({dest for dest in dests if dests.count(dest) > 1 or dest == binary_path})
        if clashing:
            raise ValidationError(
                "Runtime image destinations must be unique.",
                context={"pipeline": self.name, "dests": ",".join(clashing)},
            )
        runtime = replace(
            runtime,
            packages=tuple(dict.fromkeys((*runtime.packages, *self._packages))),
            datasets=datasets,
        )
        return PipelineDefinition(
            name=self.name,
            source=self.source,
            build=replace(self._build, caches=tuple(self._caches)),
            runtime=runtime,
            builder=self.builder,
            source_ignore=self.source_ignore,
        )

    def plan(self) -> tuple[str, ...]:
        graph = stage_graph_for(self.definition())
        graph.validate()
        return graph.order()

    def digest(self) -> str:
        return self.definition().digest()

    def emit_dockerfile(self, path: str | Path) -> DockerfileEmission:
        definition = self.definition()
        stage_graph_for(definition).validate()
        return emit_dockerfile(definition, Path(path))

    def run(
        self,
        backend: PipelineBackend | None = None,
        *,
        run_id: str | None = None,
    ) -> PipelineResult:
        definition = self.definition()
        stage_graph_for(definition).validate()
        selected = backend if backend is not None else LocalBackend()
        request = RunRequest(
            definition=definition,
            work_dir=self.work_dir,
            cache_dir=self.cache_dir if self.cache_dir is not None else self.work_dir / ".cache",
            run_id=run_id or uuid.uuid4().hex,
            reuse_artifacts=self.reuse_artifacts,
            logger=self.logger,
        )
        self.logger.log(
            operation="pipeline_start",
            pipeline=self.name,
            stage=None,
            message="Starting pipeline run.",
            extra={"backend": selected.name, "run_id": request.run_id},
        )
        try:
            selected.prepare(request)
            try:
                result = selected.execute(request)
            finally:
                selected.cleanup(request)
        except ShipyardError as exc:
            self.logger.log(
                operation="pipeline_failed",
                pipeline=self.name,
                stage=None,
                level="error",
                message="Pipeline run aborted.",
                extra={"run_id": request.run_id, "error": exc.to_dict()},
            )
            raise
        self.logger.log(
            operation="pipeline_complete",
            pipeline=self.name,
            stage=None,
            message="Pipeline run completed.",
            extra={
                "run_id": request.run_id,
                "cache_hits": list(result.cache_hits),
                "cache_misses": list(result.cache_misses),
            },
        )
        self._last_result = result
        return result
