"""Protocol and request types for pipeline execution backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from shipyard.definition import PipelineDefinition
from shipyard.models import PipelineResult
from shipyard.observability import StructuredLogger


@dataclass(frozen=True, slots=True)
class MountSpec:
    source: Path
    target: str


@dataclass(frozen=True, slots=True)
class RunRequest:
    definition: PipelineDefinition
    work_dir: Path
    cache_dir: Path
    run_id: str
    reuse_artifacts: bool = True
    logger: StructuredLogger = field(default_factory=StructuredLogger)

    @property
    def pipeline_dir(self) -> Path:
        return self.work_dir / self.definition.name

    @property
    def env_root(self) -> Path:
        return self.work_dir / "envs" / self.run_id

    @property
    def artifact_path(self) -> Path:
        return self.pipeline_dir / "artifacts" / self.definition.build.binary

    @property
    def image_dir(self) -> Path:
        return self.pipeline_dir / "image"

    @property
    def report_path(self) -> Path:
        return self.pipeline_dir / "report.json"

    @property
    def image_reference(self) -> str:
        tag = self.definition.build.params.version_tag or "latest"
        return f"{self.definition.name}:{tag}"


class PipelineBackend(Protocol):
    name: str

    def mount_plan(self, request: RunRequest) -> tuple[MountSpec, ...]:
        """Return deterministic cache-area/mount-point mapping for this request."""

    def prepare(self, request: RunRequest) -> None:
        """Prepare backend runtime resources."""

    def execute(self, request: RunRequest) -> PipelineResult:
        """Run every stage and return the promoted artifact and image."""

    def cleanup(self, request: RunRequest) -> None:
        """Release backend runtime resources."""
