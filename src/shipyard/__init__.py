"""Public package entrypoint for the shipyard release pipeline."""

from .backends import DockerBackend, LocalBackend
from .builders import RustBuilder, ScriptBuilder
from .cache import CacheStore
from .errors import (
    BackendExecutionError,
    CompileError,
    CopyError,
    ExtractionError,
    PackageInstallError,
    ShipyardError,
    SourceFetchError,
    ValidationError,
)
from .models import (
    Artifact,
    AuxiliaryDataSet,
    BuildEnvironment,
    BuildParams,
    CacheArea,
    PipelineResult,
    RuntimeImage,
    RuntimeSpec,
)
from .observability import StructuredLogger
from .pipeline import Pipeline
from .recipes import server_release

__all__ = [
    "Artifact",
    "AuxiliaryDataSet",
    "BackendExecutionError",
    "BuildEnvironment",
    "BuildParams",
    "CacheArea",
    "CacheStore",
    "CompileError",
    "CopyError",
    "DockerBackend",
    "ExtractionError",
    "LocalBackend",
    "PackageInstallError",
    "Pipeline",
    "PipelineResult",
    "RuntimeImage",
    "RuntimeSpec",
    "RustBuilder",
    "ScriptBuilder",
    "ShipyardError",
    "SourceFetchError",
    "StructuredLogger",
    "ValidationError",
    "server_release",
]
