"""Pipeline backend interfaces and implementations."""

from .base import MountSpec, PipelineBackend, RunRequest
from .docker import DockerBackend
from .local import ARTIFACT_BLOBS, LocalBackend

__all__ = [
    "ARTIFACT_BLOBS",
    "DockerBackend",
    "LocalBackend",
    "MountSpec",
    "PipelineBackend",
    "RunRequest",
]
