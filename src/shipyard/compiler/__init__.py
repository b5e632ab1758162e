"""Compiler interfaces for emitting container build files."""

from .emit_dockerfile import (
    DOCKERFILE_SYNTAX,
    DockerfileEmission,
    emit_dockerfile,
    render_dockerfile,
)

__all__ = [
    "DOCKERFILE_SYNTAX",
    "DockerfileEmission",
    "emit_dockerfile",
    "render_dockerfile",
]
