"""Pipeline stage implementations for host execution."""

from .extract import extract
from .install import AptInstaller, ManifestInstaller, PackageInstaller
from .runtime import assemble
from .source import snapshot_source, tree_digest

__all__ = [
    "AptInstaller",
    "ManifestInstaller",
    "PackageInstaller",
    "assemble",
    "extract",
    "snapshot_source",
    "tree_digest",
]
