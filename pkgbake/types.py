"""Shared type definitions for pkgbake.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class JobStatus(str, Enum):
    """Lifecycle status of a build job."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PipelineState(str, Enum):
    """State of the stage pipeline of a single job."""

    NOT_STARTED = "not_started"
    RUNNING_CONFIGURE = "running_configure"
    RUNNING_BUILD = "running_build"
    RUNNING_INSTALL = "running_install"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StageKind(str, Enum):
    """Recipe script stage."""

    CONFIGURE = "configure"
    BUILD = "build"
    INSTALL = "install"


# Execution order of stages; recipes cannot change it.
STAGE_ORDER: tuple[StageKind, ...] = (
    StageKind.CONFIGURE,
    StageKind.BUILD,
    StageKind.INSTALL,
)


class PackageFormat(str, Enum):
    """Native package format produced for a target."""

    DEB = "deb"
    RPM = "rpm"
    PKG = "pkg"


class ArtifactKind(str, Enum):
    """Kind of a manifest entry."""

    FILE = "file"
    DIR = "dir"


@dataclass(frozen=True)
class ArtifactEntry:
    """One entry of an artifact manifest.

    Attributes:
        relative_path: POSIX path relative to the output directory.
        kind: File or directory.
        mode: Permission bits (e.g. 0o755).
        size_bytes: Size for regular files, None for directories.
        sha256: Content hash for regular files, None otherwise.
    """

    relative_path: str
    kind: ArtifactKind
    mode: int
    size_bytes: int | None = None
    sha256: str | None = None


@dataclass
class ArtifactManifest:
    """Normalized listing of a job's output directory."""

    root: str
    entries: list[ArtifactEntry] = field(default_factory=list)

    @property
    def files(self) -> list[ArtifactEntry]:
        return [e for e in self.entries if e.kind is ArtifactKind.FILE]

    @property
    def dirs(self) -> list[ArtifactEntry]:
        return [e for e in self.entries if e.kind is ArtifactKind.DIR]

    def paths(self) -> list[str]:
        return [e.relative_path for e in self.entries]


__all__ = [
    "STAGE_ORDER",
    "ArtifactEntry",
    "ArtifactKind",
    "ArtifactManifest",
    "JobStatus",
    "PackageFormat",
    "PipelineState",
    "StageKind",
]
