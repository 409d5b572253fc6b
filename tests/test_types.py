"""Tests for shared types module."""

from dataclasses import FrozenInstanceError

import pytest

from pkgbake.types import (
    STAGE_ORDER,
    ArtifactEntry,
    ArtifactKind,
    ArtifactManifest,
    JobStatus,
    PackageFormat,
    PipelineState,
    StageKind,
)


class TestEnums:
    """Test enum definitions."""

    def test_job_status_values(self) -> None:
        """JobStatus should have expected values."""
        assert JobStatus.PENDING.value == "pending"
        assert JobStatus.RUNNING.value == "running"
        assert JobStatus.SUCCEEDED.value == "succeeded"
        assert JobStatus.FAILED.value == "failed"
        assert JobStatus.CANCELLED.value == "cancelled"

    def test_pipeline_state_values(self) -> None:
        """PipelineState should cover every stage."""
        assert PipelineState.NOT_STARTED.value == "not_started"
        assert PipelineState.RUNNING_CONFIGURE.value == "running_configure"
        assert PipelineState.RUNNING_BUILD.value == "running_build"
        assert PipelineState.RUNNING_INSTALL.value == "running_install"

    def test_package_format_values(self) -> None:
        """PackageFormat should list the supported formats."""
        assert {f.value for f in PackageFormat} == {"deb", "rpm", "pkg"}

    def test_stage_order_is_fixed(self) -> None:
        """Stages run configure, build, install."""
        assert STAGE_ORDER == (StageKind.CONFIGURE, StageKind.BUILD, StageKind.INSTALL)


class TestArtifactManifest:
    """Test ArtifactManifest dataclass."""

    def test_files_and_dirs(self) -> None:
        """files/dirs should split entries by kind."""
        manifest = ArtifactManifest(
            root="/out",
            entries=[
                ArtifactEntry("usr", ArtifactKind.DIR, 0o755),
                ArtifactEntry("usr/bin", ArtifactKind.DIR, 0o755),
                ArtifactEntry("usr/bin/tool", ArtifactKind.FILE, 0o755, 10, "ab"),
            ],
        )
        assert [e.relative_path for e in manifest.dirs] == ["usr", "usr/bin"]
        assert [e.relative_path for e in manifest.files] == ["usr/bin/tool"]
        assert manifest.paths() == ["usr", "usr/bin", "usr/bin/tool"]

    def test_entry_is_immutable(self) -> None:
        """Entries are frozen."""
        entry = ArtifactEntry("a", ArtifactKind.FILE, 0o644)
        with pytest.raises(FrozenInstanceError):
            entry.mode = 0o600  # type: ignore[misc]
