"""Build history ORM model.

One BuildRecord is stored per target of every run, capturing the job's
final status, its failure reason and where the package writer put the
output.
"""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from pkgbake.db import Base
from pkgbake.types import JobStatus


class BuildRecord(Base):
    """ORM model for per-target build outcomes.

    Attributes:
        id: Primary key.
        run_id: Identifier shared by all jobs of one run.
        job_id: Numeric job id used in PKGER_BLD_DIR / PKGER_OUT_DIR.
        recipe_name: Recipe (package) name.
        recipe_version: Recipe (package) version.
        image: Target image.
        package_format: deb, rpm or pkg.
        status: Job status (pending, running, succeeded, failed, cancelled).
        requested_at: Timestamp when the record was created.
        started_at: Timestamp when the job started executing.
        finished_at: Timestamp when the job finished.
        entry_count: Number of manifest entries (succeeded jobs).
        package_path: Path returned by the package writer.
        error_type: Error code if the job failed or was cancelled.
        error_message: Error message if the job failed.
    """

    __tablename__ = "build_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    run_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    job_id: Mapped[str] = mapped_column(String(32), nullable=False)

    recipe_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    recipe_version: Mapped[str] = mapped_column(String(100), nullable=False)
    image: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    package_format: Mapped[str | None] = mapped_column(String(10), nullable=True)

    # Status and timing
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.PENDING.value, index=True
    )
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Output
    entry_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    package_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Error tracking
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("ix_build_records_recipe_image", "recipe_name", "image"),)

    def __repr__(self) -> str:
        """Return string representation of BuildRecord."""
        return (
            f"<BuildRecord(id={self.id}, recipe='{self.recipe_name}', "
            f"image='{self.image}', status='{self.status}')>"
        )

    def mark_succeeded(self, entry_count: int, package_path: str | None = None) -> None:
        """Mark this build as succeeded."""
        self.status = JobStatus.SUCCEEDED.value
        self.entry_count = entry_count
        self.package_path = package_path

    def mark_failed(
        self, error_type: str | None = None, message: str | None = None
    ) -> None:
        """Mark this build as failed.

        Args:
            error_type: Type/category of the error.
            message: Error message details.
        """
        self.status = JobStatus.FAILED.value
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message

    def mark_cancelled(self) -> None:
        """Mark this build as cancelled."""
        self.status = JobStatus.CANCELLED.value
        self.error_type = JobStatus.CANCELLED.value

    def is_succeeded(self) -> bool:
        """Check if this build succeeded."""
        return self.status == JobStatus.SUCCEEDED.value


__all__ = ["BuildRecord"]
