"""Build history service module.

This module persists per-target build outcomes and queries them:
- record_outcome(): store one JobOutcome as a BuildRecord
- DatabaseRecorder: recorder callable handed to the orchestrator
- get_build() / list_builds(): history lookups for the CLI
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from pkgbake.builds.models import BuildRecord
from pkgbake.db import get_session
from pkgbake.types import JobStatus

if TYPE_CHECKING:
    from pkgbake.builds.orchestrator import JobOutcome
    from pkgbake.recipes.models import Recipe

logger = logging.getLogger(__name__)


class BuildNotFoundError(Exception):
    """Raised when a build record is not found."""

    def __init__(self, build_id: int, code: str = "build_not_found") -> None:
        super().__init__(f"Build not found: {build_id}")
        self.build_id = build_id
        self.code = code


def record_outcome(
    session: Session,
    run_id: str,
    recipe: Recipe,
    outcome: JobOutcome,
) -> BuildRecord:
    """Store the outcome of one job.

    Args:
        session: Database session.
        run_id: Identifier of the run the job belongs to.
        recipe: Recipe that was built.
        outcome: Final outcome of the job.

    Returns:
        The flushed BuildRecord.
    """
    target = outcome.target
    record = BuildRecord(
        run_id=run_id,
        job_id=outcome.job_id,
        recipe_name=recipe.name,
        recipe_version=recipe.version,
        image=target.image,
        package_format=target.format.value if target.format else None,
        status=JobStatus.RUNNING.value,
        started_at=outcome.started_at,
        finished_at=outcome.finished_at,
    )

    if outcome.status is JobStatus.SUCCEEDED:
        entries = len(outcome.manifest.entries) if outcome.manifest else 0
        package_path = str(outcome.package_path) if outcome.package_path else None
        record.mark_succeeded(entries, package_path)
    elif outcome.status is JobStatus.CANCELLED:
        record.mark_cancelled()
    else:
        error = outcome.error
        record.mark_failed(
            error_type=getattr(error, "code", None) if error else None,
            message=str(error) if error else None,
        )

    session.add(record)
    session.flush()
    logger.debug(
        "Recorded %s build of %s for %s (id=%s)",
        record.status,
        recipe.name,
        target.image,
        record.id,
    )
    return record


class DatabaseRecorder:
    """Recorder persisting every outcome in its own transaction.

    Jobs finish on worker threads, so writes are serialized with a lock
    to keep SQLite from reporting a locked database.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory
        self._lock = threading.Lock()

    def __call__(self, run_id: str, recipe: Recipe, outcome: JobOutcome) -> None:
        with self._lock, get_session(self.session_factory) as session:
            record_outcome(session, run_id, recipe, outcome)


def get_build(session: Session, build_id: int) -> BuildRecord:
    """Get a build record by ID.

    Args:
        session: Database session.
        build_id: Build ID.

    Returns:
        BuildRecord instance.

    Raises:
        BuildNotFoundError: If build not found.
    """
    build = session.get(BuildRecord, build_id)
    if build is None:
        raise BuildNotFoundError(build_id)
    return build


def list_builds(
    session: Session,
    recipe_name: str | None = None,
    image: str | None = None,
    status: JobStatus | None = None,
    run_id: str | None = None,
    limit: int = 100,
) -> list[BuildRecord]:
    """List build records with optional filters, newest first.

    Args:
        session: Database session.
        recipe_name: Filter by recipe name.
        image: Filter by target image.
        status: Filter by status.
        run_id: Filter by run.
        limit: Maximum results to return.

    Returns:
        List of BuildRecord instances.
    """
    stmt = select(BuildRecord)

    if recipe_name is not None:
        stmt = stmt.where(BuildRecord.recipe_name == recipe_name)
    if image is not None:
        stmt = stmt.where(BuildRecord.image == image)
    if status is not None:
        stmt = stmt.where(BuildRecord.status == status.value)
    if run_id is not None:
        stmt = stmt.where(BuildRecord.run_id == run_id)

    stmt = stmt.order_by(BuildRecord.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


__all__ = [
    "BuildNotFoundError",
    "DatabaseRecorder",
    "get_build",
    "list_builds",
    "record_outcome",
]
