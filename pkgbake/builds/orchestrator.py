"""Multi-target build orchestration.

This module provides the high-level build API:
- BuildOrchestrator.run(): build a recipe for all (or some) of its targets
- One BuildJob per target, run concurrently on a bounded thread pool
- Guaranteed environment teardown on every exit path
- Cancellation and per-job timeouts
- Per-target outcomes aggregated into a BuildReport

A failure in one job never stops the others. Only recipe validation and
an unreachable execution runtime abort the whole run, and both are
detected before any job starts.
"""

from __future__ import annotations

import logging
import tempfile
import threading
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pkgbake.backends.packages import resolve_build_deps
from pkgbake.builds.artifacts import collect_artifacts, entry_to_dict, remove_tree
from pkgbake.builds.context import DEFAULT_SHELL, JobIdAllocator, JobPaths
from pkgbake.builds.pipeline import StagePipeline
from pkgbake.builds.sources import fetch_sources
from pkgbake.errors import (
    INTERNAL_ERROR,
    ArtifactCollectionError,
    BuildCancelledError,
    BuildTimeoutError,
    PkgbakeError,
    RecipeValidationError,
)
from pkgbake.types import JobStatus, PipelineState

if TYPE_CHECKING:
    from pkgbake.backends.base import BackendHandle, ExecutionBackend
    from pkgbake.builds.writer import PackageWriter
    from pkgbake.config import Settings
    from pkgbake.recipes.models import Recipe, Target
    from pkgbake.types import ArtifactManifest

logger = logging.getLogger(__name__)

ABORT_CANCELLED = "cancelled"
ABORT_TIMEOUT = "timeout"


@dataclass
class JobOutcome:
    """Final outcome of one build job.

    Attributes:
        target: Target of the job.
        job_id: Numeric job id used in the job directories.
        status: SUCCEEDED, FAILED or CANCELLED.
        pipeline_state: Last pipeline state reached.
        manifest: Collected manifest (succeeded jobs only).
        error: Failure or cancellation reason.
        package_path: Path returned by the package writer.
        started_at: When the job started running.
        finished_at: When the job finished.
    """

    target: Target
    job_id: str
    status: JobStatus
    pipeline_state: PipelineState = PipelineState.NOT_STARTED
    manifest: ArtifactManifest | None = None
    error: PkgbakeError | None = None
    package_path: Path | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is JobStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: dict[str, Any] = {
            "image": self.target.image,
            "job_id": self.job_id,
            "status": self.status.value,
            "pipeline_state": self.pipeline_state.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
        if self.manifest is not None:
            data["manifest"] = [entry_to_dict(e) for e in self.manifest.entries]
        if self.error is not None:
            data["error"] = self.error.to_dict()
        if self.package_path is not None:
            data["package_path"] = str(self.package_path)
        return data


class BuildReport:
    """Per-target outcomes of one run.

    Jobs append through record(), the single serialization point; no job
    ever reads another job's outcome.
    """

    def __init__(self, recipe: Recipe, targets: list[Target], run_id: str) -> None:
        self.recipe = recipe
        self.targets = list(targets)
        self.run_id = run_id
        self._lock = threading.Lock()
        self._outcomes: list[JobOutcome] = []

    def record(self, outcome: JobOutcome) -> None:
        with self._lock:
            self._outcomes.append(outcome)

    @property
    def outcomes(self) -> list[JobOutcome]:
        """Outcomes in requested target order."""
        order = {t.image: i for i, t in enumerate(self.targets)}
        with self._lock:
            items = list(self._outcomes)
        return sorted(items, key=lambda o: order.get(o.target.image, len(order)))

    def outcome_for(self, image: str) -> JobOutcome:
        for outcome in self.outcomes:
            if outcome.target.image == image:
                return outcome
        raise KeyError(image)

    def _with_status(self, status: JobStatus) -> list[JobOutcome]:
        return [o for o in self.outcomes if o.status is status]

    @property
    def succeeded(self) -> list[JobOutcome]:
        return self._with_status(JobStatus.SUCCEEDED)

    @property
    def failed(self) -> list[JobOutcome]:
        return self._with_status(JobStatus.FAILED)

    @property
    def cancelled(self) -> list[JobOutcome]:
        return self._with_status(JobStatus.CANCELLED)

    @property
    def ok(self) -> bool:
        """True only if every requested target succeeded."""
        outcomes = self.outcomes
        return len(outcomes) == len(self.targets) and all(o.succeeded for o in outcomes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "run_id": self.run_id,
            "recipe": self.recipe.name,
            "version": self.recipe.version,
            "ok": self.ok,
            "total": len(self.targets),
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "cancelled": len(self.cancelled),
            "results": [o.to_dict() for o in self.outcomes],
        }


class BuildJob:
    """One (recipe, target) unit of concurrent work.

    Holds at most one live backend handle at a time and the abort reason
    set by cancellation or timeout.
    """

    def __init__(
        self,
        recipe: Recipe,
        target: Target,
        job_id: str,
        timeout: float | None = None,
    ) -> None:
        self.recipe = recipe
        self.target = target
        self.job_id = job_id
        self.timeout = timeout
        self.paths = JobPaths.for_job(recipe.name, job_id)
        self.status = JobStatus.PENDING

        self._lock = threading.Lock()
        self._handle: BackendHandle | None = None
        self._abort_reason: str | None = None

    def attach(self, handle: BackendHandle) -> None:
        with self._lock:
            if self._handle is not None:
                raise RuntimeError(f"job {self.job_id} already has a live handle")
            self._handle = handle

    def detach(self) -> None:
        with self._lock:
            self._handle = None

    def abort(self, reason: str, backend: ExecutionBackend) -> None:
        """Request the job to stop and interrupt its running command."""
        with self._lock:
            if self._abort_reason is None:
                self._abort_reason = reason
            handle = self._handle
        if handle is not None:
            logger.info("[%s] aborting job %s (%s)", self.target, self.job_id, reason)
            backend.interrupt(handle)

    def check_abort(self) -> None:
        """Raise the error matching the abort reason, if any."""
        reason = self._abort_reason
        if reason == ABORT_CANCELLED:
            raise BuildCancelledError(self.target.image)
        if reason == ABORT_TIMEOUT:
            raise BuildTimeoutError(self.target.image, self.timeout or 0)


Recorder = Callable[[str, "Recipe", JobOutcome], None]


class BuildOrchestrator:
    """Fan a recipe out into concurrent per-target build jobs.

    Args:
        backend: Execution backend, chosen by the caller.
        settings: Application settings (parallelism, timeout, shell).
        writer: Optional package writer receiving succeeded jobs.
        recorder: Optional callable persisting each outcome.
        max_parallel_jobs: Overrides settings.max_parallel_jobs.
        job_timeout: Overrides settings.job_timeout (seconds).
        staging_dir: Host directory for exported output trees.
    """

    def __init__(
        self,
        backend: ExecutionBackend,
        settings: Settings | None = None,
        writer: PackageWriter | None = None,
        recorder: Recorder | None = None,
        max_parallel_jobs: int | None = None,
        job_timeout: float | None = None,
        staging_dir: Path | None = None,
    ) -> None:
        self.backend = backend
        self.writer = writer
        self.recorder = recorder

        self.max_parallel_jobs = max_parallel_jobs or (
            settings.max_parallel_jobs if settings else 4
        )
        self.job_timeout = job_timeout if job_timeout is not None else (
            settings.job_timeout if settings else None
        )
        self.default_shell = settings.default_shell if settings else DEFAULT_SHELL
        self.staging_dir = staging_dir or (settings.tmp_dir if settings else None)

        self._cancel_event = threading.Event()
        self._jobs_lock = threading.Lock()
        self._jobs: list[BuildJob] = []

    @staticmethod
    def select_targets(recipe: Recipe, images: list[str] | None = None) -> list[Target]:
        """Resolve requested image names to recipe targets.

        Raises:
            RecipeValidationError: If an image is not declared by the recipe.
        """
        if not images:
            return list(recipe.targets)
        selected: list[Target] = []
        unknown: list[str] = []
        for image in images:
            try:
                target = recipe.target(image)
            except KeyError:
                unknown.append(f"requested image '{image}' is not declared")
                continue
            if target not in selected:
                selected.append(target)
        if unknown:
            raise RecipeValidationError(unknown, recipe=recipe.name)
        return selected

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Cancel the run: every in-flight job is interrupted and torn down."""
        self._cancel_event.set()
        with self._jobs_lock:
            jobs = list(self._jobs)
        logger.warning("Cancelling %d job(s)", len(jobs))
        for job in jobs:
            job.abort(ABORT_CANCELLED, self.backend)

    def run(self, recipe: Recipe, images: list[str] | None = None) -> BuildReport:
        """Build a recipe for the requested targets.

        Args:
            recipe: Validated recipe.
            images: Image names to build; all targets when empty.

        Returns:
            BuildReport with one outcome per requested target.

        Raises:
            RecipeValidationError: If a requested image is unknown.
            RuntimeUnavailableError: If the runtime cannot be reached.
        """
        targets = self.select_targets(recipe, images)
        self.backend.ping()

        run_id = uuid.uuid4().hex[:12]
        report = BuildReport(recipe, targets, run_id)
        ids = JobIdAllocator()
        jobs = [BuildJob(recipe, t, ids.next_id(), self.job_timeout) for t in targets]
        with self._jobs_lock:
            self._jobs = jobs

        workers = max(1, min(self.max_parallel_jobs, len(jobs)))
        logger.info(
            "Building %s %s for %d target(s) with %d worker(s) [run %s]",
            recipe.name,
            recipe.version,
            len(jobs),
            workers,
            run_id,
        )

        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="pkgbake-job"
        ) as pool:
            futures = [pool.submit(self._run_job, job, report) for job in jobs]
            try:
                wait(futures)
            except KeyboardInterrupt:
                logger.warning("Interrupted, cancelling build")
                self.cancel()
                wait(futures)

        for future in futures:
            # _run_job records every outcome itself; surface programming errors
            future.result()

        logger.info(
            "Run %s finished: %d succeeded, %d failed, %d cancelled",
            run_id,
            len(report.succeeded),
            len(report.failed),
            len(report.cancelled),
        )
        return report

    def _run_job(self, job: BuildJob, report: BuildReport) -> None:
        outcome = self._execute(job)
        job.status = outcome.status
        report.record(outcome)
        if self.recorder is not None:
            try:
                self.recorder(report.run_id, job.recipe, outcome)
            except Exception:
                logger.exception("[%s] failed to record build outcome", job.target)

    def _execute(self, job: BuildJob) -> JobOutcome:
        outcome = JobOutcome(
            target=job.target, job_id=job.job_id, status=JobStatus.PENDING
        )

        if self._cancel_event.is_set():
            outcome.status = JobStatus.CANCELLED
            outcome.error = BuildCancelledError(job.target.image)
            return outcome

        timer: threading.Timer | None = None
        if job.timeout:
            timer = threading.Timer(
                job.timeout, job.abort, args=(ABORT_TIMEOUT, self.backend)
            )
            timer.daemon = True
            timer.start()

        job.status = JobStatus.RUNNING
        outcome.started_at = datetime.now(timezone.utc)
        staging: Path | None = None
        pipeline: StagePipeline | None = None
        logger.info("[%s] starting job %s", job.target, job.job_id)

        try:
            deps = resolve_build_deps(job.recipe, job.target)
            with self.backend.session(job.target, deps, job.paths) as handle:
                job.attach(handle)
                try:
                    job.check_abort()
                    fetch_sources(
                        job.recipe,
                        job.target,
                        self.backend,
                        handle,
                        job.paths,
                        shell=self.default_shell,
                        check_abort=job.check_abort,
                    )
                    pipeline = StagePipeline(
                        job.recipe,
                        job.target,
                        self.backend,
                        handle,
                        job.paths,
                        default_shell=self.default_shell,
                        check_abort=job.check_abort,
                    )
                    pipeline.run()

                    staging = Path(
                        tempfile.mkdtemp(
                            prefix=f"pkgbake-{job.recipe.name}-{job.job_id}-",
                            dir=self.staging_dir,
                        )
                    )
                    try:
                        root = self.backend.export_dir(
                            handle, job.paths.out_dir, staging
                        )
                    except OSError as e:
                        raise ArtifactCollectionError(
                            f"[{job.target}] cannot export {job.paths.out_dir}: {e}",
                            path=job.paths.out_dir,
                        ) from e
                    manifest = collect_artifacts(root, job.recipe.metadata.exclude)
                finally:
                    job.detach()

            job.check_abort()
            if self.writer is not None:
                outcome.package_path = self.writer.write(
                    job.target, manifest, job.recipe, root
                )
            outcome.manifest = manifest
            outcome.status = JobStatus.SUCCEEDED
            logger.info("[%s] job %s succeeded", job.target, job.job_id)

        except BuildCancelledError as e:
            outcome.status = JobStatus.CANCELLED
            outcome.error = e
            logger.warning("[%s] job %s cancelled", job.target, job.job_id)
        except PkgbakeError as e:
            outcome.status = JobStatus.FAILED
            outcome.error = e
            logger.error("[%s] job %s failed: %s", job.target, job.job_id, e)
        except Exception as e:
            logger.exception("[%s] job %s crashed", job.target, job.job_id)
            outcome.status = JobStatus.FAILED
            outcome.error = PkgbakeError(
                f"[{job.target}] internal error: {e}", code=INTERNAL_ERROR
            )
        finally:
            if timer is not None:
                timer.cancel()
            if staging is not None:
                try:
                    remove_tree(staging)
                except OSError as e:
                    logger.warning(
                        "[%s] cannot remove staging dir %s: %s", job.target, staging, e
                    )

        if pipeline is not None:
            outcome.pipeline_state = pipeline.state
        outcome.finished_at = datetime.now(timezone.utc)
        return outcome


__all__ = [
    "BuildJob",
    "BuildOrchestrator",
    "BuildReport",
    "JobOutcome",
]
