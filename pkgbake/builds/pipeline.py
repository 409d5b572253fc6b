"""Stage pipeline for a single build job.

Runs configure -> build -> install against one live backend handle.
The order is fixed. Stages without steps are skipped, steps excluded by
their target filter are skipped without touching the backend, and the
first nonzero exit fails the pipeline: no later step or stage runs.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from pkgbake.builds.context import DEFAULT_SHELL, build_stage_context
from pkgbake.errors import PkgbakeError, StepExecutionError
from pkgbake.types import STAGE_ORDER, PipelineState, StageKind

if TYPE_CHECKING:
    from pkgbake.backends.base import BackendHandle, ExecutionBackend
    from pkgbake.builds.context import JobPaths
    from pkgbake.recipes.models import Recipe, Stage, Target

logger = logging.getLogger(__name__)

_RUNNING_STATES = {
    StageKind.CONFIGURE: PipelineState.RUNNING_CONFIGURE,
    StageKind.BUILD: PipelineState.RUNNING_BUILD,
    StageKind.INSTALL: PipelineState.RUNNING_INSTALL,
}


def _never_abort() -> None:
    return None


class StagePipeline:
    """State machine driving the three stages of one job.

    Args:
        recipe: Recipe being built.
        target: Target of the job.
        backend: Backend owning ``handle``.
        handle: Live environment of the job.
        paths: Job directories.
        default_shell: Shell for stages that declare none.
        check_abort: Called before and after every exec; raises to abort
            the pipeline (cancellation, timeout).
    """

    def __init__(
        self,
        recipe: Recipe,
        target: Target,
        backend: ExecutionBackend,
        handle: BackendHandle,
        paths: JobPaths,
        default_shell: str = DEFAULT_SHELL,
        check_abort: Callable[[], None] | None = None,
    ) -> None:
        self.recipe = recipe
        self.target = target
        self.backend = backend
        self.handle = handle
        self.paths = paths
        self.default_shell = default_shell
        self.check_abort = check_abort or _never_abort

        self.state = PipelineState.NOT_STARTED
        self.executed: list[tuple[StageKind, int]] = []
        self.skipped: list[tuple[StageKind, int]] = []

    def run(self) -> None:
        """Run every stage in order.

        Raises:
            StepExecutionError: If a step exits nonzero.
            PkgbakeError: If ``check_abort`` aborts the run.
        """
        if self.state is not PipelineState.NOT_STARTED:
            raise RuntimeError(f"pipeline already ran (state={self.state.value})")

        try:
            for kind in STAGE_ORDER:
                stage = self.recipe.stage(kind)
                if not stage:
                    logger.info("[%s] no %s steps to run", self.target, kind.value)
                    continue
                self.state = _RUNNING_STATES[kind]
                self._run_stage(stage)
        except PkgbakeError:
            self.state = PipelineState.FAILED
            raise

        self.state = PipelineState.SUCCEEDED
        logger.info("[%s] all stages finished", self.target)

    def _run_stage(self, stage: Stage) -> None:
        kind = stage.kind
        ctx = build_stage_context(
            self.recipe,
            self.target,
            kind,
            self.paths,
            default_working_dir=self.backend.default_working_dir(self.paths),
            default_shell=self.default_shell,
        )
        logger.info(
            "[%s] executing %s steps (cwd=%s, shell=%s)",
            self.target,
            kind.value,
            ctx.working_dir,
            ctx.shell,
        )

        for index, step in enumerate(stage.steps):
            if not step.runs_on(self.target):
                logger.debug(
                    "[%s] skipping %s.steps[%d], excluded by filter: %s",
                    self.target,
                    kind.value,
                    index,
                    step.command,
                )
                self.skipped.append((kind, index))
                continue

            self.check_abort()
            logger.debug(
                "[%s] running %s.steps[%d]: %s",
                self.target,
                kind.value,
                index,
                step.command,
            )
            try:
                result = self.backend.exec(
                    self.handle, step.command, ctx.working_dir, ctx.env, ctx.shell
                )
            except OSError as e:
                self.check_abort()
                raise StepExecutionError(
                    image=self.target.image,
                    stage=kind.value,
                    step_index=index,
                    command=step.command,
                    exit_code=-1,
                    output=str(e),
                ) from e

            # A killed command surfaces as the abort reason, not a step failure
            self.check_abort()
            self.executed.append((kind, index))
            if not result.success:
                raise StepExecutionError(
                    image=self.target.image,
                    stage=kind.value,
                    step_index=index,
                    command=step.command,
                    exit_code=result.exit_code,
                    output=result.output,
                )


__all__ = ["StagePipeline"]
