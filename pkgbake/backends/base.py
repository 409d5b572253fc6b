"""Execution backend interface.

A backend provisions one isolated build environment per job, executes
commands inside it and tears it down again. Implementations:

- DockerBackend: containers via the Docker Engine API
- MockBackend: deterministic in-memory backend for tests
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pkgbake.builds.context import JobPaths
    from pkgbake.recipes.models import Target

logger = logging.getLogger(__name__)

# PATH handed to steps when the recipe does not set one
DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"


@dataclass
class ExecResult:
    """Result of executing one command.

    Attributes:
        exit_code: Process exit code.
        output: Combined stdout/stderr.
    """

    exit_code: int
    output: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0


@dataclass
class BackendHandle:
    """A live isolated build environment bound to one job.

    Attributes:
        id: Backend-specific identifier (e.g. container id).
        target: Target the environment was created for.
        paths: Job directories inside the environment.
        interrupted: Set once interrupt() was requested.
    """

    id: str
    target: Target
    paths: JobPaths
    interrupted: bool = False
    extra: dict[str, object] = field(default_factory=dict)


class ExecutionBackend(ABC):
    """Capability interface: create, exec, destroy, file transfer."""

    name = "abstract"

    # Variables passed through when the job environment does not set them
    passthrough_env: Mapping[str, str] = {"PATH": DEFAULT_PATH}

    def ping(self) -> None:
        """Check that the runtime is reachable.

        Raises:
            RuntimeUnavailableError: If the runtime cannot be reached.
        """

    @abstractmethod
    def create(
        self,
        target: Target,
        build_deps: list[str],
        paths: JobPaths,
    ) -> BackendHandle:
        """Provision an environment from the target image.

        Creates the job directories and installs build dependencies
        before returning.

        Raises:
            EnvironmentSetupError: If the image is unreachable or
                dependency installation fails.
        """

    @abstractmethod
    def exec(
        self,
        handle: BackendHandle,
        command: str,
        cwd: str,
        env: Mapping[str, str],
        shell: str,
    ) -> ExecResult:
        """Run ``shell -c command`` in ``cwd`` with exactly ``env``."""

    @abstractmethod
    def destroy(self, handle: BackendHandle) -> None:
        """Tear down the environment. Must be idempotent."""

    @abstractmethod
    def export_dir(self, handle: BackendHandle, path: str, dest: Path) -> Path:
        """Copy a directory out of the environment.

        Args:
            handle: Live handle.
            path: Directory inside the environment.
            dest: Host directory to copy into (created if missing).

        Returns:
            Host path holding the directory contents.

        Raises:
            FileNotFoundError: If the directory does not exist.
        """

    @abstractmethod
    def upload_file(self, handle: BackendHandle, src: Path, dest_dir: str) -> str:
        """Copy a host file into a directory of the environment.

        Args:
            handle: Live handle.
            src: Host file.
            dest_dir: Directory inside the environment (created if missing).

        Returns:
            Path of the copy inside the environment.

        Raises:
            OSError: If the file cannot be read or copied.
        """

    def interrupt(self, handle: BackendHandle) -> None:
        """Best-effort termination of the command running in ``handle``."""
        handle.interrupted = True

    def default_working_dir(self, paths: JobPaths) -> str:
        """Working directory of the configure stage when none is declared."""
        return paths.bld_dir

    def effective_env(self, env: Mapping[str, str]) -> dict[str, str]:
        """Return ``env`` plus pass-through variables it does not set."""
        result = {k: v for k, v in self.passthrough_env.items() if k not in env}
        result.update(env)
        return result

    @contextmanager
    def session(
        self,
        target: Target,
        build_deps: list[str],
        paths: JobPaths,
    ) -> Iterator[BackendHandle]:
        """Create an environment and destroy it on every exit path.

        Yields:
            Live BackendHandle.
        """
        handle = self.create(target, build_deps, paths)
        try:
            yield handle
        finally:
            try:
                self.destroy(handle)
            except Exception:
                logger.exception(
                    "Failed to destroy %s environment %s", self.name, handle.id
                )


__all__ = [
    "DEFAULT_PATH",
    "BackendHandle",
    "ExecResult",
    "ExecutionBackend",
]
