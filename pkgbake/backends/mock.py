"""Deterministic in-memory execution backend.

The mock never runs a process. Every exec call is recorded and answered
by a responder callable, and every environment carries a tiny in-memory
filesystem that responders can write into so the artifact collector has
something to export.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from pkgbake.backends.base import BackendHandle, ExecResult, ExecutionBackend
from pkgbake.errors import EnvironmentSetupError, RuntimeUnavailableError

if TYPE_CHECKING:
    from pkgbake.builds.context import JobPaths
    from pkgbake.recipes.models import Target

logger = logging.getLogger(__name__)

# Exit code reported for interrupted commands (128 + SIGKILL)
INTERRUPTED_EXIT_CODE = 137


@dataclass
class MockEnvironment:
    """In-memory state of one mock build environment.

    Attributes:
        image: Image the environment was created from.
        build_deps: Dependencies "installed" at creation.
        dirs: Directory paths mapped to their mode.
        files: File paths mapped to (content, mode).
        interrupted: Set when the backend interrupts this environment.
    """

    image: str
    build_deps: list[str] = field(default_factory=list)
    dirs: dict[str, int] = field(default_factory=dict)
    files: dict[str, tuple[bytes, int]] = field(default_factory=dict)
    interrupted: threading.Event = field(default_factory=threading.Event)

    def mkdir(self, path: str, mode: int = 0o755) -> None:
        """Create a directory and its parents."""
        current = PurePosixPath(path)
        for parent in [*reversed(current.parents), current]:
            key = str(parent)
            if key != "/":
                self.dirs.setdefault(key, mode)

    def write_file(self, path: str, content: bytes = b"", mode: int = 0o644) -> None:
        """Create or overwrite a file, creating parent directories."""
        self.mkdir(str(PurePosixPath(path).parent))
        self.files[path] = (content, mode)

    def exists(self, path: str) -> bool:
        return path in self.files or path in self.dirs


@dataclass
class MockExec:
    """A recorded exec call."""

    handle_id: str
    image: str
    command: str
    cwd: str
    env: dict[str, str]
    shell: str
    environment: MockEnvironment


Responder = Callable[[MockExec], "ExecResult | int | None"]


def _default_responder(call: MockExec) -> ExecResult:
    return ExecResult(exit_code=0, output="")


class MockBackend(ExecutionBackend):
    """In-memory backend with call counters for lifecycle assertions."""

    name = "mock"

    def __init__(
        self,
        responder: Responder | None = None,
        failing_images: set[str] | None = None,
        reachable: bool = True,
    ) -> None:
        self.responder = responder or _default_responder
        self.failing_images = set(failing_images or ())
        self.reachable = reachable

        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.environments: dict[str, MockEnvironment] = {}
        self.live: set[str] = set()
        self.calls: list[MockExec] = []
        self.uploads: list[tuple[Path, str]] = []
        self.create_calls = 0
        self.destroy_calls = 0
        self.interrupt_calls = 0

    def ping(self) -> None:
        if not self.reachable:
            raise RuntimeUnavailableError("mock runtime is unreachable")

    def create(
        self,
        target: Target,
        build_deps: list[str],
        paths: JobPaths,
    ) -> BackendHandle:
        with self._lock:
            self.create_calls += 1
            if target.image in self.failing_images:
                raise EnvironmentSetupError(
                    f"image '{target.image}' is unreachable", image=target.image
                )
            handle_id = f"mock-{next(self._ids)}"
            environment = MockEnvironment(
                image=target.image, build_deps=list(build_deps)
            )
            environment.mkdir(paths.bld_dir)
            environment.mkdir(paths.out_dir)
            self.environments[handle_id] = environment
            self.live.add(handle_id)
        logger.debug("Created mock environment %s for %s", handle_id, target.image)
        return BackendHandle(id=handle_id, target=target, paths=paths)

    def exec(
        self,
        handle: BackendHandle,
        command: str,
        cwd: str,
        env: Mapping[str, str],
        shell: str,
    ) -> ExecResult:
        environment = self.environments[handle.id]
        call = MockExec(
            handle_id=handle.id,
            image=handle.target.image,
            command=command,
            cwd=cwd,
            env=self.effective_env(env),
            shell=shell,
            environment=environment,
        )
        with self._lock:
            if handle.id not in self.live:
                raise OSError(f"mock environment {handle.id} is not live")
            self.calls.append(call)

        answer = self.responder(call)
        if environment.interrupted.is_set():
            return ExecResult(exit_code=INTERRUPTED_EXIT_CODE, output="killed")
        if answer is None:
            return ExecResult(exit_code=0, output="")
        if isinstance(answer, int):
            return ExecResult(exit_code=answer, output="")
        return answer

    def interrupt(self, handle: BackendHandle) -> None:
        super().interrupt(handle)
        with self._lock:
            self.interrupt_calls += 1
            environment = self.environments.get(handle.id)
        if environment is not None:
            environment.interrupted.set()

    def destroy(self, handle: BackendHandle) -> None:
        with self._lock:
            self.destroy_calls += 1
            self.live.discard(handle.id)
        logger.debug("Destroyed mock environment %s", handle.id)

    def export_dir(self, handle: BackendHandle, path: str, dest: Path) -> Path:
        environment = self.environments[handle.id]
        if path not in environment.dirs:
            raise FileNotFoundError(f"{path} does not exist in {handle.target.image}")

        root = dest / PurePosixPath(path).name
        root.mkdir(parents=True, exist_ok=True)
        prefix = path.rstrip("/") + "/"
        for dir_path, mode in sorted(environment.dirs.items()):
            if dir_path.startswith(prefix):
                local = root / dir_path[len(prefix):]
                local.mkdir(parents=True, exist_ok=True)
                local.chmod(mode)
        for file_path, (content, mode) in sorted(environment.files.items()):
            if file_path.startswith(prefix):
                local = root / file_path[len(prefix):]
                local.parent.mkdir(parents=True, exist_ok=True)
                local.write_bytes(content)
                local.chmod(mode)
        return root

    def upload_file(self, handle: BackendHandle, src: Path, dest_dir: str) -> str:
        environment = self.environments[handle.id]
        dest = str(PurePosixPath(dest_dir) / src.name)
        environment.write_file(dest, src.read_bytes(), src.stat().st_mode & 0o7777)
        self.uploads.append((src, dest))
        return dest

    def commands_for(self, image: str) -> list[str]:
        """Return the commands executed for an image, in order."""
        return [c.command for c in self.calls if c.image == image]


__all__ = [
    "INTERRUPTED_EXIT_CODE",
    "MockBackend",
    "MockEnvironment",
    "MockExec",
]
