"""Docker execution backend.

Each job gets its own container started from the target image and kept
alive with a sleeping init process. Steps run through the exec API with
a scrubbed environment (``env -i``) so only the job environment and the
explicit pass-through variables are visible to recipe scripts.
"""

from __future__ import annotations

import codecs
import io
import logging
import tarfile
import tempfile
import uuid
from collections.abc import Mapping
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from pkgbake.backends.base import BackendHandle, ExecResult, ExecutionBackend
from pkgbake.backends.packages import package_manager_for
from pkgbake.errors import (
    ArtifactCollectionError,
    EnvironmentSetupError,
    RuntimeUnavailableError,
)

if TYPE_CHECKING:
    from pkgbake.builds.context import JobPaths
    from pkgbake.recipes.models import Target

logger = logging.getLogger(__name__)

CONTAINER_LABEL = "io.pkgbake.job"
KEEPALIVE_COMMAND = ["sleep", "infinity"]
STOP_TIMEOUT = 5


def _container_name(image: str) -> str:
    safe = image.replace("/", "-").replace(":", "-")
    return f"pkgbake-{safe}-{uuid.uuid4().hex[:8]}"


def _escapes(path: PurePosixPath) -> bool:
    depth = 0
    for part in path.parts:
        if part == "..":
            depth -= 1
        elif part != ".":
            depth += 1
        if depth < 0:
            return True
    return False


def _safe_members(tar: tarfile.TarFile) -> list[tarfile.TarInfo]:
    """Return the archive members, refusing any that leave the destination.

    Absolute symlinks are kept (they point into the image, not the host),
    but nothing may be extracted through a symlinked directory.
    """
    members = tar.getmembers()
    links: set[str] = set()
    for member in members:
        path = PurePosixPath(member.name)
        if path.is_absolute() or _escapes(path):
            raise ValueError(f"Refusing to extract {member.name}: path traversal")
        if any(str(parent) in links for parent in path.parents):
            raise ValueError(f"Refusing to extract {member.name}: through a link")
        if member.issym():
            target = PurePosixPath(member.linkname)
            if not target.is_absolute() and _escapes(path.parent / target):
                raise ValueError(f"Refusing to extract {member.name}: link escapes")
            links.add(str(path))
        elif member.islnk():
            target = PurePosixPath(member.linkname)
            if target.is_absolute() or _escapes(target):
                raise ValueError(f"Refusing to extract {member.name}: link escapes")
        elif not (member.isreg() or member.isdir()):
            raise ValueError(f"Refusing to extract {member.name}: special file")
    return members



class _LineLogger:
    """Splits streamed output into lines for the log."""

    def __init__(self, image: str) -> None:
        self._image = image
        self._partial = ""

    def feed(self, text: str) -> None:
        text = self._partial + text
        lines = text.split("\n")
        self._partial = lines.pop()
        for line in lines:
            logger.debug("[%s] %s", self._image, line.rstrip("\r"))

    def flush(self) -> None:
        if self._partial:
            logger.debug("[%s] %s", self._image, self._partial)
            self._partial = ""


class DockerBackend(ExecutionBackend):
    """Execution backend talking to a Docker daemon."""

    name = "docker"

    def __init__(
        self,
        client: docker.DockerClient | None = None,
        base_url: str | None = None,
        keep_containers: bool = False,
        pull_missing: bool = True,
    ) -> None:
        self._client = client
        self._base_url = base_url
        self.keep_containers = keep_containers
        self.pull_missing = pull_missing

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                if self._base_url:
                    self._client = docker.DockerClient(base_url=self._base_url)
                else:
                    self._client = docker.from_env()
            except DockerException as e:
                raise RuntimeUnavailableError(
                    f"Cannot connect to Docker: {e}"
                ) from e
        return self._client

    def ping(self) -> None:
        try:
            self.client.ping()
        except (DockerException, OSError) as e:
            raise RuntimeUnavailableError(f"Docker daemon is unreachable: {e}") from e

    def _ensure_image(self, image: str) -> None:
        try:
            self.client.images.get(image)
            return
        except ImageNotFound:
            if not self.pull_missing:
                raise
        logger.info("Pulling image %s", image)
        self.client.images.pull(image)

    def create(
        self,
        target: Target,
        build_deps: list[str],
        paths: JobPaths,
    ) -> BackendHandle:
        image = target.image
        try:
            self._ensure_image(image)
            container = self.client.containers.run(
                image,
                command=KEEPALIVE_COMMAND,
                detach=True,
                name=_container_name(image),
                labels={CONTAINER_LABEL: paths.job_id},
            )
        except (DockerException, OSError) as e:
            raise EnvironmentSetupError(
                f"Failed to start container from image '{image}': {e}",
                image=image,
            ) from e

        handle = BackendHandle(
            id=container.id,
            target=target,
            paths=paths,
            extra={"container": container},
        )
        logger.info("Started container %s for %s", container.id[:12], image)

        try:
            self._provision(handle, build_deps)
        except Exception:
            self.destroy(handle)
            raise
        return handle

    def _provision(self, handle: BackendHandle, build_deps: list[str]) -> None:
        image = handle.target.image
        paths = handle.paths
        result = self._run(handle, ["mkdir", "-p", paths.bld_dir, paths.out_dir])
        if not result.success:
            raise EnvironmentSetupError(
                f"Failed to create job directories in '{image}'",
                image=image,
                output=result.output,
            )

        if not build_deps:
            return
        manager = package_manager_for(handle.target)
        if manager is None:
            raise EnvironmentSetupError(
                f"No package manager known for os '{handle.target.os}' "
                f"of image '{image}'",
                image=image,
            )
        script = manager.install_script(build_deps)
        logger.info("Installing %d build dependencies on %s", len(build_deps), image)
        result = self._run(handle, ["/bin/sh", "-c", script])
        if not result.success:
            raise EnvironmentSetupError(
                f"Installing build dependencies on '{image}' failed "
                f"with exit code {result.exit_code}",
                image=image,
                output=result.output,
            )

    def _run(
        self,
        handle: BackendHandle,
        argv: list[str],
        workdir: str | None = None,
    ) -> ExecResult:
        api = self.client.api
        try:
            exec_id = api.exec_create(
                handle.id,
                argv,
                stdout=True,
                stderr=True,
                tty=False,
                workdir=workdir,
            )["Id"]
            stream = api.exec_start(exec_id, stream=True, demux=False)
            lines = _LineLogger(handle.target.image)
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            chunks: list[str] = []
            for chunk in stream:
                text = decoder.decode(chunk)
                chunks.append(text)
                lines.feed(text)
            tail = decoder.decode(b"", final=True)
            chunks.append(tail)
            lines.feed(tail)
            lines.flush()
            info: dict[str, Any] = api.exec_inspect(exec_id)
        except (APIError, NotFound) as e:
            raise OSError(f"exec in container {handle.id[:12]} failed: {e}") from e

        exit_code = info.get("ExitCode")
        if exit_code is None:
            # Process did not finish, e.g. the container was killed
            exit_code = -1
        return ExecResult(exit_code=exit_code, output="".join(chunks))

    def exec(
        self,
        handle: BackendHandle,
        command: str,
        cwd: str,
        env: Mapping[str, str],
        shell: str,
    ) -> ExecResult:
        env_args = [f"{k}={v}" for k, v in sorted(self.effective_env(env).items())]
        argv = ["env", "-i", *env_args, shell, "-c", command]
        return self._run(handle, argv, workdir=cwd)

    def interrupt(self, handle: BackendHandle) -> None:
        super().interrupt(handle)
        try:
            self.client.containers.get(handle.id).kill()
            logger.info("Killed container %s", handle.id[:12])
        except NotFound:
            pass
        except APIError as e:
            logger.warning("Failed to kill container %s: %s", handle.id[:12], e)

    def destroy(self, handle: BackendHandle) -> None:
        try:
            container = self.client.containers.get(handle.id)
        except NotFound:
            return
        if self.keep_containers:
            container.stop(timeout=STOP_TIMEOUT)
            logger.info("Stopped container %s (kept)", handle.id[:12])
            return
        try:
            container.remove(force=True)
        except NotFound:
            return
        logger.info("Removed container %s", handle.id[:12])

    def export_dir(self, handle: BackendHandle, path: str, dest: Path) -> Path:
        container = self.client.containers.get(handle.id)
        try:
            bits, _ = container.get_archive(path)
        except NotFound as e:
            raise FileNotFoundError(
                f"{path} does not exist in {handle.target.image}"
            ) from e

        dest.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryFile() as archive:
            for chunk in bits:
                archive.write(chunk)
            archive.seek(0)
            try:
                with tarfile.open(fileobj=archive, mode="r:") as tar:
                    # Paths are vetted by _safe_members; setuid and group bits survive
                    tar.extractall(
                        dest, members=_safe_members(tar), filter="fully_trusted"
                    )
            except (tarfile.TarError, ValueError) as e:
                raise ArtifactCollectionError(
                    f"Cannot unpack {path} from {handle.target.image}: {e}",
                    path=path,
                ) from e

        return dest / PurePosixPath(path).name

    def upload_file(self, handle: BackendHandle, src: Path, dest_dir: str) -> str:
        result = self._run(handle, ["mkdir", "-p", dest_dir])
        if not result.success:
            raise OSError(f"cannot create {dest_dir}: {result.output.strip()}")

        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            tar.add(src, arcname=src.name, recursive=False)
        container = self.client.containers.get(handle.id)
        try:
            ok = container.put_archive(dest_dir, buffer.getvalue())
        except (APIError, NotFound) as e:
            raise OSError(f"cannot copy {src} into {handle.id[:12]}: {e}") from e
        if not ok:
            raise OSError(f"cannot copy {src} into {handle.id[:12]}")
        return str(PurePosixPath(dest_dir) / src.name)


__all__ = ["CONTAINER_LABEL", "DockerBackend"]
