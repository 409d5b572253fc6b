"""Source fetching for a build job.

Before configure runs, the recipe's git repository is cloned into
PKGER_BLD_DIR and its ``source`` archive is unpacked on top. A source is
either an http(s) URL, downloaded inside the environment, or a host path
uploaded through the backend.
"""

from __future__ import annotations

import logging
import posixpath
import shlex
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import urlparse

from pkgbake.builds.context import DEFAULT_SHELL, resolve_env
from pkgbake.errors import SourceFetchError

if TYPE_CHECKING:
    from pkgbake.backends.base import BackendHandle, ExecutionBackend
    from pkgbake.builds.context import JobPaths
    from pkgbake.recipes.models import Recipe, Target

logger = logging.getLogger(__name__)

GIT_DEPS = ("git",)
DOWNLOAD_DEPS = ("curl", "tar")
UPLOAD_DEPS = ("tar",)

DEFAULT_ARCHIVE_NAME = "source.tar"


def is_remote(source: str) -> bool:
    """Return True for sources downloaded inside the environment."""
    return urlparse(source).scheme in ("http", "https")


def download_dir(paths: JobPaths) -> str:
    """Directory holding the source archive of a job."""
    return f"/tmp/pkgbake-src-{paths.job_id}"


def archive_name(source: str) -> str:
    if is_remote(source):
        name = posixpath.basename(urlparse(source).path)
    else:
        name = Path(source).name
    return name or DEFAULT_ARCHIVE_NAME


def source_deps(recipe: Recipe) -> list[str]:
    """Return the tools the environment needs to fetch the recipe sources."""
    deps: list[str] = []
    meta = recipe.metadata
    if meta.git is not None:
        deps.extend(GIT_DEPS)
    if meta.source is not None:
        deps.extend(DOWNLOAD_DEPS if is_remote(meta.source) else UPLOAD_DEPS)
    return list(dict.fromkeys(deps))


def git_clone_command(url: str, branch: str | None, dest: str) -> str:
    argv = ["git", "clone", "--depth", "1"]
    if branch:
        argv += ["--branch", branch]
    argv += [url, dest]
    return shlex.join(argv)


def unpack_command(archive: str, dest: str) -> str:
    return shlex.join(["tar", "-xf", archive, "-C", dest])


def download_command(url: str, archive: str) -> str:
    return (
        f"mkdir -p {shlex.quote(posixpath.dirname(archive))} && "
        f"{shlex.join(['curl', '-fsSL', '-o', archive, url])}"
    )


class SourceFetcher:
    """Fetches the sources of one job into its build directory.

    Args:
        recipe: Recipe being built.
        target: Target of the job.
        backend: Backend owning ``handle``.
        handle: Live environment of the job.
        paths: Job directories.
        shell: Shell the fetch commands run with.
        check_abort: Called around every exec; raises to abort the job.
    """

    def __init__(
        self,
        recipe: Recipe,
        target: Target,
        backend: ExecutionBackend,
        handle: BackendHandle,
        paths: JobPaths,
        shell: str = DEFAULT_SHELL,
        check_abort: Callable[[], None] | None = None,
    ) -> None:
        self.recipe = recipe
        self.target = target
        self.backend = backend
        self.handle = handle
        self.paths = paths
        self.shell = shell
        self.check_abort = check_abort or (lambda: None)
        self.env = resolve_env(recipe, target, paths)

    def run(self) -> None:
        """Clone the git repository, then unpack the source archive.

        Raises:
            SourceFetchError: If a command fails or a host path is missing.
        """
        meta = self.recipe.metadata
        if meta.git is not None:
            logger.info("[%s] cloning %s", self.target, meta.git.url)
            self._exec(
                git_clone_command(meta.git.url, meta.git.branch, self.paths.bld_dir),
                meta.git.url,
            )
        if meta.source is not None:
            self._fetch_archive(meta.source)

    def _fetch_archive(self, source: str) -> None:
        archive = posixpath.join(download_dir(self.paths), archive_name(source))
        if is_remote(source):
            logger.info("[%s] downloading %s", self.target, source)
            self._exec(download_command(source, archive), source)
        else:
            host_path = Path(source)
            if not host_path.is_file():
                raise SourceFetchError(
                    self.target.image, source, output="no such file on the host"
                )
            logger.info("[%s] uploading %s", self.target, host_path)
            try:
                archive = self.backend.upload_file(
                    self.handle, host_path, download_dir(self.paths)
                )
            except OSError as e:
                raise SourceFetchError(self.target.image, source, str(e)) from e
        self._exec(unpack_command(archive, self.paths.bld_dir), source)

    def _exec(self, command: str, source: str) -> None:
        self.check_abort()
        logger.debug("[%s] fetch: %s", self.target, command)
        try:
            result = self.backend.exec(
                self.handle, command, self.paths.bld_dir, self.env, self.shell
            )
        except OSError as e:
            self.check_abort()
            raise SourceFetchError(self.target.image, source, str(e)) from e
        self.check_abort()
        if not result.success:
            raise SourceFetchError(self.target.image, source, result.output)


def fetch_sources(
    recipe: Recipe,
    target: Target,
    backend: ExecutionBackend,
    handle: BackendHandle,
    paths: JobPaths,
    shell: str = DEFAULT_SHELL,
    check_abort: Callable[[], None] | None = None,
) -> None:
    """Fetch the recipe sources into PKGER_BLD_DIR, if it declares any."""
    meta = recipe.metadata
    if meta.git is None and meta.source is None:
        return
    SourceFetcher(
        recipe, target, backend, handle, paths, shell, check_abort
    ).run()


__all__ = [
    "DOWNLOAD_DEPS",
    "GIT_DEPS",
    "UPLOAD_DEPS",
    "SourceFetcher",
    "archive_name",
    "download_dir",
    "fetch_sources",
    "is_remote",
    "source_deps",
]
