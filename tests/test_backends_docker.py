"""Tests for backends/docker.py module.

The Docker SDK client is replaced with a MagicMock; no daemon is needed.
"""

import io
import tarfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from pkgbake.backends.docker import CONTAINER_LABEL, DockerBackend
from pkgbake.builds.artifacts import collect_artifacts
from pkgbake.builds.context import JobPaths
from pkgbake.errors import (
    ArtifactCollectionError,
    EnvironmentSetupError,
    RuntimeUnavailableError,
)
from pkgbake.recipes.models import Target


def _tar_bytes(members: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for name, content in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(content))
    return buf.getvalue()


@pytest.fixture
def client() -> MagicMock:
    client = MagicMock()
    container = MagicMock()
    container.id = "c0ffee1234567890"
    client.containers.run.return_value = container
    client.containers.get.return_value = container
    client.api.exec_create.return_value = {"Id": "exec-1"}
    client.api.exec_start.return_value = iter([b"hello\n"])
    client.api.exec_inspect.return_value = {"ExitCode": 0}
    return client


@pytest.fixture
def target() -> Target:
    return Target.from_image("debian10")


@pytest.fixture
def paths() -> JobPaths:
    return JobPaths.for_job("hello", "7")


class TestDockerBackendCreate:
    """Tests for DockerBackend.create."""

    def test_starts_container_and_provisions(self, client, target, paths) -> None:
        """create starts a labelled container, makes dirs and installs deps."""
        client.api.exec_start.side_effect = lambda *a, **kw: iter([b"ok\n"])
        backend = DockerBackend(client=client)

        handle = backend.create(target, ["gcc"], paths)

        assert handle.id == "c0ffee1234567890"
        run_kwargs = client.containers.run.call_args.kwargs
        assert run_kwargs["detach"] is True
        assert run_kwargs["labels"] == {CONTAINER_LABEL: "7"}

        commands = [c.args[1] for c in client.api.exec_create.call_args_list]
        assert commands[0] == ["mkdir", "-p", paths.bld_dir, paths.out_dir]
        assert commands[1][:2] == ["/bin/sh", "-c"]
        assert "apt-get install" in commands[1][2]
        assert commands[1][2].endswith(" gcc")

    def test_pulls_missing_image(self, client, target, paths) -> None:
        """Images not present locally are pulled."""
        client.images.get.side_effect = ImageNotFound("missing")
        backend = DockerBackend(client=client)
        backend.create(target, [], paths)
        client.images.pull.assert_called_once_with("debian10")

    def test_unreachable_image(self, client, target, paths) -> None:
        """An image that cannot be pulled fails environment setup."""
        client.images.get.side_effect = ImageNotFound("missing")
        client.images.pull.side_effect = APIError("pull access denied")
        backend = DockerBackend(client=client)
        with pytest.raises(EnvironmentSetupError, match="debian10"):
            backend.create(target, [], paths)
        client.containers.run.assert_not_called()

    def test_failed_dependency_install_destroys(self, client, target, paths) -> None:
        """A failed dependency install removes the container again."""
        client.api.exec_start.side_effect = lambda *a, **kw: iter([b"E: no\n"])
        client.api.exec_inspect.side_effect = [{"ExitCode": 0}, {"ExitCode": 100}]
        backend = DockerBackend(client=client)

        with pytest.raises(EnvironmentSetupError) as exc_info:
            backend.create(target, ["nonexistent-pkg"], paths)

        assert exc_info.value.output == "E: no\n"
        client.containers.get.return_value.remove.assert_called_once_with(force=True)

    def test_no_package_manager(self, client, paths) -> None:
        """Build deps on an unknown OS cannot be installed."""
        target = Target(image="mystery", os="mystery", os_version="", format=None)
        backend = DockerBackend(client=client)
        with pytest.raises(EnvironmentSetupError, match="No package manager"):
            backend.create(target, ["gcc"], paths)


class TestDockerBackendExec:
    """Tests for DockerBackend.exec."""

    def test_exec_scrubs_environment(self, client, target, paths) -> None:
        """Steps run under env -i with only the job env plus PATH."""
        backend = DockerBackend(client=client)
        handle = backend.create(target, [], paths)
        client.api.exec_create.reset_mock()
        client.api.exec_start.return_value = iter([b"line 1\nline 2\n"])
        client.api.exec_inspect.return_value = {"ExitCode": 3}

        result = backend.exec(
            handle, "make all", paths.bld_dir, {"PKGER_OS": "debian"}, "/bin/bash"
        )

        argv = client.api.exec_create.call_args.args[1]
        assert argv[:2] == ["env", "-i"]
        assert "PKGER_OS=debian" in argv
        assert any(a.startswith("PATH=") for a in argv)
        assert argv[-3:] == ["/bin/bash", "-c", "make all"]
        assert client.api.exec_create.call_args.kwargs["workdir"] == paths.bld_dir
        assert result.exit_code == 3
        assert result.output == "line 1\nline 2\n"

    def test_multibyte_character_split_across_chunks(
        self, client, target, paths
    ) -> None:
        """UTF-8 sequences split between stream chunks decode intact."""
        backend = DockerBackend(client=client)
        handle = backend.create(target, [], paths)
        encoded = "caf\u00e9 \u2713\n".encode()
        chunks = [encoded[:4], encoded[4:8], encoded[8:]]
        client.api.exec_start.return_value = iter(chunks)

        result = backend.exec(handle, "echo", "/", {}, "/bin/sh")

        assert result.output == "caf\u00e9 \u2713\n"
        assert "\ufffd" not in result.output

    def test_killed_exec(self, client, target, paths) -> None:
        """A command without an exit code reports -1."""
        backend = DockerBackend(client=client)
        handle = backend.create(target, [], paths)
        client.api.exec_inspect.return_value = {"ExitCode": None}
        client.api.exec_start.return_value = iter([])
        assert backend.exec(handle, "sleep 1", "/", {}, "/bin/sh").exit_code == -1

    def test_api_error_raises_os_error(self, client, target, paths) -> None:
        """Engine API failures surface as OSError."""
        backend = DockerBackend(client=client)
        handle = backend.create(target, [], paths)
        client.api.exec_create.side_effect = NotFound("container gone")
        with pytest.raises(OSError):
            backend.exec(handle, "true", "/", {}, "/bin/sh")


class TestDockerBackendLifecycle:
    """Tests for ping, interrupt, destroy and export."""

    def test_ping_failure(self, client) -> None:
        """An unreachable daemon raises RuntimeUnavailableError."""
        client.ping.side_effect = DockerException("connection refused")
        with pytest.raises(RuntimeUnavailableError):
            DockerBackend(client=client).ping()

    def test_interrupt_kills(self, client, target, paths) -> None:
        """interrupt kills the container."""
        backend = DockerBackend(client=client)
        handle = backend.create(target, [], paths)
        backend.interrupt(handle)
        client.containers.get.return_value.kill.assert_called_once()
        assert handle.interrupted is True

    def test_destroy_idempotent(self, client, target, paths) -> None:
        """Destroying a vanished container is not an error."""
        backend = DockerBackend(client=client)
        handle = backend.create(target, [], paths)
        backend.destroy(handle)
        client.containers.get.side_effect = NotFound("gone")
        backend.destroy(handle)

    def test_keep_containers(self, client, target, paths) -> None:
        """keep_containers stops instead of removing."""
        backend = DockerBackend(client=client, keep_containers=True)
        handle = backend.create(target, [], paths)
        backend.destroy(handle)
        container = client.containers.get.return_value
        container.stop.assert_called_once()
        container.remove.assert_not_called()

    def test_export_dir(self, client, target, paths, tmp_path: Path) -> None:
        """export_dir extracts the archive of the directory."""
        data = _tar_bytes(
            {
                "hello-out-7/usr/bin/hello": b"binary",
                "hello-out-7/usr/share/doc/README": b"docs",
            }
        )
        client.containers.get.return_value.get_archive.return_value = (
            iter([data[:100], data[100:]]),
            {},
        )
        backend = DockerBackend(client=client)
        handle = backend.create(target, [], paths)

        root = backend.export_dir(handle, paths.out_dir, tmp_path / "stage")

        assert root == tmp_path / "stage" / "hello-out-7"
        assert (root / "usr" / "bin" / "hello").read_bytes() == b"binary"

    def test_export_missing(self, client, target, paths, tmp_path: Path) -> None:
        """A missing directory raises FileNotFoundError."""
        client.containers.get.return_value.get_archive.side_effect = NotFound("no")
        backend = DockerBackend(client=client)
        handle = backend.create(target, [], paths)
        with pytest.raises(FileNotFoundError):
            backend.export_dir(handle, paths.out_dir, tmp_path)


def _tar_infos(
    entries: list[tuple[str, bytes | None, int]],
    links=(),
) -> bytes:
    """Build an archive; links are added first so later members pass them."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for name, linkname in links:
            info = tarfile.TarInfo(name)
            info.type = tarfile.SYMTYPE
            info.linkname = linkname
            tar.addfile(info)
        for name, content, mode in entries:
            info = tarfile.TarInfo(name)
            info.mode = mode
            if content is None:
                info.type = tarfile.DIRTYPE
                tar.addfile(info)
            else:
                info.size = len(content)
                tar.addfile(info, io.BytesIO(content))
    return buf.getvalue()


class TestDockerBackendExport:
    """Tests for DockerBackend.export_dir archive handling."""

    def _export(self, client, target, paths, tmp_path, data: bytes) -> Path:
        client.containers.get.return_value.get_archive.return_value = (
            iter([data]),
            {},
        )
        backend = DockerBackend(client=client)
        handle = backend.create(target, [], paths)
        return backend.export_dir(handle, paths.out_dir, tmp_path / "stage")

    def test_special_mode_bits_reach_manifest(
        self, client, target, paths, tmp_path: Path
    ) -> None:
        """setuid and group-writable modes survive export and collection."""
        data = _tar_infos(
            [
                ("hello-out-7", None, 0o755),
                ("hello-out-7/su-helper", b"#!/bin/sh\n", 0o4755),
                ("hello-out-7/shared", b"data", 0o664),
            ]
        )

        root = self._export(client, target, paths, tmp_path, data)
        modes = {e.relative_path: e.mode for e in collect_artifacts(root).entries}

        assert modes == {"shared": 0o664, "su-helper": 0o4755}

    def test_relative_symlink_kept(
        self, client, target, paths, tmp_path: Path
    ) -> None:
        """Links that stay inside the tree are extracted."""
        data = _tar_infos(
            [("hello-out-7/lib/libhello.so.1", b"elf", 0o644)],
            links=[("hello-out-7/lib/libhello.so", "libhello.so.1")],
        )
        root = self._export(client, target, paths, tmp_path, data)
        assert (root / "lib" / "libhello.so").is_symlink()

    @pytest.mark.parametrize(
        "entries,links",
        [
            ([("../escape", b"x", 0o644)], []),
            ([], [("hello-out-7/up", "../../outside")]),
            (
                [("hello-out-7/etc/passwd", b"x", 0o644)],
                [("hello-out-7/etc", "/etc")],
            ),
        ],
        ids=["traversal", "escaping-link", "write-through-link"],
    )
    def test_unsafe_archive_rejected(
        self, client, target, paths, tmp_path: Path, entries, links
    ) -> None:
        """Members leaving the destination fail the export."""
        data = _tar_infos(entries, links=links)
        with pytest.raises(ArtifactCollectionError):
            self._export(client, target, paths, tmp_path, data)


class TestDockerBackendUpload:
    """Tests for DockerBackend.upload_file."""

    def test_upload_puts_single_file_archive(
        self, client, target, paths, tmp_path: Path
    ) -> None:
        """The host file is sent as a one-member tar into the directory."""
        src = tmp_path / "hello-1.0.tar.gz"
        src.write_bytes(b"payload")
        container = client.containers.get.return_value
        container.put_archive.return_value = True
        backend = DockerBackend(client=client)
        handle = backend.create(target, [], paths)

        dest = backend.upload_file(handle, src, "/tmp/pkgbake-src-7")

        assert dest == "/tmp/pkgbake-src-7/hello-1.0.tar.gz"
        mkdir = client.api.exec_create.call_args.args[1]
        assert mkdir == ["mkdir", "-p", "/tmp/pkgbake-src-7"]
        directory, data = container.put_archive.call_args.args
        assert directory == "/tmp/pkgbake-src-7"
        with tarfile.open(fileobj=io.BytesIO(data)) as tar:
            assert tar.getnames() == ["hello-1.0.tar.gz"]
            assert tar.extractfile("hello-1.0.tar.gz").read() == b"payload"

    def test_upload_rejected(self, client, target, paths, tmp_path: Path) -> None:
        src = tmp_path / "a.tar"
        src.write_bytes(b"x")
        client.containers.get.return_value.put_archive.return_value = False
        backend = DockerBackend(client=client)
        handle = backend.create(target, [], paths)
        with pytest.raises(OSError, match="cannot copy"):
            backend.upload_file(handle, src, "/tmp/src")
