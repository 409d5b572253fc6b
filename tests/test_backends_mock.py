"""Tests for backends/mock.py and the shared backend base behavior."""

from pathlib import Path

import pytest

from pkgbake.backends.base import DEFAULT_PATH, ExecResult
from pkgbake.backends.mock import INTERRUPTED_EXIT_CODE, MockBackend
from pkgbake.builds.context import JobPaths
from pkgbake.errors import EnvironmentSetupError, RuntimeUnavailableError
from pkgbake.recipes.models import Target


@pytest.fixture
def target() -> Target:
    return Target.from_image("debian10")


@pytest.fixture
def paths() -> JobPaths:
    return JobPaths.for_job("hello", "42")


class TestMockBackend:
    """Tests for MockBackend."""

    def test_create_makes_job_dirs(self, target, paths) -> None:
        """Both job directories exist after create."""
        backend = MockBackend()
        handle = backend.create(target, ["gcc"], paths)
        environment = backend.environments[handle.id]
        assert environment.exists(paths.bld_dir)
        assert environment.exists(paths.out_dir)
        assert environment.build_deps == ["gcc"]
        assert handle.id in backend.live

    def test_failing_image(self, target, paths) -> None:
        """Configured failing images raise EnvironmentSetupError."""
        backend = MockBackend(failing_images={"debian10"})
        with pytest.raises(EnvironmentSetupError, match="debian10"):
            backend.create(target, [], paths)
        assert backend.live == set()

    def test_ping(self) -> None:
        """An unreachable mock runtime fails ping."""
        MockBackend().ping()
        with pytest.raises(RuntimeUnavailableError):
            MockBackend(reachable=False).ping()

    def test_responder_answers(self, target, paths) -> None:
        """Responders may return ExecResult, int or None."""
        answers = iter([ExecResult(2, "boom"), 5, None])
        backend = MockBackend(responder=lambda call: next(answers))
        handle = backend.create(target, [], paths)

        assert backend.exec(handle, "a", "/", {}, "/bin/sh").exit_code == 2
        assert backend.exec(handle, "b", "/", {}, "/bin/sh").exit_code == 5
        assert backend.exec(handle, "c", "/", {}, "/bin/sh").success

    def test_exec_env_gets_path(self, target, paths) -> None:
        """PATH is passed through when the job env does not set it."""
        backend = MockBackend()
        handle = backend.create(target, [], paths)
        backend.exec(handle, "true", "/", {"A": "1"}, "/bin/sh")
        backend.exec(handle, "true", "/", {"PATH": "/opt/bin"}, "/bin/sh")
        assert backend.calls[0].env == {"A": "1", "PATH": DEFAULT_PATH}
        assert backend.calls[1].env == {"PATH": "/opt/bin"}

    def test_exec_after_destroy(self, target, paths) -> None:
        """A destroyed environment cannot run commands."""
        backend = MockBackend()
        handle = backend.create(target, [], paths)
        backend.destroy(handle)
        with pytest.raises(OSError):
            backend.exec(handle, "true", "/", {}, "/bin/sh")

    def test_interrupt(self, target, paths) -> None:
        """Interrupted environments report a killed exit code."""
        backend = MockBackend()
        handle = backend.create(target, [], paths)
        backend.interrupt(handle)
        result = backend.exec(handle, "sleep 100", "/", {}, "/bin/sh")
        assert result.exit_code == INTERRUPTED_EXIT_CODE
        assert handle.interrupted is True
        assert backend.interrupt_calls == 1

    def test_session_destroys_on_error(self, target, paths) -> None:
        """session() tears the environment down when the body raises."""
        backend = MockBackend()
        with pytest.raises(ValueError):
            with backend.session(target, [], paths):
                raise ValueError("boom")
        assert backend.create_calls == 1
        assert backend.destroy_calls == 1
        assert backend.live == set()

    def test_export_dir(self, target, paths, tmp_path: Path) -> None:
        """export_dir copies the directory tree to the host."""
        backend = MockBackend()
        handle = backend.create(target, [], paths)
        environment = backend.environments[handle.id]
        environment.write_file(f"{paths.out_dir}/usr/bin/tool", b"#!/bin/sh", 0o755)
        environment.write_file(f"{paths.bld_dir}/build.log", b"log")

        root = backend.export_dir(handle, paths.out_dir, tmp_path)

        assert root == tmp_path / "hello-out-42"
        tool = root / "usr" / "bin" / "tool"
        assert tool.read_bytes() == b"#!/bin/sh"
        assert tool.stat().st_mode & 0o777 == 0o755
        assert not (root / "build.log").exists()

    def test_export_missing_dir(self, target, paths, tmp_path: Path) -> None:
        """Exporting a missing directory raises FileNotFoundError."""
        backend = MockBackend()
        handle = backend.create(target, [], paths)
        with pytest.raises(FileNotFoundError):
            backend.export_dir(handle, "/nope", tmp_path)
