"""Shared fixtures for pkgbake tests."""

import copy
from collections.abc import Callable
from pathlib import Path, PurePosixPath
from typing import Any

import pytest

from pkgbake.backends.base import ExecResult
from pkgbake.backends.mock import MockExec
from pkgbake.recipes.io import parse_recipe_data
from pkgbake.recipes.models import Recipe

FIXTURES_DIR = Path(__file__).parent / "fixtures"

BASE_RECIPE: dict[str, Any] = {
    "metadata": {
        "name": "hello",
        "version": "1.0.0",
        "description": "hello world",
        "license": "MIT",
        "images": ["debian10", "centos8"],
    },
    "build": {"steps": [{"cmd": "echo building"}]},
}


class ShellEmulator:
    """Responder interpreting a handful of shell commands in memory.

    Supports ``touch``, ``test -f``, ``mkdir -p``, ``write PATH TEXT`` and
    ``exit N``; anything else succeeds. Relative paths resolve against the
    step's working directory.
    """

    def __call__(self, call: MockExec) -> ExecResult:
        argv = call.command.split()
        if not argv:
            return ExecResult(0, "")
        env = call.environment
        name, args = argv[0], argv[1:]

        if name == "touch":
            for arg in args:
                env.write_file(self._abs(call, arg))
        elif name == "test" and args[:1] == ["-f"]:
            if self._abs(call, args[1]) not in env.files:
                return ExecResult(1, f"{args[1]}: no such file")
        elif name == "mkdir":
            for arg in args:
                if arg != "-p":
                    env.mkdir(self._abs(call, arg))
        elif name == "write":
            env.write_file(self._abs(call, args[0]), " ".join(args[1:]).encode())
        elif name == "exit":
            return ExecResult(int(args[0]), f"exit {args[0]}")
        return ExecResult(0, "")

    @staticmethod
    def _abs(call: MockExec, path: str) -> str:
        return str(PurePosixPath(call.cwd) / path)


@pytest.fixture
def recipe_data() -> dict[str, Any]:
    """A deep copy of a minimal valid recipe document."""
    return copy.deepcopy(BASE_RECIPE)


@pytest.fixture
def make_recipe() -> Callable[..., Recipe]:
    """Factory building a Recipe from the base document plus overrides.

    Top-level keys replace the base ones; ``metadata`` is merged.
    """

    def _make(**overrides: Any) -> Recipe:
        data = copy.deepcopy(BASE_RECIPE)
        metadata = overrides.pop("metadata", None)
        if metadata:
            data["metadata"].update(metadata)
        data.update(overrides)
        return parse_recipe_data(data)

    return _make


@pytest.fixture
def fixtures_dir() -> Path:
    """Directory holding the recipe fixtures."""
    return FIXTURES_DIR


@pytest.fixture
def sample_recipe_path() -> Path:
    """Path to the two-image sample recipe."""
    return FIXTURES_DIR / "recipe.yml"


@pytest.fixture
def shell() -> ShellEmulator:
    """Responder emulating basic file commands."""
    return ShellEmulator()
