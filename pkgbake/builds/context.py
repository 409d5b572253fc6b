"""Per-stage execution context.

Computes, for a (recipe, target, stage) triple, the working directory,
shell and environment every step of that stage runs with.

Contract:
- configure runs in the stage's working_dir if declared, else the
  backend default.
- build always runs in PKGER_BLD_DIR, install always in PKGER_OUT_DIR.
- the environment is the recipe env overlaid by the reserved PKGER_*
  keys; nothing from the host process leaks in.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING

from pkgbake.types import StageKind

if TYPE_CHECKING:
    from pkgbake.recipes.models import Recipe, Target

logger = logging.getLogger(__name__)

DEFAULT_SHELL = "/bin/sh"

ENV_OS = "PKGER_OS"
ENV_OS_VERSION = "PKGER_OS_VERSION"
ENV_BLD_DIR = "PKGER_BLD_DIR"
ENV_OUT_DIR = "PKGER_OUT_DIR"
RESERVED_ENV_KEYS = (ENV_OS, ENV_OS_VERSION, ENV_BLD_DIR, ENV_OUT_DIR)


@dataclass(frozen=True)
class JobPaths:
    """Per-job temporary directories inside the build environment."""

    job_id: str
    bld_dir: str
    out_dir: str

    @classmethod
    def for_job(cls, recipe_name: str, job_id: str) -> JobPaths:
        return cls(
            job_id=job_id,
            bld_dir=f"/tmp/{recipe_name}-build-{job_id}",
            out_dir=f"/tmp/{recipe_name}-out-{job_id}",
        )


class JobIdAllocator:
    """Hands out numeric job ids that are unique within one allocator."""

    def __init__(self, stamp: int | None = None) -> None:
        self._stamp = int(time.time()) if stamp is None else stamp
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def next_id(self) -> str:
        with self._lock:
            seq = next(self._counter)
        return f"{self._stamp}{seq:03d}"


@dataclass(frozen=True)
class ExecContext:
    """Resolved context for executing the steps of one stage."""

    working_dir: str
    shell: str
    env: Mapping[str, str]


def reserved_env(target: Target, paths: JobPaths) -> dict[str, str]:
    """Return the reserved PKGER_* variables for a job."""
    return {
        ENV_OS: target.os,
        ENV_OS_VERSION: target.os_version,
        ENV_BLD_DIR: paths.bld_dir,
        ENV_OUT_DIR: paths.out_dir,
    }


def expand_placeholders(value: str, paths: JobPaths) -> str:
    """Expand $PKGER_BLD_DIR / $PKGER_OUT_DIR in a declared path."""
    return value.replace(f"${ENV_BLD_DIR}", paths.bld_dir).replace(
        f"${ENV_OUT_DIR}", paths.out_dir
    )


def resolve_env(recipe: Recipe, target: Target, paths: JobPaths) -> dict[str, str]:
    """Return recipe env overlaid by reserved keys (reserved keys win)."""
    env = dict(recipe.env)
    shadowed = sorted(k for k in RESERVED_ENV_KEYS if k in env)
    if shadowed:
        logger.warning(
            "Recipe %s sets reserved variable(s) %s; reserved values take precedence",
            recipe.name,
            ", ".join(shadowed),
        )
    env.update(reserved_env(target, paths))
    return env


def resolve_working_dir(
    recipe: Recipe,
    kind: StageKind,
    paths: JobPaths,
    default_working_dir: str | None = None,
) -> str:
    """Resolve the working directory of a stage.

    Args:
        recipe: Recipe being built.
        kind: Stage kind.
        paths: Job paths.
        default_working_dir: Backend default for the configure stage.

    Returns:
        Absolute working directory inside the build environment.
    """
    stage = recipe.stage(kind)
    if kind is StageKind.CONFIGURE:
        if stage.working_dir:
            return expand_placeholders(stage.working_dir, paths)
        return default_working_dir or paths.bld_dir

    if stage.working_dir:
        logger.warning(
            "Ignoring working_dir %r of %s stage; it always runs in %s",
            stage.working_dir,
            kind.value,
            ENV_BLD_DIR if kind is StageKind.BUILD else ENV_OUT_DIR,
        )
    return paths.bld_dir if kind is StageKind.BUILD else paths.out_dir


def build_stage_context(
    recipe: Recipe,
    target: Target,
    kind: StageKind,
    paths: JobPaths,
    default_working_dir: str | None = None,
    default_shell: str = DEFAULT_SHELL,
) -> ExecContext:
    """Build the execution context of one stage for one target.

    Args:
        recipe: Recipe being built.
        target: Job target.
        kind: Stage kind.
        paths: Job paths.
        default_working_dir: Backend default for the configure stage.
        default_shell: Shell used when the stage declares none.

    Returns:
        ExecContext with working directory, shell and environment.
    """
    stage = recipe.stage(kind)
    return ExecContext(
        working_dir=resolve_working_dir(recipe, kind, paths, default_working_dir),
        shell=stage.shell or default_shell,
        env=MappingProxyType(resolve_env(recipe, target, paths)),
    )


__all__ = [
    "DEFAULT_SHELL",
    "ENV_BLD_DIR",
    "ENV_OS",
    "ENV_OS_VERSION",
    "ENV_OUT_DIR",
    "RESERVED_ENV_KEYS",
    "ExecContext",
    "JobIdAllocator",
    "JobPaths",
    "build_stage_context",
    "expand_placeholders",
    "reserved_env",
    "resolve_env",
    "resolve_working_dir",
]
