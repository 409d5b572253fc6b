"""Package manager commands for provisioning build environments.

Build dependencies are installed with the native package manager of the
target's OS family before any recipe step runs.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from typing import TYPE_CHECKING

from pkgbake.builds.sources import source_deps
from pkgbake.types import PackageFormat

if TYPE_CHECKING:
    from pkgbake.recipes.models import Recipe, Target

# Packaging toolchain installed unless the recipe sets skip_default_deps
DEFAULT_BUILD_DEPS: dict[PackageFormat, tuple[str, ...]] = {
    PackageFormat.DEB: ("dpkg-dev", "fakeroot"),
    PackageFormat.RPM: ("rpm-build", "tar"),
    PackageFormat.PKG: ("base-devel",),
}


@dataclass(frozen=True)
class PackageManager:
    """Shell commands of one native package manager."""

    name: str
    refresh: str | None
    install: str

    def install_script(self, packages: list[str]) -> str | None:
        """Return a shell script installing the packages, or None if empty."""
        if not packages:
            return None
        quoted = " ".join(shlex.quote(p) for p in packages)
        install = f"{self.install} {quoted}"
        if self.refresh:
            return f"{self.refresh} && {install}"
        return install


APT = PackageManager(
    name="apt",
    refresh="apt-get update",
    install="DEBIAN_FRONTEND=noninteractive apt-get install -y --no-install-recommends",
)
DNF = PackageManager(name="dnf", refresh=None, install="dnf install -y")
YUM = PackageManager(name="yum", refresh=None, install="yum install -y")
PACMAN = PackageManager(
    name="pacman", refresh=None, install="pacman -Sy --noconfirm --needed"
)

OS_PACKAGE_MANAGERS: dict[str, PackageManager] = {
    "debian": APT,
    "ubuntu": APT,
    "fedora": DNF,
    "centos": YUM,
    "rhel": YUM,
    "rocky": DNF,
    "rockylinux": DNF,
    "almalinux": DNF,
    "arch": PACMAN,
    "archlinux": PACMAN,
    "manjaro": PACMAN,
}

FORMAT_PACKAGE_MANAGERS: dict[PackageFormat, PackageManager] = {
    PackageFormat.DEB: APT,
    PackageFormat.RPM: YUM,
    PackageFormat.PKG: PACMAN,
}


def package_manager_for(target: Target) -> PackageManager | None:
    """Return the package manager for a target's OS family or format."""
    manager = OS_PACKAGE_MANAGERS.get(target.os)
    if manager is None and target.format is not None:
        manager = FORMAT_PACKAGE_MANAGERS.get(target.format)
    return manager


def resolve_build_deps(recipe: Recipe, target: Target) -> list[str]:
    """Return the build-time dependencies to install for a target.

    The union of the 'all' list and the target-specific list, preceded by
    the default packaging toolchain and the tools fetching the recipe
    sources unless the recipe skips them.
    """
    deps: list[str] = []
    if not recipe.metadata.skip_default_deps:
        if target.format is not None:
            deps.extend(DEFAULT_BUILD_DEPS[target.format])
        deps.extend(source_deps(recipe))
    for name in recipe.build_depends.for_target(target.image):
        if name not in deps:
            deps.append(name)
    return list(dict.fromkeys(deps))


__all__ = [
    "DEFAULT_BUILD_DEPS",
    "PackageManager",
    "package_manager_for",
    "resolve_build_deps",
]
