"""Immutable recipe model.

A Recipe is built once from a validated document and then shared
read-only by every concurrent build job. All containers are tuples,
frozensets or read-only mappings so no job can mutate shared state.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from pkgbake.errors import RecipeValidationError
from pkgbake.types import STAGE_ORDER, PackageFormat, StageKind

# Key for dependencies that apply to every target
ALL_TARGETS_KEY = "all"

OS_PACKAGE_FORMATS: dict[str, PackageFormat] = {
    "debian": PackageFormat.DEB,
    "ubuntu": PackageFormat.DEB,
    "centos": PackageFormat.RPM,
    "fedora": PackageFormat.RPM,
    "rhel": PackageFormat.RPM,
    "rocky": PackageFormat.RPM,
    "rockylinux": PackageFormat.RPM,
    "almalinux": PackageFormat.RPM,
    "arch": PackageFormat.PKG,
    "archlinux": PackageFormat.PKG,
    "manjaro": PackageFormat.PKG,
}

_IMAGE_OS_PATTERN = re.compile(r"^(?P<family>[a-z]+?)[-_:]?(?P<version>\d[\w.]*)?$")


def parse_image_os(image: str) -> tuple[str, str]:
    """Derive (os family, os version) from an image name.

    Registry prefixes are ignored, so 'docker.io/library/debian:10'
    parses the same as 'debian10'.

    Args:
        image: Image name.

    Returns:
        Tuple of (family, version); version is '' when absent.
    """
    base = image.rsplit("/", 1)[-1].lower()
    match = _IMAGE_OS_PATTERN.match(base)
    if match is None:
        return base, ""
    return match.group("family"), match.group("version") or ""


def reference_violations(
    images: Iterable[str],
    step_filters: Iterable[tuple[str, int, Iterable[str]]],
    dependency_keys: Iterable[tuple[str, Iterable[str]]],
) -> list[str]:
    """Check image references against the declared images.

    Shared by the Recipe and by the loader, which runs it on raw documents
    that failed schema validation so both kinds of problem are reported
    together.

    Args:
        images: Declared image names, in declaration order.
        step_filters: (stage, step index, filter images) per step.
        dependency_keys: (field label, keys) per dependency mapping.

    Returns:
        Violation messages.
    """
    violations: list[str] = []
    declared: set[str] = set()
    for image in images:
        if image in declared:
            violations.append(f"image '{image}' is declared more than once")
        declared.add(image)

    for stage, index, filter_images in step_filters:
        unknown = sorted(set(filter_images) - declared)
        if unknown:
            violations.append(
                f"{stage}.steps[{index}] filters on undeclared "
                f"image(s): {', '.join(unknown)}"
            )

    for label, keys in dependency_keys:
        for key in keys:
            if key != ALL_TARGETS_KEY and key not in declared:
                violations.append(
                    f"metadata.{label} references undeclared image '{key}'"
                )
    return violations


@dataclass(frozen=True)
class Target:
    """A build destination: one image producing one package.

    Attributes:
        image: Image identifier, unique within a recipe.
        os: OS family (e.g. 'debian').
        os_version: OS version (e.g. '10'), may be empty.
        format: Package format, None if it could not be derived.
    """

    image: str
    os: str
    os_version: str
    format: PackageFormat | None

    @classmethod
    def from_image(
        cls,
        image: str,
        format: str | PackageFormat | None = None,
        os: str | None = None,
    ) -> Target:
        """Create a target, deriving OS and format when not declared."""
        if os:
            family, _, version = os.partition(":")
            family = family.lower()
        else:
            family, version = parse_image_os(image)
        if format is not None:
            pkg_format: PackageFormat | None = PackageFormat(format)
        else:
            pkg_format = OS_PACKAGE_FORMATS.get(family)
        return cls(image=image, os=family, os_version=version, format=pkg_format)

    def __str__(self) -> str:
        return self.image


@dataclass(frozen=True)
class Step:
    """One command of a stage.

    Attributes:
        command: Shell command string.
        images: Image filter; empty means every target.
        formats_on: Formats explicitly enabled (deb: true, ...).
        formats_off: Formats explicitly disabled (deb: false, ...).
    """

    command: str
    images: frozenset[str] = frozenset()
    formats_on: frozenset[PackageFormat] = frozenset()
    formats_off: frozenset[PackageFormat] = frozenset()

    def runs_on(self, target: Target) -> bool:
        """Return True if this step executes for the given target."""
        if self.images and target.image not in self.images:
            return False
        if self.formats_on:
            return target.format in self.formats_on
        return target.format not in self.formats_off


@dataclass(frozen=True)
class Stage:
    """An ordered list of steps with optional stage-level overrides."""

    kind: StageKind
    steps: tuple[Step, ...] = ()
    working_dir: str | None = None
    shell: str | None = None

    def __bool__(self) -> bool:
        return bool(self.steps)


@dataclass(frozen=True)
class Dependencies:
    """Package names keyed by 'all' or by image name."""

    entries: Mapping[str, tuple[str, ...]] = field(
        default_factory=lambda: MappingProxyType({})
    )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Iterable[str]] | None) -> Dependencies:
        if not data:
            return cls()
        return cls(MappingProxyType({k: tuple(v) for k, v in data.items()}))

    def for_target(self, image: str) -> list[str]:
        """Return the union of 'all' and image-specific entries, in order."""
        result: list[str] = []
        for key in (ALL_TARGETS_KEY, image):
            for name in self.entries.get(key, ()):
                if name not in result:
                    result.append(name)
        return result

    def keys(self) -> list[str]:
        return list(self.entries)


@dataclass(frozen=True)
class GitSource:
    """Git repository cloned into PKGER_BLD_DIR before configure."""

    url: str
    branch: str | None = None


@dataclass(frozen=True)
class DebInfo:
    """deb-only control fields."""

    priority: str | None = None


@dataclass(frozen=True)
class RpmInfo:
    """rpm-only spec fields."""

    release: str | None = None
    epoch: str | None = None
    vendor: str | None = None
    icon: str | None = None
    summary: str | None = None
    obsoletes: Dependencies = field(default_factory=Dependencies)
    pre_script: str | None = None
    post_script: str | None = None
    preun_script: str | None = None
    postun_script: str | None = None
    config_noreplace: str | None = None


@dataclass(frozen=True)
class RecipeMetadata:
    """Package metadata handed through to the package writer.

    ``source`` is an http(s) URL or a host path of a tar archive unpacked
    into PKGER_BLD_DIR; ``git`` is cloned there first. ``group`` works as
    the deb section and the rpm group.
    """

    description: str = ""
    license: str = ""
    arch: str | None = None
    maintainer: str | None = None
    url: str | None = None
    source: str | None = None
    git: GitSource | None = None
    group: str | None = None
    skip_default_deps: bool = False
    exclude: tuple[str, ...] = ()
    depends: Dependencies = field(default_factory=Dependencies)
    conflicts: Dependencies = field(default_factory=Dependencies)
    provides: Dependencies = field(default_factory=Dependencies)
    deb: DebInfo | None = None
    rpm: RpmInfo | None = None

    def deb_arch(self) -> str:
        """Return the architecture name used by deb packages."""
        if not self.arch:
            return "all"
        return {"x86_64": "amd64", "amd64": "amd64", "x86": "i386", "i386": "i386"}.get(
            self.arch, self.arch
        )

    def rpm_arch(self) -> str:
        """Return the architecture name used by rpm packages."""
        if not self.arch:
            return "noarch"
        return {"x86_64": "x86_64", "amd64": "x86_64", "x86": "x86", "i386": "x86"}.get(
            self.arch, self.arch
        )

    def rpm_release(self) -> str:
        """Return the rpm release, "0" when the recipe declares none."""
        if self.rpm is not None and self.rpm.release:
            return self.rpm.release
        return "0"

    def arch_for(self, format: PackageFormat | None) -> str:
        """Return the architecture name used by the given package format."""
        if format is PackageFormat.DEB:
            return self.deb_arch()
        if format is PackageFormat.RPM:
            return self.rpm_arch()
        return self.arch or "any"


@dataclass(frozen=True)
class Recipe:
    """A validated, immutable package recipe.

    Construction validates every structural rule and raises a single
    RecipeValidationError listing all violations.
    """

    name: str
    version: str
    targets: tuple[Target, ...]
    metadata: RecipeMetadata = field(default_factory=RecipeMetadata)
    build_depends: Dependencies = field(default_factory=Dependencies)
    env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    configure: Stage = field(default_factory=lambda: Stage(StageKind.CONFIGURE))
    build: Stage = field(default_factory=lambda: Stage(StageKind.BUILD))
    install: Stage = field(default_factory=lambda: Stage(StageKind.INSTALL))

    def __post_init__(self) -> None:
        if not isinstance(self.env, MappingProxyType):
            object.__setattr__(self, "env", MappingProxyType(dict(self.env)))
        self.validate()

    def validate(self) -> None:
        """Raise RecipeValidationError listing every violation, if any."""
        violations = self.find_violations()
        if violations:
            raise RecipeValidationError(violations, recipe=self.name or None)

    def find_violations(self) -> list[str]:
        """Collect every structural violation of this recipe."""
        violations: list[str] = []

        if not self.name or not self.name.strip():
            violations.append("metadata.name must not be empty")
        if not self.version or not self.version.strip():
            violations.append("metadata.version must not be empty")
        if not self.targets:
            violations.append("metadata.images must declare at least one image")

        for target in self.targets:
            if target.format is None:
                violations.append(
                    f"cannot derive package format for image '{target.image}' "
                    f"(os '{target.os}'); declare 'target'"
                )

        step_filters = []
        for kind in STAGE_ORDER:
            stage = self.stage(kind)
            if stage.kind is not kind:
                violations.append(
                    f"{kind.value} stage is declared as {stage.kind.value}"
                )
            for index, step in enumerate(stage.steps):
                step_filters.append((kind.value, index, step.images))

        dependency_keys = [
            ("build_depends", self.build_depends.keys()),
            ("depends", self.metadata.depends.keys()),
            ("conflicts", self.metadata.conflicts.keys()),
            ("provides", self.metadata.provides.keys()),
        ]
        if self.metadata.rpm is not None:
            obsoletes = self.metadata.rpm.obsoletes
            dependency_keys.append(("rpm.obsoletes", obsoletes.keys()))

        violations.extend(
            reference_violations(self.images, step_filters, dependency_keys)
        )
        return violations

    def stage(self, kind: StageKind) -> Stage:
        """Return the stage of the given kind."""
        return {
            StageKind.CONFIGURE: self.configure,
            StageKind.BUILD: self.build,
            StageKind.INSTALL: self.install,
        }[kind]

    def stages(self) -> list[Stage]:
        """Return the stages in execution order."""
        return [self.stage(kind) for kind in STAGE_ORDER]

    def target(self, image: str) -> Target:
        """Return the target for an image name.

        Raises:
            KeyError: If the image is not declared.
        """
        for target in self.targets:
            if target.image == image:
                return target
        raise KeyError(image)

    @property
    def images(self) -> list[str]:
        return [t.image for t in self.targets]


__all__ = [
    "ALL_TARGETS_KEY",
    "OS_PACKAGE_FORMATS",
    "DebInfo",
    "Dependencies",
    "GitSource",
    "Recipe",
    "RecipeMetadata",
    "RpmInfo",
    "Stage",
    "Step",
    "Target",
    "parse_image_os",
    "reference_violations",
]
