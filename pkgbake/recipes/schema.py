"""Pydantic models for recipe document validation.

This module defines the Pydantic models for validating recipe data
loaded from YAML/JSON files before it is turned into the immutable
recipe model (see pkgbake.recipes.models).
"""

import re
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Image names are used in container references and filter lists
IMAGE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.:/\-]*$")
RECIPE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.+\-]*$")
ENV_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

SUPPORTED_FORMATS = {"deb", "rpm", "pkg"}


class ImageSchema(BaseModel):
    """Schema for a target image declaration.

    Attributes:
        name: Image name (e.g. 'debian10').
        target: Optional package format override (deb, rpm, pkg).
        os: Optional OS override, 'family' or 'family:version'.
    """

    model_config = ConfigDict(extra="forbid")

    name: Annotated[str, Field(min_length=1, max_length=255)]
    target: str | None = Field(default=None, description="Package format")
    os: str | None = Field(default=None, description="OS family[:version]")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate image name matches safe pattern."""
        if not IMAGE_NAME_PATTERN.match(v):
            raise ValueError(
                f"image name must match pattern {IMAGE_NAME_PATTERN.pattern}, got '{v}'"
            )
        return v

    @field_validator("target")
    @classmethod
    def validate_target(cls, v: str | None) -> str | None:
        """Validate target is a supported package format."""
        if v is None:
            return v
        if v not in SUPPORTED_FORMATS:
            raise ValueError(
                f"target must be one of {sorted(SUPPORTED_FORMATS)}, got '{v}'"
            )
        return v


def _coerce_images(value: Any) -> Any:
    """Accept bare strings as shorthand for {name: ...}."""
    if not isinstance(value, list):
        return value
    return [{"name": item} if isinstance(item, str) else item for item in value]


def _coerce_deps(value: Any) -> Any:
    """Accept a plain list as shorthand for {all: [...]}."""
    if isinstance(value, list):
        return {"all": value}
    return value


def _env_value(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return value


def _check_dep_names(v: dict[str, list[str]]) -> dict[str, list[str]]:
    """Validate dependency entries are non-empty, whitespace-free names."""
    for key, items in v.items():
        for item in items:
            if not item or not item.strip():
                raise ValueError(f"dependency names under '{key}' must be non-empty")
            if any(c in item for c in " \t\n"):
                raise ValueError(
                    f"dependency names must not contain whitespace, got '{item}'"
                )
    return v


class GitSchema(BaseModel):
    """Schema for a git source; a bare string is shorthand for the url."""

    model_config = ConfigDict(extra="forbid")

    url: Annotated[str, Field(min_length=1)]
    branch: str | None = Field(default=None)


class DebSchema(BaseModel):
    """deb-only fields."""

    model_config = ConfigDict(extra="forbid")

    priority: str | None = Field(default=None)


class RpmSchema(BaseModel):
    """rpm-only fields (release, epoch, scriptlets, ...)."""

    model_config = ConfigDict(extra="forbid")

    obsoletes: dict[str, list[str]] = Field(default_factory=dict)
    release: str | None = Field(default=None)
    epoch: str | None = Field(default=None)
    vendor: str | None = Field(default=None)
    icon: str | None = Field(default=None)
    summary: str | None = Field(default=None)
    pre_script: str | None = Field(default=None)
    post_script: str | None = Field(default=None)
    preun_script: str | None = Field(default=None)
    postun_script: str | None = Field(default=None)
    config_noreplace: str | None = Field(default=None)

    @field_validator("release", "epoch", mode="before")
    @classmethod
    def coerce_scalar(cls, v: Any) -> Any:
        """YAML reads 'release: 1' as an int."""
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("obsoletes", mode="before")
    @classmethod
    def coerce_obsoletes(cls, v: Any) -> Any:
        if v is None:
            return {}
        return _coerce_deps(v)

    @field_validator("obsoletes")
    @classmethod
    def validate_obsoletes(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        return _check_dep_names(v)


class MetadataSchema(BaseModel):
    """Schema for recipe metadata.

    Attributes:
        name: Package name.
        version: Package version.
        description: Package description.
        license: License identifier.
        arch: Target architecture (x86_64, amd64, ...).
        maintainer: Maintainer contact.
        url: Project URL.
        skip_default_deps: Do not install default packaging dependencies.
        exclude: Output paths excluded from the collected tree.
        images: Target images.
        build_depends: Build-time dependencies keyed by 'all' or image name.
        depends: Install-time dependencies keyed by 'all' or image name.
        conflicts: Conflicting packages keyed by 'all' or image name.
        provides: Provided capabilities keyed by 'all' or image name.
        source: http(s) URL or path of a tar archive unpacked before configure.
        git: Git repository cloned before configure.
        group: deb section / rpm group.
        deb: deb-only fields.
        rpm: rpm-only fields.
    """

    model_config = ConfigDict(extra="forbid")

    name: Annotated[str, Field(min_length=1, max_length=255)]
    version: Annotated[str, Field(min_length=1, max_length=100)]
    description: str = Field(default="", description="Package description")
    license: str = Field(default="", description="License identifier")
    arch: str | None = Field(default=None, description="Architecture")
    maintainer: str | None = Field(default=None)
    url: str | None = Field(default=None)
    source: str | None = Field(default=None, description="Archive URL or path")
    git: GitSchema | None = Field(default=None)
    group: str | None = Field(default=None, description="deb section, rpm group")
    skip_default_deps: bool = Field(default=False)
    exclude: list[str] = Field(default_factory=list)
    images: list[ImageSchema] = Field(default_factory=list)

    build_depends: dict[str, list[str]] = Field(default_factory=dict)
    depends: dict[str, list[str]] = Field(default_factory=dict)
    conflicts: dict[str, list[str]] = Field(default_factory=dict)
    provides: dict[str, list[str]] = Field(default_factory=dict)
    deb: DebSchema | None = Field(default=None)
    rpm: RpmSchema | None = Field(default=None)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate package name matches safe pattern."""
        if not RECIPE_NAME_PATTERN.match(v):
            raise ValueError(
                f"name must match pattern {RECIPE_NAME_PATTERN.pattern}, got '{v}'"
            )
        return v

    @field_validator("images", mode="before")
    @classmethod
    def coerce_images(cls, v: Any) -> Any:
        return _coerce_images(v)

    @field_validator("build_depends", "depends", "conflicts", "provides", mode="before")
    @classmethod
    def coerce_deps(cls, v: Any) -> Any:
        if v is None:
            return {}
        return _coerce_deps(v)

    @field_validator("build_depends", "depends", "conflicts", "provides")
    @classmethod
    def validate_dep_lists(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        return _check_dep_names(v)

    @field_validator("git", mode="before")
    @classmethod
    def coerce_git(cls, v: Any) -> Any:
        if isinstance(v, str):
            return {"url": v}
        return v

    @field_validator("source")
    @classmethod
    def validate_source(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            raise ValueError("source must not be blank")
        return v


class StepSchema(BaseModel):
    """Schema for a single script step.

    Attributes:
        cmd: Shell command to execute.
        images: Optional image filter (absent or empty = all images).
        deb: Only run for deb targets when true.
        rpm: Only run for rpm targets when true.
        pkg: Only run for pkg targets when true.
    """

    model_config = ConfigDict(extra="forbid")

    cmd: Annotated[str, Field(min_length=1)]
    images: list[str] | None = Field(default=None)
    deb: bool | None = Field(default=None)
    rpm: bool | None = Field(default=None)
    pkg: bool | None = Field(default=None)

    @field_validator("cmd")
    @classmethod
    def validate_cmd(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("cmd must not be blank")
        return v


class StageSchema(BaseModel):
    """Schema for a configure/build/install stage.

    Attributes:
        working_dir: Optional working directory (honored for configure only).
        shell: Optional shell used to run every step of the stage.
        steps: Ordered steps.
    """

    model_config = ConfigDict(extra="forbid")

    working_dir: str | None = Field(default=None)
    shell: str | None = Field(default=None)
    steps: list[StepSchema] = Field(default_factory=list)

    @field_validator("working_dir", "shell")
    @classmethod
    def validate_absolute(cls, v: str | None) -> str | None:
        """Validate paths are absolute (placeholders allowed)."""
        if v is None:
            return v
        if not (v.startswith("/") or v.startswith("$PKGER_")):
            raise ValueError(f"path must be absolute, got '{v}'")
        return v


class RecipeSchema(BaseModel):
    """Complete recipe document schema.

    Attributes:
        metadata: Package metadata and target images.
        env: Custom environment variables for every step.
        configure: Optional configure stage.
        build: Optional build stage.
        install: Optional install stage.
    """

    model_config = ConfigDict(extra="forbid")

    metadata: MetadataSchema
    env: dict[str, str] = Field(default_factory=dict)
    configure: StageSchema | None = Field(default=None)
    build: StageSchema | None = Field(default=None)
    install: StageSchema | None = Field(default=None)

    @field_validator("env", mode="before")
    @classmethod
    def coerce_env(cls, v: Any) -> Any:
        """Stringify scalar env values (YAML may parse ports as ints)."""
        if v is None:
            return {}
        if isinstance(v, dict):
            return {k: _env_value(val) for k, val in v.items()}
        return v

    @field_validator("env")
    @classmethod
    def validate_env_keys(cls, v: dict[str, str]) -> dict[str, str]:
        for key in v:
            if not ENV_KEY_PATTERN.match(key):
                raise ValueError(f"invalid environment variable name '{key}'")
        return v


__all__ = [
    "DebSchema",
    "GitSchema",
    "ImageSchema",
    "MetadataSchema",
    "RecipeSchema",
    "RpmSchema",
    "StageSchema",
    "StepSchema",
]
