"""Recipe loading.

This module provides helpers for loading recipe documents from YAML/JSON
files, validating them against the schema, and turning them into the
immutable Recipe model.
"""

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from pkgbake.errors import RecipeValidationError
from pkgbake.recipes.models import (
    DebInfo,
    Dependencies,
    GitSource,
    Recipe,
    RecipeMetadata,
    RpmInfo,
    Stage,
    Step,
    Target,
    reference_violations,
)
from pkgbake.recipes.schema import MetadataSchema, RecipeSchema, StageSchema
from pkgbake.types import STAGE_ORDER, PackageFormat, StageKind

logger = logging.getLogger(__name__)

RECIPE_FILENAMES = ("recipe.yml", "recipe.yaml", "recipe.json")


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def _format_validation_error(exc: ValidationError) -> list[str]:
    violations = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"]) or "<root>"
        violations.append(f"{loc}: {err['msg']}")
    return violations


def _stage_from_schema(kind: StageKind, schema: StageSchema | None) -> Stage:
    if schema is None:
        return Stage(kind)
    steps = []
    for step in schema.steps:
        flags = {
            PackageFormat.DEB: step.deb,
            PackageFormat.RPM: step.rpm,
            PackageFormat.PKG: step.pkg,
        }
        steps.append(
            Step(
                command=step.cmd,
                images=frozenset(step.images or ()),
                formats_on=frozenset(f for f, v in flags.items() if v is True),
                formats_off=frozenset(f for f, v in flags.items() if v is False),
            )
        )
    return Stage(
        kind=kind,
        steps=tuple(steps),
        working_dir=schema.working_dir,
        shell=schema.shell,
    )


def _resolve_source(source: str | None, base_dir: Path | None) -> str | None:
    """Anchor a relative host path source to the recipe directory."""
    if source is None or base_dir is None:
        return source
    if source.startswith(("http://", "https://")) or Path(source).is_absolute():
        return source
    return str(base_dir / source)


def _metadata_from_schema(
    meta: MetadataSchema, base_dir: Path | None = None
) -> RecipeMetadata:
    git = None
    if meta.git is not None:
        git = GitSource(url=meta.git.url, branch=meta.git.branch)
    deb = None
    if meta.deb is not None:
        deb = DebInfo(priority=meta.deb.priority)
    rpm = None
    if meta.rpm is not None:
        fields = meta.rpm.model_dump(exclude={"obsoletes"})
        rpm = RpmInfo(
            obsoletes=Dependencies.from_mapping(meta.rpm.obsoletes), **fields
        )
    return RecipeMetadata(
        description=meta.description,
        license=meta.license,
        arch=meta.arch,
        maintainer=meta.maintainer,
        url=meta.url,
        source=_resolve_source(meta.source, base_dir),
        git=git,
        group=meta.group,
        skip_default_deps=meta.skip_default_deps,
        exclude=tuple(meta.exclude),
        depends=Dependencies.from_mapping(meta.depends),
        conflicts=Dependencies.from_mapping(meta.conflicts),
        provides=Dependencies.from_mapping(meta.provides),
        deb=deb,
        rpm=rpm,
    )


def recipe_from_schema(schema: RecipeSchema, base_dir: Path | None = None) -> Recipe:
    """Convert a validated schema into the immutable Recipe model.

    Args:
        schema: Validated RecipeSchema.
        base_dir: Directory relative ``source`` paths are resolved against.

    Returns:
        Recipe instance.

    Raises:
        RecipeValidationError: If structural rules are violated.
    """
    meta = schema.metadata
    targets = tuple(
        Target.from_image(image.name, format=image.target, os=image.os)
        for image in meta.images
    )
    return Recipe(
        name=meta.name,
        version=meta.version,
        targets=targets,
        metadata=_metadata_from_schema(meta, base_dir),
        build_depends=Dependencies.from_mapping(meta.build_depends),
        env=dict(schema.env),
        configure=_stage_from_schema(StageKind.CONFIGURE, schema.configure),
        build=_stage_from_schema(StageKind.BUILD, schema.build),
        install=_stage_from_schema(StageKind.INSTALL, schema.install),
    )


def _raw_keys(value: Any) -> list[str]:
    if isinstance(value, dict):
        return [k for k in value if isinstance(k, str)]
    return []


def _raw_reference_violations(data: dict[str, Any]) -> list[str]:
    """Run the image reference checks on a document the schema rejected.

    Only well-formed parts are looked at; malformed ones already have a
    schema error of their own.
    """
    metadata = data.get("metadata")
    if not isinstance(metadata, dict):
        return []
    raw_images = metadata.get("images")
    if not isinstance(raw_images, list):
        return []

    images = []
    for item in raw_images:
        if isinstance(item, dict):
            item = item.get("name")
        if isinstance(item, str):
            images.append(item)

    step_filters = []
    for kind in STAGE_ORDER:
        stage = data.get(kind.value)
        steps = stage.get("steps") if isinstance(stage, dict) else None
        for index, step in enumerate(steps if isinstance(steps, list) else []):
            filter_images = step.get("images") if isinstance(step, dict) else None
            if isinstance(filter_images, list):
                names = [i for i in filter_images if isinstance(i, str)]
                step_filters.append((kind.value, index, names))

    dependency_keys = [
        (label, _raw_keys(metadata.get(label)))
        for label in ("build_depends", "depends", "conflicts", "provides")
    ]
    rpm = metadata.get("rpm")
    if isinstance(rpm, dict):
        dependency_keys.append(("rpm.obsoletes", _raw_keys(rpm.get("obsoletes"))))

    return reference_violations(images, step_filters, dependency_keys)


def parse_recipe_data(data: dict[str, Any], base_dir: Path | None = None) -> Recipe:
    """Parse and validate recipe data.

    Schema errors and structural violations are both reported through
    a single RecipeValidationError listing every problem found.

    Args:
        data: Dictionary containing the recipe document.
        base_dir: Directory relative ``source`` paths are resolved against.

    Returns:
        Recipe instance.

    Raises:
        RecipeValidationError: If the document is invalid.
    """
    try:
        schema = RecipeSchema.model_validate(data)
    except ValidationError as e:
        name = None
        metadata = data.get("metadata")
        if isinstance(metadata, dict) and isinstance(metadata.get("name"), str):
            name = metadata["name"]
        violations = _format_validation_error(e) + _raw_reference_violations(data)
        raise RecipeValidationError(violations, recipe=name) from e
    return recipe_from_schema(schema, base_dir)


def find_recipe_file(path: Path) -> Path:
    """Resolve a recipe path, accepting a directory containing a recipe file.

    Raises:
        FileNotFoundError: If no recipe file can be found.
    """
    if path.is_dir():
        for name in RECIPE_FILENAMES:
            candidate = path / name
            if candidate.is_file():
                return candidate
        raise FileNotFoundError(f"No recipe file found in {path}")
    if not path.exists():
        raise FileNotFoundError(f"Recipe file not found: {path}")
    return path


def load_recipe(path: Path) -> Recipe:
    """Load and validate a recipe from a file or recipe directory.

    File format is determined by extension (.yaml, .yml for YAML,
    .json for JSON).

    Args:
        path: Path to the recipe file or a directory containing one.

    Returns:
        Recipe instance.

    Raises:
        ValueError: If file extension is not supported.
        FileNotFoundError: If the file does not exist.
        RecipeValidationError: If the recipe is invalid or cannot be parsed.
    """
    path = find_recipe_file(path)
    suffix = path.suffix.lower()
    if suffix not in (".yaml", ".yml", ".json"):
        raise ValueError(
            f"Unsupported file extension '{suffix}'. Use .yaml, .yml, or .json"
        )
    try:
        data = load_json(path) if suffix == ".json" else load_yaml(path)
    except (yaml.YAMLError, ValueError) as e:
        # JSONDecodeError is a ValueError
        raise RecipeValidationError([f"{path.name}: {e}"]) from e
    recipe = parse_recipe_data(data, base_dir=path.parent)
    logger.debug("Loaded recipe %s %s from %s", recipe.name, recipe.version, path)
    return recipe


__all__ = [
    "RECIPE_FILENAMES",
    "find_recipe_file",
    "load_json",
    "load_recipe",
    "load_yaml",
    "parse_recipe_data",
    "recipe_from_schema",
]
