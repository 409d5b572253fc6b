"""Package writer boundary.

The orchestrator hands every succeeded job's (target, manifest, recipe,
exported tree) to a PackageWriter. Turning that into a deb/rpm/pkg file
is the writer's business; the default ManifestWriter stages the
manifest entries and a JSON manifest under the output directory so an
external packaging tool can pick them up.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from pkgbake.builds.artifacts import generate_manifest, remove_tree, write_manifest
from pkgbake.types import ArtifactKind

if TYPE_CHECKING:
    from pkgbake.recipes.models import Recipe, Target
    from pkgbake.types import ArtifactManifest

logger = logging.getLogger(__name__)


class PackageWriter(Protocol):
    """Consumer of successful build outputs."""

    def write(
        self,
        target: Target,
        manifest: ArtifactManifest,
        recipe: Recipe,
        root: Path,
    ) -> Path:
        """Produce the package (or its staging area) and return its path."""
        ...


def package_basename(recipe: Recipe, target: Target) -> str:
    """Return '<name>-<version>.<format>' for a target."""
    suffix = target.format.value if target.format else "pkg"
    return f"{recipe.name}-{recipe.version}.{suffix}"


class ManifestWriter:
    """Stage manifest entries and a JSON manifest per target.

    Layout::

        <output_dir>/<image>/<name>-<version>.<format>/          (staged tree)
        <output_dir>/<image>/<name>-<version>.<format>.manifest.json
    """

    def __init__(self, output_dir: Path, stage_tree: bool = True) -> None:
        self.output_dir = output_dir
        self.stage_tree = stage_tree

    def write(
        self,
        target: Target,
        manifest: ArtifactManifest,
        recipe: Recipe,
        root: Path,
    ) -> Path:
        target_dir = self.output_dir / target.image.replace("/", "_").replace(":", "_")
        basename = package_basename(recipe, target)

        if self.stage_tree:
            tree = target_dir / basename
            if tree.exists():
                remove_tree(tree)
            tree.mkdir(parents=True)
            for entry in manifest.entries:
                dst = tree / entry.relative_path
                if entry.kind is ArtifactKind.DIR:
                    dst.mkdir(parents=True, exist_ok=True)
                else:
                    dst.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(root / entry.relative_path, dst, follow_symlinks=False)
            # Directory modes last so read-only dirs can still be filled
            for entry in reversed(manifest.dirs):
                (tree / entry.relative_path).chmod(entry.mode)
            logger.info(
                "Staged %d entries for %s in %s", len(manifest.entries), target, tree
            )

        document = generate_manifest(manifest, target=target, recipe=recipe)
        return write_manifest(document, target_dir / f"{basename}.manifest.json")


__all__ = ["ManifestWriter", "PackageWriter", "package_basename"]
