"""Artifact collection and manifest generation.

This module handles:
- Walking a job's exported output directory
- Applying the recipe's exclude list (files or whole subtrees)
- Computing checksums
- Serializing manifests for the package writer
"""

from __future__ import annotations

import fnmatch
import hashlib
import json
import logging
import os
import shutil
import stat
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

from pkgbake.errors import ArtifactCollectionError
from pkgbake.types import ArtifactEntry, ArtifactKind, ArtifactManifest, PackageFormat

if TYPE_CHECKING:
    from pkgbake.recipes.models import Recipe, Target

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB

MANIFEST_VERSION = "1.0"


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def normalize_exclude(patterns: Iterable[str]) -> list[str]:
    """Normalize exclude entries to output-relative POSIX patterns.

    Leading '/' and './' and trailing '/' are dropped, so 'share',
    '/share' and './share/' all name the same subtree.

    Raises:
        ArtifactCollectionError: If a pattern is empty or escapes the
            output directory.
    """
    normalized: list[str] = []
    for raw in patterns:
        pattern = raw.strip()
        while pattern.startswith("./"):
            pattern = pattern[2:]
        pattern = pattern.strip("/")
        if not pattern or pattern == ".":
            raise ArtifactCollectionError(f"Invalid exclude pattern: {raw!r}")
        if ".." in PurePosixPath(pattern).parts:
            raise ArtifactCollectionError(
                f"Exclude pattern escapes the output directory: {raw!r}"
            )
        normalized.append(pattern)
    return normalized


def is_excluded(relative_path: str, patterns: Iterable[str]) -> bool:
    """Return True if a relative path is matched by an exclude pattern.

    A pattern matches the path itself, everything below it, and any
    path it matches as a glob.
    """
    for pattern in patterns:
        if relative_path == pattern or relative_path.startswith(pattern + "/"):
            return True
        if fnmatch.fnmatchcase(relative_path, pattern):
            return True
    return False


def _raise_walk_error(error: OSError) -> None:
    raise error


def collect_artifacts(
    root: Path,
    exclude: Iterable[str] = (),
) -> ArtifactManifest:
    """Walk an output directory into an artifact manifest.

    Args:
        root: Host directory holding the job's output tree.
        exclude: Exclude patterns from the recipe metadata.

    Returns:
        ArtifactManifest with entries in deterministic (sorted) order.

    Raises:
        ArtifactCollectionError: If the directory is missing or unreadable,
            or an exclude pattern is invalid.
    """
    patterns = normalize_exclude(exclude)

    if not root.exists():
        raise ArtifactCollectionError(
            f"Output directory does not exist: {root}", path=str(root)
        )
    if not root.is_dir():
        raise ArtifactCollectionError(
            f"Output path is not a directory: {root}", path=str(root)
        )

    manifest = ArtifactManifest(root=str(root))
    excluded = 0

    try:
        for dirpath, dirnames, filenames in os.walk(root, onerror=_raise_walk_error):
            current = Path(dirpath)
            dirnames.sort()
            kept_dirs = []
            for name in dirnames:
                path = current / name
                rel = path.relative_to(root).as_posix()
                if is_excluded(rel, patterns):
                    logger.debug("Excluding subtree %s", rel)
                    excluded += 1
                    continue
                st = path.lstat()
                if stat.S_ISLNK(st.st_mode):
                    # Symlinked dirs are recorded as links, never followed
                    manifest.entries.append(
                        ArtifactEntry(rel, ArtifactKind.FILE, stat.S_IMODE(st.st_mode))
                    )
                    continue
                manifest.entries.append(
                    ArtifactEntry(rel, ArtifactKind.DIR, stat.S_IMODE(st.st_mode))
                )
                kept_dirs.append(name)
            dirnames[:] = kept_dirs

            for name in sorted(filenames):
                path = current / name
                rel = path.relative_to(root).as_posix()
                if is_excluded(rel, patterns):
                    logger.debug("Excluding %s", rel)
                    excluded += 1
                    continue
                st = path.lstat()
                if stat.S_ISREG(st.st_mode):
                    entry = ArtifactEntry(
                        rel,
                        ArtifactKind.FILE,
                        stat.S_IMODE(st.st_mode),
                        size_bytes=st.st_size,
                        sha256=compute_file_hash(path),
                    )
                else:
                    entry = ArtifactEntry(
                        rel, ArtifactKind.FILE, stat.S_IMODE(st.st_mode)
                    )
                manifest.entries.append(entry)
    except OSError as e:
        raise ArtifactCollectionError(
            f"Failed to read output directory {root}: {e}", path=str(root)
        ) from e

    manifest.entries.sort(key=lambda e: e.relative_path)
    logger.info(
        "Collected %d entries from %s (%d excluded)",
        len(manifest.entries),
        root,
        excluded,
    )
    return manifest


def entry_to_dict(entry: ArtifactEntry) -> dict[str, Any]:
    data: dict[str, Any] = {
        "path": entry.relative_path,
        "kind": entry.kind.value,
        "mode": f"{entry.mode:04o}",
    }
    if entry.size_bytes is not None:
        data["size_bytes"] = entry.size_bytes
    if entry.sha256 is not None:
        data["sha256"] = entry.sha256
    return data


def generate_manifest(
    manifest: ArtifactManifest,
    target: Target | None = None,
    recipe: Recipe | None = None,
) -> dict[str, Any]:
    """Generate a serializable manifest document.

    Args:
        manifest: Collected artifact manifest.
        target: Optional target the manifest belongs to.
        recipe: Optional recipe providing package metadata. With a target,
            the architecture is named the way the target format names it.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    now = datetime.now(timezone.utc)

    data: dict[str, Any] = {
        "version": MANIFEST_VERSION,
        "generated_at": now.isoformat(),
        "entries": [entry_to_dict(e) for e in manifest.entries],
    }

    if target is not None:
        data["target"] = {
            "image": target.image,
            "os": target.os,
            "os_version": target.os_version,
            "format": target.format.value if target.format else None,
        }
    if recipe is not None:
        meta = recipe.metadata
        fmt = target.format if target is not None else None
        package: dict[str, Any] = {
            "name": recipe.name,
            "version": recipe.version,
            "description": meta.description,
            "license": meta.license,
            "arch": meta.arch_for(fmt) if fmt is not None else meta.arch,
            "maintainer": meta.maintainer,
            "url": meta.url,
            "group": meta.group,
        }
        if target is not None:
            package["depends"] = meta.depends.for_target(target.image)
            package["conflicts"] = meta.conflicts.for_target(target.image)
            package["provides"] = meta.provides.for_target(target.image)
        if fmt is PackageFormat.DEB and meta.deb is not None:
            package["priority"] = meta.deb.priority
        if fmt is PackageFormat.RPM:
            package["release"] = meta.rpm_release()
            rpm = meta.rpm
            if rpm is not None:
                package["epoch"] = rpm.epoch
                package["vendor"] = rpm.vendor
                package["summary"] = rpm.summary
                package["obsoletes"] = rpm.obsoletes.for_target(target.image)
        data["package"] = package

    files = manifest.files
    data["summary"] = {
        "total_entries": len(manifest.entries),
        "files": len(files),
        "dirs": len(manifest.dirs),
        "total_size_bytes": sum(e.size_bytes or 0 for e in files),
    }

    return data


def write_manifest(
    manifest: dict[str, Any],
    output_path: Path,
) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.info("Wrote manifest to %s", output_path)
    return output_path


def remove_tree(path: Path) -> None:
    """Delete a directory tree, including read-only subdirectories.

    Exported and staged trees keep their original modes, so directories
    such as 0555 ones are made owner-writable before deletion.
    """
    owner_rwx = stat.S_IRWXU
    if path.is_symlink() or not path.is_dir():
        path.unlink(missing_ok=True)
        return
    path.chmod(path.stat().st_mode | owner_rwx)
    for dirpath, dirnames, _ in os.walk(path):
        for name in dirnames:
            child = Path(dirpath) / name
            if not child.is_symlink():
                child.chmod(child.stat().st_mode | owner_rwx)
    shutil.rmtree(path)


__all__ = [
    "HASH_CHUNK_SIZE",
    "MANIFEST_VERSION",
    "collect_artifacts",
    "compute_file_hash",
    "entry_to_dict",
    "generate_manifest",
    "is_excluded",
    "normalize_exclude",
    "remove_tree",
    "write_manifest",
]
