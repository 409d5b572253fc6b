"""Tests for builds/artifacts.py module.

Tests output tree walking, exclusion, and manifest generation.
"""

import json
import os
from pathlib import Path

import pytest

from pkgbake.builds.artifacts import (
    collect_artifacts,
    compute_file_hash,
    generate_manifest,
    is_excluded,
    normalize_exclude,
    remove_tree,
    write_manifest,
)
from pkgbake.errors import ArtifactCollectionError
from pkgbake.types import ArtifactKind


@pytest.fixture
def out_dir(tmp_path: Path) -> Path:
    """An output tree like the sample recipe's install stage leaves."""
    root = tmp_path / "out"
    (root / "usr" / "bin").mkdir(parents=True)
    (root / "usr" / "bin" / "hello").write_bytes(b"#!/bin/sh\necho hi\n")
    (root / "usr" / "bin" / "hello").chmod(0o755)
    (root / "etc").mkdir()
    (root / "etc" / "hello.conf").write_text("key=value\n")
    (root / "share" / "test" / "123").mkdir(parents=True)
    (root / "info" / "dir" / "to" / "remove").mkdir(parents=True)
    return root


class TestComputeFileHash:
    """Tests for compute_file_hash function."""

    def test_known_hash(self, tmp_path: Path) -> None:
        """Should compute correct SHA-256."""
        path = tmp_path / "f"
        path.write_bytes(b"hello")
        assert compute_file_hash(path) == (
            "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"
        )


class TestExcludePatterns:
    """Tests for normalize_exclude and is_excluded."""

    def test_normalize(self) -> None:
        """Leading slashes, './' and trailing slashes are dropped."""
        assert normalize_exclude(["/share", "./info/", "usr/lib/*.a"]) == [
            "share",
            "info",
            "usr/lib/*.a",
        ]

    @pytest.mark.parametrize("pattern", ["", "/", ".", "../etc", "usr/../../x"])
    def test_invalid(self, pattern: str) -> None:
        """Empty or escaping patterns are rejected."""
        with pytest.raises(ArtifactCollectionError):
            normalize_exclude([pattern])

    def test_subtree_match(self) -> None:
        """A pattern excludes the path and everything below it."""
        assert is_excluded("share", ["share"])
        assert is_excluded("share/test/123", ["share"])
        assert not is_excluded("shared/file", ["share"])

    def test_glob_match(self) -> None:
        """Glob patterns match relative paths."""
        assert is_excluded("usr/lib/libhello.a", ["usr/lib/*.a"])
        assert not is_excluded("usr/lib/libhello.so", ["usr/lib/*.a"])


class TestCollectArtifacts:
    """Tests for collect_artifacts function."""

    def test_collects_tree(self, out_dir: Path) -> None:
        """Every file and directory is listed in sorted order."""
        manifest = collect_artifacts(out_dir)
        paths = manifest.paths()
        assert paths == sorted(paths)
        assert "usr/bin/hello" in paths
        assert "share/test/123" in paths
        assert "info/dir/to/remove" in paths

    def test_file_entries(self, out_dir: Path) -> None:
        """Files carry mode, size and checksum; dirs do not."""
        manifest = collect_artifacts(out_dir)
        by_path = {e.relative_path: e for e in manifest.entries}

        hello = by_path["usr/bin/hello"]
        assert hello.kind is ArtifactKind.FILE
        assert hello.mode == 0o755
        assert hello.size_bytes == len(b"#!/bin/sh\necho hi\n")
        assert hello.sha256 == compute_file_hash(out_dir / "usr" / "bin" / "hello")

        usr = by_path["usr"]
        assert usr.kind is ArtifactKind.DIR
        assert usr.size_bytes is None
        assert usr.sha256 is None

    def test_exclude_subtrees(self, out_dir: Path) -> None:
        """Excluded directories disappear with their whole subtree."""
        manifest = collect_artifacts(out_dir, exclude=["share", "info"])
        paths = manifest.paths()
        assert not any(p == "share" or p.startswith("share/") for p in paths)
        assert not any(p == "info" or p.startswith("info/") for p in paths)
        assert paths == ["etc", "etc/hello.conf", "usr", "usr/bin", "usr/bin/hello"]

    def test_exclude_single_file(self, out_dir: Path) -> None:
        """A file path excludes just that file."""
        manifest = collect_artifacts(out_dir, exclude=["/etc/hello.conf"])
        assert "etc" in manifest.paths()
        assert "etc/hello.conf" not in manifest.paths()

    def test_empty_dir(self, tmp_path: Path) -> None:
        """An empty output directory yields an empty manifest."""
        assert collect_artifacts(tmp_path).entries == []

    def test_missing_dir(self, tmp_path: Path) -> None:
        """A missing directory raises ArtifactCollectionError."""
        with pytest.raises(ArtifactCollectionError, match="does not exist"):
            collect_artifacts(tmp_path / "missing")

    def test_not_a_dir(self, tmp_path: Path) -> None:
        """A file root raises ArtifactCollectionError."""
        path = tmp_path / "file"
        path.write_text("x")
        with pytest.raises(ArtifactCollectionError, match="not a directory"):
            collect_artifacts(path)

    def test_symlinks_not_followed(self, out_dir: Path) -> None:
        """Symlinks are recorded as entries without being followed."""
        os.symlink("usr", out_dir / "link-dir")
        os.symlink("usr/bin/hello", out_dir / "link-file")
        manifest = collect_artifacts(out_dir)
        by_path = {e.relative_path: e for e in manifest.entries}
        assert by_path["link-dir"].kind is ArtifactKind.FILE
        assert by_path["link-file"].sha256 is None
        assert "link-dir/bin" not in by_path


class TestManifest:
    """Tests for manifest generation and writing."""

    def test_generate_manifest(self, out_dir: Path, make_recipe) -> None:
        """The manifest document carries entries, target and package data."""
        recipe = make_recipe(
            metadata={"depends": {"all": ["libc6"], "centos8": ["glibc"]}}
        )
        target = recipe.target("centos8")
        manifest = collect_artifacts(out_dir, exclude=["share", "info"])

        data = generate_manifest(manifest, target=target, recipe=recipe)

        assert data["version"] == "1.0"
        assert data["target"] == {
            "image": "centos8",
            "os": "centos",
            "os_version": "8",
            "format": "rpm",
        }
        assert data["package"]["name"] == "hello"
        assert data["package"]["depends"] == ["libc6", "glibc"]
        assert data["summary"]["files"] == 2
        assert data["summary"]["dirs"] == 3
        hello = next(e for e in data["entries"] if e["path"] == "usr/bin/hello")
        assert hello["mode"] == "0755"

    @pytest.mark.parametrize(
        ("image", "arch"),
        [("debian10", "amd64"), ("centos8", "x86_64")],
    )
    def test_package_arch_named_per_format(
        self, out_dir: Path, make_recipe, image: str, arch: str
    ) -> None:
        """package.arch uses the target format's architecture name."""
        recipe = make_recipe(metadata={"arch": "x86_64"})
        manifest = collect_artifacts(out_dir)
        data = generate_manifest(manifest, target=recipe.target(image), recipe=recipe)
        assert data["package"]["arch"] == arch

    def test_package_arch_without_target(self, out_dir: Path, make_recipe) -> None:
        recipe = make_recipe(metadata={"arch": "x86_64"})
        data = generate_manifest(collect_artifacts(out_dir), recipe=recipe)
        assert data["package"]["arch"] == "x86_64"

    def test_format_specific_fields(self, out_dir: Path, make_recipe) -> None:
        """deb and rpm manifests carry their own metadata."""
        recipe = make_recipe(
            metadata={
                "group": "utils",
                "deb": {"priority": "optional"},
                "rpm": {"release": 2, "vendor": "Acme", "obsoletes": ["old"]},
            }
        )
        manifest = collect_artifacts(out_dir)
        deb = generate_manifest(manifest, recipe.target("debian10"), recipe)
        rpm = generate_manifest(manifest, recipe.target("centos8"), recipe)

        assert deb["package"]["group"] == rpm["package"]["group"] == "utils"
        assert deb["package"]["priority"] == "optional"
        assert "release" not in deb["package"]
        assert rpm["package"]["release"] == "2"
        assert rpm["package"]["vendor"] == "Acme"
        assert rpm["package"]["obsoletes"] == ["old"]
        assert "priority" not in rpm["package"]

    def test_rpm_release_defaults(self, out_dir: Path, make_recipe) -> None:
        recipe = make_recipe()
        data = generate_manifest(
            collect_artifacts(out_dir), recipe.target("centos8"), recipe
        )
        assert data["package"]["release"] == "0"
        assert "vendor" not in data["package"]

    def test_write_manifest(self, tmp_path: Path) -> None:
        """Should write a JSON manifest file, creating parents."""
        path = write_manifest({"version": "1.0"}, tmp_path / "a" / "m.json")
        assert json.loads(path.read_text()) == {"version": "1.0"}


class TestRemoveTree:
    """Tests for remove_tree function."""

    def test_read_only_directories(self, tmp_path: Path) -> None:
        """Trees holding 0555 directories are removed."""
        root = tmp_path / "tree"
        locked = root / "usr" / "share"
        locked.mkdir(parents=True)
        (locked / "file").write_text("x")
        locked.chmod(0o555)
        root.chmod(0o555)

        remove_tree(root)

        assert not root.exists()

    def test_symlink_not_followed(self, tmp_path: Path) -> None:
        """A symlink is unlinked without touching its target."""
        target = tmp_path / "keep"
        target.mkdir()
        (target / "file").write_text("x")
        link = tmp_path / "link"
        link.symlink_to(target)

        remove_tree(link)

        assert not link.is_symlink()
        assert (target / "file").exists()

    def test_missing_path(self, tmp_path: Path) -> None:
        remove_tree(tmp_path / "nope")
