"""Tests for db.py module."""

from pathlib import Path

import pytest
from sqlalchemy import inspect, text

from pkgbake.builds.models import BuildRecord
from pkgbake.db import get_engine, get_session, open_history


class TestGetEngine:
    """Tests for get_engine function."""

    def test_creates_parent_directory(self, tmp_path: Path) -> None:
        """File-backed SQLite databases get their directory created."""
        db_file = tmp_path / "nested" / "dir" / "history.db"
        engine = get_engine(f"sqlite:///{db_file}")
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        assert db_file.parent.is_dir()

    def test_file_database_uses_wal(self, tmp_path: Path) -> None:
        """Concurrent recorders rely on WAL journaling."""
        engine = get_engine(f"sqlite:///{tmp_path}/history.db")
        with engine.connect() as conn:
            mode = conn.execute(text("PRAGMA journal_mode")).scalar()
        assert mode == "wal"

    def test_memory_database(self) -> None:
        """In-memory URLs need no directory."""
        engine = get_engine("sqlite:///:memory:")
        with engine.connect() as conn:
            assert conn.execute(text("SELECT 1")).scalar() == 1


class TestOpenHistory:
    """Tests for open_history and get_session."""

    def test_creates_tables(self, tmp_path: Path) -> None:
        """Opening the history creates the build_records table."""
        factory = open_history(f"sqlite:///{tmp_path}/history.db")
        assert "build_records" in inspect(factory.kw["bind"]).get_table_names()

    def test_session_rolls_back_on_error(self, tmp_path: Path) -> None:
        """A failing transaction leaves no rows behind."""
        factory = open_history(f"sqlite:///{tmp_path}/history.db")

        with pytest.raises(RuntimeError):
            with get_session(factory) as session:
                session.add(
                    BuildRecord(
                        run_id="r",
                        job_id="1",
                        recipe_name="hello",
                        recipe_version="1.0",
                        image="debian10",
                    )
                )
                session.flush()
                raise RuntimeError("boom")

        with factory() as session:
            assert session.query(BuildRecord).count() == 0
