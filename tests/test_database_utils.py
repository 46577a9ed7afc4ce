"""
Tests for database URL resolution, engine options and session handling.
"""

import os
from unittest.mock import MagicMock, patch

from sqlalchemy.pool import QueuePool, StaticPool

from scan_analysis.models.database import Scan, ScanType
from scan_analysis.utils.database import DatabaseConfig, DatabaseManager, db_manager


class TestDatabaseConfig:

    def test_database_url_override(self):
        with patch.dict(os.environ, {"DATABASE_URL": "sqlite:///scans.db"}):
            assert DatabaseConfig().database_url == "sqlite:///scans.db"

    def test_url_built_from_parts_without_override(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.setenv("DB_HOST", "db.internal")
        monkeypatch.setenv("DB_PASSWORD", "s3cret/pw")

        url = DatabaseConfig().database_url

        assert url.startswith("postgresql://")
        assert "s3cret%2Fpw@db.internal" in url

    def test_engine_options_for_memory_sqlite(self):
        options = DatabaseConfig().engine_options("sqlite://")

        assert options["poolclass"] is StaticPool
        assert options["connect_args"] == {"check_same_thread": False}

    def test_engine_options_for_file_sqlite(self):
        options = DatabaseConfig().engine_options("sqlite:///scans.db")

        assert "poolclass" not in options
        assert options["connect_args"] == {"check_same_thread": False}

    def test_engine_options_for_postgres(self):
        options = DatabaseConfig().engine_options("postgresql://u:p@host/db")

        assert options["poolclass"] is QueuePool
        assert options["pool_pre_ping"] is True


class TestDatabaseManager:

    @patch("scan_analysis.utils.database.create_engine")
    @patch("scan_analysis.utils.database.sessionmaker")
    def test_sessions_keep_attributes_after_commit(self, mock_sessionmaker, mock_create_engine,
                                                   monkeypatch):
        mock_create_engine.return_value = MagicMock()
        manager = DatabaseManager()
        monkeypatch.setattr(manager, "_engine", None)
        monkeypatch.setattr(manager, "_session_factory", None)

        with patch.dict(os.environ, {"DATABASE_URL": "postgresql://u:p@host/db"}):
            manager.engine

        assert mock_create_engine.call_args[0][0] == "postgresql://u:p@host/db"
        assert mock_sessionmaker.call_args[1]["expire_on_commit"] is False

    def test_configure_rebinds_engine(self, database):
        first_engine = database.engine
        database.configure("sqlite://")

        assert database.engine is not first_engine
        assert str(database.engine.url) == "sqlite://"

    def test_detached_rows_stay_readable(self, database):
        with database.session_scope() as session:
            scan = Scan(scan_type=ScanType.PET, body_part="Whole body")
            session.add(scan)

        assert scan.body_part == "Whole body"
        with database.session_scope() as session:
            assert session.query(Scan).count() == 1

    def test_health_check(self, database):
        assert database.health_check() is True

    def test_health_check_failure(self):
        with patch.object(db_manager, "session_scope", side_effect=Exception("Connection failed")):
            assert db_manager.health_check() is False
