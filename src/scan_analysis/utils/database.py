"""
Database connection utilities and session management.

This module provides utilities for connecting to the scan database,
managing sessions, and handling database operations.
"""

import os
import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional
from urllib.parse import quote_plus

from sqlalchemy import create_engine, text, Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.exc import SQLAlchemyError

from ..models.database import Base

logger = logging.getLogger(__name__)


class DatabaseConfig:
    """Configuration class for database connection parameters."""

    def __init__(self):
        self.url = os.getenv("DATABASE_URL", "")
        self.host = os.getenv("DB_HOST", "localhost")
        self.port = int(os.getenv("DB_PORT", "5432"))
        self.database = os.getenv("DB_NAME", "scan_analysis")
        self.username = os.getenv("DB_USERNAME", "postgres")
        self.password = os.getenv("DB_PASSWORD", "")
        self.ssl_mode = os.getenv("DB_SSL_MODE", "prefer")

        # Connection pool settings
        self.pool_size = int(os.getenv("DB_POOL_SIZE", "5"))
        self.max_overflow = int(os.getenv("DB_MAX_OVERFLOW", "10"))
        self.pool_timeout = int(os.getenv("DB_POOL_TIMEOUT", "30"))
        self.pool_recycle = int(os.getenv("DB_POOL_RECYCLE", "3600"))

    @property
    def database_url(self) -> str:
        """Return DATABASE_URL when set, otherwise build a PostgreSQL URL."""
        if self.url:
            return self.url

        # URL encode the password to handle special characters
        encoded_password = quote_plus(self.password)

        return (
            f"postgresql://{self.username}:{encoded_password}@"
            f"{self.host}:{self.port}/{self.database}?sslmode={self.ssl_mode}"
        )

    def engine_options(self, url: str) -> Dict[str, Any]:
        """Engine keyword arguments suited to the database behind ``url``."""
        if url.startswith("sqlite"):
            options: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
            if url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection so every session sees the same memory database
                options["poolclass"] = StaticPool
            return options

        return {
            "poolclass": QueuePool,
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_timeout": self.pool_timeout,
            "pool_recycle": self.pool_recycle,
            "pool_pre_ping": True,
        }


class DatabaseManager:
    """
    Database manager class for handling connections and sessions.

    This class implements the singleton pattern to ensure only one
    database engine instance is created per process. The engine is created
    lazily on first use so importing the package never opens a connection.
    """

    _instance: Optional['DatabaseManager'] = None
    _engine: Optional[Engine] = None
    _session_factory: Optional[sessionmaker] = None

    def __new__(cls) -> 'DatabaseManager':
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def _initialize_engine(self, url: Optional[str] = None) -> None:
        """Initialize the database engine with connection pooling."""
        config = DatabaseConfig()
        url = url or config.database_url

        try:
            self._engine = create_engine(
                url,
                echo=os.getenv("DB_ECHO", "false").lower() == "true",
                **config.engine_options(url)
            )

            self._session_factory = sessionmaker(
                bind=self._engine,
                autocommit=False,
                autoflush=False,
                expire_on_commit=False
            )

            logger.info("Database engine initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize database engine: {e}")
            raise

    def configure(self, url: str) -> None:
        """Rebind the manager to a different database URL."""
        if self._engine is not None:
            self._engine.dispose()
        self._initialize_engine(url)

    @property
    def engine(self) -> Engine:
        """Get the database engine instance."""
        if self._engine is None:
            self._initialize_engine()
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        """Get the session factory."""
        if self._session_factory is None:
            self._initialize_engine()
        return self._session_factory

    def create_tables(self) -> None:
        """Create all database tables."""
        try:
            Base.metadata.create_all(bind=self.engine)
            logger.info("Database tables created successfully")
        except SQLAlchemyError as e:
            logger.error(f"Failed to create database tables: {e}")
            raise

    def drop_tables(self) -> None:
        """Drop all database tables. Use with caution!"""
        try:
            Base.metadata.drop_all(bind=self.engine)
            logger.info("Database tables dropped successfully")
        except SQLAlchemyError as e:
            logger.error(f"Failed to drop database tables: {e}")
            raise

    def get_session(self) -> Session:
        """Create a new database session."""
        return self.session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Provide a transactional scope around a series of operations.

        This context manager automatically handles session creation,
        transaction management, and cleanup.
        """
        session = self.get_session()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database transaction failed: {e}")
            raise
        finally:
            session.close()

    def health_check(self) -> bool:
        """
        Perform a health check on the database connection.

        Returns:
            bool: True if the database is accessible, False otherwise.
        """
        try:
            with self.session_scope() as session:
                session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False


# Global database manager instance
db_manager = DatabaseManager()
