"""
Database Connection Management for the CreditGate service

This module provides:
- A session provider with short, auto-committing transaction scopes
- Connection pooling and retried engine creation
- Settings from the config.yaml database section, overridden by environment

Every service call opens its own session_scope(); the bureau fetch between
the gate and the counter update never holds a transaction open.
"""

import os
import logging
from typing import Generator, Optional, Callable
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import create_engine, event, text, Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
from sqlalchemy.exc import OperationalError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from config_manager import DatabaseConfig

logger = logging.getLogger(__name__)


# ============================================
# CONFIGURATION
# ============================================

@dataclass
class DatabaseSettings:
    """Database configuration settings."""
    host: str = "localhost"
    port: int = 5432
    database: str = "creditgate"
    user: str = "creditgate_user"
    password: str = "creditgate_password"
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800
    echo: bool = False
    url: Optional[str] = None

    @classmethod
    def from_env(cls, defaults: Optional[DatabaseConfig] = None) -> 'DatabaseSettings':
        """
        Create settings from environment variables.

        Args:
            defaults: The config.yaml database section; environment
                variables take precedence over it

        Returns:
            DatabaseSettings instance
        """
        defaults = defaults or DatabaseConfig()
        return cls(
            host=os.getenv("DB_HOST", defaults.host),
            port=int(os.getenv("DB_PORT", str(defaults.port))),
            database=os.getenv("DB_NAME", defaults.name),
            user=os.getenv("DB_USER", defaults.user),
            password=os.getenv("DB_PASSWORD", defaults.password),
            pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
            pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "1800")),
            echo=os.getenv("DB_ECHO", "false").lower() == "true",
            url=os.getenv("DATABASE_URL") or None
        )

    def get_url(self) -> str:
        """Build database URL; DATABASE_URL wins when set."""
        if self.url:
            return self.url
        return f"postgresql+psycopg2://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"

    def pool_options(self) -> dict:
        return {
            "pool_size": self.pool_size,
            "max_overflow": self.max_overflow,
            "pool_timeout": self.pool_timeout,
            "pool_recycle": self.pool_recycle,
            "pool_pre_ping": True,
        }


# ============================================
# RETRY LOGIC
# ============================================

def create_retry_decorator(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10
) -> Callable:
    """
    Create a retry decorator for database operations.

    Args:
        max_attempts: Maximum number of retry attempts
        min_wait: Minimum wait time between retries (seconds)
        max_wait: Maximum wait time between retries (seconds)

    Returns:
        Retry decorator
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(OperationalError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )


db_retry = create_retry_decorator()


# ============================================
# DATABASE SESSION PROVIDER
# ============================================

class DatabaseSessionProvider:
    """
    Owns the engine and hands out transaction scopes to the services.

    Usage:
        db_provider = init_db(DatabaseSettings.from_env(config.database))

        with db_provider.session_scope() as session:
            ConsentRepository(session).revoke(consent, now)
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        engine: Optional[Engine] = None
    ):
        """
        Initialize the database session provider.

        Args:
            settings: Database settings (uses env if not provided)
            engine: Pre-created engine (for testing)
        """
        self._settings = settings or DatabaseSettings.from_env()
        self._engine = engine
        self._session_factory: Optional[sessionmaker] = None
        self._initialized = False

    @property
    def settings(self) -> DatabaseSettings:
        return self._settings

    def init(self, echo: Optional[bool] = None) -> None:
        """
        Initialize database engine and session factory.

        Args:
            echo: Override echo setting for SQL logging
        """
        if self._initialized:
            return

        if echo is not None:
            self._settings.echo = echo

        if self._engine is None:
            self._engine = self._create_engine_with_retry()

        self._session_factory = sessionmaker(
            bind=self._engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False
        )

        self._setup_event_listeners()

        self._initialized = True
        logger.info("Database session provider initialized")

    @db_retry
    def _create_engine_with_retry(self) -> Engine:
        """Create database engine with retry logic."""
        engine = create_engine(
            self._settings.get_url(),
            echo=self._settings.echo,
            poolclass=QueuePool,
            **self._settings.pool_options()
        )

        # Verify connection
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        return engine

    def _setup_event_listeners(self) -> None:
        """Set up SQLAlchemy event listeners for logging and debugging."""

        @event.listens_for(self._engine, "connect")
        def on_connect(dbapi_connection, connection_record):
            logger.debug("New database connection established")

        @event.listens_for(self._engine, "checkin")
        def on_checkin(dbapi_connection, connection_record):
            logger.debug("Connection returned to pool")

    @property
    def engine(self) -> Engine:
        """Get the SQLAlchemy engine."""
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        """Get the session factory."""
        if self._session_factory is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._session_factory

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Context manager for session with auto-commit/rollback.

        Usage:
            with db_provider.session_scope() as session:
                session.add(entity)
                # Auto-commits on exit, rollbacks on exception
        """
        if self._session_factory is None:
            self.init()

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def close(self) -> None:
        """Close database connections and clean up."""
        if self._engine:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._initialized = False


# ============================================
# GLOBAL PROVIDER INSTANCE
# ============================================

_db_provider: Optional[DatabaseSessionProvider] = None


def get_db_provider() -> DatabaseSessionProvider:
    """
    Get the global database provider instance.

    Returns:
        DatabaseSessionProvider instance
    """
    global _db_provider
    if _db_provider is None:
        _db_provider = DatabaseSessionProvider()
    return _db_provider


def init_db(settings: Optional[DatabaseSettings] = None, echo: bool = False) -> DatabaseSessionProvider:
    """
    Initialize the global database provider.

    Call this during application startup.

    Args:
        settings: Connection settings; environment-only when omitted
        echo: Log SQL statements
    """
    global _db_provider
    if _db_provider is None:
        _db_provider = DatabaseSessionProvider(settings=settings)
    _db_provider.init(echo=echo)
    return _db_provider


def close_db() -> None:
    """
    Close the global database provider.

    Call this during application shutdown.
    """
    global _db_provider
    if _db_provider:
        _db_provider.close()
        _db_provider = None


# ============================================
# PYTEST FIXTURES SUPPORT
# ============================================

def create_test_provider(
    engine: Optional[Engine] = None,
    settings: Optional[DatabaseSettings] = None
) -> DatabaseSessionProvider:
    """
    Create a database provider for testing.

    Args:
        engine: Pre-created engine (e.g., SQLite for unit tests)
        settings: Custom settings for testing

    Returns:
        DatabaseSessionProvider configured for testing
    """
    return DatabaseSessionProvider(settings=settings, engine=engine)
