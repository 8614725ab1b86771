"""Database connection and session management for OpsPilot."""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base

if TYPE_CHECKING:
    from collections.abc import Generator

    from sqlalchemy.engine import Engine


class Database:
    """Database connection manager for OpsPilot.

    Handles SQLite database creation, connection, and session management.
    Sessions are short-lived: every unit of work opens its own scope, so
    timer threads and the control plane never share a session.
    """

    def __init__(self, db_path: Path | str | None = None) -> None:
        """Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file.
                     If None, uses ~/.opspilot/opspilot.db
        """
        if db_path is None:
            db_path = Path.home() / ".opspilot" / "opspilot.db"
        elif isinstance(db_path, str):
            db_path = Path(db_path)

        if str(db_path) == ":memory:":
            # One shared connection, otherwise every worker thread would see
            # its own empty in-memory database
            self._engine: Engine = create_engine(
                "sqlite:///:memory:",
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            self._engine = create_engine(
                f"sqlite:///{db_path}",
                echo=False,
                connect_args={"check_same_thread": False, "timeout": 30},
            )

        event.listen(self._engine, "connect", _enable_foreign_keys)

        self._db_path = db_path
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)

    @property
    def db_path(self) -> Path:
        """Get the database file path."""
        return self._db_path

    @property
    def engine(self) -> Engine:
        """Get the underlying SQLAlchemy engine."""
        return self._engine

    def create_tables(self) -> None:
        """Create all database tables if they don't exist."""
        Base.metadata.create_all(self._engine)

    def drop_tables(self) -> None:
        """Drop all database tables. Use with caution!"""
        Base.metadata.drop_all(self._engine)

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Provide a transactional scope for database operations.

        Usage:
            with db.session_scope() as session:
                repo = TaskRepository(session)
                repo.create(task)

        Yields:
            A SQLAlchemy Session that will be committed on success
            or rolled back on exception.
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        """Close every pooled connection."""
        self._engine.dispose()


def _enable_foreign_keys(dbapi_connection, connection_record) -> None:  # type: ignore[no-untyped-def]
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def init_database(db_path: Path | str | None = None) -> Database:
    """Initialize the database with tables created.

    This is typically called during application startup or
    by the `opspilot init` command.
    """
    db = Database(db_path)
    db.create_tables()
    return db
