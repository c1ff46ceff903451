"""Database engine, sessions and schema setup."""

import os
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

# Used when neither an explicit path nor DATABASE_URL is given
DEFAULT_DB_PATH = Path.home() / ".asp_catalog" / "asp_catalog.db"

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


def get_database_url(db_path: Path | str | None = None) -> str:
    """
    Resolve the SQLAlchemy URL for the catalog database.

    An explicit db_path wins. DATABASE_URL may hold a full URL (returned
    as-is, any backend) or a bare SQLite file path. The parent directory of
    a SQLite file is created when missing.
    """
    if db_path is None:
        configured = os.environ.get("DATABASE_URL")
        if configured and "://" in configured:
            return configured
        db_path = configured or DEFAULT_DB_PATH

    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{path}"


def _configure_sqlite_connection(dbapi_connection, connection_record) -> None:
    # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs nest correctly under pysqlite
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _begin_sqlite_transaction(conn) -> None:
    # Take the write lock up front; a deferred reader upgrading to writer can deadlock
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(db_path: Path | str | None = None, echo: bool = False) -> Engine:
    """
    Create a SQLAlchemy engine.

    SQLite engines allow cross-thread use, enforce foreign keys and use
    BEGIN IMMEDIATE so that savepoints work inside a unit of work and
    concurrent workers queue on the busy timeout instead of deadlocking.
    """
    url = get_database_url(db_path)
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo, pool_pre_ping=True)

    engine = create_engine(
        url,
        echo=echo,
        # Worker threads share the engine; writers wait up to 30s for the lock
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    event.listen(engine, "connect", _configure_sqlite_connection)
    event.listen(engine, "begin", _begin_sqlite_transaction)
    return engine


# Process-wide engine and session factory, created on first use
_engine: Engine | None = None
_session_factory: sessionmaker | None = None


def get_engine(db_path: Path | str | None = None, echo: bool = False) -> Engine:
    global _engine
    if _engine is None:
        _engine = create_db_engine(db_path, echo)
    return _engine


def get_session_factory(db_path: Path | str | None = None) -> sessionmaker:
    """The shared session factory; sessions do not autoflush."""
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(bind=get_engine(db_path), autoflush=False)
    return _session_factory


def reset_engine() -> None:
    """Dispose of the shared engine so the next call re-reads DATABASE_URL."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


@contextmanager
def get_session(db_path: Path | str | None = None) -> Generator[Session, None, None]:
    """
    Open a session on the shared factory and close it afterwards.

    Callers commit explicitly; anything uncommitted is rolled back on close.
    """
    session = get_session_factory(db_path)()
    try:
        yield session
    finally:
        session.close()


def init_db(db_path: Path | str | None = None) -> None:
    """Create every table directly from the ORM metadata (no migration history)."""
    from asp_catalog.db.models import Base

    Base.metadata.create_all(bind=get_engine(db_path))


def run_migrations(db_path: Path | str | None = None) -> None:
    """
    Upgrade the database to the latest Alembic revision.

    The Alembic config is built in code against the migrations shipped
    inside the package, so this works from any install, not only a checkout.
    """
    config = Config()
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    config.set_main_option("sqlalchemy.url", get_database_url(db_path))
    command.upgrade(config, "head")
