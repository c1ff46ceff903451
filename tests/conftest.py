"""Shared fixtures: a throwaway SQLite database and source configurations."""

import pytest
from sqlalchemy.orm import sessionmaker

from asp_catalog.core.enums import DataSourceKind
from asp_catalog.db.engine import create_db_engine
from asp_catalog.db.models import Base
from asp_catalog.ingestion.registry import SourceConfig, SourceRegistry


@pytest.fixture
def engine(tmp_path):
    """Create a test database engine with the production connection settings."""
    engine = create_db_engine(tmp_path / "test.db")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def session(session_factory):
    """Create a database session for testing."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def fanza_source() -> SourceConfig:
    return SourceConfig(
        name="fanza-api",
        asp_name="FANZA",
        adapter="json_api",
        data_source=DataSourceKind.API,
        priority=100,
        url_template="https://api.example.com/fanza/{id}.json",
    )


@pytest.fixture
def mgs_source() -> SourceConfig:
    return SourceConfig(
        name="mgs-html",
        asp_name="MGS",
        adapter="html_page",
        data_source=DataSourceKind.HTML,
        priority=80,
        url_template="https://mgs.example.com/product/{id}/",
    )


@pytest.fixture
def b10f_source() -> SourceConfig:
    return SourceConfig(
        name="b10f-csv",
        asp_name="B10F",
        adapter="csv_feed",
        data_source=DataSourceKind.CSV,
        priority=50,
    )


@pytest.fixture
def registry(fanza_source, mgs_source, b10f_source) -> SourceRegistry:
    registry = SourceRegistry()
    registry.load_dict({"global": {"batch": {"time_budget_seconds": None}}})
    for source in (fanza_source, mgs_source, b10f_source):
        registry.register(source)
    return registry
