"""Database initialization and persistence layer."""

from asp_catalog.db.engine import (
    create_db_engine,
    get_database_url,
    get_engine,
    get_session,
    get_session_factory,
    init_db,
    reset_engine,
    run_migrations,
)
from asp_catalog.db.models import (
    Base,
    PerformerAliasDB,
    PerformerDB,
    PerformerExternalIdDB,
    PerformerIndexDB,
    ProductDB,
    ProductMergeDB,
    ProductPerformerDB,
    ProductSourceDB,
    ProductTagDB,
    RawCanonicalLinkDB,
    RawRecordDB,
    ReviewFlagDB,
    TagDB,
)
from asp_catalog.db.repositories import (
    PerformerIndexRepository,
    PerformerRepository,
    ProductMergeRepository,
    ProductRepository,
    ProductSourceRepository,
    ReviewFlagRepository,
    TagRepository,
)

__all__ = [
    # Engine
    "create_db_engine",
    "get_database_url",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_db",
    "reset_engine",
    "run_migrations",
    # Models
    "Base",
    "RawRecordDB",
    "ProductDB",
    "ProductSourceDB",
    "RawCanonicalLinkDB",
    "PerformerDB",
    "PerformerAliasDB",
    "PerformerExternalIdDB",
    "ProductPerformerDB",
    "TagDB",
    "ProductTagDB",
    "ReviewFlagDB",
    "ProductMergeDB",
    "PerformerIndexDB",
    # Repositories
    "ProductRepository",
    "ProductSourceRepository",
    "PerformerRepository",
    "TagRepository",
    "ReviewFlagRepository",
    "ProductMergeRepository",
    "PerformerIndexRepository",
]
