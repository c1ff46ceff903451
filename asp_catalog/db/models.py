"""SQLAlchemy ORM models for the ASP catalog.

Tables:
- raw_records (raw payload store)
- products, product_sources (product identity)
- raw_canonical_links (provenance / idempotency gate)
- performers, performer_aliases, performer_external_ids, product_performers
- tags, product_tags
- review_flags, product_merges, performer_index
"""

from datetime import UTC, date, datetime
from uuid import uuid4

from sqlalchemy import (
    Date,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utc_now() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(UTC)


def _generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ============================================================================
# Raw Data
# ============================================================================


class RawRecordDB(Base):
    """
    Database model for raw payloads.

    One row per (source, source_product_id). Large bodies live in the
    object store and only ``body_url`` is kept here.
    """

    __tablename__ = "raw_records"
    __table_args__ = (
        UniqueConstraint("source", "source_product_id", name="uq_raw_records_source_key"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    source: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    source_product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    body: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    body_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    mime_type: Mapped[str] = mapped_column(String(100), default="application/octet-stream")
    size_bytes: Mapped[int] = mapped_column(Integer, default=0)
    fetched_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, index=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    review_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)
    review_detail: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<RawRecordDB(source='{self.source}', id='{self.source_product_id}')>"


# ============================================================================
# Product Identity
# ============================================================================


class ProductDB(Base):
    """Database model for canonical products."""

    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    normalized_product_id: Mapped[str] = mapped_column(
        String(255), nullable=False, unique=True, index=True
    )
    product_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    titles_json: Mapped[str] = mapped_column(Text, default="{}")  # JSON object
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    release_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    field_sources_json: Mapped[str] = mapped_column(Text, default="{}")  # JSON object
    merged_into_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("products.id"), nullable=True, index=True
    )
    merged_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    # Relationships
    sources: Mapped[list["ProductSourceDB"]] = relationship(
        "ProductSourceDB", back_populates="product"
    )

    def __repr__(self) -> str:
        return f"<ProductDB(id={self.id}, normalized='{self.normalized_product_id}')>"


class ProductSourceDB(Base):
    """Database model for per-ASP product listings."""

    __tablename__ = "product_sources"
    __table_args__ = (
        UniqueConstraint(
            "asp_name", "source_product_id", name="uq_product_sources_asp_key"
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    asp_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    source_product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    product_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    affiliate_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="JPY")
    data_source: Mapped[str] = mapped_column(String(10), default="HTML")
    last_updated: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    # Relationships
    product: Mapped["ProductDB"] = relationship("ProductDB", back_populates="sources")

    def __repr__(self) -> str:
        return f"<ProductSourceDB(asp='{self.asp_name}', id='{self.source_product_id}')>"


class RawCanonicalLinkDB(Base):
    """Database model for raw record to canonical product provenance links."""

    __tablename__ = "raw_canonical_links"
    __table_args__ = (
        UniqueConstraint(
            "canonical_product_id",
            "source_type",
            "raw_record_key",
            name="uq_raw_canonical_links_triple",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    canonical_product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    source_type: Mapped[str] = mapped_column(String(100), nullable=False)
    raw_record_key: Mapped[str] = mapped_column(String(255), nullable=False)
    content_hash_at_processing: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    def __repr__(self) -> str:
        return (
            f"<RawCanonicalLinkDB(product={self.canonical_product_id}, "
            f"raw='{self.source_type}:{self.raw_record_key}')>"
        )


# ============================================================================
# Performer Identity
# ============================================================================


class PerformerDB(Base):
    """Database model for canonical performers."""

    __tablename__ = "performers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    name_key: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    # Relationships
    aliases: Mapped[list["PerformerAliasDB"]] = relationship(
        "PerformerAliasDB", back_populates="performer"
    )

    def __repr__(self) -> str:
        return f"<PerformerDB(id={self.id}, name='{self.name}')>"


class PerformerAliasDB(Base):
    """Database model for performer name aliases."""

    __tablename__ = "performer_aliases"
    __table_args__ = (
        UniqueConstraint("performer_id", "alias_name", name="uq_performer_aliases_name"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    performer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("performers.id"), nullable=False, index=True
    )
    alias_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    alias_key: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    source: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)

    # Relationships
    performer: Mapped["PerformerDB"] = relationship("PerformerDB", back_populates="aliases")


class PerformerExternalIdDB(Base):
    """Database model for provider-issued performer identifiers."""

    __tablename__ = "performer_external_ids"
    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_performer_external_ids"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    performer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("performers.id"), nullable=False, index=True
    )
    provider: Mapped[str] = mapped_column(String(100), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)


class ProductPerformerDB(Base):
    """Association between products and performers."""

    __tablename__ = "product_performers"

    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id", ondelete="CASCADE"), primary_key=True
    )
    performer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("performers.id"), primary_key=True, index=True
    )
    source: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)


class TagDB(Base):
    """Database model for genre/category tags."""

    __tablename__ = "tags"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)


class ProductTagDB(Base):
    """Association between products and tags."""

    __tablename__ = "product_tags"

    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id", ondelete="CASCADE"), primary_key=True
    )
    tag_id: Mapped[str] = mapped_column(String(36), ForeignKey("tags.id"), primary_key=True)


# ============================================================================
# Operations and Reference Data
# ============================================================================


class ReviewFlagDB(Base):
    """Database model for the operator review queue."""

    __tablename__ = "review_flags"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    raw_record_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("raw_records.id", ondelete="SET NULL"), nullable=True, index=True
    )
    source: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    source_product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    reason: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    detail: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class ProductMergeDB(Base):
    """Audit trail of explicit product merges."""

    __tablename__ = "product_merges"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    surviving_product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id"), nullable=False, index=True
    )
    merged_product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id"), nullable=False, index=True
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    moved_sources: Mapped[int] = mapped_column(Integer, default=0)
    moved_links: Mapped[int] = mapped_column(Integer, default=0)
    merged_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)


class PerformerIndexDB(Base):
    """Local reference index mapping product codes to performer names."""

    __tablename__ = "performer_index"
    __table_args__ = (
        UniqueConstraint(
            "source", "product_code_key", "performer_name", name="uq_performer_index_entry"
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_generate_uuid)
    product_code_key: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    performer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    source: Mapped[str] = mapped_column(String(100), nullable=False)
    source_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
