"""Pydantic v2 domain models for the ASP catalog.

These models describe the persisted shapes of the ingestion pipeline:
- RawRecord (raw payload store)
- CanonicalProduct, ProductSource (product identity)
- RawCanonicalLink (provenance / idempotency gate)
- Performer, PerformerAlias, PerformerExternalId (performer identity)
- ReviewFlag, ProductMerge, PerformerIndexEntry (operations and reference data)
"""

from datetime import UTC, date, datetime
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

from asp_catalog.core.enums import DataSourceKind, ProcessingState, ReviewReason


def _utc_now() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(UTC)


# ============================================================================
# Raw Data
# ============================================================================


class RawRecord(BaseModel):
    """
    A raw payload fetched from a source, keyed by (source, source_product_id).

    Exactly one of ``body`` (inline bytes) or ``body_url`` (object-store
    reference) is set.
    """

    id: UUID = Field(default_factory=uuid4)
    source: str
    source_product_id: str
    url: str | None = None
    body: bytes | None = None
    body_url: str | None = None
    content_hash: str
    mime_type: str = "application/octet-stream"
    size_bytes: int = 0
    fetched_at: datetime = Field(default_factory=_utc_now)
    processed_at: datetime | None = None
    review_reason: ReviewReason | None = None
    review_detail: str | None = None

    @field_validator("content_hash")
    @classmethod
    def valid_hash(cls, v: str) -> str:
        if len(v) != 64:
            raise ValueError("content_hash must be a 64 character hex digest")
        return v.lower()

    @property
    def is_external(self) -> bool:
        """True when the body lives in the object store."""
        return self.body_url is not None

    @property
    def state(self) -> ProcessingState:
        """Processing state derived from the row's markers."""
        if self.processed_at is not None:
            return ProcessingState.PROCESSED
        if self.review_reason is not None:
            return ProcessingState.FLAGGED_FOR_REVIEW
        return ProcessingState.NEEDS_PROCESSING


# ============================================================================
# Product Identity
# ============================================================================


class FieldSource(BaseModel):
    """Which source last wrote a mutable product field, and at what priority."""

    source: str
    priority: int


class CanonicalProduct(BaseModel):
    """
    The deduplicated product entity.

    ``normalized_product_id`` is unique; ``merged_into_id`` marks a product
    that was folded into another one by an explicit merge.
    """

    id: UUID = Field(default_factory=uuid4)
    normalized_product_id: str
    product_code: str | None = None
    title: str | None = None
    titles: dict[str, str] = Field(default_factory=dict)
    description: str | None = None
    release_date: date | None = None
    duration_minutes: int | None = None
    thumbnail_url: str | None = None
    field_sources: dict[str, FieldSource] = Field(default_factory=dict)
    merged_into_id: UUID | None = None
    merged_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    @field_validator("normalized_product_id")
    @classmethod
    def id_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("normalized_product_id cannot be empty")
        return v.strip()

    @property
    def is_merged(self) -> bool:
        return self.merged_into_id is not None


class ProductSource(BaseModel):
    """One ASP's listing of a canonical product."""

    id: UUID = Field(default_factory=uuid4)
    product_id: UUID
    asp_name: str
    source_product_id: str
    product_code: str | None = None
    affiliate_url: str | None = None
    price: int | None = None
    currency: str = "JPY"
    data_source: DataSourceKind = DataSourceKind.HTML
    last_updated: datetime = Field(default_factory=_utc_now)


class RawCanonicalLink(BaseModel):
    """Provenance record: this raw record, at this hash, produced this product."""

    id: UUID = Field(default_factory=uuid4)
    canonical_product_id: UUID
    source_type: str
    raw_record_key: str
    content_hash_at_processing: str
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


# ============================================================================
# Performer Identity
# ============================================================================


class Performer(BaseModel):
    """Canonical performer. Never deleted."""

    id: UUID = Field(default_factory=uuid4)
    name: str
    name_key: str = ""
    created_at: datetime = Field(default_factory=_utc_now)

    @field_validator("name")
    @classmethod
    def name_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("name cannot be empty")
        return v.strip()


class PerformerAlias(BaseModel):
    """Alternate spelling of a performer's name."""

    id: UUID = Field(default_factory=uuid4)
    performer_id: UUID
    alias_name: str
    alias_key: str = ""
    source: str | None = None


class PerformerExternalId(BaseModel):
    """A provider-issued stable identifier bound to a performer."""

    id: UUID = Field(default_factory=uuid4)
    performer_id: UUID
    provider: str
    external_id: str


class Tag(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    name: str


# ============================================================================
# Operations and Reference Data
# ============================================================================


class ReviewFlag(BaseModel):
    """A raw record set aside for operator review."""

    id: UUID = Field(default_factory=uuid4)
    raw_record_id: UUID | None = None
    source: str
    source_product_id: str
    reason: ReviewReason
    detail: str = ""
    created_at: datetime = Field(default_factory=_utc_now)
    resolved_at: datetime | None = None


class ProductMerge(BaseModel):
    """Audit row for an explicit product merge."""

    id: UUID = Field(default_factory=uuid4)
    surviving_product_id: UUID
    merged_product_id: UUID
    reason: str
    moved_sources: int = 0
    moved_links: int = 0
    merged_at: datetime = Field(default_factory=_utc_now)


class PerformerIndexEntry(BaseModel):
    """Locally indexed product-code to performer-name mapping from a reference site."""

    id: UUID = Field(default_factory=uuid4)
    product_code_key: str
    performer_name: str
    source: str
    source_url: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)
