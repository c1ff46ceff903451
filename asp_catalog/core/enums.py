"""Enums shared by the ingestion pipeline and persistence layer."""

from enum import Enum


class DataSourceKind(str, Enum):
    """How a source delivers its payloads."""

    API = "API"
    HTML = "HTML"
    CSV = "CSV"


class ResolutionAction(str, Enum):
    """Outcome of resolving a raw record to a canonical product."""

    CREATED = "created"
    ATTACHED = "attached"
    UPDATED = "updated"


class ReviewReason(str, Enum):
    """Why a raw record was set aside for operator review."""

    UNPARSEABLE = "unparseable"
    PLACEHOLDER_TITLE = "placeholder_title"
    UNUSABLE_CODE = "unusable_code"
    IDENTITY_CONFLICT = "identity_conflict"
    AMBIGUOUS_IDENTITY = "ambiguous_identity"


class PerformerStatus(str, Enum):
    """Outcome of resolving a single performer candidate."""

    ATTACHED = "attached"
    CREATED = "created"
    REJECTED = "rejected"
    UNRESOLVED = "unresolved"
    AMBIGUOUS = "ambiguous"


class ProcessingState(str, Enum):
    """Lifecycle of a raw record through the processing driver."""

    FETCHED = "fetched"
    NEEDS_PROCESSING = "needs_processing"
    RESOLVING = "resolving"
    LINKED = "linked"
    PROCESSED = "processed"
    FLAGGED_FOR_REVIEW = "flagged_for_review"
