"""
Ingestion Errors
================

Error taxonomy for the processing pipeline. Record-local errors never
escape a unit of work; only FatalIngestionError aborts a run.
"""

from __future__ import annotations

from asp_catalog.core.enums import ReviewReason


class IngestionError(Exception):
    """Base class for ingestion pipeline errors."""


class TransientError(IngestionError):
    """Network timeout, rate-limit response or temporary store outage."""


class DataQualityError(IngestionError):
    """Raised when a record's payload cannot be trusted as-is."""

    def __init__(self, reason: ReviewReason, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)


class IdentityConflictError(DataQualityError):
    """A source key or normalized id is bound to a conflicting product."""

    def __init__(self, detail: str = ""):
        super().__init__(ReviewReason.IDENTITY_CONFLICT, detail)


class FatalIngestionError(IngestionError):
    """Store unreachable, configuration missing or source unknown."""
