"""
Adapter Base Module
===================

Defines the abstract base class for source-specific adapters.
Adapters turn a stored raw payload (JSON, HTML or a CSV row) into an
ExtractedProduct; they never touch the database or the network.
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from asp_catalog.core.enums import ReviewReason
from asp_catalog.ingestion.errors import DataQualityError

if TYPE_CHECKING:
    from asp_catalog.core.schema import RawRecord


def _check_confidence(confidence: float) -> None:
    if not 0.0 <= confidence <= 1.0:
        raise ValueError(f"confidence must be within [0, 1], got {confidence}")


@dataclass
class ExtractedField:
    """One value read from a payload, with how it was found and how sure we are."""

    field_name: str
    value: Any
    confidence: float  # 0.0 - 1.0
    extractor_method: str  # "json", "css_selector", "meta_tag", "label", "csv"

    def __post_init__(self) -> None:
        _check_confidence(self.confidence)


@dataclass
class PerformerCandidate:
    """
    A performer name as it appeared in a payload.

    Structured fields (an API's performer list, a labelled table cell) carry
    high confidence; names scraped from free text carry low confidence.
    """

    name: str
    external_id: str | None = None
    confidence: float = 0.5
    method: str = "text"

    def __post_init__(self) -> None:
        _check_confidence(self.confidence)


@dataclass
class ExtractedProduct:
    """
    Structured product data extracted from one raw record.

    Values are as the source presented them; the Normalizer parses
    dates, durations and prices and canonicalizes the product code.
    """

    # Source information
    source_name: str
    source_product_id: str
    url: str | None = None

    # Identity
    product_code: ExtractedField | None = None

    # Descriptive fields
    title: ExtractedField | None = None
    description: ExtractedField | None = None
    release_date: ExtractedField | None = None
    duration: ExtractedField | None = None
    thumbnail_url: ExtractedField | None = None

    # Per-ASP listing fields
    price: ExtractedField | None = None
    currency: ExtractedField | None = None
    affiliate_url: ExtractedField | None = None

    # Relations
    performers: list[PerformerCandidate] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)

    def get_value(self, field_name: str) -> Any | None:
        """The bare value of a field, None when the source did not provide it."""
        extracted = getattr(self, field_name, None)
        return extracted.value if isinstance(extracted, ExtractedField) else extracted


def split_names(value: str, separators: str = r"[,、/／]") -> list[str]:
    """Split a joined list of names, dropping empties."""
    return [part.strip() for part in re.split(separators, value) if part.strip()]


def load_json_body(body: bytes) -> Any:
    """Decode a JSON payload or flag the record as unparseable."""
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DataQualityError(ReviewReason.UNPARSEABLE, f"invalid JSON: {e}") from e


class BaseAdapter(ABC):
    """
    Abstract base class for source-specific adapters.

    Subclasses must implement:
    - extract_product: Parse a raw payload into an ExtractedProduct
    """

    # Adapter identification (override in subclasses)
    ADAPTER_NAME: str = "base"
    ADAPTER_VERSION: str = "1.0.0"

    def __init__(self, config: dict[str, Any] | None = None) -> None:
        """
        Initialize the adapter.

        Args:
            config: Optional per-source configuration (field_map, selectors)
        """
        self.config = config or {}

    @abstractmethod
    def extract_product(self, body: bytes, record: RawRecord) -> ExtractedProduct:
        """
        Extract product data from a raw payload.

        Args:
            body: Raw payload bytes
            record: The raw record the payload belongs to

        Returns:
            ExtractedProduct

        Raises:
            DataQualityError: If the payload cannot be parsed
        """
        pass

    def validate_product(self, product: ExtractedProduct) -> list[str]:
        """
        Validate an extracted product.

        Override this method to add adapter-specific validation.

        Returns:
            List of validation warnings (empty if valid)
        """
        warnings = []

        if not product.get_value("title"):
            warnings.append("Missing title")

        price = product.get_value("price")
        if price is not None:
            try:
                if int(str(price).replace(",", "").replace("円", "").strip()) < 0:
                    warnings.append(f"Invalid price: {price}")
            except ValueError:
                warnings.append(f"Invalid price format: {price}")

        return warnings
