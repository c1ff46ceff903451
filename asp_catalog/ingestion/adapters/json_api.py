"""
JSON API Adapter
================

Extracts products from API-based providers that deliver one JSON object
per product. Field locations are configurable per source through
``field_map``; each entry is a list of dotted paths tried in order.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from asp_catalog.core.enums import ReviewReason
from asp_catalog.ingestion.adapters.base import (
    BaseAdapter,
    ExtractedField,
    ExtractedProduct,
    PerformerCandidate,
    load_json_body,
    split_names,
)
from asp_catalog.ingestion.errors import DataQualityError

if TYPE_CHECKING:
    from asp_catalog.core.schema import RawRecord


DEFAULT_FIELD_MAP: dict[str, list[str]] = {
    "product_code": ["product_code", "productid", "content_id", "code"],
    "title": ["title", "name"],
    "description": ["description", "caption", "comment"],
    "release_date": ["release_date", "releasedate", "date"],
    "duration": ["duration", "volume", "runtime"],
    "thumbnail_url": ["thumbnail_url", "posterimage.large", "image_url", "thumbnail"],
    "price": ["price", "saleprice.price", "list_price"],
    "currency": ["currency"],
    "affiliate_url": ["affiliate_url", "affiliateurl", "url"],
    "performers": ["performers", "actress", "performer"],
    "tags": ["genres", "category", "tags"],
}

# Confidence for performer names delivered in a structured API field
STRUCTURED_WITH_ID_CONFIDENCE = 0.95
STRUCTURED_CONFIDENCE = 0.9


def _lookup_path(data: Any, path: str) -> Any | None:
    """Resolve a dotted path against nested dicts."""
    current = data
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
        if current is None:
            return None
    return current


class JsonApiAdapter(BaseAdapter):
    """Adapter for providers whose raw records are JSON product objects."""

    ADAPTER_NAME = "json_api"
    ADAPTER_VERSION = "1.0.0"

    def __init__(self, config: dict[str, Any] | None = None) -> None:
        super().__init__(config)
        self.field_map = dict(DEFAULT_FIELD_MAP)
        for key, paths in self.config.get("field_map", {}).items():
            self.field_map[key] = [paths] if isinstance(paths, str) else list(paths)
        self.root = self.config.get("root")

    def _first(self, data: dict[str, Any], field_name: str) -> Any | None:
        for path in self.field_map.get(field_name, []):
            value = _lookup_path(data, path)
            if value not in (None, "", [], {}):
                return value
        return None

    def _field(self, data: dict[str, Any], field_name: str) -> ExtractedField | None:
        value = self._first(data, field_name)
        if value is None:
            return None
        return ExtractedField(field_name, value, 0.95, "json")

    def extract_product(self, body: bytes, record: RawRecord) -> ExtractedProduct:
        """Extract a product from a JSON object payload."""
        data = load_json_body(body)
        if self.root:
            data = _lookup_path(data, self.root)
        if not isinstance(data, dict):
            raise DataQualityError(
                ReviewReason.UNPARSEABLE, "expected a JSON object for the product"
            )

        product = ExtractedProduct(
            source_name=record.source,
            source_product_id=record.source_product_id,
            url=record.url,
        )
        for field_name in (
            "product_code", "title", "description", "release_date", "duration",
            "thumbnail_url", "price", "currency", "affiliate_url",
        ):
            setattr(product, field_name, self._field(data, field_name))

        product.performers = self._extract_performers(self._first(data, "performers"))
        product.tags = self._extract_tags(self._first(data, "tags"))
        return product

    def _extract_performers(self, value: Any) -> list[PerformerCandidate]:
        if value is None:
            return []
        if isinstance(value, str):
            return [
                PerformerCandidate(name, None, STRUCTURED_CONFIDENCE, "json")
                for name in split_names(value)
            ]
        if isinstance(value, dict):
            value = [value]

        candidates = []
        for item in value:
            if isinstance(item, dict):
                name = item.get("name") or item.get("title")
                if not name:
                    continue
                external_id = item.get("id")
                candidates.append(
                    PerformerCandidate(
                        name=str(name),
                        external_id=str(external_id) if external_id not in (None, "") else None,
                        confidence=(
                            STRUCTURED_WITH_ID_CONFIDENCE
                            if external_id not in (None, "")
                            else STRUCTURED_CONFIDENCE
                        ),
                        method="json",
                    )
                )
            elif isinstance(item, str) and item.strip():
                candidates.append(
                    PerformerCandidate(item.strip(), None, STRUCTURED_CONFIDENCE, "json")
                )
        return candidates

    @staticmethod
    def _extract_tags(value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return split_names(value)
        if isinstance(value, dict):
            value = [value]
        tags = []
        for item in value:
            name = item.get("name") if isinstance(item, dict) else item
            if isinstance(name, str) and name.strip() and name.strip() not in tags:
                tags.append(name.strip())
        return tags
