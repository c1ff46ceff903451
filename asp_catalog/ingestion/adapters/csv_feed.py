"""
CSV Feed Adapter
================

Extracts products from CSV-feed providers. Each feed row is stored as its
own raw record (canonical JSON of the row), so a changed row changes only
that record's hash.
"""

from __future__ import annotations

import csv
import io
from collections.abc import Iterator
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


# Column headers tried in order for each field
DEFAULT_COLUMNS: dict[str, list[str]] = {
    "source_product_id": ["product_id", "商品ID", "id"],
    "product_code": ["product_code", "品番", "メーカー品番"],
    "title": ["title", "タイトル", "商品名"],
    "description": ["description", "説明", "紹介文"],
    "release_date": ["release_date", "発売日", "配信開始日"],
    "duration": ["duration", "収録時間"],
    "thumbnail_url": ["thumbnail_url", "サムネイル", "画像URL"],
    "price": ["price", "価格", "販売価格"],
    "affiliate_url": ["affiliate_url", "アフィリエイトURL", "url"],
    "performers": ["performers", "出演者", "女優"],
    "tags": ["genres", "ジャンル"],
}

CSV_CONFIDENCE = 0.9


def iter_csv_rows(text: str) -> Iterator[dict[str, str]]:
    """Yield each CSV row as a dict keyed by header, stripping a BOM if present."""
    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
    for row in reader:
        yield {k.strip(): (v or "").strip() for k, v in row.items() if k}


class CsvFeedAdapter(BaseAdapter):
    """Adapter for providers whose raw records are single CSV feed rows."""

    ADAPTER_NAME = "csv_feed"
    ADAPTER_VERSION = "1.0.0"

    def __init__(self, config: dict[str, Any] | None = None) -> None:
        super().__init__(config)
        self.columns = dict(DEFAULT_COLUMNS)
        for key, headers in self.config.get("field_map", {}).items():
            self.columns[key] = [headers] if isinstance(headers, str) else list(headers)

    def row_key(self, row: dict[str, str]) -> str | None:
        """The source product id of a feed row, if present."""
        return self._column(row, "source_product_id")

    def _column(self, row: dict[str, Any], field_name: str) -> str | None:
        for header in self.columns.get(field_name, []):
            value = row.get(header)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None

    def extract_product(self, body: bytes, record: RawRecord) -> ExtractedProduct:
        """Extract a product from a stored CSV row."""
        row = load_json_body(body)
        if not isinstance(row, dict):
            raise DataQualityError(ReviewReason.UNPARSEABLE, "expected a CSV row object")

        product = ExtractedProduct(
            source_name=record.source,
            source_product_id=record.source_product_id,
            url=record.url,
        )
        for field_name in (
            "product_code", "title", "description", "release_date", "duration",
            "thumbnail_url", "price", "affiliate_url",
        ):
            value = self._column(row, field_name)
            if value is not None:
                setattr(product, field_name, ExtractedField(field_name, value, CSV_CONFIDENCE, "csv"))

        performers = self._column(row, "performers")
        if performers:
            product.performers = [
                PerformerCandidate(name, None, CSV_CONFIDENCE, "csv")
                for name in split_names(performers)
            ]
        tags = self._column(row, "tags")
        if tags:
            product.tags = split_names(tags)
        return product
