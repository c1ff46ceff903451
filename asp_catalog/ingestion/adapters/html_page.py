"""
HTML Page Adapter
=================

Extracts products from scrape-based providers. Product pages are parsed
with BeautifulSoup; fields come from meta tags, configurable CSS selectors
and labelled table / definition-list cells ("配信開始日", "出演者", ...).
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

from bs4 import BeautifulSoup
from bs4.element import Tag

from asp_catalog.core.enums import ReviewReason
from asp_catalog.ingestion.adapters.base import (
    BaseAdapter,
    ExtractedField,
    ExtractedProduct,
    PerformerCandidate,
    split_names,
)
from asp_catalog.ingestion.errors import DataQualityError

if TYPE_CHECKING:
    from asp_catalog.core.schema import RawRecord


# Label text (normalized, without trailing colons) -> field name
LABELS: dict[str, str] = {
    "品番": "product_code",
    "商品番号": "product_code",
    "作品番号": "product_code",
    "product code": "product_code",
    "配信開始日": "release_date",
    "発売日": "release_date",
    "商品発売日": "release_date",
    "配信日": "release_date",
    "release date": "release_date",
    "収録時間": "duration",
    "再生時間": "duration",
    "duration": "duration",
    "出演者": "performers",
    "出演": "performers",
    "女優": "performers",
    "出演女優": "performers",
    "performer": "performers",
    "actress": "performers",
    "ジャンル": "tags",
    "genre": "tags",
    "価格": "price",
    "販売価格": "price",
    "price": "price",
}

LABELLED_CONFIDENCE = 0.9
SELECTOR_CONFIDENCE = 0.9
META_CONFIDENCE = 0.8
FREE_TEXT_CONFIDENCE = 0.6


def _clean_label(text: str) -> str:
    return re.sub(r"[:：\s]+$", "", text.strip()).lower()


class HtmlPageAdapter(BaseAdapter):
    """Adapter for providers whose raw records are product HTML pages."""

    ADAPTER_NAME = "html_page"
    ADAPTER_VERSION = "1.0.0"

    def __init__(self, config: dict[str, Any] | None = None) -> None:
        super().__init__(config)
        self.selectors: dict[str, str] = self.config.get("selectors", {})
        self.performer_selector: str | None = self.config.get("performer_selector")
        pattern = self.config.get("performer_text_pattern")
        self.performer_text_pattern = re.compile(pattern) if pattern else None

    def extract_product(self, body: bytes, record: RawRecord) -> ExtractedProduct:
        """Extract a product from an HTML page."""
        if not body.strip():
            raise DataQualityError(ReviewReason.UNPARSEABLE, "empty HTML body")

        soup = BeautifulSoup(body, "html.parser")
        if soup.find(True) is None:
            raise DataQualityError(ReviewReason.UNPARSEABLE, "no HTML elements found")

        product = ExtractedProduct(
            source_name=record.source,
            source_product_id=record.source_product_id,
            url=record.url,
        )
        labelled = self._labelled_cells(soup)

        product.title = self._extract_title(soup)
        product.description = self._extract_description(soup)
        product.thumbnail_url = self._meta_field(soup, "thumbnail_url", "og:image")

        for field_name in ("product_code", "release_date", "duration", "price"):
            field_obj = self._selector_field(soup, field_name)
            if field_obj is None and field_name in labelled:
                text = labelled[field_name].get_text(" ", strip=True)
                if text:
                    field_obj = ExtractedField(field_name, text, LABELLED_CONFIDENCE, "label")
            setattr(product, field_name, field_obj)

        product.performers = self._extract_performers(soup, labelled, product)
        if "tags" in labelled:
            product.tags = self._cell_names(labelled["tags"])
        return product

    # ------------------------------------------------------------------
    # Field helpers
    # ------------------------------------------------------------------

    def _selector_field(self, soup: BeautifulSoup, field_name: str) -> ExtractedField | None:
        selector = self.selectors.get(field_name)
        if not selector:
            return None
        element = soup.select_one(selector)
        if element is None:
            return None
        text = element.get_text(" ", strip=True)
        return ExtractedField(field_name, text, SELECTOR_CONFIDENCE, "css_selector") if text else None

    @staticmethod
    def _meta_field(soup: BeautifulSoup, field_name: str, prop: str) -> ExtractedField | None:
        meta = soup.find("meta", attrs={"property": prop}) or soup.find(
            "meta", attrs={"name": prop}
        )
        if meta is None or not meta.get("content"):
            return None
        return ExtractedField(field_name, meta["content"].strip(), META_CONFIDENCE, "meta_tag")

    def _extract_title(self, soup: BeautifulSoup) -> ExtractedField | None:
        field_obj = self._selector_field(soup, "title")
        if field_obj:
            return field_obj
        field_obj = self._meta_field(soup, "title", "og:title")
        if field_obj:
            return field_obj
        h1 = soup.find("h1")
        if h1 and h1.get_text(strip=True):
            return ExtractedField("title", h1.get_text(" ", strip=True), 0.7, "css_selector")
        if soup.title and soup.title.get_text(strip=True):
            return ExtractedField("title", soup.title.get_text(" ", strip=True), 0.5, "css_selector")
        return None

    def _extract_description(self, soup: BeautifulSoup) -> ExtractedField | None:
        field_obj = self._selector_field(soup, "description")
        if field_obj:
            return field_obj
        return self._meta_field(soup, "description", "og:description") or self._meta_field(
            soup, "description", "description"
        )

    @staticmethod
    def _labelled_cells(soup: BeautifulSoup) -> dict[str, Tag]:
        """Map field names to the value cell of labelled table rows and dl pairs."""
        cells: dict[str, Tag] = {}
        for row in soup.find_all("tr"):
            header = row.find("th")
            value = row.find("td")
            if header is None or value is None:
                tds = row.find_all("td")
                if len(tds) < 2:
                    continue
                header, value = tds[0], tds[1]
            field_name = LABELS.get(_clean_label(header.get_text()))
            if field_name and field_name not in cells:
                cells[field_name] = value
        for dt in soup.find_all("dt"):
            dd = dt.find_next_sibling("dd")
            field_name = LABELS.get(_clean_label(dt.get_text()))
            if dd is not None and field_name and field_name not in cells:
                cells[field_name] = dd
        return cells

    @staticmethod
    def _cell_names(cell: Tag) -> list[str]:
        """Names in a cell: link texts if there are links, else split text."""
        links = [a.get_text(strip=True) for a in cell.find_all("a")]
        names = [n for n in links if n]
        if not names:
            names = split_names(cell.get_text(" ", strip=True), r"[,、/／\s]+")
        seen: list[str] = []
        for name in names:
            if name not in seen:
                seen.append(name)
        return seen

    def _extract_performers(
        self,
        soup: BeautifulSoup,
        labelled: dict[str, Tag],
        product: ExtractedProduct,
    ) -> list[PerformerCandidate]:
        if self.performer_selector:
            names = []
            for element in soup.select(self.performer_selector):
                name = element.get_text(strip=True)
                if name and name not in names:
                    names.append(name)
            if names:
                return [
                    PerformerCandidate(n, None, SELECTOR_CONFIDENCE, "css_selector") for n in names
                ]

        if "performers" in labelled:
            names = self._cell_names(labelled["performers"])
            if names:
                return [PerformerCandidate(n, None, LABELLED_CONFIDENCE, "label") for n in names]

        if self.performer_text_pattern:
            text = " ".join(
                str(v) for v in (product.get_value("title"), product.get_value("description")) if v
            )
            return [
                PerformerCandidate(m.strip(), None, FREE_TEXT_CONFIDENCE, "free_text")
                for m in self.performer_text_pattern.findall(text)
                if m.strip()
            ]
        return []
