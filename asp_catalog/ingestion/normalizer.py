"""
Product Code Normalizer Module
==============================

Canonicalizes product codes across ASPs so that the same work listed on
several platforms resolves to one normalized product id, and cleans the
remaining extracted fields (dates, durations, prices, performer names).
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from asp_catalog.core.enums import ReviewReason
from asp_catalog.ingestion.adapters.base import ExtractedProduct, PerformerCandidate
from asp_catalog.ingestion.errors import DataQualityError
from asp_catalog.ingestion.quality import sanitize_text

if TYPE_CHECKING:
    from asp_catalog.ingestion.registry import SourceConfig


# Prefixes some ASPs prepend to otherwise global product codes
ASP_PREFIXES: list[str] = [
    "FANZA", "MGS", "DUGA", "SOKMIL", "B10F", "FC2", "JAPANSKA",
    "CARIBBEANCOMPR", "CARIBBEAN", "1PONDO", "HEYZO", "10MUSUME",
    "PACOPACOMAMA", "H4610", "H0930", "C0930", "GACHINCO", "KIN8TENGOKU",
    "NYOSHIN", "HEYDOUGA", "X1X", "ENKOU55", "UREKKO", "XXXURABI",
    "TOKYOHOT", "TVDEAV",
]

_ASP_PREFIX_RE = re.compile(rf"^(?:{'|'.join(ASP_PREFIXES)})[-_]", re.I)
_FC2_RE = re.compile(r"^FC2[-_]?(?:PPV[-_]?)?(\d{5,8})$")
_DTI_RE = re.compile(r"^\d{6}[-_]\d{2,3}$")
_TMP_RE = re.compile(r"^\d{4}-PPV\d+$")
_FANZA_H_PREFIX_RE = re.compile(r"^H_\d+")
_MAKER_PREFIX_RE = re.compile(r"^\d+(?=[A-Z])")
_LABEL_NUMBER_RE = re.compile(r"^(\d*[A-Z]+)[-_]?(\d+)([A-Z]?)$")
_USABLE_RE = re.compile(r"^[A-Z0-9][A-Z0-9._-]*$")

_DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%Y.%m.%d", "%Y%m%d")


@dataclass
class NormalizedProduct:
    """
    Cleaned product data ready for identity resolution.

    ``normalized_product_id`` is the cross-ASP identity key;
    ``product_code`` is its display form without any site qualifier.
    """

    source_name: str
    source_product_id: str
    normalized_product_id: str
    product_code: str

    title: str | None = None
    description: str | None = None
    release_date: date | None = None
    duration_minutes: int | None = None
    thumbnail_url: str | None = None

    price: int | None = None
    currency: str = "JPY"
    affiliate_url: str | None = None
    url: str | None = None

    performers: list[PerformerCandidate] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)


def _slug(value: str) -> str:
    return re.sub(r"[^a-z0-9]", "", value.lower())


class ProductCodeNormalizer:
    """
    Normalizes product codes and extracted product fields.

    Handles:
    - ASP prefix stripping (e.g., "FANZA-SSIS-865" -> "SSIS-865")
    - Maker prefixes (e.g., "h_1234abc00123", "107START-470")
    - Label/number canonical form (e.g., "ssis00865" -> "SSIS-865")
    - FC2, DTI-family and TMP codes, kept in their own shapes
    - Site-qualified keys for codes that are only unique per site
    """

    def strip_asp_prefix(self, code: str, extra_patterns: list[str] | None = None) -> str:
        """Remove a leading ASP prefix and any source-specific prefixes."""
        stripped = _ASP_PREFIX_RE.sub("", code)
        for pattern in extra_patterns or []:
            stripped = re.sub(pattern, "", stripped, flags=re.I)
        return stripped

    def normalize_code(self, raw_code: Any, source: SourceConfig | None = None) -> str:
        """
        Canonicalize a product code.

        Args:
            raw_code: Code as the source presented it
            source: Source configuration supplying extra strip patterns

        Returns:
            Canonical display code

        Raises:
            DataQualityError: If nothing usable remains
        """
        if raw_code is None:
            raise DataQualityError(ReviewReason.UNUSABLE_CODE, "no product code")

        code = unicodedata.normalize("NFKC", str(raw_code)).strip().upper()
        code = re.sub(r"\s+", "", code)

        # FC2 before prefix stripping; "FC2-" is itself an ASP prefix
        match = _FC2_RE.match(code)
        if match:
            return f"FC2-PPV-{match.group(1)}"

        code = self.strip_asp_prefix(code, source.strip_prefixes if source else None)
        if not code:
            raise DataQualityError(
                ReviewReason.UNUSABLE_CODE, f"code {raw_code!r} is only a prefix"
            )

        if _DTI_RE.match(code) or _TMP_RE.match(code):
            return code

        code = _FANZA_H_PREFIX_RE.sub("", code)
        if not code.startswith("300"):
            code = _MAKER_PREFIX_RE.sub("", code)

        match = _LABEL_NUMBER_RE.match(code)
        if match:
            label, number, suffix = match.groups()
            number = (number.lstrip("0") or "0").zfill(3)
            return f"{label}-{number}{suffix}"

        if _USABLE_RE.match(code):
            return code

        raise DataQualityError(ReviewReason.UNUSABLE_CODE, f"unusable code {raw_code!r}")

    def normalized_product_id(self, raw_code: Any, source: SourceConfig | None = None) -> str:
        """
        The cross-ASP identity key for a code.

        Sources whose codes are only unique within the site get a
        ``{namespace}-{code}`` key so they never collide across sites.
        """
        code = self.normalize_code(raw_code, source)
        if source is not None and source.qualify_codes:
            namespace = source.code_namespace or _slug(source.name)
            return f"{namespace}-{code}"
        return code

    @staticmethod
    def code_key(code: str) -> str:
        """Separator-free upper-case key used by the reference index."""
        return re.sub(r"[-_\s]", "", unicodedata.normalize("NFKC", code)).upper()

    def search_variants(self, code: str) -> list[str]:
        """
        Spellings of a code worth trying against reference sites.

        Returns:
            Unique variants, the canonical display form first
        """
        try:
            canonical = self.normalize_code(code)
        except DataQualityError:
            canonical = code.strip().upper()

        variants = [canonical, canonical.replace("-", "")]
        match = _LABEL_NUMBER_RE.match(canonical.replace("-", ""))
        if match:
            label, number, suffix = match.groups()
            variants.append(f"{label}{number.zfill(5)}{suffix}")
        variants.extend(v.lower() for v in list(variants))

        unique: list[str] = []
        for variant in variants:
            if variant and variant not in unique:
                unique.append(variant)
        return unique

    # ------------------------------------------------------------------
    # Performer names
    # ------------------------------------------------------------------

    @staticmethod
    def normalize_performer_name(name: str) -> str:
        """Width-normalize and collapse whitespace in a performer name."""
        cleaned = unicodedata.normalize("NFKC", name)
        cleaned = re.sub(r"[\(（][^\)）]*[\)）]$", "", cleaned)
        return re.sub(r"\s+", " ", cleaned).strip()

    @staticmethod
    def performer_key(name: str) -> str:
        """Matching key: no spaces or middle dots, lower case."""
        cleaned = unicodedata.normalize("NFKC", name)
        return re.sub(r"[\s・･]", "", cleaned).lower()

    # ------------------------------------------------------------------
    # Field parsing
    # ------------------------------------------------------------------

    def normalize_product(
        self, extracted: ExtractedProduct, source: SourceConfig | None = None
    ) -> NormalizedProduct:
        """
        Normalize an extracted product.

        Args:
            extracted: Raw extracted product from an adapter
            source: Source configuration

        Returns:
            NormalizedProduct with cleaned and standardized data

        Raises:
            DataQualityError: If the product code is unusable
        """
        raw_code = extracted.get_value("product_code") or extracted.source_product_id
        product_code = self.normalize_code(raw_code, source)
        normalized_id = self.normalized_product_id(raw_code, source)

        normalized = NormalizedProduct(
            source_name=extracted.source_name,
            source_product_id=extracted.source_product_id,
            normalized_product_id=normalized_id,
            product_code=product_code,
            title=sanitize_text(extracted.get_value("title")),
            description=sanitize_text(extracted.get_value("description")),
            release_date=self.parse_date(extracted.get_value("release_date")),
            duration_minutes=self.parse_duration(extracted.get_value("duration")),
            thumbnail_url=self._clean_string(extracted.get_value("thumbnail_url")),
            price=self.parse_price(extracted.get_value("price")),
            affiliate_url=self._clean_string(extracted.get_value("affiliate_url")),
            url=extracted.url,
        )

        currency = extracted.get_value("currency")
        if currency:
            normalized.currency = str(currency).upper().strip()[:3]

        seen_keys: set[str] = set()
        for candidate in extracted.performers:
            name = self.normalize_performer_name(candidate.name)
            key = self.performer_key(name)
            if not key or key in seen_keys:
                continue
            seen_keys.add(key)
            normalized.performers.append(
                PerformerCandidate(name, candidate.external_id, candidate.confidence, candidate.method)
            )

        for tag in extracted.tags:
            cleaned = self._clean_string(tag)
            if cleaned and cleaned not in normalized.tags:
                normalized.tags.append(cleaned)

        return normalized

    def _clean_string(self, value: Any) -> str | None:
        """Clean and normalize a string value."""
        if value is None:
            return None
        s = str(value).strip()
        # Normalize whitespace
        s = re.sub(r"\s+", " ", s)
        return s if s else None

    def parse_date(self, value: Any) -> date | None:
        """
        Parse a release date from various formats.

        Args:
            value: Date value (e.g., "2024-01-05", "2024/1/5", "2024年1月5日")

        Returns:
            date, or None if parsing fails
        """
        if value is None:
            return None
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value

        s = unicodedata.normalize("NFKC", str(value)).strip()
        match = re.search(r"(\d{4})\s*[年/.\-]\s*(\d{1,2})\s*[月/.\-]\s*(\d{1,2})", s)
        if match:
            try:
                return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
            except ValueError:
                return None

        for fmt in _DATE_FORMATS:
            try:
                return datetime.strptime(s[:10], fmt).date()
            except ValueError:
                continue
        return None

    def parse_duration(self, value: Any) -> int | None:
        """
        Parse a running time into minutes.

        Args:
            value: Duration (e.g., "120分", "120 min", "01:59:30", 120)

        Returns:
            Minutes, or None if parsing fails
        """
        if value is None:
            return None
        if isinstance(value, (int, float)):
            minutes = int(value)
            return minutes if 0 < minutes < 100000 else None

        s = unicodedata.normalize("NFKC", str(value)).strip()
        match = re.match(r"^(\d{1,2}):(\d{2}):(\d{2})$", s)
        if match:
            hours, minutes, seconds = (int(g) for g in match.groups())
            return hours * 60 + minutes + (1 if seconds >= 30 else 0)

        match = re.search(r"(\d+)", s)
        if match:
            minutes = int(match.group(1))
            return minutes if minutes > 0 else None
        return None

    def parse_price(self, value: Any) -> int | None:
        """
        Parse a price into an integer amount.

        Args:
            value: Price (e.g., "1,980円", "¥1980~", 1980)

        Returns:
            Integer price, or None if parsing fails
        """
        if value is None:
            return None
        if isinstance(value, (int, float)):
            return int(value) if value >= 0 else None

        s = unicodedata.normalize("NFKC", str(value)).replace(",", "")
        match = re.search(r"(\d+)", s)
        return int(match.group(1)) if match else None
