"""
Product Identity Resolver Module
================================

Resolves extracted products to canonical products. The same work listed
on several ASPs collapses onto one canonical product through its
normalized product id; each ASP listing becomes a ProductSource row.

Mutable descriptive fields follow a fill-don't-clobber policy: a value is
only overwritten by a better-ranked source, by the source that set it, or
when the current value is empty or a placeholder.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from asp_catalog.core.enums import ResolutionAction
from asp_catalog.core.schema import CanonicalProduct, FieldSource, ProductMerge, ProductSource
from asp_catalog.db.repositories import (
    PerformerRepository,
    ProductMergeRepository,
    ProductRepository,
    ProductSourceRepository,
    TagRepository,
)
from asp_catalog.ingestion.errors import DataQualityError, IdentityConflictError
from asp_catalog.ingestion.links import RawLinkTable
from asp_catalog.ingestion.normalizer import NormalizedProduct, ProductCodeNormalizer
from asp_catalog.ingestion.quality import (
    is_boilerplate_description,
    is_placeholder_title,
    validate_product_fields,
)

if TYPE_CHECKING:
    from asp_catalog.ingestion.adapters.base import ExtractedProduct
    from asp_catalog.ingestion.registry import SourceConfig

logger = logging.getLogger(__name__)

# Canonical fields subject to fill-don't-clobber
MERGEABLE_FIELDS = ("title", "description", "thumbnail_url", "release_date", "duration_minutes")


@dataclass
class ProductResolution:
    """Result of resolving one extracted product."""

    product_id: UUID
    normalized_product_id: str
    action: ResolutionAction
    product_source_id: UUID | None = None
    fields_written: list[str] = field(default_factory=list)
    normalized: NormalizedProduct | None = None
    conflict: str | None = None


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class ProductIdentityResolver:
    """
    Resolves extracted products to canonical products.

    Order of matching:
    1. The ASP listing itself, by (asp_name, source_product_id)
    2. An existing canonical product with the same normalized product id
    3. A new canonical product, created inside a savepoint; losing a
       creation race falls back to attaching to the winner
    """

    def __init__(
        self,
        session: Session,
        normalizer: ProductCodeNormalizer | None = None,
    ) -> None:
        self.session = session
        self.normalizer = normalizer or ProductCodeNormalizer()
        self.products = ProductRepository(session)
        self.sources = ProductSourceRepository(session)

    def normalize(self, source: SourceConfig, extracted: ExtractedProduct) -> NormalizedProduct:
        """
        Normalize an extracted product and apply the title policy.

        Raises:
            DataQualityError: On an unusable code or a placeholder title
        """
        normalized = self.normalizer.normalize_product(extracted, source)
        verdict = validate_product_fields(
            normalized.title, normalized.description, normalized.product_code, source.asp_name
        )
        if not verdict.is_valid:
            raise DataQualityError(verdict.reason, verdict.detail)
        if is_boilerplate_description(normalized.description):
            logger.debug(
                f"Ignoring boilerplate description for {source.name}:{normalized.source_product_id}"
            )
            normalized.description = None
        return normalized

    def resolve(
        self,
        source: SourceConfig,
        extracted: ExtractedProduct | None = None,
        normalized: NormalizedProduct | None = None,
    ) -> ProductResolution:
        """
        Resolve a product to its canonical product, writing as needed.

        Args:
            source: Source configuration (asp_name, priority, code rules)
            extracted: Adapter output, normalized here
            normalized: Already-normalized product (skips normalization)

        Returns:
            ProductResolution describing what was written

        Raises:
            DataQualityError: On an unusable code or a placeholder title
            IdentityConflictError: If the identity cannot be settled
        """
        if normalized is None:
            if extracted is None:
                raise ValueError("resolve() needs an extracted or a normalized product")
            normalized = self.normalize(source, extracted)

        existing = self.sources.get_by_asp_key(source.asp_name, normalized.source_product_id)
        if existing is not None:
            return self._update_existing(source, normalized, existing)

        product = self.products.get_by_normalized_id(normalized.normalized_product_id)
        if product is not None:
            return self._attach(source, normalized, product, ResolutionAction.ATTACHED)

        return self._create(source, normalized)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def _update_existing(
        self, source: SourceConfig, normalized: NormalizedProduct, existing: ProductSource
    ) -> ProductResolution:
        product = self.products.resolve_survivor(existing.product_id)
        if product is None:
            raise IdentityConflictError(
                f"{source.asp_name}:{normalized.source_product_id} points at missing "
                f"product {existing.product_id}"
            )

        result = ProductResolution(
            product_id=product.id,
            normalized_product_id=product.normalized_product_id,
            action=ResolutionAction.UPDATED,
            product_source_id=existing.id,
            normalized=normalized,
        )
        if product.normalized_product_id != normalized.normalized_product_id:
            # Keep the existing binding; reconciliation is an explicit merge
            result.conflict = (
                f"{source.asp_name}:{normalized.source_product_id} is bound to "
                f"{product.normalized_product_id} but now normalizes to "
                f"{normalized.normalized_product_id}"
            )
            logger.warning(result.conflict)

        if existing.product_id != product.id:
            self.sources.repoint(existing.product_id, product.id)

        self._refresh_source(existing, source, normalized)
        result.fields_written = self._apply_fields(product, source, normalized)
        if result.fields_written:
            self.products.update(product)
        return result

    def _attach(
        self,
        source: SourceConfig,
        normalized: NormalizedProduct,
        product: CanonicalProduct,
        action: ResolutionAction,
    ) -> ProductResolution:
        listing = ProductSource(
            product_id=product.id,
            asp_name=source.asp_name,
            source_product_id=normalized.source_product_id,
            product_code=normalized.product_code,
            affiliate_url=normalized.affiliate_url or normalized.url,
            price=normalized.price,
            currency=normalized.currency,
            data_source=source.data_source,
        )
        try:
            with self.session.begin_nested():
                listing = self.sources.create(listing)
        except IntegrityError:
            # Another source sharing this asp_name bound the listing first
            existing = self.sources.get_by_asp_key(source.asp_name, normalized.source_product_id)
            if existing is None:
                raise IdentityConflictError(
                    f"could not bind {source.asp_name}:{normalized.source_product_id}"
                ) from None
            return self._update_existing(source, normalized, existing)

        fields_written = self._apply_fields(product, source, normalized)
        if fields_written:
            self.products.update(product)

        logger.info(
            f"{action.value.capitalize()} {source.asp_name}:{normalized.source_product_id} "
            f"-> {product.normalized_product_id}"
        )
        return ProductResolution(
            product_id=product.id,
            normalized_product_id=product.normalized_product_id,
            action=action,
            product_source_id=listing.id,
            fields_written=fields_written,
            normalized=normalized,
        )

    def _create(self, source: SourceConfig, normalized: NormalizedProduct) -> ProductResolution:
        product = CanonicalProduct(
            normalized_product_id=normalized.normalized_product_id,
            product_code=normalized.product_code,
        )
        self._apply_fields(product, source, normalized)

        try:
            with self.session.begin_nested():
                product = self.products.create(product)
        except IntegrityError:
            # A concurrent creator won; attach to its product instead
            winner = self.products.get_by_normalized_id(normalized.normalized_product_id)
            if winner is None:
                raise IdentityConflictError(
                    f"unique violation on {normalized.normalized_product_id} persists"
                ) from None
            logger.info(
                f"Lost creation race for {normalized.normalized_product_id}, attaching instead"
            )
            return self._attach(source, normalized, winner, ResolutionAction.ATTACHED)

        return self._attach(source, normalized, product, ResolutionAction.CREATED)

    # ------------------------------------------------------------------
    # Field policy
    # ------------------------------------------------------------------

    def _refresh_source(
        self, listing: ProductSource, source: SourceConfig, normalized: NormalizedProduct
    ) -> None:
        """Per-ASP fields always take the latest payload's values."""
        if normalized.price is not None:
            listing.price = normalized.price
            listing.currency = normalized.currency
        if normalized.affiliate_url:
            listing.affiliate_url = normalized.affiliate_url
        listing.product_code = normalized.product_code
        listing.data_source = source.data_source
        self.sources.update(listing)

    @staticmethod
    def _incoming_values(normalized: NormalizedProduct) -> dict[str, str | int | date | None]:
        return {
            "title": normalized.title,
            "description": normalized.description,
            "thumbnail_url": normalized.thumbnail_url,
            "release_date": normalized.release_date,
            "duration_minutes": normalized.duration_minutes,
        }

    def _should_write(
        self,
        product: CanonicalProduct,
        field_name: str,
        current: Any,
        source: SourceConfig,
    ) -> bool:
        if _is_empty(current):
            return True
        if field_name == "title" and is_placeholder_title(current, product.product_code):
            return True
        if field_name == "description" and is_boilerplate_description(current):
            return True

        recorded = product.field_sources.get(field_name)
        if recorded is None:
            return False
        if recorded.source == source.name:
            return True
        return source.priority > recorded.priority

    def _apply_fields(
        self, product: CanonicalProduct, source: SourceConfig, normalized: NormalizedProduct
    ) -> list[str]:
        """
        Merge incoming values into product in place.

        Returns:
            Names of the fields that changed
        """
        written: list[str] = []
        for field_name, incoming in self._incoming_values(normalized).items():
            if _is_empty(incoming):
                continue
            current = getattr(product, field_name)
            if not self._should_write(product, field_name, current, source):
                continue

            provenance = FieldSource(source=source.name, priority=source.priority)
            if current != incoming:
                setattr(product, field_name, incoming)
                written.append(field_name)
            if product.field_sources.get(field_name) != provenance:
                product.field_sources[field_name] = provenance
                if field_name not in written:
                    written.append(field_name)
        return written


class ProductMerger:
    """
    Explicit, audited merge of two canonical products.

    Every listing, link, performer and tag attachment moves to the
    survivor. The loser row stays, marked merged, so its normalized id
    keeps resolving to the survivor and is never reused.
    """

    def __init__(self, session: Session, links: RawLinkTable | None = None) -> None:
        self.session = session
        self.links = links or RawLinkTable(session)
        self.products = ProductRepository(session)
        self.sources = ProductSourceRepository(session)
        self.performers = PerformerRepository(session)
        self.tags = TagRepository(session)
        self.merges = ProductMergeRepository(session)

    def merge(
        self, surviving_id: UUID | str, losing_id: UUID | str, reason: str
    ) -> ProductMerge:
        """
        Merge losing_id into surviving_id.

        Raises:
            ValueError: If either product is missing or already merged,
                or if both ids are the same product
        """
        if str(surviving_id) == str(losing_id):
            raise ValueError("Cannot merge a product into itself")

        survivor = self.products.get_by_id(surviving_id)
        if survivor is None:
            raise ValueError(f"Product with id {surviving_id} not found")
        loser = self.products.get_by_id(losing_id)
        if loser is None:
            raise ValueError(f"Product with id {losing_id} not found")
        if survivor.is_merged:
            raise ValueError(f"Product {survivor.normalized_product_id} is already merged")
        if loser.is_merged:
            raise ValueError(f"Product {loser.normalized_product_id} is already merged")

        moved_sources = self.sources.repoint(loser.id, survivor.id)
        moved_links = self.links.repoint(loser.id, survivor.id)
        self.performers.repoint_product(loser.id, survivor.id)
        self.tags.repoint_product(loser.id, survivor.id)

        # Survivor keeps its values; gaps are filled from the loser
        filled = False
        for field_name in MERGEABLE_FIELDS:
            loser_value = getattr(loser, field_name)
            if _is_empty(getattr(survivor, field_name)) and not _is_empty(loser_value):
                setattr(survivor, field_name, loser_value)
                if field_name in loser.field_sources:
                    survivor.field_sources[field_name] = loser.field_sources[field_name]
                filled = True
        if filled:
            self.products.update(survivor)

        self.products.mark_merged(loser.id, survivor.id)
        merge = self.merges.create(
            ProductMerge(
                surviving_product_id=survivor.id,
                merged_product_id=loser.id,
                reason=reason,
                moved_sources=moved_sources,
                moved_links=moved_links,
            )
        )
        logger.info(
            f"Merged {loser.normalized_product_id} into {survivor.normalized_product_id}: "
            f"{moved_sources} sources, {moved_links} links ({reason})"
        )
        return merge
