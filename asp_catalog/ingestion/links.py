"""
Raw-to-Canonical Link Table
===========================

Provenance records tying a raw record (at a specific content hash) to the
canonical product it produced. The table doubles as the idempotency gate:
a raw record whose current hash is already linked needs no reprocessing.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from asp_catalog.core.schema import RawCanonicalLink
from asp_catalog.db.models import RawCanonicalLinkDB

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _is_newer(a: datetime | None, b: datetime | None) -> bool:
    # SQLite hands back naive datetimes; rows still in the session are aware
    if a is None or b is None:
        return False
    return a.replace(tzinfo=None) > b.replace(tzinfo=None)


class RawLinkTable:
    """
    Upsert-style access to raw_canonical_links.

    Links are written in the same transaction as the canonical writes they
    describe, so a link never points at a product that was rolled back.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def record_link(
        self,
        canonical_product_id: UUID | str,
        source_type: str,
        raw_record_key: str,
        content_hash_at_processing: str,
    ) -> RawCanonicalLink:
        """
        Create or refresh the link for (product, source_type, raw key).

        Returns:
            The stored link
        """
        stmt = select(RawCanonicalLinkDB).where(
            RawCanonicalLinkDB.canonical_product_id == str(canonical_product_id),
            RawCanonicalLinkDB.source_type == source_type,
            RawCanonicalLinkDB.raw_record_key == raw_record_key,
        )
        db_item = self.session.execute(stmt).scalar_one_or_none()
        if db_item is None:
            db_item = RawCanonicalLinkDB(
                canonical_product_id=str(canonical_product_id),
                source_type=source_type,
                raw_record_key=raw_record_key,
                content_hash_at_processing=content_hash_at_processing,
            )
            self.session.add(db_item)
        else:
            db_item.content_hash_at_processing = content_hash_at_processing
            db_item.updated_at = _utc_now()
        self.session.flush()
        return self._to_domain(db_item)

    def needs_reprocessing(
        self, source_type: str, raw_record_key: str, current_hash: str
    ) -> bool:
        """
        True unless some link for this raw key already carries current_hash.
        """
        stmt = (
            select(func.count())
            .select_from(RawCanonicalLinkDB)
            .where(
                RawCanonicalLinkDB.source_type == source_type,
                RawCanonicalLinkDB.raw_record_key == raw_record_key,
                RawCanonicalLinkDB.content_hash_at_processing == current_hash,
            )
        )
        return (self.session.execute(stmt).scalar() or 0) == 0

    def links_for_product(self, product_id: UUID | str) -> list[RawCanonicalLink]:
        """All raw records that contributed to a product."""
        stmt = (
            select(RawCanonicalLinkDB)
            .where(RawCanonicalLinkDB.canonical_product_id == str(product_id))
            .order_by(RawCanonicalLinkDB.created_at)
        )
        return [self._to_domain(l) for l in self.session.execute(stmt).scalars().all()]

    def links_for_raw(self, source_type: str, raw_record_key: str) -> list[RawCanonicalLink]:
        """All products a raw record has contributed to."""
        stmt = select(RawCanonicalLinkDB).where(
            RawCanonicalLinkDB.source_type == source_type,
            RawCanonicalLinkDB.raw_record_key == raw_record_key,
        )
        return [self._to_domain(l) for l in self.session.execute(stmt).scalars().all()]

    def repoint(self, from_product_id: UUID | str, to_product_id: UUID | str) -> int:
        """
        Move every link from one product to another.

        A link whose triple already exists on the target is folded into it,
        keeping the newer hash.

        Returns:
            Number of links moved or folded
        """
        stmt = select(RawCanonicalLinkDB).where(
            RawCanonicalLinkDB.canonical_product_id == str(from_product_id)
        )
        moved = 0
        for db_item in self.session.execute(stmt).scalars().all():
            existing_stmt = select(RawCanonicalLinkDB).where(
                RawCanonicalLinkDB.canonical_product_id == str(to_product_id),
                RawCanonicalLinkDB.source_type == db_item.source_type,
                RawCanonicalLinkDB.raw_record_key == db_item.raw_record_key,
            )
            existing = self.session.execute(existing_stmt).scalar_one_or_none()
            if existing is None:
                db_item.canonical_product_id = str(to_product_id)
                db_item.updated_at = _utc_now()
            else:
                if _is_newer(db_item.updated_at, existing.updated_at):
                    existing.content_hash_at_processing = db_item.content_hash_at_processing
                    existing.updated_at = _utc_now()
                self.session.delete(db_item)
            moved += 1
        self.session.flush()
        if moved:
            logger.info(f"Re-pointed {moved} raw links from {from_product_id} to {to_product_id}")
        return moved

    def _to_domain(self, db_item: RawCanonicalLinkDB) -> RawCanonicalLink:
        """Convert database model to domain model."""
        return RawCanonicalLink(
            id=UUID(db_item.id),
            canonical_product_id=UUID(db_item.canonical_product_id),
            source_type=db_item.source_type,
            raw_record_key=db_item.raw_record_key,
            content_hash_at_processing=db_item.content_hash_at_processing,
            created_at=db_item.created_at,
            updated_at=db_item.updated_at,
        )
