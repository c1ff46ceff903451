"""Repository classes for catalog database operations."""

import json
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from asp_catalog.core.enums import DataSourceKind, ReviewReason
from asp_catalog.core.schema import (
    CanonicalProduct,
    FieldSource,
    Performer,
    PerformerAlias,
    PerformerIndexEntry,
    ProductMerge,
    ProductSource,
    ReviewFlag,
    Tag,
)
from asp_catalog.db.models import (
    PerformerAliasDB,
    PerformerDB,
    PerformerExternalIdDB,
    PerformerIndexDB,
    ProductDB,
    ProductMergeDB,
    ProductPerformerDB,
    ProductSourceDB,
    ProductTagDB,
    ReviewFlagDB,
    TagDB,
)

# Guards against cycles in a corrupted merge chain
MAX_MERGE_HOPS = 16


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


def _insert_if_absent(session: Session, row: object) -> bool:
    """Add a row inside a savepoint; a unique violation means it already exists."""
    try:
        with session.begin_nested():
            session.add(row)
            session.flush()
    except IntegrityError:
        return False
    return True


# ============================================================================
# Product Identity Repositories
# ============================================================================


class ProductRepository:
    """Repository for CanonicalProduct CRUD operations."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, product: CanonicalProduct) -> CanonicalProduct:
        """Create a new product. Raises IntegrityError on a duplicate normalized id."""
        db_item = ProductDB(
            id=str(product.id),
            normalized_product_id=product.normalized_product_id,
            product_code=product.product_code,
            title=product.title,
            titles_json=json.dumps(product.titles, ensure_ascii=False),
            description=product.description,
            release_date=product.release_date,
            duration_minutes=product.duration_minutes,
            thumbnail_url=product.thumbnail_url,
            field_sources_json=self._dump_field_sources(product.field_sources),
            created_at=product.created_at,
            updated_at=product.updated_at,
        )
        self.session.add(db_item)
        self.session.flush()
        return self._to_domain(db_item)

    def get_by_id(self, product_id: UUID | str) -> CanonicalProduct | None:
        """Get a product by ID."""
        db_item = self.session.get(ProductDB, str(product_id))
        return self._to_domain(db_item) if db_item else None

    def get_by_normalized_id(
        self, normalized_product_id: str, follow_merges: bool = True
    ) -> CanonicalProduct | None:
        """
        Get a product by its normalized product id.

        Merged products are followed to their survivor unless
        follow_merges is False.
        """
        stmt = select(ProductDB).where(
            ProductDB.normalized_product_id == normalized_product_id
        )
        db_item = self.session.execute(stmt).scalar_one_or_none()
        if db_item is None:
            return None
        if follow_merges:
            db_item = self._follow_merges(db_item)
        return self._to_domain(db_item)

    def resolve_survivor(self, product_id: UUID | str) -> CanonicalProduct | None:
        """Return the product a (possibly merged) id currently resolves to."""
        db_item = self.session.get(ProductDB, str(product_id))
        if db_item is None:
            return None
        return self._to_domain(self._follow_merges(db_item))

    def _follow_merges(self, db_item: ProductDB) -> ProductDB:
        hops = 0
        while db_item.merged_into_id is not None and hops < MAX_MERGE_HOPS:
            target = self.session.get(ProductDB, db_item.merged_into_id)
            if target is None:
                break
            db_item = target
            hops += 1
        return db_item

    def update(self, product: CanonicalProduct) -> CanonicalProduct:
        """Update the mutable fields of an existing product."""
        db_item = self.session.get(ProductDB, str(product.id))
        if db_item is None:
            raise ValueError(f"Product with id {product.id} not found")

        db_item.product_code = product.product_code
        db_item.title = product.title
        db_item.titles_json = json.dumps(product.titles, ensure_ascii=False)
        db_item.description = product.description
        db_item.release_date = product.release_date
        db_item.duration_minutes = product.duration_minutes
        db_item.thumbnail_url = product.thumbnail_url
        db_item.field_sources_json = self._dump_field_sources(product.field_sources)
        db_item.updated_at = _utc_now()

        self.session.flush()
        return self._to_domain(db_item)

    def mark_merged(self, product_id: UUID | str, into_id: UUID | str) -> None:
        """Mark a product as merged into another one."""
        db_item = self.session.get(ProductDB, str(product_id))
        if db_item is None:
            raise ValueError(f"Product with id {product_id} not found")
        db_item.merged_into_id = str(into_id)
        db_item.merged_at = _utc_now()
        self.session.flush()

    def list_all(
        self, limit: int = 100, offset: int = 0, include_merged: bool = False
    ) -> list[CanonicalProduct]:
        """List products with pagination."""
        stmt = select(ProductDB)
        if not include_merged:
            stmt = stmt.where(ProductDB.merged_into_id.is_(None))
        stmt = stmt.order_by(ProductDB.created_at).limit(limit).offset(offset)
        result = self.session.execute(stmt).scalars().all()
        return [self._to_domain(p) for p in result]

    def list_without_performers(
        self, asp_name: str | None = None, limit: int = 100, offset: int = 0
    ) -> list[CanonicalProduct]:
        """
        List live products that have no performer linked yet, oldest first.

        Args:
            asp_name: Only products listed on this ASP
        """
        linked = select(ProductPerformerDB.product_id)
        stmt = select(ProductDB).where(
            ProductDB.merged_into_id.is_(None),
            ProductDB.id.not_in(linked),
        )
        if asp_name:
            listed = select(ProductSourceDB.product_id).where(ProductSourceDB.asp_name == asp_name)
            stmt = stmt.where(ProductDB.id.in_(listed))
        stmt = stmt.order_by(ProductDB.created_at, ProductDB.id).limit(limit).offset(offset)
        return [self._to_domain(p) for p in self.session.execute(stmt).scalars().all()]

    def count(self, include_merged: bool = False) -> int:
        """Get total count of products."""
        stmt = select(func.count()).select_from(ProductDB)
        if not include_merged:
            stmt = stmt.where(ProductDB.merged_into_id.is_(None))
        return self.session.execute(stmt).scalar() or 0

    @staticmethod
    def _dump_field_sources(field_sources: dict[str, FieldSource]) -> str:
        return json.dumps({k: v.model_dump() for k, v in field_sources.items()})

    def _to_domain(self, db_item: ProductDB) -> CanonicalProduct:
        """Convert database model to domain model."""
        field_sources = {
            k: FieldSource(**v) for k, v in json.loads(db_item.field_sources_json or "{}").items()
        }
        return CanonicalProduct(
            id=UUID(db_item.id),
            normalized_product_id=db_item.normalized_product_id,
            product_code=db_item.product_code,
            title=db_item.title,
            titles=json.loads(db_item.titles_json or "{}"),
            description=db_item.description,
            release_date=db_item.release_date,
            duration_minutes=db_item.duration_minutes,
            thumbnail_url=db_item.thumbnail_url,
            field_sources=field_sources,
            merged_into_id=UUID(db_item.merged_into_id) if db_item.merged_into_id else None,
            merged_at=db_item.merged_at,
            created_at=db_item.created_at,
            updated_at=db_item.updated_at,
        )


class ProductSourceRepository:
    """Repository for ProductSource CRUD operations."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, source: ProductSource) -> ProductSource:
        """Create a new product source. Raises IntegrityError on a duplicate ASP key."""
        db_item = ProductSourceDB(
            id=str(source.id),
            product_id=str(source.product_id),
            asp_name=source.asp_name,
            source_product_id=source.source_product_id,
            product_code=source.product_code,
            affiliate_url=source.affiliate_url,
            price=source.price,
            currency=source.currency,
            data_source=source.data_source.value,
            last_updated=source.last_updated,
        )
        self.session.add(db_item)
        self.session.flush()
        return self._to_domain(db_item)

    def get_by_asp_key(self, asp_name: str, source_product_id: str) -> ProductSource | None:
        """Get a product source by its (asp_name, source_product_id) key."""
        stmt = select(ProductSourceDB).where(
            ProductSourceDB.asp_name == asp_name,
            ProductSourceDB.source_product_id == source_product_id,
        )
        db_item = self.session.execute(stmt).scalar_one_or_none()
        return self._to_domain(db_item) if db_item else None

    def list_for_product(self, product_id: UUID | str) -> list[ProductSource]:
        """List all ASP listings of a product."""
        stmt = (
            select(ProductSourceDB)
            .where(ProductSourceDB.product_id == str(product_id))
            .order_by(ProductSourceDB.asp_name)
        )
        return [self._to_domain(s) for s in self.session.execute(stmt).scalars().all()]

    def update(self, source: ProductSource) -> ProductSource:
        """Update the per-ASP fields of an existing product source."""
        db_item = self.session.get(ProductSourceDB, str(source.id))
        if db_item is None:
            raise ValueError(f"ProductSource with id {source.id} not found")

        db_item.product_code = source.product_code
        db_item.affiliate_url = source.affiliate_url
        db_item.price = source.price
        db_item.currency = source.currency
        db_item.data_source = source.data_source.value
        db_item.last_updated = _utc_now()

        self.session.flush()
        return self._to_domain(db_item)

    def repoint(self, from_product_id: UUID | str, to_product_id: UUID | str) -> int:
        """Move every listing from one product to another."""
        stmt = (
            update(ProductSourceDB)
            .where(ProductSourceDB.product_id == str(from_product_id))
            .values(product_id=str(to_product_id))
        )
        result = self.session.execute(stmt)
        self.session.flush()
        return result.rowcount or 0

    def count(self) -> int:
        """Get total count of product sources."""
        stmt = select(func.count()).select_from(ProductSourceDB)
        return self.session.execute(stmt).scalar() or 0

    def _to_domain(self, db_item: ProductSourceDB) -> ProductSource:
        """Convert database model to domain model."""
        return ProductSource(
            id=UUID(db_item.id),
            product_id=UUID(db_item.product_id),
            asp_name=db_item.asp_name,
            source_product_id=db_item.source_product_id,
            product_code=db_item.product_code,
            affiliate_url=db_item.affiliate_url,
            price=db_item.price,
            currency=db_item.currency,
            data_source=DataSourceKind(db_item.data_source),
            last_updated=db_item.last_updated,
        )


# ============================================================================
# Performer Repositories
# ============================================================================


class PerformerRepository:
    """
    Repository for performers, their aliases and external ids, and their
    attachment to products.
    """

    def __init__(self, session: Session):
        self.session = session

    def create(self, performer: Performer) -> Performer:
        """Create a new performer. Raises IntegrityError on a duplicate name."""
        db_item = PerformerDB(
            id=str(performer.id),
            name=performer.name,
            name_key=performer.name_key,
            created_at=performer.created_at,
        )
        self.session.add(db_item)
        self.session.flush()
        return self._to_domain(db_item)

    def get_by_id(self, performer_id: UUID | str) -> Performer | None:
        """Get a performer by ID."""
        db_item = self.session.get(PerformerDB, str(performer_id))
        return self._to_domain(db_item) if db_item else None

    def get_by_name(self, name: str) -> Performer | None:
        """Get a performer by exact canonical name."""
        stmt = select(PerformerDB).where(PerformerDB.name == name)
        db_item = self.session.execute(stmt).scalar_one_or_none()
        return self._to_domain(db_item) if db_item else None

    def find_ids_by_alias(self, alias_name: str) -> list[str]:
        """Performer ids that carry this exact alias."""
        stmt = (
            select(PerformerAliasDB.performer_id)
            .where(PerformerAliasDB.alias_name == alias_name)
            .distinct()
        )
        return list(self.session.execute(stmt).scalars().all())

    def find_ids_by_key(self, key: str) -> list[str]:
        """Performer ids whose name or any alias normalizes to this key."""
        by_name = select(PerformerDB.id).where(PerformerDB.name_key == key)
        by_alias = select(PerformerAliasDB.performer_id).where(PerformerAliasDB.alias_key == key)
        ids = set(self.session.execute(by_name).scalars().all())
        ids.update(self.session.execute(by_alias).scalars().all())
        return sorted(ids)

    def add_alias(self, alias: PerformerAlias) -> bool:
        """Add an alias unless the performer already has it."""
        stmt = select(PerformerAliasDB.id).where(
            PerformerAliasDB.performer_id == str(alias.performer_id),
            PerformerAliasDB.alias_name == alias.alias_name,
        )
        if self.session.execute(stmt).first() is not None:
            return False
        return _insert_if_absent(
            self.session,
            PerformerAliasDB(
                id=str(alias.id),
                performer_id=str(alias.performer_id),
                alias_name=alias.alias_name,
                alias_key=alias.alias_key,
                source=alias.source,
            ),
        )

    def list_aliases(self, performer_id: UUID | str) -> list[PerformerAlias]:
        """List aliases of a performer."""
        stmt = (
            select(PerformerAliasDB)
            .where(PerformerAliasDB.performer_id == str(performer_id))
            .order_by(PerformerAliasDB.alias_name)
        )
        return [
            PerformerAlias(
                id=UUID(a.id),
                performer_id=UUID(a.performer_id),
                alias_name=a.alias_name,
                alias_key=a.alias_key,
                source=a.source,
            )
            for a in self.session.execute(stmt).scalars().all()
        ]

    def get_by_external_id(self, provider: str, external_id: str) -> Performer | None:
        """Get the performer bound to a provider's external id."""
        stmt = (
            select(PerformerDB)
            .join(PerformerExternalIdDB, PerformerExternalIdDB.performer_id == PerformerDB.id)
            .where(
                PerformerExternalIdDB.provider == provider,
                PerformerExternalIdDB.external_id == external_id,
            )
        )
        db_item = self.session.execute(stmt).scalar_one_or_none()
        return self._to_domain(db_item) if db_item else None

    def add_external_id(
        self, performer_id: UUID | str, provider: str, external_id: str
    ) -> bool:
        """
        Bind an external id to a performer.

        Returns False if the (provider, external_id) pair is already bound;
        an existing binding is never re-pointed.
        """
        return _insert_if_absent(
            self.session,
            PerformerExternalIdDB(
                performer_id=str(performer_id),
                provider=provider,
                external_id=external_id,
            ),
        )

    def attach_to_product(
        self, product_id: UUID | str, performer_id: UUID | str, source: str | None = None
    ) -> bool:
        """Attach a performer to a product if not already attached."""
        key = (str(product_id), str(performer_id))
        if self.session.get(ProductPerformerDB, key) is not None:
            return False
        return _insert_if_absent(
            self.session,
            ProductPerformerDB(product_id=key[0], performer_id=key[1], source=source),
        )

    def list_for_product(self, product_id: UUID | str) -> list[Performer]:
        """List performers attached to a product."""
        stmt = (
            select(PerformerDB)
            .join(ProductPerformerDB, ProductPerformerDB.performer_id == PerformerDB.id)
            .where(ProductPerformerDB.product_id == str(product_id))
            .order_by(PerformerDB.name)
        )
        return [self._to_domain(p) for p in self.session.execute(stmt).scalars().all()]

    def repoint_product(self, from_product_id: UUID | str, to_product_id: UUID | str) -> int:
        """Move performer attachments between products, dropping duplicates."""
        stmt = select(ProductPerformerDB).where(
            ProductPerformerDB.product_id == str(from_product_id)
        )
        moved = 0
        for row in self.session.execute(stmt).scalars().all():
            if self.attach_to_product(to_product_id, row.performer_id, row.source):
                moved += 1
            self.session.delete(row)
        self.session.flush()
        return moved

    def count(self) -> int:
        """Get total count of performers."""
        stmt = select(func.count()).select_from(PerformerDB)
        return self.session.execute(stmt).scalar() or 0

    def _to_domain(self, db_item: PerformerDB) -> Performer:
        """Convert database model to domain model."""
        return Performer(
            id=UUID(db_item.id),
            name=db_item.name,
            name_key=db_item.name_key,
            created_at=db_item.created_at,
        )


class TagRepository:
    """Repository for tags and their product attachments."""

    def __init__(self, session: Session):
        self.session = session

    def get_or_create(self, name: str) -> Tag:
        """Get a tag by name, creating it if needed."""
        stmt = select(TagDB).where(TagDB.name == name)
        db_item = self.session.execute(stmt).scalar_one_or_none()
        if db_item is None:
            _insert_if_absent(self.session, TagDB(name=name))
            db_item = self.session.execute(stmt).scalar_one()
        return Tag(id=UUID(db_item.id), name=db_item.name)

    def attach(self, product_id: UUID | str, tag_id: UUID | str) -> bool:
        """Attach a tag to a product if not already attached."""
        key = (str(product_id), str(tag_id))
        if self.session.get(ProductTagDB, key) is not None:
            return False
        return _insert_if_absent(self.session, ProductTagDB(product_id=key[0], tag_id=key[1]))

    def list_for_product(self, product_id: UUID | str) -> list[str]:
        """List tag names attached to a product."""
        stmt = (
            select(TagDB.name)
            .join(ProductTagDB, ProductTagDB.tag_id == TagDB.id)
            .where(ProductTagDB.product_id == str(product_id))
            .order_by(TagDB.name)
        )
        return list(self.session.execute(stmt).scalars().all())

    def repoint_product(self, from_product_id: UUID | str, to_product_id: UUID | str) -> int:
        """Move tag attachments between products, dropping duplicates."""
        stmt = select(ProductTagDB).where(ProductTagDB.product_id == str(from_product_id))
        moved = 0
        for row in self.session.execute(stmt).scalars().all():
            if self.attach(to_product_id, row.tag_id):
                moved += 1
            self.session.delete(row)
        self.session.flush()
        return moved


# ============================================================================
# Operations Repositories
# ============================================================================


class ReviewFlagRepository:
    """Repository for the operator review queue."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, flag: ReviewFlag) -> ReviewFlag:
        """Record a review flag."""
        db_item = ReviewFlagDB(
            id=str(flag.id),
            raw_record_id=str(flag.raw_record_id) if flag.raw_record_id else None,
            source=flag.source,
            source_product_id=flag.source_product_id,
            reason=flag.reason.value,
            detail=flag.detail,
            created_at=flag.created_at,
        )
        self.session.add(db_item)
        self.session.flush()
        return self._to_domain(db_item)

    def list_open(self, source: str | None = None, limit: int = 100) -> list[ReviewFlag]:
        """List unresolved flags, newest first."""
        stmt = select(ReviewFlagDB).where(ReviewFlagDB.resolved_at.is_(None))
        if source:
            stmt = stmt.where(ReviewFlagDB.source == source)
        stmt = stmt.order_by(ReviewFlagDB.created_at.desc()).limit(limit)
        return [self._to_domain(f) for f in self.session.execute(stmt).scalars().all()]

    def has_open(self, source: str, source_product_id: str, reason: ReviewReason) -> bool:
        """Whether an unresolved flag with this reason exists for the record."""
        stmt = select(ReviewFlagDB.id).where(
            ReviewFlagDB.resolved_at.is_(None),
            ReviewFlagDB.source == source,
            ReviewFlagDB.source_product_id == source_product_id,
            ReviewFlagDB.reason == reason.value,
        )
        return self.session.execute(stmt.limit(1)).first() is not None

    def resolve(self, flag_id: UUID | str) -> ReviewFlag:
        """Mark a flag as resolved."""
        db_item = self.session.get(ReviewFlagDB, str(flag_id))
        if db_item is None:
            raise ValueError(f"ReviewFlag with id {flag_id} not found")
        db_item.resolved_at = _utc_now()
        self.session.flush()
        return self._to_domain(db_item)

    def count_open(self, source: str | None = None) -> int:
        """Count unresolved flags."""
        stmt = (
            select(func.count())
            .select_from(ReviewFlagDB)
            .where(ReviewFlagDB.resolved_at.is_(None))
        )
        if source:
            stmt = stmt.where(ReviewFlagDB.source == source)
        return self.session.execute(stmt).scalar() or 0

    def _to_domain(self, db_item: ReviewFlagDB) -> ReviewFlag:
        """Convert database model to domain model."""
        return ReviewFlag(
            id=UUID(db_item.id),
            raw_record_id=UUID(db_item.raw_record_id) if db_item.raw_record_id else None,
            source=db_item.source,
            source_product_id=db_item.source_product_id,
            reason=ReviewReason(db_item.reason),
            detail=db_item.detail,
            created_at=db_item.created_at,
            resolved_at=db_item.resolved_at,
        )


class ProductMergeRepository:
    """Repository for the product merge audit trail."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, merge: ProductMerge) -> ProductMerge:
        """Record a merge."""
        db_item = ProductMergeDB(
            id=str(merge.id),
            surviving_product_id=str(merge.surviving_product_id),
            merged_product_id=str(merge.merged_product_id),
            reason=merge.reason,
            moved_sources=merge.moved_sources,
            moved_links=merge.moved_links,
            merged_at=merge.merged_at,
        )
        self.session.add(db_item)
        self.session.flush()
        return self._to_domain(db_item)

    def list_for_product(self, product_id: UUID | str) -> list[ProductMerge]:
        """List merges in which a product survived or was absorbed."""
        pid = str(product_id)
        stmt = (
            select(ProductMergeDB)
            .where(
                (ProductMergeDB.surviving_product_id == pid)
                | (ProductMergeDB.merged_product_id == pid)
            )
            .order_by(ProductMergeDB.merged_at)
        )
        return [self._to_domain(m) for m in self.session.execute(stmt).scalars().all()]

    def _to_domain(self, db_item: ProductMergeDB) -> ProductMerge:
        """Convert database model to domain model."""
        return ProductMerge(
            id=UUID(db_item.id),
            surviving_product_id=UUID(db_item.surviving_product_id),
            merged_product_id=UUID(db_item.merged_product_id),
            reason=db_item.reason,
            moved_sources=db_item.moved_sources,
            moved_links=db_item.moved_links,
            merged_at=db_item.merged_at,
        )


class PerformerIndexRepository:
    """Repository for the local product-code to performer-name index."""

    def __init__(self, session: Session):
        self.session = session

    def add_entry(self, entry: PerformerIndexEntry) -> bool:
        """Add an index entry unless it already exists."""
        stmt = select(PerformerIndexDB.id).where(
            PerformerIndexDB.source == entry.source,
            PerformerIndexDB.product_code_key == entry.product_code_key,
            PerformerIndexDB.performer_name == entry.performer_name,
        )
        if self.session.execute(stmt).first() is not None:
            return False
        return _insert_if_absent(
            self.session,
            PerformerIndexDB(
                id=str(entry.id),
                product_code_key=entry.product_code_key,
                performer_name=entry.performer_name,
                source=entry.source,
                source_url=entry.source_url,
                created_at=entry.created_at,
            ),
        )

    def find_names(self, product_code_key: str) -> list[str]:
        """Performer names indexed for a product code key, in insertion order."""
        stmt = (
            select(PerformerIndexDB.performer_name)
            .where(PerformerIndexDB.product_code_key == product_code_key)
            .order_by(PerformerIndexDB.created_at, PerformerIndexDB.performer_name)
        )
        names: list[str] = []
        for name in self.session.execute(stmt).scalars().all():
            if name not in names:
                names.append(name)
        return names
