"""
Processing Driver Module
========================

Batch driver that turns unprocessed raw records into canonical data.

Each raw record is one unit of work:

1. Gate: skip (and mark processed) if a link already records this hash
2. Extract with the source's adapter and normalize
3. Optionally query the reference lookup chain for performers
4. In one transaction: resolve the product, resolve performers, attach
   tags, record the raw->canonical link, mark the record processed.
   A listing whose code no longer matches its bound product keeps the
   binding and opens an identity-conflict review flag.

Database phases run in worker threads with their own sessions; network
lookups happen between them on the event loop, never inside an open
write transaction. Data-quality failures flag the record for review;
other failures leave it unprocessed for the next run.

A lookup that could not be answered does not hold a record back. The
enrichment pass (enrich_performerless) later revisits live products that
still have no performers.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from asp_catalog.core.enums import ResolutionAction, ReviewReason
from asp_catalog.core.schema import CanonicalProduct, RawRecord, ReviewFlag
from asp_catalog.db.repositories import (
    PerformerRepository,
    ProductRepository,
    ReviewFlagRepository,
    TagRepository,
)
from asp_catalog.ingestion.adapters import get_adapter
from asp_catalog.ingestion.cache import TTLCache
from asp_catalog.ingestion.errors import DataQualityError, FatalIngestionError
from asp_catalog.ingestion.links import RawLinkTable
from asp_catalog.ingestion.lookup import LookupChain, LookupResult
from asp_catalog.ingestion.normalizer import NormalizedProduct, ProductCodeNormalizer
from asp_catalog.ingestion.performers import PerformerResolver
from asp_catalog.ingestion.resolver import ProductIdentityResolver
from asp_catalog.ingestion.storage import RawStore

if TYPE_CHECKING:
    from sqlalchemy.orm import Session, sessionmaker

    from asp_catalog.ingestion.adapters.base import BaseAdapter
    from asp_catalog.ingestion.registry import SourceConfig, SourceRegistry
    from asp_catalog.ingestion.storage import ObjectStore

logger = logging.getLogger(__name__)

ALL_SOURCES = "all"


class UnitOutcome(str, Enum):
    """How a single raw record's unit of work ended."""

    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FLAGGED = "flagged"
    ERROR = "error"


@dataclass
class BatchStats:
    """Counters for one driver run."""

    source: str
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    flagged: int = 0
    conflicts: int = 0
    lookup_failures: int = 0
    stopped: bool = False
    error_messages: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.skipped

    def record(self, outcome: UnitOutcome) -> None:
        if outcome == UnitOutcome.CREATED:
            self.created += 1
        elif outcome == UnitOutcome.UPDATED:
            self.updated += 1
        elif outcome == UnitOutcome.SKIPPED:
            self.skipped += 1
        elif outcome == UnitOutcome.FLAGGED:
            self.flagged += 1
        elif outcome == UnitOutcome.ERROR:
            self.errors += 1

    def absorb(self, other: BatchStats) -> None:
        """Add another run's counters to this one."""
        self.created += other.created
        self.updated += other.updated
        self.skipped += other.skipped
        self.errors += other.errors
        self.flagged += other.flagged
        self.conflicts += other.conflicts
        self.lookup_failures += other.lookup_failures
        self.stopped = self.stopped or other.stopped
        self.error_messages.extend(other.error_messages)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "source": self.source,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
            "flagged": self.flagged,
            "conflicts": self.conflicts,
            "lookup_failures": self.lookup_failures,
            "stopped": self.stopped,
            "error_messages": self.error_messages,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BatchStats:
        return cls(
            source=data["source"],
            created=data.get("created", 0),
            updated=data.get("updated", 0),
            skipped=data.get("skipped", 0),
            errors=data.get("errors", 0),
            flagged=data.get("flagged", 0),
            conflicts=data.get("conflicts", 0),
            lookup_failures=data.get("lookup_failures", 0),
            stopped=data.get("stopped", False),
            error_messages=list(data.get("error_messages", [])),
            started_at=datetime.fromisoformat(data["started_at"]) if data.get("started_at") else None,
            completed_at=datetime.fromisoformat(data["completed_at"]) if data.get("completed_at") else None,
        )


@dataclass
class _PreparedUnit:
    """Output of the read phase of a unit."""

    normalized: NormalizedProduct | None = None
    skipped: bool = False
    wants_lookup: bool = False


class ProcessingDriver:
    """
    Resumable, idempotent batch processor.

    Re-running over already-processed records writes nothing new; a
    record is only marked processed after its canonical writes commit.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        registry: SourceRegistry,
        object_store: ObjectStore | None = None,
        cache: TTLCache | None = None,
        lookup_chain: LookupChain | None = None,
        enrich: bool = False,
        concurrency: int = 1,
        time_budget_seconds: float | None = None,
        normalizer: ProductCodeNormalizer | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_factory = session_factory
        self.registry = registry
        self.object_store = object_store
        self.lookup_chain = lookup_chain
        self.enrich = enrich
        self.concurrency = max(1, concurrency)
        self.time_budget_seconds = time_budget_seconds
        self.normalizer = normalizer or ProductCodeNormalizer()
        self._clock = clock

        resolution_config = registry.performer_resolution
        self.cache = cache if cache is not None else TTLCache(
            resolution_config.cache_max_size, resolution_config.cache_ttl_seconds
        )
        self._denylist = frozenset(resolution_config.denylist)
        self._adapters: dict[str, BaseAdapter] = {}
        self._stop_requested = False
        self._deadline: float | None = None

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def stop(self) -> None:
        """Request a cooperative stop; in-flight units finish, no new ones start."""
        self._stop_requested = True

    def _should_stop(self) -> bool:
        if self._stop_requested:
            return True
        return self._deadline is not None and self._clock() >= self._deadline

    def _get_source(self, name: str) -> SourceConfig:
        source = self.registry.get_source(name)
        if source is None:
            raise FatalIngestionError(f"Source '{name}' not found")
        return source

    def _get_adapter(self, source: SourceConfig) -> BaseAdapter:
        adapter = self._adapters.get(source.name)
        if adapter is None:
            adapter = get_adapter(source.adapter, source.adapter_config)
            if adapter is None:
                raise FatalIngestionError(
                    f"Adapter '{source.adapter}' for source '{source.name}' not found"
                )
            self._adapters[source.name] = adapter
        return adapter

    def _performer_resolver(self, session: Session) -> PerformerResolver:
        config = self.registry.performer_resolution
        return PerformerResolver(
            session,
            normalizer=self.normalizer,
            cache=self.cache,
            min_create_confidence=config.min_create_confidence,
            lookup_confidence=config.lookup_confidence,
            denylist=self._denylist,
        )

    def _raw_store(self, session: Session) -> RawStore:
        return RawStore(
            session,
            object_store=self.object_store,
            inline_limit_bytes=self.registry.global_config.inline_body_limit_bytes,
        )

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def run(self, source: str = ALL_SOURCES, limit: int = 500) -> BatchStats:
        """
        Process unprocessed records of one source, or of every enabled source.

        Raises:
            FatalIngestionError: Unknown source or unreachable store
        """
        if source != ALL_SOURCES:
            return await self.process_batch(source, limit)

        total = BatchStats(source=ALL_SOURCES, started_at=datetime.now(UTC))
        self._start_budget()
        for source_config in self.registry.list_enabled_sources():
            if self._should_stop():
                total.stopped = True
                break
            total.absorb(await self.process_batch(source_config.name, limit, start_budget=False))
        total.completed_at = datetime.now(UTC)
        return total

    def _start_budget(self) -> None:
        self._deadline = (
            self._clock() + self.time_budget_seconds if self.time_budget_seconds else None
        )

    def _list_work(self, source: str, limit: int) -> list[RawRecord]:
        with self.session_factory() as session:
            return self._raw_store(session).list_unprocessed(source=source, limit=limit)

    async def process_batch(
        self, source: str, limit: int = 500, start_budget: bool = True
    ) -> BatchStats:
        """
        Process up to limit unprocessed records of one source.

        Returns:
            BatchStats for the batch
        """
        source_config = self._get_source(source)
        self._get_adapter(source_config)
        if start_budget:
            self._start_budget()

        stats = BatchStats(source=source, started_at=datetime.now(UTC))
        try:
            records = await asyncio.to_thread(self._list_work, source_config.name, limit)
        except SQLAlchemyError as e:
            raise FatalIngestionError(f"Cannot list work for '{source}': {e}") from e

        logger.info(f"Processing {len(records)} record(s) from {source}")
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run_unit(record: RawRecord) -> None:
            async with semaphore:
                if self._should_stop():
                    stats.stopped = True
                    return
                outcome = await self.process_record(source_config, record, stats)
                stats.record(outcome)

        await asyncio.gather(*(run_unit(r) for r in records))

        stats.completed_at = datetime.now(UTC)
        logger.info(
            f"Batch {source}: {stats.created} created, {stats.updated} updated, "
            f"{stats.skipped} skipped, {stats.flagged} flagged, {stats.conflicts} conflicts, "
            f"{stats.errors} errors"
            + (" (stopped early)" if stats.stopped else "")
        )
        return stats

    # ------------------------------------------------------------------
    # Enrichment pass
    # ------------------------------------------------------------------

    def _list_performerless(self, asp_name: str | None, limit: int) -> list[CanonicalProduct]:
        with self.session_factory() as session:
            return ProductRepository(session).list_without_performers(asp_name=asp_name, limit=limit)

    async def enrich_performerless(self, source: str = ALL_SOURCES, limit: int = 100) -> BatchStats:
        """
        Query the lookup chain again for live products that have no performers.

        Products whose lookup failed during processing end up here, as do
        products processed while enrichment was off. A product whose lookup
        fails again counts as an error and stays eligible for the next pass.

        Args:
            source: Registry source whose ASP listings to revisit, or "all"
            limit: Maximum number of products to look up

        Raises:
            FatalIngestionError: No lookup chain, unknown source or unreachable store
        """
        if self.lookup_chain is None:
            raise FatalIngestionError("The enrichment pass needs a lookup chain")
        asp_name = None if source == ALL_SOURCES else self._get_source(source).asp_name
        self._start_budget()

        stats = BatchStats(source=source, started_at=datetime.now(UTC))
        try:
            products = await asyncio.to_thread(self._list_performerless, asp_name, limit)
        except SQLAlchemyError as e:
            raise FatalIngestionError(f"Cannot list products to enrich: {e}") from e

        logger.info(f"Enriching {len(products)} product(s) without performers")
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run_unit(product: CanonicalProduct) -> None:
            async with semaphore:
                if self._should_stop():
                    stats.stopped = True
                    return
                stats.record(await self.enrich_product(product, stats))

        await asyncio.gather(*(run_unit(p) for p in products))

        stats.completed_at = datetime.now(UTC)
        logger.info(
            f"Enrichment {source}: {stats.updated} enriched, {stats.skipped} without answer, "
            f"{stats.lookup_failures} lookup failures, {stats.errors} errors"
            + (" (stopped early)" if stats.stopped else "")
        )
        return stats

    async def enrich_product(
        self, product: CanonicalProduct, stats: BatchStats | None = None
    ) -> UnitOutcome:
        """Look up one product's performers and link whatever resolves."""
        code = product.product_code or product.normalized_product_id
        try:
            lookup = await self.lookup_chain.search(code)
            if lookup.incomplete:
                if stats is not None:
                    stats.lookup_failures += 1
                    stats.error_messages.append(
                        f"{product.normalized_product_id}: lookup failed ({', '.join(lookup.failed)})"
                    )
                return UnitOutcome.ERROR
            if not lookup.found:
                return UnitOutcome.SKIPPED

            linked = await asyncio.to_thread(self._link_looked_up, product, lookup)
        except FatalIngestionError:
            raise
        except Exception as e:
            logger.exception(f"Error enriching {product.normalized_product_id}")
            if stats is not None:
                stats.error_messages.append(f"{product.normalized_product_id}: {e}")
            return UnitOutcome.ERROR
        return UnitOutcome.UPDATED if linked else UnitOutcome.SKIPPED

    def _link_looked_up(self, product: CanonicalProduct, lookup: LookupResult) -> int:
        with self.session_factory() as session:
            try:
                performers = self._performer_resolver(session).resolve_for_product(
                    product.id,
                    [],
                    f"lookup:{lookup.provider}",
                    lookup_names=lookup.names,
                    lookup_provider=lookup.provider,
                )
                session.commit()
            except Exception:
                session.rollback()
                raise
        linked = len(performers.linked_ids)
        logger.debug(
            f"{product.normalized_product_id}: {linked} performer(s) from {lookup.provider}"
        )
        return linked

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    async def process_record(
        self,
        source: SourceConfig,
        record: RawRecord,
        stats: BatchStats | None = None,
    ) -> UnitOutcome:
        """Run the unit of work for a single raw record."""
        label = f"{record.source}:{record.source_product_id}"
        try:
            prepared = await asyncio.to_thread(self._prepare, source, record)
            if prepared.skipped:
                return UnitOutcome.SKIPPED

            lookup: LookupResult | None = None
            if prepared.wants_lookup and self.lookup_chain is not None:
                lookup = await self.lookup_chain.search(prepared.normalized.product_code)
                if lookup.incomplete and stats is not None:
                    stats.lookup_failures += 1

            outcome, conflicted = await asyncio.to_thread(
                self._write, source, record, prepared.normalized, lookup
            )
            if conflicted and stats is not None:
                stats.conflicts += 1
            return outcome

        except DataQualityError as e:
            logger.warning(f"Flagging {label}: {e}")
            try:
                await asyncio.to_thread(self._flag, record, e)
            except SQLAlchemyError:
                logger.exception(f"Could not flag {label}")
                if stats is not None:
                    stats.error_messages.append(f"{label}: could not flag: {e}")
                return UnitOutcome.ERROR
            return UnitOutcome.FLAGGED
        except FatalIngestionError:
            raise
        except Exception as e:
            logger.exception(f"Error processing {label}")
            if stats is not None:
                stats.error_messages.append(f"{label}: {e}")
            return UnitOutcome.ERROR

    def _prepare(self, source: SourceConfig, record: RawRecord) -> _PreparedUnit:
        """Read phase: gate, extract, normalize and decide on enrichment."""
        with self.session_factory() as session:
            links = RawLinkTable(session)
            if not links.needs_reprocessing(record.source, str(record.id), record.content_hash):
                self._raw_store(session).mark_processed(
                    record.source, record.source_product_id, record.content_hash
                )
                session.commit()
                logger.debug(f"Skipped unchanged {record.source}:{record.source_product_id}")
                return _PreparedUnit(skipped=True)

            adapter = self._get_adapter(source)
            body = self._raw_store(session).read_body(record)
            extracted = adapter.extract_product(body, record)
            for warning in adapter.validate_product(extracted):
                logger.debug(f"{record.source}:{record.source_product_id}: {warning}")

            resolver = ProductIdentityResolver(session, self.normalizer)
            normalized = resolver.normalize(source, extracted)

            wants_lookup = False
            if self.enrich and self.lookup_chain is not None:
                wants_lookup = self._wants_lookup(session, source, normalized)
            return _PreparedUnit(normalized=normalized, wants_lookup=wants_lookup)

    def _wants_lookup(
        self, session: Session, source: SourceConfig, normalized: NormalizedProduct
    ) -> bool:
        product = ProductRepository(session).get_by_normalized_id(normalized.normalized_product_id)
        if product is not None and PerformerRepository(session).list_for_product(product.id):
            return False
        return self._performer_resolver(session).needs_enrichment(
            normalized.performers, source.asp_name
        )

    def _write(
        self,
        source: SourceConfig,
        record: RawRecord,
        normalized: NormalizedProduct,
        lookup: LookupResult | None,
    ) -> tuple[UnitOutcome, bool]:
        """
        Write phase: every canonical write of the unit in one transaction.

        Returns:
            The outcome, and whether the listing conflicted with its binding
        """
        with self.session_factory() as session:
            try:
                resolution = ProductIdentityResolver(session, self.normalizer).resolve(
                    source, normalized=normalized
                )

                performers = self._performer_resolver(session).resolve_for_product(
                    resolution.product_id,
                    normalized.performers,
                    source.asp_name,
                    lookup_names=lookup.names if lookup and lookup.found else None,
                    lookup_provider=lookup.provider if lookup else None,
                )

                tags = TagRepository(session)
                for tag_name in normalized.tags:
                    tags.attach(resolution.product_id, tags.get_or_create(tag_name).id)

                if resolution.conflict:
                    self._open_conflict_flag(session, record, resolution.conflict)

                RawLinkTable(session).record_link(
                    resolution.product_id, record.source, str(record.id), record.content_hash
                )
                self._raw_store(session).mark_processed(
                    record.source, record.source_product_id, record.content_hash
                )
                session.commit()
            except Exception:
                session.rollback()
                raise

        logger.debug(
            f"{record.source}:{record.source_product_id} {resolution.action.value} "
            f"{resolution.normalized_product_id} ({len(performers.linked_ids)} performer(s))"
        )
        conflicted = resolution.conflict is not None
        if resolution.action == ResolutionAction.CREATED:
            return UnitOutcome.CREATED, conflicted
        return UnitOutcome.UPDATED, conflicted

    def _open_conflict_flag(self, session: Session, record: RawRecord, detail: str) -> None:
        flags = ReviewFlagRepository(session)
        reason = ReviewReason.IDENTITY_CONFLICT
        if flags.has_open(record.source, record.source_product_id, reason):
            return
        flags.create(
            ReviewFlag(
                raw_record_id=record.id,
                source=record.source,
                source_product_id=record.source_product_id,
                reason=reason,
                detail=detail,
            )
        )

    def _flag(self, record: RawRecord, error: DataQualityError) -> None:
        """Annotate the raw record and open a review flag, in their own transaction."""
        with self.session_factory() as session:
            try:
                self._raw_store(session).flag(
                    record.source, record.source_product_id, error.reason, error.detail
                )
                ReviewFlagRepository(session).create(
                    ReviewFlag(
                        raw_record_id=record.id,
                        source=record.source,
                        source_product_id=record.source_product_id,
                        reason=error.reason,
                        detail=error.detail,
                    )
                )
                session.commit()
            except Exception:
                session.rollback()
                raise
