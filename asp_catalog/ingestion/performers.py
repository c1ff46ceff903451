"""
Performer Identity Resolver Module
==================================

Resolves performer candidates from adapters (and from reference lookups)
to performer entities and attaches them to canonical products.

Each candidate goes through a fixed sequence: validation, external id,
exact name, alias, normalized key, creation above a confidence threshold.
Ambiguous matches are never guessed; nothing is attached.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from asp_catalog.core.enums import PerformerStatus
from asp_catalog.core.schema import Performer, PerformerAlias
from asp_catalog.db.repositories import PerformerRepository
from asp_catalog.ingestion.adapters.base import PerformerCandidate
from asp_catalog.ingestion.cache import TTLCache
from asp_catalog.ingestion.normalizer import ProductCodeNormalizer
from asp_catalog.ingestion.quality import validate_performer_name

logger = logging.getLogger(__name__)


@dataclass
class PerformerOutcome:
    """What happened to one performer candidate."""

    name: str
    status: PerformerStatus
    performer_id: UUID | None = None
    matched_by: str | None = None
    reason: str | None = None

    @property
    def linked(self) -> bool:
        return self.status in (PerformerStatus.ATTACHED, PerformerStatus.CREATED)


@dataclass
class PerformerResolution:
    """Outcomes for every candidate of one product."""

    product_id: UUID
    outcomes: list[PerformerOutcome] = field(default_factory=list)
    lookup_provider: str | None = None

    @property
    def linked_ids(self) -> list[UUID]:
        return [o.performer_id for o in self.outcomes if o.linked and o.performer_id]

    @property
    def created(self) -> int:
        return sum(1 for o in self.outcomes if o.status == PerformerStatus.CREATED)

    @property
    def rejected(self) -> list[PerformerOutcome]:
        return [o for o in self.outcomes if o.status == PerformerStatus.REJECTED]

    @property
    def ambiguous(self) -> list[PerformerOutcome]:
        return [o for o in self.outcomes if o.status == PerformerStatus.AMBIGUOUS]


class PerformerResolver:
    """
    Resolves performer candidates and attaches them to products.

    The cache maps canonical names to performer ids. Performers are
    never deleted, so a cached id can only be stale if its creating
    transaction rolled back; hits are checked against the table.
    """

    def __init__(
        self,
        session: Session,
        normalizer: ProductCodeNormalizer | None = None,
        cache: TTLCache | None = None,
        min_create_confidence: float = 0.9,
        lookup_confidence: float = 0.9,
        denylist: frozenset[str] | None = None,
    ) -> None:
        self.session = session
        self.normalizer = normalizer or ProductCodeNormalizer()
        self.cache = cache if cache is not None else TTLCache()
        self.min_create_confidence = min_create_confidence
        self.lookup_confidence = lookup_confidence
        self.denylist = denylist or frozenset()
        self.repo = PerformerRepository(session)

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def _cached(self, name: str) -> Performer | None:
        performer_id = self.cache.get(("performer", name))
        if performer_id is None:
            return None
        performer = self.repo.get_by_id(performer_id)
        if performer is None:
            self.cache.invalidate(("performer", name))
        return performer

    def _match(
        self, name: str, key: str, candidate: PerformerCandidate, provider: str
    ) -> tuple[Performer | None, str | None, int]:
        """
        Find an existing performer for a validated name.

        Returns:
            (performer, matched_by, match_count); match_count > 1 means ambiguous
        """
        if candidate.external_id:
            performer = self.repo.get_by_external_id(provider, candidate.external_id)
            if performer is not None:
                return performer, "external_id", 1

        cached = self._cached(name)
        if cached is not None:
            return cached, "name", 1

        performer = self.repo.get_by_name(name)
        if performer is not None:
            return performer, "name", 1

        for matched_by, ids in (
            ("alias", self.repo.find_ids_by_alias(name)),
            ("key", self.repo.find_ids_by_key(key)),
        ):
            if len(ids) == 1:
                return self.repo.get_by_id(ids[0]), matched_by, 1
            if len(ids) > 1:
                return None, matched_by, len(ids)
        return None, None, 0

    def would_link(self, candidate: PerformerCandidate, provider: str) -> bool:
        """
        Read-only check: would this candidate attach or create a performer?

        Used to decide on enrichment before any write happens.
        """
        name = self.normalizer.normalize_performer_name(candidate.name)
        if validate_performer_name(name, self.denylist) is not None:
            return False
        performer, _, count = self._match(
            name, self.normalizer.performer_key(name), candidate, provider
        )
        if performer is not None:
            return True
        return count == 0 and candidate.confidence >= self.min_create_confidence

    def needs_enrichment(self, candidates: list[PerformerCandidate], provider: str) -> bool:
        """True if none of the candidates would end up attached."""
        return not any(self.would_link(c, provider) for c in candidates)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_candidate(
        self,
        product_id: UUID | str,
        candidate: PerformerCandidate,
        source: str,
    ) -> PerformerOutcome:
        """
        Resolve one candidate and attach the performer to the product.

        Args:
            product_id: Canonical product receiving the performer
            candidate: Name, optional external id and confidence
            source: Attachment source; also the external-id provider

        Returns:
            PerformerOutcome with the final status
        """
        name = self.normalizer.normalize_performer_name(candidate.name)
        reason = validate_performer_name(name, self.denylist)
        if reason is not None:
            logger.warning(f"Rejected performer name {candidate.name!r} from {source}: {reason}")
            return PerformerOutcome(candidate.name, PerformerStatus.REJECTED, reason=reason)

        key = self.normalizer.performer_key(name)
        performer, matched_by, count = self._match(name, key, candidate, source)

        if count > 1:
            logger.warning(
                f"Performer name {name!r} from {source} matches {count} performers by {matched_by}; "
                "not attaching"
            )
            return PerformerOutcome(
                name, PerformerStatus.AMBIGUOUS, matched_by=matched_by,
                reason=f"{count} performers match",
            )

        if performer is not None:
            if name != performer.name:
                self.add_alias(performer.id, name, source)
            if candidate.external_id:
                self.add_external_id(performer.id, source, candidate.external_id)
            self.repo.attach_to_product(product_id, performer.id, source)
            if matched_by == "name":
                self.cache.set(("performer", name), str(performer.id))
            return PerformerOutcome(
                name, PerformerStatus.ATTACHED, performer.id, matched_by=matched_by
            )

        if candidate.confidence < self.min_create_confidence:
            logger.debug(
                f"Performer {name!r} from {source} unresolved "
                f"(confidence {candidate.confidence:.2f} < {self.min_create_confidence:.2f})"
            )
            return PerformerOutcome(
                name, PerformerStatus.UNRESOLVED, reason="confidence below creation threshold"
            )

        status = PerformerStatus.CREATED
        try:
            with self.session.begin_nested():
                performer = self.repo.create(Performer(name=name, name_key=key))
        except IntegrityError:
            # Created concurrently under the same name
            performer = self.repo.get_by_name(name)
            if performer is None:
                raise
            status = PerformerStatus.ATTACHED
        else:
            logger.info(f"Created performer {name!r} from {source}")

        if candidate.external_id:
            self.add_external_id(performer.id, source, candidate.external_id)
        self.repo.attach_to_product(product_id, performer.id, source)
        self.cache.set(("performer", name), str(performer.id))
        return PerformerOutcome(name, status, performer.id, matched_by="created")

    def resolve_for_product(
        self,
        product_id: UUID | str,
        candidates: list[PerformerCandidate],
        source: str,
        lookup_names: list[str] | None = None,
        lookup_provider: str | None = None,
    ) -> PerformerResolution:
        """
        Resolve every candidate of a product.

        When nothing from the payload attaches and lookup_names were
        supplied (by a reference lookup chain), those names are resolved
        next with the lookup confidence under source ``lookup:<provider>``.
        """
        resolution = PerformerResolution(product_id=UUID(str(product_id)))
        for candidate in candidates:
            resolution.outcomes.append(self.resolve_candidate(product_id, candidate, source))

        if resolution.linked_ids or not lookup_names:
            return resolution

        lookup_source = f"lookup:{lookup_provider or 'reference'}"
        resolution.lookup_provider = lookup_provider
        for name in lookup_names:
            candidate = PerformerCandidate(name, None, self.lookup_confidence, "lookup")
            resolution.outcomes.append(self.resolve_candidate(product_id, candidate, lookup_source))
        return resolution

    def add_alias(self, performer_id: UUID | str, alias: str, source: str | None = None) -> bool:
        """Record an alternate spelling for a performer."""
        added = self.repo.add_alias(
            PerformerAlias(
                performer_id=UUID(str(performer_id)),
                alias_name=alias,
                alias_key=self.normalizer.performer_key(alias),
                source=source,
            )
        )
        if added:
            logger.debug(f"Added alias {alias!r} to performer {performer_id}")
        return added

    def add_external_id(self, performer_id: UUID | str, provider: str, external_id: str) -> bool:
        """Bind a provider id; an existing binding to another performer is kept."""
        existing = self.repo.get_by_external_id(provider, external_id)
        if existing is not None:
            if str(existing.id) != str(performer_id):
                logger.warning(
                    f"External id {provider}:{external_id} already bound to {existing.name!r}; "
                    "not re-pointing"
                )
            return False
        return self.repo.add_external_id(performer_id, provider, external_id)
