"""Tests for performer identity resolution."""

from uuid import uuid4

import pytest
from sqlalchemy.orm import Session

from asp_catalog.core.enums import PerformerStatus
from asp_catalog.core.schema import CanonicalProduct, Performer
from asp_catalog.db.repositories import PerformerRepository, ProductRepository
from asp_catalog.ingestion.adapters.base import PerformerCandidate
from asp_catalog.ingestion.cache import TTLCache
from asp_catalog.ingestion.performers import PerformerResolver


@pytest.fixture
def product(session: Session) -> CanonicalProduct:
    return ProductRepository(session).create(
        CanonicalProduct(normalized_product_id="SSIS-865", product_code="SSIS-865")
    )


@pytest.fixture
def resolver(session: Session) -> PerformerResolver:
    return PerformerResolver(session, cache=TTLCache(max_size=100, ttl_seconds=60))


def _performer(session: Session, name: str, key: str | None = None) -> Performer:
    resolver = PerformerResolver(session)
    return PerformerRepository(session).create(
        Performer(name=name, name_key=key or resolver.normalizer.performer_key(name))
    )


class TestResolveCandidate:
    """Tests for PerformerResolver.resolve_candidate."""

    def test_creates_high_confidence_performer(self, session, resolver, product) -> None:
        outcome = resolver.resolve_candidate(
            product.id, PerformerCandidate("三上悠亜", "1001", 0.95, "json"), "fanza-api"
        )

        assert outcome.status == PerformerStatus.CREATED
        repo = PerformerRepository(session)
        assert [p.name for p in repo.list_for_product(product.id)] == ["三上悠亜"]
        assert repo.get_by_external_id("fanza-api", "1001").id == outcome.performer_id

    def test_existing_name_attaches(self, session, resolver, product) -> None:
        existing = _performer(session, "三上悠亜")

        outcome = resolver.resolve_candidate(
            product.id, PerformerCandidate("三上悠亜", None, 0.6, "free_text"), "mgs-html"
        )

        assert outcome.status == PerformerStatus.ATTACHED
        assert outcome.performer_id == existing.id
        assert outcome.matched_by == "name"

    def test_short_name_is_rejected(self, session, resolver, product) -> None:
        outcome = resolver.resolve_candidate(
            product.id, PerformerCandidate("デ", None, 0.95, "json"), "fanza-api"
        )

        assert outcome.status == PerformerStatus.REJECTED
        assert outcome.reason == "too short"
        assert PerformerRepository(session).count() == 0

    def test_configured_denylist(self, session, product) -> None:
        resolver = PerformerResolver(session, denylist=frozenset({"名無し"}))

        outcome = resolver.resolve_candidate(
            product.id, PerformerCandidate("名無し", None, 0.95, "json"), "fanza-api"
        )

        assert outcome.status == PerformerStatus.REJECTED

    def test_low_confidence_unknown_name_is_unresolved(self, session, resolver, product) -> None:
        outcome = resolver.resolve_candidate(
            product.id, PerformerCandidate("河北彩花", None, 0.6, "free_text"), "mgs-html"
        )

        assert outcome.status == PerformerStatus.UNRESOLVED
        assert PerformerRepository(session).count() == 0

    def test_alias_match(self, session, resolver, product) -> None:
        existing = _performer(session, "三上悠亜")
        resolver.add_alias(existing.id, "鬼頭桃菜", "manual")

        outcome = resolver.resolve_candidate(
            product.id, PerformerCandidate("鬼頭桃菜", None, 0.9, "label"), "mgs-html"
        )

        assert outcome.status == PerformerStatus.ATTACHED
        assert outcome.matched_by == "alias"
        assert outcome.performer_id == existing.id

    def test_key_match_records_spelling_as_alias(self, session, resolver, product) -> None:
        existing = _performer(session, "三上悠亜")

        outcome = resolver.resolve_candidate(
            product.id, PerformerCandidate("三上 悠亜", None, 0.9, "label"), "mgs-html"
        )

        assert outcome.matched_by == "key"
        assert outcome.performer_id == existing.id
        aliases = PerformerRepository(session).list_aliases(existing.id)
        assert [a.alias_name for a in aliases] == ["三上 悠亜"]

    def test_ambiguous_key_is_not_attached(self, session, resolver, product) -> None:
        _performer(session, "三上悠亜", key="三上悠亜")
        _performer(session, "三上 悠亜", key="三上悠亜")

        outcome = resolver.resolve_candidate(
            product.id, PerformerCandidate("三上・悠亜", None, 0.95, "json"), "fanza-api"
        )

        assert outcome.status == PerformerStatus.AMBIGUOUS
        assert PerformerRepository(session).list_for_product(product.id) == []
        assert PerformerRepository(session).count() == 2

    def test_external_id_beats_name(self, session, resolver, product) -> None:
        created = resolver.resolve_candidate(
            product.id, PerformerCandidate("三上悠亜", "1001", 0.95, "json"), "fanza-api"
        )

        outcome = resolver.resolve_candidate(
            product.id, PerformerCandidate("鬼頭桃菜", "1001", 0.95, "json"), "fanza-api"
        )

        assert outcome.matched_by == "external_id"
        assert outcome.performer_id == created.performer_id
        assert PerformerRepository(session).count() == 1

    def test_stale_cache_entry_is_ignored(self, session, resolver, product) -> None:
        resolver.cache.set(("performer", "河北彩花"), str(uuid4()))

        outcome = resolver.resolve_candidate(
            product.id, PerformerCandidate("河北彩花", None, 0.95, "json"), "fanza-api"
        )

        assert outcome.status == PerformerStatus.CREATED
        assert resolver.cache.get(("performer", "河北彩花")) == str(outcome.performer_id)


class TestExternalIds:
    def test_existing_binding_is_not_repointed(self, session, resolver) -> None:
        first = _performer(session, "三上悠亜")
        second = _performer(session, "河北彩花")
        assert resolver.add_external_id(first.id, "fanza-api", "1001")

        assert resolver.add_external_id(second.id, "fanza-api", "1001") is False
        assert PerformerRepository(session).get_by_external_id("fanza-api", "1001").id == first.id


class TestResolveForProduct:
    """Tests for whole-product resolution and the lookup fallback."""

    def test_lookup_names_used_when_nothing_attaches(self, session, resolver, product) -> None:
        resolution = resolver.resolve_for_product(
            product.id,
            [PerformerCandidate("謎の人物", None, 0.5, "free_text")],
            "mgs-html",
            lookup_names=["河北彩花"],
            lookup_provider="wiki",
        )

        assert resolution.lookup_provider == "wiki"
        assert resolution.created == 1
        assert [o.status for o in resolution.outcomes] == [
            PerformerStatus.UNRESOLVED,
            PerformerStatus.CREATED,
        ]
        assert [p.name for p in PerformerRepository(session).list_for_product(product.id)] == ["河北彩花"]

    def test_lookup_names_ignored_when_payload_attaches(self, session, resolver, product) -> None:
        resolution = resolver.resolve_for_product(
            product.id,
            [PerformerCandidate("三上悠亜", None, 0.95, "json")],
            "fanza-api",
            lookup_names=["河北彩花"],
            lookup_provider="wiki",
        )

        assert resolution.lookup_provider is None
        assert len(resolution.linked_ids) == 1
        assert PerformerRepository(session).count() == 1

    def test_rejected_and_ambiguous_are_reported(self, session, resolver, product) -> None:
        _performer(session, "三上悠亜", key="三上悠亜")
        _performer(session, "三上 悠亜", key="三上悠亜")

        resolution = resolver.resolve_for_product(
            product.id,
            [
                PerformerCandidate("デ", None, 0.95, "json"),
                PerformerCandidate("三上・悠亜", None, 0.95, "json"),
            ],
            "fanza-api",
        )

        assert [o.name for o in resolution.rejected] == ["デ"]
        assert [o.name for o in resolution.ambiguous] == ["三上・悠亜"]
        assert resolution.linked_ids == []


class TestNeedsEnrichment:
    def test_no_candidates_needs_enrichment(self, resolver) -> None:
        assert resolver.needs_enrichment([], "mgs-html")

    def test_low_confidence_unknown_needs_enrichment(self, resolver) -> None:
        candidates = [PerformerCandidate("謎の人物", None, 0.5, "free_text")]
        assert resolver.needs_enrichment(candidates, "mgs-html")

    def test_known_performer_does_not(self, session, resolver) -> None:
        _performer(session, "三上悠亜")
        candidates = [PerformerCandidate("三上悠亜", None, 0.5, "free_text")]
        assert not resolver.needs_enrichment(candidates, "mgs-html")

    def test_would_link_is_read_only(self, session, resolver) -> None:
        assert resolver.would_link(PerformerCandidate("河北彩花", None, 0.95, "json"), "fanza-api")
        assert PerformerRepository(session).count() == 0
