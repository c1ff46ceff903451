"""Tests for the processing driver."""

import asyncio
import json

import pytest
from sqlalchemy import update

from asp_catalog.core.enums import DataSourceKind, ReviewReason
from asp_catalog.db.models import RawRecordDB
from asp_catalog.db.repositories import (
    PerformerRepository,
    ProductRepository,
    ProductSourceRepository,
    ReviewFlagRepository,
    TagRepository,
)
from asp_catalog.ingestion.errors import FatalIngestionError
from asp_catalog.ingestion.links import RawLinkTable
from asp_catalog.ingestion.lookup import LookupChain, ReferenceLookup
from asp_catalog.ingestion.pipeline import BatchStats, ProcessingDriver, UnitOutcome
from asp_catalog.ingestion.registry import SourceConfig
from asp_catalog.ingestion.storage import RawStore

FANZA_PAYLOAD = {
    "content_id": "ssis00865",
    "title": "新人NO.1 STYLE 専属デビュー",
    "date": "2024-01-05 10:00:00",
    "volume": "120",
    "actress": [{"id": 1001, "name": "三上悠亜"}],
    "genres": [{"name": "単体作品"}, {"name": "アイドル・芸能人"}],
}

MGS_PAGE = """
<html><head><meta property="og:title" content="新人NO.1 STYLE 専属デビュー"></head>
<body><table>
  <tr><th>品番：</th><td>SSIS-865</td></tr>
  <tr><th>配信開始日：</th><td>2024/01/05</td></tr>
</table></body></html>
"""


def _store(session_factory, source: str, product_id: str, payload) -> None:
    with session_factory() as session:
        store = RawStore(session)
        if isinstance(payload, dict):
            store.put_json(source, product_id, payload)
        else:
            store.put(source, product_id, payload)
        session.commit()


def _fanza_payload(**overrides) -> dict:
    payload = dict(FANZA_PAYLOAD)
    payload.update(overrides)
    return payload


class NamesLookup(ReferenceLookup):
    """Reference lookup with canned names."""

    name = "wiki"

    def __init__(self, names: list[str]) -> None:
        self.names = names
        self.codes: list[str] = []

    async def search_by_product_code(self, code: str) -> list[str]:
        self.codes.append(code)
        return list(self.names)


class FlakyLookup(ReferenceLookup):
    """Times out for the first few searches, then answers."""

    name = "wiki"

    def __init__(self, names: list[str], failures: int) -> None:
        self.names = names
        self.failures = failures
        self.calls = 0

    async def search_by_product_code(self, code: str) -> list[str]:
        self.calls += 1
        if self.calls <= self.failures:
            raise TimeoutError(f"reference site timed out for {code}")
        return list(self.names)


class TestProcessBatch:
    """Tests for ProcessingDriver.process_batch."""

    @pytest.mark.asyncio
    async def test_creates_product_with_performers_and_tags(self, session_factory, registry) -> None:
        _store(session_factory, "fanza-api", "ssis00865", _fanza_payload())

        stats = await ProcessingDriver(session_factory, registry).process_batch("fanza-api")

        assert (stats.created, stats.updated, stats.errors, stats.flagged) == (1, 0, 0, 0)
        with session_factory() as session:
            product = ProductRepository(session).get_by_normalized_id("SSIS-865")
            assert product.title == "新人NO.1 STYLE 専属デビュー"
            assert product.duration_minutes == 120
            assert [p.name for p in PerformerRepository(session).list_for_product(product.id)] == ["三上悠亜"]
            assert TagRepository(session).list_for_product(product.id) == ["アイドル・芸能人", "単体作品"]
            assert len(RawLinkTable(session).links_for_product(product.id)) == 1
            assert RawStore(session).get("fanza-api", "ssis00865").processed_at is not None

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, session_factory, registry) -> None:
        _store(session_factory, "fanza-api", "ssis00865", _fanza_payload())
        driver = ProcessingDriver(session_factory, registry)
        await driver.process_batch("fanza-api")

        again = await driver.process_batch("fanza-api")

        assert again.processed == 0
        with session_factory() as session:
            assert ProductRepository(session).count() == 1
            assert PerformerRepository(session).count() == 1
            assert ProductSourceRepository(session).count() == 1

    @pytest.mark.asyncio
    async def test_linked_record_at_same_hash_is_skipped(self, session_factory, registry) -> None:
        _store(session_factory, "fanza-api", "ssis00865", _fanza_payload())
        driver = ProcessingDriver(session_factory, registry)
        await driver.process_batch("fanza-api")
        with session_factory() as session:
            session.execute(update(RawRecordDB).values(processed_at=None))
            session.commit()

        stats = await driver.process_batch("fanza-api")

        assert stats.skipped == 1
        assert stats.created + stats.updated == 0
        with session_factory() as session:
            assert RawStore(session).get("fanza-api", "ssis00865").processed_at is not None

    @pytest.mark.asyncio
    async def test_changed_content_updates(self, session_factory, registry) -> None:
        _store(session_factory, "fanza-api", "ssis00865", _fanza_payload())
        driver = ProcessingDriver(session_factory, registry)
        await driver.process_batch("fanza-api")
        _store(session_factory, "fanza-api", "ssis00865", _fanza_payload(volume="125"))

        stats = await driver.process_batch("fanza-api")

        assert stats.updated == 1
        with session_factory() as session:
            product = ProductRepository(session).get_by_normalized_id("SSIS-865")
            assert product.duration_minutes == 125
            links = RawLinkTable(session).links_for_product(product.id)
            assert len(links) == 1
            assert links[0].content_hash_at_processing == RawStore(session).get(
                "fanza-api", "ssis00865"
            ).content_hash

    @pytest.mark.asyncio
    async def test_same_work_from_two_sources(self, session_factory, registry) -> None:
        _store(session_factory, "fanza-api", "ssis00865", _fanza_payload())
        _store(session_factory, "mgs-html", "SSIS-865", MGS_PAGE.encode("utf-8"))

        stats = await ProcessingDriver(session_factory, registry).run()

        assert stats.created == 1
        assert stats.updated == 1
        with session_factory() as session:
            assert ProductRepository(session).count() == 1
            assert ProductSourceRepository(session).count() == 2

    @pytest.mark.asyncio
    async def test_placeholder_title_is_flagged(self, session_factory, registry) -> None:
        _store(session_factory, "fanza-api", "ssis00865", _fanza_payload(title="SSIS-865"))
        driver = ProcessingDriver(session_factory, registry)

        stats = await driver.process_batch("fanza-api")

        assert stats.flagged == 1
        with session_factory() as session:
            assert ProductRepository(session).count() == 0
            flags = ReviewFlagRepository(session).list_open(source="fanza-api")
            assert [f.reason for f in flags] == [ReviewReason.PLACEHOLDER_TITLE]
            record = RawStore(session).get("fanza-api", "ssis00865")
            assert record.review_reason == ReviewReason.PLACEHOLDER_TITLE
            assert RawLinkTable(session).links_for_raw("fanza-api", str(record.id)) == []

        assert (await driver.process_batch("fanza-api")).processed == 0

    @pytest.mark.asyncio
    async def test_flagged_record_is_retried_after_fix(self, session_factory, registry) -> None:
        _store(session_factory, "fanza-api", "ssis00865", _fanza_payload(title="SSIS-865"))
        driver = ProcessingDriver(session_factory, registry)
        await driver.process_batch("fanza-api")

        _store(session_factory, "fanza-api", "ssis00865", _fanza_payload())
        stats = await driver.process_batch("fanza-api")

        assert stats.created == 1

    @pytest.mark.asyncio
    async def test_unparseable_payload_is_flagged(self, session_factory, registry) -> None:
        _store(session_factory, "fanza-api", "broken", b"{not json")

        stats = await ProcessingDriver(session_factory, registry).process_batch("fanza-api")

        assert stats.flagged == 1
        with session_factory() as session:
            assert RawStore(session).get("fanza-api", "broken").review_reason == ReviewReason.UNPARSEABLE

    @pytest.mark.asyncio
    async def test_unexpected_error_leaves_record_unprocessed(
        self, session_factory, registry, monkeypatch
    ) -> None:
        _store(session_factory, "fanza-api", "ssis00865", _fanza_payload())
        driver = ProcessingDriver(session_factory, registry)

        def boom(*args, **kwargs):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(driver, "_write", boom)
        stats = await driver.process_batch("fanza-api")

        assert stats.errors == 1
        assert "disk on fire" in stats.error_messages[0]
        with session_factory() as session:
            record = RawStore(session).get("fanza-api", "ssis00865")
            assert record.processed_at is None
            assert record.review_reason is None

    @pytest.mark.asyncio
    async def test_unknown_source_is_fatal(self, session_factory, registry) -> None:
        with pytest.raises(FatalIngestionError):
            await ProcessingDriver(session_factory, registry).process_batch("nope")


class TestStopping:
    """Tests for cooperative stop and the time budget."""

    @pytest.mark.asyncio
    async def test_stop_before_start(self, session_factory, registry) -> None:
        _store(session_factory, "fanza-api", "ssis00865", _fanza_payload())
        driver = ProcessingDriver(session_factory, registry)
        driver.stop()

        stats = await driver.process_batch("fanza-api")

        assert stats.stopped
        assert stats.processed == 0

    @pytest.mark.asyncio
    async def test_time_budget(self, session_factory, registry) -> None:
        for number in (865, 866, 867):
            _store(
                session_factory, "fanza-api", f"ssis00{number}",
                _fanza_payload(content_id=f"ssis00{number}"),
            )
        ticks = iter([0.0, 5.0])

        def clock() -> float:
            return next(ticks, 100.0)

        driver = ProcessingDriver(session_factory, registry, time_budget_seconds=10, clock=clock)
        stats = await driver.process_batch("fanza-api")

        assert stats.created == 1
        assert stats.stopped
        with session_factory() as session:
            assert len(RawStore(session).list_unprocessed(source="fanza-api")) == 2


class TestEnrichment:
    """Tests for the reference lookup fallback."""

    @pytest.mark.asyncio
    async def test_lookup_supplies_missing_performers(self, session_factory, registry) -> None:
        _store(session_factory, "mgs-html", "SSIS-865", MGS_PAGE.encode("utf-8"))
        lookup = NamesLookup(["河北彩花"])
        driver = ProcessingDriver(
            session_factory, registry, lookup_chain=LookupChain([lookup]), enrich=True
        )

        stats = await driver.process_batch("mgs-html")

        assert stats.created == 1
        assert lookup.codes == ["SSIS-865"]
        with session_factory() as session:
            product = ProductRepository(session).get_by_normalized_id("SSIS-865")
            assert [p.name for p in PerformerRepository(session).list_for_product(product.id)] == ["河北彩花"]

    @pytest.mark.asyncio
    async def test_no_lookup_without_enrich(self, session_factory, registry) -> None:
        _store(session_factory, "mgs-html", "SSIS-865", MGS_PAGE.encode("utf-8"))
        lookup = NamesLookup(["河北彩花"])
        driver = ProcessingDriver(session_factory, registry, lookup_chain=LookupChain([lookup]))

        await driver.process_batch("mgs-html")

        assert lookup.codes == []

    @pytest.mark.asyncio
    async def test_no_lookup_when_payload_has_performers(self, session_factory, registry) -> None:
        _store(session_factory, "fanza-api", "ssis00865", _fanza_payload())
        lookup = NamesLookup(["河北彩花"])
        driver = ProcessingDriver(
            session_factory, registry, lookup_chain=LookupChain([lookup]), enrich=True
        )

        await driver.process_batch("fanza-api")

        assert lookup.codes == []

    @pytest.mark.asyncio
    async def test_failed_lookup_is_retried_by_enrichment_pass(self, session_factory, registry) -> None:
        """A timeout on the first run is recovered by the next enrichment pass."""
        _store(session_factory, "mgs-html", "SSIS-865", MGS_PAGE.encode("utf-8"))
        lookup = FlakyLookup(["三上悠亜"], failures=1)
        driver = ProcessingDriver(
            session_factory, registry, lookup_chain=LookupChain([lookup]), enrich=True
        )

        first = await driver.process_batch("mgs-html")

        assert first.created == 1
        assert first.lookup_failures == 1
        with session_factory() as session:
            product = ProductRepository(session).get_by_normalized_id("SSIS-865")
            assert PerformerRepository(session).list_for_product(product.id) == []
            assert RawStore(session).get("mgs-html", "SSIS-865").processed_at is not None

        second = await driver.enrich_performerless()

        assert (second.updated, second.errors, second.lookup_failures) == (1, 0, 0)
        assert lookup.calls == 2
        with session_factory() as session:
            names = [p.name for p in PerformerRepository(session).list_for_product(product.id)]
            assert names == ["三上悠亜"]

        third = await driver.enrich_performerless()
        assert third.processed == 0
        assert lookup.calls == 2

    @pytest.mark.asyncio
    async def test_enrichment_failure_is_reported(self, session_factory, registry) -> None:
        _store(session_factory, "mgs-html", "SSIS-865", MGS_PAGE.encode("utf-8"))
        lookup = FlakyLookup(["三上悠亜"], failures=2)
        driver = ProcessingDriver(session_factory, registry, lookup_chain=LookupChain([lookup]))
        await driver.process_batch("mgs-html")

        stats = await driver.enrich_performerless("mgs-html")

        assert stats.errors == 1
        assert stats.lookup_failures == 1
        assert "SSIS-865" in stats.error_messages[0]

    @pytest.mark.asyncio
    async def test_enrichment_without_answer_is_skipped(self, session_factory, registry) -> None:
        _store(session_factory, "mgs-html", "SSIS-865", MGS_PAGE.encode("utf-8"))
        lookup = NamesLookup([])
        driver = ProcessingDriver(session_factory, registry, lookup_chain=LookupChain([lookup]))
        await driver.process_batch("mgs-html")

        stats = await driver.enrich_performerless()

        assert (stats.updated, stats.skipped, stats.errors) == (0, 1, 0)
        assert lookup.codes == ["SSIS-865"]

    @pytest.mark.asyncio
    async def test_enrichment_is_scoped_to_source(self, session_factory, registry) -> None:
        _store(session_factory, "mgs-html", "SSIS-865", MGS_PAGE.encode("utf-8"))
        lookup = NamesLookup(["三上悠亜"])
        driver = ProcessingDriver(session_factory, registry, lookup_chain=LookupChain([lookup]))
        await driver.process_batch("mgs-html")

        stats = await driver.enrich_performerless("fanza-api")

        assert stats.processed == 0
        assert lookup.codes == []

    @pytest.mark.asyncio
    async def test_enrichment_requires_lookup_chain(self, session_factory, registry) -> None:
        with pytest.raises(FatalIngestionError):
            await ProcessingDriver(session_factory, registry).enrich_performerless()


class TestIdentityConflicts:
    """A listing whose code changes keeps its binding and is sent to review."""

    @pytest.mark.asyncio
    async def test_changed_code_opens_review_flag(self, session_factory, registry) -> None:
        _store(session_factory, "fanza-api", "p1", _fanza_payload(content_id="ssis00865"))
        driver = ProcessingDriver(session_factory, registry)
        await driver.process_batch("fanza-api")
        _store(session_factory, "fanza-api", "p1", _fanza_payload(content_id="ssis00866"))

        stats = await driver.process_batch("fanza-api")

        assert (stats.updated, stats.conflicts, stats.errors) == (1, 1, 0)
        with session_factory() as session:
            products = ProductRepository(session)
            assert products.count() == 1
            assert products.get_by_normalized_id("SSIS-866") is None
            assert ProductSourceRepository(session).get_by_asp_key("FANZA", "p1").product_id == (
                products.get_by_normalized_id("SSIS-865").id
            )
            flags = ReviewFlagRepository(session).list_open("fanza-api")
            assert [f.reason for f in flags] == [ReviewReason.IDENTITY_CONFLICT]
            assert flags[0].source_product_id == "p1"
            assert "SSIS-866" in flags[0].detail
            assert RawStore(session).get("fanza-api", "p1").processed_at is not None

    @pytest.mark.asyncio
    async def test_conflict_is_flagged_once_while_open(self, session_factory, registry) -> None:
        _store(session_factory, "fanza-api", "p1", _fanza_payload(content_id="ssis00865"))
        driver = ProcessingDriver(session_factory, registry)
        await driver.process_batch("fanza-api")
        _store(session_factory, "fanza-api", "p1", _fanza_payload(content_id="ssis00866"))
        await driver.process_batch("fanza-api")
        _store(session_factory, "fanza-api", "p1", _fanza_payload(content_id="ssis00866", volume="125"))

        stats = await driver.process_batch("fanza-api")

        assert stats.conflicts == 1
        with session_factory() as session:
            assert ReviewFlagRepository(session).count_open("fanza-api") == 1


class TestConcurrency:
    """Concurrent units racing on the same canonical product."""

    @pytest.mark.asyncio
    async def test_sources_sharing_a_code_collapse_to_one_product(
        self, session_factory, registry
    ) -> None:
        names = [f"asp{i}-api" for i in range(6)]
        for i, name in enumerate(names):
            registry.register(
                SourceConfig(
                    name=name,
                    asp_name=f"ASP{i}",
                    adapter="json_api",
                    data_source=DataSourceKind.API,
                    priority=10 + i,
                )
            )
            _store(session_factory, name, "ssis00865", _fanza_payload())
        driver = ProcessingDriver(session_factory, registry, concurrency=6)

        batches = await asyncio.gather(*(driver.process_batch(name) for name in names))

        total = BatchStats(source="all")
        for stats in batches:
            total.absorb(stats)
        assert total.errors == 0
        assert total.error_messages == []
        assert (total.created, total.updated) == (1, 5)
        with session_factory() as session:
            products = ProductRepository(session)
            assert products.count() == 1
            assert ProductSourceRepository(session).count() == 6
            product = products.get_by_normalized_id("SSIS-865")
            assert len(RawLinkTable(session).links_for_product(product.id)) == 6


class TestBatchStats:
    def test_record_and_absorb(self) -> None:
        stats = BatchStats(source="fanza-api")
        for outcome in (UnitOutcome.CREATED, UnitOutcome.SKIPPED, UnitOutcome.FLAGGED, UnitOutcome.ERROR):
            stats.record(outcome)
        other = BatchStats(source="mgs-html", updated=2, stopped=True, error_messages=["x"])

        stats.absorb(other)

        assert stats.processed == 4
        assert stats.flagged == 1
        assert stats.errors == 1
        assert stats.stopped
        assert stats.error_messages == ["x"]

    def test_dict_round_trip(self) -> None:
        stats = BatchStats(
            source="fanza-api", created=3, errors=1, conflicts=2, lookup_failures=1,
            error_messages=["boom"],
        )
        restored = BatchStats.from_dict(json.loads(json.dumps(stats.to_dict())))
        assert restored == stats
