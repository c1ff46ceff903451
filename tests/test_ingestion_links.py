"""Tests for the raw-to-canonical link table."""

from sqlalchemy.orm import Session

from asp_catalog.core.schema import CanonicalProduct
from asp_catalog.db.repositories import ProductRepository
from asp_catalog.ingestion.links import RawLinkTable


def _product(session: Session, normalized_id: str) -> CanonicalProduct:
    return ProductRepository(session).create(CanonicalProduct(normalized_product_id=normalized_id))


class TestRawLinkTable:
    """Tests for RawLinkTable."""

    def test_record_link_creates_once(self, session: Session) -> None:
        product = _product(session, "SSIS-865")
        links = RawLinkTable(session)

        first = links.record_link(product.id, "fanza-api", "raw-1", "a" * 64)
        second = links.record_link(product.id, "fanza-api", "raw-1", "b" * 64)

        assert first.id == second.id
        assert second.content_hash_at_processing == "b" * 64
        assert len(links.links_for_product(product.id)) == 1

    def test_needs_reprocessing_tracks_hash(self, session: Session) -> None:
        product = _product(session, "SSIS-865")
        links = RawLinkTable(session)

        assert links.needs_reprocessing("fanza-api", "raw-1", "a" * 64)
        links.record_link(product.id, "fanza-api", "raw-1", "a" * 64)
        assert not links.needs_reprocessing("fanza-api", "raw-1", "a" * 64)
        assert links.needs_reprocessing("fanza-api", "raw-1", "c" * 64)

    def test_links_for_raw(self, session: Session) -> None:
        first = _product(session, "SSIS-865")
        second = _product(session, "SSIS-866")
        links = RawLinkTable(session)
        links.record_link(first.id, "fanza-api", "raw-1", "a" * 64)
        links.record_link(second.id, "fanza-api", "raw-1", "a" * 64)

        assert {l.canonical_product_id for l in links.links_for_raw("fanza-api", "raw-1")} == {
            first.id,
            second.id,
        }

    def test_repoint_moves_and_folds(self, session: Session) -> None:
        survivor = _product(session, "SSIS-865")
        loser = _product(session, "SSIS865-DUP")
        links = RawLinkTable(session)
        links.record_link(survivor.id, "fanza-api", "shared", "a" * 64)
        links.record_link(loser.id, "fanza-api", "shared", "b" * 64)
        links.record_link(loser.id, "mgs-html", "only-loser", "c" * 64)

        moved = links.repoint(loser.id, survivor.id)

        assert moved == 2
        assert links.links_for_product(loser.id) == []
        keys = {(l.source_type, l.raw_record_key) for l in links.links_for_product(survivor.id)}
        assert keys == {("fanza-api", "shared"), ("mgs-html", "only-loser")}
