"""Tests for the raw store, the object store and content hashing."""

import pytest
from sqlalchemy.orm import Session

from asp_catalog.core.enums import ProcessingState, ReviewReason
from asp_catalog.ingestion.errors import FatalIngestionError
from asp_catalog.ingestion.hashing import canonical_json_bytes, compute_hash, compute_json_hash
from asp_catalog.ingestion.storage import LocalFileObjectStore, RawRecordNotFound, RawStore


class TestHashing:
    """Tests for content hashing helpers."""

    def test_compute_hash_is_sha256_hex(self) -> None:
        digest = compute_hash(b"abc")
        assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"

    def test_json_hash_ignores_key_order(self) -> None:
        assert compute_json_hash({"a": 1, "b": "x"}) == compute_json_hash({"b": "x", "a": 1})

    def test_canonical_json_keeps_non_ascii(self) -> None:
        assert canonical_json_bytes({"title": "新作"}) == '{"title":"新作"}'.encode("utf-8")


class TestLocalFileObjectStore:
    """Tests for LocalFileObjectStore."""

    def test_put_and_get_round_trip(self, tmp_path) -> None:
        store = LocalFileObjectStore(tmp_path / "objects")
        url = store.put_bytes("fanza/ab/abcdef", b"payload")

        assert url.startswith("file://")
        assert store.get_bytes(url) == b"payload"

    def test_put_is_idempotent_per_key(self, tmp_path) -> None:
        store = LocalFileObjectStore(tmp_path / "objects")
        first = store.put_bytes("k", b"one")
        second = store.put_bytes("k", b"one")
        assert first == second

    def test_key_cannot_escape_root(self, tmp_path) -> None:
        store = LocalFileObjectStore(tmp_path / "objects")
        with pytest.raises(ValueError):
            store.put_bytes("../outside", b"x")

    def test_get_missing_object(self, tmp_path) -> None:
        store = LocalFileObjectStore(tmp_path / "objects")
        with pytest.raises(FileNotFoundError):
            store.get_bytes((tmp_path / "objects" / "missing.gz").as_uri())


class TestRawStore:
    """Tests for RawStore."""

    def test_put_new_record(self, session: Session) -> None:
        store = RawStore(session)
        record = store.put("fanza-api", "ssis00865", b'{"a":1}', url="https://x/1")

        assert record.source == "fanza-api"
        assert record.source_product_id == "ssis00865"
        assert record.content_hash == compute_hash(b'{"a":1}')
        assert record.size_bytes == 7
        assert record.processed_at is None
        assert record.state == ProcessingState.NEEDS_PROCESSING

    def test_identical_put_keeps_processed_state(self, session: Session) -> None:
        store = RawStore(session)
        record = store.put("fanza-api", "p1", b"same")
        assert store.mark_processed("fanza-api", "p1", record.content_hash)

        again = store.put("fanza-api", "p1", b"same")

        assert again.id == record.id
        assert again.processed_at is not None
        assert again.fetched_at >= record.fetched_at

    def test_changed_put_clears_processed_and_review(self, session: Session) -> None:
        store = RawStore(session)
        record = store.put("fanza-api", "p1", b"v1")
        store.mark_processed("fanza-api", "p1", record.content_hash)
        store.flag("fanza-api", "p1", ReviewReason.UNPARSEABLE, "bad")

        changed = store.put("fanza-api", "p1", b"v2")

        assert changed.id == record.id
        assert changed.content_hash == compute_hash(b"v2")
        assert changed.processed_at is None
        assert changed.review_reason is None

    def test_get_missing_raises(self, session: Session) -> None:
        with pytest.raises(RawRecordNotFound):
            RawStore(session).get("fanza-api", "nope")

    def test_put_json_is_key_order_independent(self, session: Session) -> None:
        store = RawStore(session)
        first = store.put_json("b10f-csv", "1", {"品番": "ABC-001", "タイトル": "作品"})
        second = store.put_json("b10f-csv", "1", {"タイトル": "作品", "品番": "ABC-001"})

        assert first.content_hash == second.content_hash
        assert second.mime_type == "application/json"

    def test_mark_processed_requires_matching_hash(self, session: Session) -> None:
        store = RawStore(session)
        old = store.put("mgs-html", "p1", b"old")
        store.put("mgs-html", "p1", b"new")

        assert store.mark_processed("mgs-html", "p1", old.content_hash) is False
        assert store.get("mgs-html", "p1").processed_at is None

    def test_list_unprocessed_excludes_processed_and_flagged(self, session: Session) -> None:
        store = RawStore(session)
        done = store.put("fanza-api", "done", b"1")
        store.put("fanza-api", "todo", b"2")
        store.put("fanza-api", "flagged", b"3")
        store.put("mgs-html", "other", b"4")
        store.mark_processed("fanza-api", "done", done.content_hash)
        store.flag("fanza-api", "flagged", ReviewReason.PLACEHOLDER_TITLE)

        pending = store.list_unprocessed(source="fanza-api")
        assert [r.source_product_id for r in pending] == ["todo"]

        with_flagged = store.list_unprocessed(source="fanza-api", include_flagged=True)
        assert {r.source_product_id for r in with_flagged} == {"todo", "flagged"}

    def test_flagged_record_returns_when_content_changes(self, session: Session) -> None:
        store = RawStore(session)
        store.put("fanza-api", "p1", b"placeholder")
        store.flag("fanza-api", "p1", ReviewReason.PLACEHOLDER_TITLE)
        assert store.list_unprocessed(source="fanza-api") == []

        store.put("fanza-api", "p1", b"fixed")
        assert [r.source_product_id for r in store.list_unprocessed(source="fanza-api")] == ["p1"]

    def test_large_body_goes_to_object_store(self, session: Session, tmp_path) -> None:
        object_store = LocalFileObjectStore(tmp_path / "objects")
        store = RawStore(session, object_store=object_store, inline_limit_bytes=16)
        body = b"x" * 100

        record = store.put("mgs-html", "big", body)

        assert record.body is None
        assert record.is_external
        assert store.read_body(record) == body

    def test_external_body_without_object_store_is_fatal(self, session: Session, tmp_path) -> None:
        writer = RawStore(
            session, object_store=LocalFileObjectStore(tmp_path / "objects"), inline_limit_bytes=4
        )
        record = writer.put("mgs-html", "big", b"0123456789")

        with pytest.raises(FatalIngestionError):
            RawStore(session).read_body(record)

    def test_find_by_hash_across_sources(self, session: Session) -> None:
        store = RawStore(session)
        store.put("fanza-api", "a", b"dup")
        store.put("mgs-html", "b", b"dup")
        store.put("mgs-html", "c", b"unique")

        matches = store.find_by_hash(compute_hash(b"dup"))
        assert [(r.source, r.source_product_id) for r in matches] == [
            ("fanza-api", "a"),
            ("mgs-html", "b"),
        ]

    def test_stats(self, session: Session) -> None:
        store = RawStore(session)
        done = store.put("fanza-api", "done", b"1")
        store.put("fanza-api", "todo", b"2")
        store.put("fanza-api", "flagged", b"3")
        store.mark_processed("fanza-api", "done", done.content_hash)
        store.flag("fanza-api", "flagged", ReviewReason.UNPARSEABLE)

        stats = store.stats("fanza-api")
        assert stats == {
            "total": 3,
            "processed": 1,
            "unprocessed": 1,
            "flagged": 1,
            "external": 0,
        }
