"""
Raw Store Module
================

Durable storage for raw payloads keyed by (source, source_product_id),
with content-hash change detection. Large bodies are offloaded to an
object store and only a reference is kept in the database row.
"""

from __future__ import annotations

import gzip
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from asp_catalog.core.enums import ReviewReason
from asp_catalog.core.schema import RawRecord
from asp_catalog.db.models import RawRecordDB
from asp_catalog.ingestion.errors import FatalIngestionError, IngestionError
from asp_catalog.ingestion.hashing import canonical_json_bytes, compute_hash

logger = logging.getLogger(__name__)

DEFAULT_INLINE_LIMIT_BYTES = 64 * 1024


def _utc_now() -> datetime:
    return datetime.now(UTC)


class RawRecordNotFound(IngestionError):
    """Raised when a (source, source_product_id) key has no raw record."""

    def __init__(self, source: str, source_product_id: str):
        self.source = source
        self.source_product_id = source_product_id
        super().__init__(f"No raw record for {source}:{source_product_id}")


# ============================================================================
# Object Store
# ============================================================================


class ObjectStore(ABC):
    """
    Abstract base class for large-payload storage.

    Implementations must make put_bytes idempotent per key so that a
    retried write after a crash leaves the same object behind.
    """

    @abstractmethod
    def put_bytes(self, key: str, content: bytes) -> str:
        """
        Store bytes under a key.

        Args:
            key: Storage key (content-addressed by the caller)
            content: Raw bytes to store

        Returns:
            URL that get_bytes() accepts
        """
        pass

    @abstractmethod
    def get_bytes(self, url: str) -> bytes:
        """
        Read back bytes previously stored.

        Raises:
            FileNotFoundError: If nothing is stored at the URL
        """
        pass


class LocalFileObjectStore(ObjectStore):
    """
    Local filesystem object store.

    Directory structure:
        {base_path}/{key}.gz

    Files are gzip compressed and written atomically (temp file + rename).
    """

    def __init__(self, base_path: str | Path) -> None:
        self.base_path = Path(base_path).expanduser().resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path_for_key(self, key: str) -> Path:
        path = (self.base_path / f"{key}.gz").resolve()
        if self.base_path not in path.parents:
            raise ValueError(f"Object key escapes the store root: {key}")
        return path

    def put_bytes(self, key: str, content: bytes) -> str:
        """Write gzip-compressed bytes; an existing object is left as is."""
        path = self._path_for_key(key)
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(gzip.compress(content))
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        return path.as_uri()

    def get_bytes(self, url: str) -> bytes:
        """Read and decompress an object by its file:// URL."""
        parsed = urlparse(url)
        if parsed.scheme != "file":
            raise ValueError(f"Unsupported object URL: {url}")
        path = Path(unquote(parsed.path))
        with gzip.open(path, "rb") as f:
            return f.read()


def _slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-") or "source"


# ============================================================================
# Raw Store
# ============================================================================


class RawStore:
    """
    Raw payload store with content-hash change detection.

    Writing identical bytes twice is a no-op apart from fetched_at.
    Writing different bytes clears processed_at (and any review annotation)
    so the record is picked up again by the processing driver.
    """

    def __init__(
        self,
        session: Session,
        object_store: ObjectStore | None = None,
        inline_limit_bytes: int = DEFAULT_INLINE_LIMIT_BYTES,
    ) -> None:
        self.session = session
        self.object_store = object_store
        self.inline_limit_bytes = inline_limit_bytes

    def _get_db(self, source: str, source_product_id: str) -> RawRecordDB | None:
        stmt = select(RawRecordDB).where(
            RawRecordDB.source == source,
            RawRecordDB.source_product_id == source_product_id,
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def _place_body(
        self, source: str, content_hash: str, body: bytes
    ) -> tuple[bytes | None, str | None]:
        """Decide inline vs external storage; external bytes are written here."""
        if self.object_store is None or len(body) <= self.inline_limit_bytes:
            return body, None
        key = f"{_slugify(source)}/{content_hash[:2]}/{content_hash}"
        return None, self.object_store.put_bytes(key, body)

    def put(
        self,
        source: str,
        source_product_id: str,
        body: bytes,
        url: str | None = None,
        mime_type: str = "application/octet-stream",
    ) -> RawRecord:
        """
        Insert or overwrite the raw record for a source key.

        Args:
            source: Source name
            source_product_id: The source's own product identifier
            body: Raw payload bytes
            url: Where the payload was fetched from (optional)
            mime_type: Payload MIME type

        Returns:
            The stored RawRecord
        """
        content_hash = compute_hash(body)
        now = _utc_now()

        db_item = self._get_db(source, source_product_id)
        if db_item is not None and db_item.content_hash == content_hash:
            db_item.fetched_at = now
            if url:
                db_item.url = url
            self.session.flush()
            return self._to_domain(db_item)

        # Object bytes go first so a committed row never points at nothing
        inline_body, body_url = self._place_body(source, content_hash, body)

        if db_item is None:
            db_item = RawRecordDB(
                source=source,
                source_product_id=source_product_id,
                url=url,
                body=inline_body,
                body_url=body_url,
                content_hash=content_hash,
                mime_type=mime_type,
                size_bytes=len(body),
                fetched_at=now,
            )
            try:
                with self.session.begin_nested():
                    self.session.add(db_item)
                    self.session.flush()
                logger.debug(f"Stored new raw record {source}:{source_product_id}")
                return self._to_domain(db_item)
            except IntegrityError:
                # A concurrent writer inserted the same key first
                db_item = self._get_db(source, source_product_id)
                if db_item is None:
                    raise
                if db_item.content_hash == content_hash:
                    return self._to_domain(db_item)

        db_item.url = url or db_item.url
        db_item.body = inline_body
        db_item.body_url = body_url
        db_item.content_hash = content_hash
        db_item.mime_type = mime_type
        db_item.size_bytes = len(body)
        db_item.fetched_at = now
        db_item.processed_at = None
        db_item.review_reason = None
        db_item.review_detail = None
        self.session.flush()
        logger.debug(f"Raw record {source}:{source_product_id} changed, hash {content_hash[:12]}")
        return self._to_domain(db_item)

    def put_json(
        self,
        source: str,
        source_product_id: str,
        data: Any,
        url: str | None = None,
    ) -> RawRecord:
        """Store a JSON payload in canonical (sorted-key) form."""
        return self.put(
            source,
            source_product_id,
            canonical_json_bytes(data),
            url=url,
            mime_type="application/json",
        )

    def get(self, source: str, source_product_id: str) -> RawRecord:
        """
        Get a raw record by its key.

        Raises:
            RawRecordNotFound: If the key has never been stored
        """
        db_item = self._get_db(source, source_product_id)
        if db_item is None:
            raise RawRecordNotFound(source, source_product_id)
        return self._to_domain(db_item)

    def read_body(self, record: RawRecord) -> bytes:
        """Return the payload bytes whether stored inline or externally."""
        if record.body is not None:
            return record.body
        if record.body_url is None:
            return b""
        if self.object_store is None:
            raise FatalIngestionError(
                f"Raw record {record.source}:{record.source_product_id} is stored "
                "externally but no object store is configured"
            )
        return self.object_store.get_bytes(record.body_url)

    def list_unprocessed(
        self,
        source: str | None = None,
        limit: int = 100,
        include_flagged: bool = False,
    ) -> list[RawRecord]:
        """
        List records awaiting processing, oldest fetch first.

        Flagged records are excluded unless include_flagged is set; they
        come back on their own once new content is stored.
        """
        stmt = select(RawRecordDB).where(RawRecordDB.processed_at.is_(None))
        if source:
            stmt = stmt.where(RawRecordDB.source == source)
        if not include_flagged:
            stmt = stmt.where(RawRecordDB.review_reason.is_(None))
        stmt = stmt.order_by(RawRecordDB.fetched_at, RawRecordDB.id).limit(limit)
        return [self._to_domain(r) for r in self.session.execute(stmt).scalars().all()]

    def mark_processed(self, source: str, source_product_id: str, at_hash: str) -> bool:
        """
        Set processed_at only if the stored hash still equals at_hash.

        Returns:
            False if the record changed (or vanished) since it was read
        """
        stmt = (
            update(RawRecordDB)
            .where(
                RawRecordDB.source == source,
                RawRecordDB.source_product_id == source_product_id,
                RawRecordDB.content_hash == at_hash,
            )
            .values(processed_at=_utc_now(), review_reason=None, review_detail=None)
            .execution_options(synchronize_session="evaluate")
        )
        result = self.session.execute(stmt)
        if result.rowcount != 1:
            logger.warning(
                f"Raw record {source}:{source_product_id} changed before it could be "
                f"marked processed at {at_hash[:12]}"
            )
            return False
        return True

    def flag(
        self,
        source: str,
        source_product_id: str,
        reason: ReviewReason,
        detail: str = "",
    ) -> bool:
        """Annotate a record for review; processed_at stays NULL."""
        stmt = (
            update(RawRecordDB)
            .where(
                RawRecordDB.source == source,
                RawRecordDB.source_product_id == source_product_id,
            )
            .values(review_reason=reason.value, review_detail=detail or None)
            .execution_options(synchronize_session="evaluate")
        )
        return self.session.execute(stmt).rowcount == 1

    def find_by_hash(self, content_hash: str) -> list[RawRecord]:
        """Find records carrying identical content, across sources and keys."""
        stmt = (
            select(RawRecordDB)
            .where(RawRecordDB.content_hash == content_hash)
            .order_by(RawRecordDB.source, RawRecordDB.source_product_id)
        )
        return [self._to_domain(r) for r in self.session.execute(stmt).scalars().all()]

    def stats(self, source: str | None = None) -> dict[str, int]:
        """Counts of records by processing state and storage location."""

        def _count(*conditions) -> int:
            stmt = select(func.count()).select_from(RawRecordDB)
            if source:
                stmt = stmt.where(RawRecordDB.source == source)
            for condition in conditions:
                stmt = stmt.where(condition)
            return self.session.execute(stmt).scalar() or 0

        return {
            "total": _count(),
            "processed": _count(RawRecordDB.processed_at.is_not(None)),
            "unprocessed": _count(
                RawRecordDB.processed_at.is_(None), RawRecordDB.review_reason.is_(None)
            ),
            "flagged": _count(
                RawRecordDB.processed_at.is_(None), RawRecordDB.review_reason.is_not(None)
            ),
            "external": _count(RawRecordDB.body_url.is_not(None)),
        }

    def _to_domain(self, db_item: RawRecordDB) -> RawRecord:
        """Convert database model to domain model."""
        return RawRecord(
            id=UUID(db_item.id),
            source=db_item.source,
            source_product_id=db_item.source_product_id,
            url=db_item.url,
            body=db_item.body,
            body_url=db_item.body_url,
            content_hash=db_item.content_hash,
            mime_type=db_item.mime_type,
            size_bytes=db_item.size_bytes,
            fetched_at=db_item.fetched_at,
            processed_at=db_item.processed_at,
            review_reason=ReviewReason(db_item.review_reason) if db_item.review_reason else None,
            review_detail=db_item.review_detail,
        )


def get_default_object_store() -> ObjectStore:
    """
    Get the default object store instance.

    Uses OBJECT_STORE_PATH environment variable or defaults to
    ~/.asp_catalog/objects
    """
    base_path = os.environ.get("OBJECT_STORE_PATH", "~/.asp_catalog/objects")
    return LocalFileObjectStore(base_path)
