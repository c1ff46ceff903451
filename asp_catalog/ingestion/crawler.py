"""
Fetcher Module
==============

HTTP fetching of product pages and API payloads with per-host rate
limiting and retries, feeding the raw store.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import httpx

from asp_catalog.core.enums import DataSourceKind
from asp_catalog.ingestion.adapters.csv_feed import CsvFeedAdapter, iter_csv_rows
from asp_catalog.ingestion.hashing import compute_hash
from asp_catalog.ingestion.lookup import RETRYABLE_STATUS_CODES, HostRateLimiter
from asp_catalog.ingestion.storage import RawRecordNotFound

if TYPE_CHECKING:
    from asp_catalog.ingestion.registry import SourceConfig
    from asp_catalog.ingestion.storage import RawStore

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    """Result of fetching a URL."""

    url: str
    content: bytes
    content_hash: str
    mime_type: str
    status_code: int
    fetched_at: datetime
    attempts: int = 1
    error: str | None = None

    @property
    def success(self) -> bool:
        """Check if fetch was successful."""
        return self.error is None and 200 <= self.status_code < 300


@dataclass
class FetchSummary:
    """Counts from storing a batch of fetched or fed payloads."""

    new: int = 0
    changed: int = 0
    unchanged: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def stored(self) -> int:
        return self.new + self.changed + self.unchanged


def _store_payload(
    raw_store: RawStore,
    summary: FetchSummary,
    source: str,
    source_product_id: str,
    body: bytes,
    url: str | None,
    mime_type: str,
) -> None:
    """Put one payload and count it as new, changed or unchanged."""
    try:
        previous_hash: str | None = raw_store.get(source, source_product_id).content_hash
    except RawRecordNotFound:
        previous_hash = None

    raw_store.put(source, source_product_id, body, url=url, mime_type=mime_type)
    if previous_hash is None:
        summary.new += 1
    elif previous_hash == compute_hash(body):
        summary.unchanged += 1
    else:
        summary.changed += 1


class Fetcher:
    """
    HTTP fetcher with rate limiting and retries.

    Features:
    - Per-host minimum interval through a shared HostRateLimiter
    - Retries with exponential backoff on timeouts, 429 and 5xx
    - Explicit timeouts on every request
    """

    def __init__(
        self,
        user_agent: str = "ASPCatalog/0.1",
        timeout: float = 30.0,
        max_retries: int = 3,
        limiter: HostRateLimiter | None = None,
        client: httpx.AsyncClient | None = None,
        backoff_base: float = 1.0,
    ) -> None:
        self.user_agent = user_agent
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.limiter = limiter or HostRateLimiter()
        self.client = client
        self.backoff_base = backoff_base

    def _failure(self, url: str, fetched_at: datetime, attempts: int, error: str, status: int = 0) -> FetchResult:
        return FetchResult(
            url=url,
            content=b"",
            content_hash="",
            mime_type="",
            status_code=status,
            fetched_at=fetched_at,
            attempts=attempts,
            error=error,
        )

    async def _fetch(
        self, client: httpx.AsyncClient, url: str, min_interval_seconds: float | None
    ) -> FetchResult:
        fetched_at = datetime.now(timezone.utc)
        last_error: str | None = None
        last_status = 0

        for attempt in range(self.max_retries):
            await self.limiter.acquire(url, min_interval_seconds)
            try:
                response = await client.get(
                    url,
                    headers={"User-Agent": self.user_agent},
                    follow_redirects=True,
                )
                if response.status_code in RETRYABLE_STATUS_CODES:
                    last_status = response.status_code
                    last_error = f"HTTP {response.status_code}"
                    logger.warning(
                        f"HTTP {response.status_code} fetching {url} "
                        f"(attempt {attempt + 1}/{self.max_retries})"
                    )
                elif response.status_code >= 400:
                    return self._failure(
                        url, fetched_at, attempt + 1,
                        f"HTTP {response.status_code}", response.status_code,
                    )
                else:
                    content = response.content
                    mime_type = response.headers.get("content-type", "").split(";")[0].strip()
                    return FetchResult(
                        url=url,
                        content=content,
                        content_hash=compute_hash(content),
                        mime_type=mime_type,
                        status_code=response.status_code,
                        fetched_at=fetched_at,
                        attempts=attempt + 1,
                    )

            except httpx.TimeoutException:
                last_error = f"Timeout after {self.timeout}s"
                logger.warning(f"Timeout fetching {url} (attempt {attempt + 1}/{self.max_retries})")
            except httpx.HTTPError as e:
                last_error = str(e)
                logger.warning(f"HTTP error fetching {url}: {e} (attempt {attempt + 1}/{self.max_retries})")

            # Wait before retry with exponential backoff
            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.backoff_base * 2**attempt)

        return self._failure(
            url, fetched_at, self.max_retries, last_error or "Unknown error", last_status
        )

    async def fetch(self, url: str, min_interval_seconds: float | None = None) -> FetchResult:
        """
        Fetch a URL with rate limiting and retries.

        Args:
            url: URL to fetch
            min_interval_seconds: Per-host interval override (the source's rate limit)

        Returns:
            FetchResult with content or error
        """
        if self.client is not None:
            return await self._fetch(self.client, url, min_interval_seconds)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await self._fetch(client, url, min_interval_seconds)

    async def fetch_into_store(
        self,
        source: SourceConfig,
        product_ids: list[str],
        raw_store: RawStore,
        concurrency: int = 4,
    ) -> FetchSummary:
        """
        Fetch product payloads for a source and store them as raw records.

        Args:
            source: Source configuration with a url_template
            product_ids: The source's own product identifiers
            raw_store: Store receiving the payloads (caller commits)
            concurrency: Maximum concurrent requests

        Returns:
            FetchSummary of new, changed, unchanged and failed payloads
        """
        summary = FetchSummary()
        semaphore = asyncio.Semaphore(max(1, concurrency))
        interval = source.rate_limit.min_interval_seconds

        async def fetch_one(product_id: str) -> None:
            url = source.build_url(product_id)
            async with semaphore:
                result = await self.fetch(url, interval)
            if not result.success:
                summary.failed += 1
                summary.errors.append(f"{product_id}: {result.error}")
                return
            mime_type = result.mime_type or (
                "application/json" if source.data_source == DataSourceKind.API else "text/html"
            )
            _store_payload(
                raw_store, summary, source.name, product_id, result.content, url, mime_type
            )

        await asyncio.gather(*(fetch_one(pid) for pid in product_ids))
        logger.info(
            f"Fetched {source.name}: {summary.new} new, {summary.changed} changed, "
            f"{summary.unchanged} unchanged, {summary.failed} failed"
        )
        return summary


def store_csv_feed(source: SourceConfig, text: str, raw_store: RawStore) -> FetchSummary:
    """
    Store each row of a CSV feed as its own raw record.

    Rows are stored as canonical JSON so an unchanged row keeps its hash.
    Rows without a product id are counted as failed.
    """
    adapter = CsvFeedAdapter(source.adapter_config)
    summary = FetchSummary()
    for line_number, row in enumerate(iter_csv_rows(text), start=2):
        product_id = adapter.row_key(row)
        if not product_id:
            summary.failed += 1
            summary.errors.append(f"line {line_number}: no product id")
            continue

        try:
            previous_hash: str | None = raw_store.get(source.name, product_id).content_hash
        except RawRecordNotFound:
            previous_hash = None
        record = raw_store.put_json(source.name, product_id, row)
        if previous_hash is None:
            summary.new += 1
        elif previous_hash == record.content_hash:
            summary.unchanged += 1
        else:
            summary.changed += 1

    logger.info(
        f"Stored CSV feed for {source.name}: {summary.new} new, {summary.changed} changed, "
        f"{summary.unchanged} unchanged, {summary.failed} skipped"
    )
    return summary
