"""
Reference Lookup Module
=======================

Fallback performer lookups by product code. Providers are queried in a
fixed priority order and the first non-empty answer wins. Network
providers share a per-host rate limiter so that every worker of a
process collectively respects the configured minimum delay.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING
from urllib.parse import quote, urlparse

import httpx
from bs4 import BeautifulSoup

from asp_catalog.db.repositories import PerformerIndexRepository
from asp_catalog.ingestion.cache import TTLCache
from asp_catalog.ingestion.errors import TransientError
from asp_catalog.ingestion.normalizer import ProductCodeNormalizer
from asp_catalog.ingestion.quality import sanitize_text

if TYPE_CHECKING:
    from sqlalchemy.orm import sessionmaker

    from asp_catalog.ingestion.registry import LookupProviderConfig, PerformerResolutionConfig

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


# ============================================================================
# Rate limiting
# ============================================================================


class HostRateLimiter:
    """
    Minimum-interval limiter keyed by host.

    One lock and one last-request timestamp per host. Concurrent callers
    for the same host queue on the lock, so the interval holds across all
    workers sharing the limiter.
    """

    def __init__(
        self,
        min_interval_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.min_interval_seconds = min_interval_seconds
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._last_request: dict[str, float] = {}

    @staticmethod
    def host_of(url: str) -> str:
        return urlparse(url).netloc or url

    def _lock_for(self, host: str) -> asyncio.Lock:
        lock = self._locks.get(host)
        if lock is None:
            lock = self._locks[host] = asyncio.Lock()
        return lock

    async def acquire(self, url: str, min_interval_seconds: float | None = None) -> None:
        """
        Wait until a request to url's host is allowed.

        Args:
            url: Target URL (or bare host)
            min_interval_seconds: Override of the limiter's default interval
        """
        interval = (
            self.min_interval_seconds if min_interval_seconds is None else min_interval_seconds
        )
        host = self.host_of(url)
        async with self._lock_for(host):
            last = self._last_request.get(host)
            if last is not None:
                wait = interval - (self._clock() - last)
                if wait > 0:
                    await asyncio.sleep(wait)
            self._last_request[host] = self._clock()


# ============================================================================
# Providers
# ============================================================================


class ReferenceLookup(ABC):
    """A source of performer names keyed by product code."""

    name: str = "reference"

    @abstractmethod
    async def search_by_product_code(self, code: str) -> list[str]:
        """
        Look up performer names for a product code.

        Returns:
            Names in the provider's order; empty if nothing was found
        """
        pass


class IndexLookup(ReferenceLookup):
    """Reads the locally maintained performer_index table."""

    def __init__(self, session_factory: sessionmaker, name: str = "index") -> None:
        self.session_factory = session_factory
        self.name = name

    def _find(self, code: str) -> list[str]:
        with self.session_factory() as session:
            repo = PerformerIndexRepository(session)
            return repo.find_names(ProductCodeNormalizer.code_key(code))

    async def search_by_product_code(self, code: str) -> list[str]:
        return await asyncio.to_thread(self._find, code)


class HttpReferenceLookup(ReferenceLookup):
    """
    Scrapes a reference site's search page for performer links.

    Once the retries for a request are exhausted the provider raises
    TransientError, so that an outage is never mistaken for "no names".
    """

    def __init__(
        self,
        name: str,
        url_template: str,
        link_selector: str = "a",
        limiter: HostRateLimiter | None = None,
        timeout: float = 10.0,
        max_retries: int = 2,
        min_interval_seconds: float | None = None,
        user_agent: str = "ASPCatalog/0.1",
        client: httpx.AsyncClient | None = None,
        backoff_base: float = 1.0,
    ) -> None:
        self.name = name
        self.url_template = url_template
        self.link_selector = link_selector
        self.limiter = limiter or HostRateLimiter()
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.min_interval_seconds = min_interval_seconds
        self.user_agent = user_agent
        self.client = client
        self.backoff_base = backoff_base
        self._normalizer = ProductCodeNormalizer()

    @classmethod
    def from_config(
        cls,
        config: LookupProviderConfig,
        limiter: HostRateLimiter,
        user_agent: str = "ASPCatalog/0.1",
        client: httpx.AsyncClient | None = None,
    ) -> HttpReferenceLookup:
        """Create a provider from its registry entry."""
        if not config.url_template:
            raise ValueError(f"Lookup provider '{config.name}' has no url_template")
        return cls(
            name=config.name,
            url_template=config.url_template,
            link_selector=config.link_selector,
            limiter=limiter,
            timeout=config.timeout,
            max_retries=config.max_retries,
            min_interval_seconds=config.min_interval_seconds,
            user_agent=user_agent,
            client=client,
        )

    def parse_names(self, html: str) -> list[str]:
        """Performer names from a search result page."""
        soup = BeautifulSoup(html, "html.parser")
        names: list[str] = []
        for element in soup.select(self.link_selector):
            name = sanitize_text(element.get_text(" ", strip=True))
            if name and name not in names:
                names.append(name)
        return names

    async def _get(self, client: httpx.AsyncClient, url: str) -> httpx.Response | None:
        """GET with retries; None once retries are exhausted."""
        for attempt in range(self.max_retries):
            await self.limiter.acquire(url, self.min_interval_seconds)
            try:
                response = await client.get(
                    url,
                    headers={"User-Agent": self.user_agent},
                    follow_redirects=True,
                )
                if response.status_code not in RETRYABLE_STATUS_CODES:
                    return response
                logger.warning(
                    f"Lookup {self.name} got HTTP {response.status_code} for {url} "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
            except httpx.TimeoutException:
                logger.warning(
                    f"Lookup {self.name} timed out for {url} "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
            except httpx.HTTPError as e:
                logger.warning(
                    f"Lookup {self.name} failed for {url}: {e} "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )

            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.backoff_base * 2**attempt)
        return None

    async def _search(self, client: httpx.AsyncClient, code: str) -> list[str]:
        for variant in self._normalizer.search_variants(code):
            url = self.url_template.format(code=quote(variant))
            response = await self._get(client, url)
            if response is None:
                # Provider unavailable; stop trying further spellings
                raise TransientError(f"Lookup provider {self.name} unavailable for {code}")
            if response.status_code != 200:
                continue
            names = self.parse_names(response.text)
            if names:
                logger.info(f"Lookup {self.name} found {len(names)} name(s) for {code} as {variant}")
                return names
        return []

    async def search_by_product_code(self, code: str) -> list[str]:
        if self.client is not None:
            return await self._search(self.client, code)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await self._search(client, code)


# ============================================================================
# Chain
# ============================================================================


@dataclass
class LookupResult:
    """
    Answer of a lookup chain; provider is None when nothing was found.

    failed lists the providers that raised. An empty answer with failures
    is not authoritative and is never cached.
    """

    code: str
    provider: str | None = None
    names: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return bool(self.names)

    @property
    def incomplete(self) -> bool:
        """Nothing found, but only because some provider could not answer."""
        return not self.names and bool(self.failed)


class LookupChain:
    """Ordered fallback over reference lookups, with an injected cache."""

    def __init__(
        self,
        providers: list[ReferenceLookup],
        cache: TTLCache | None = None,
    ) -> None:
        self.providers = list(providers)
        self.cache = cache if cache is not None else TTLCache()

    @property
    def provider_names(self) -> list[str]:
        return [p.name for p in self.providers]

    async def search(self, code: str) -> LookupResult:
        """
        Query providers in order, stopping at the first non-empty result.

        A provider that raises is logged and skipped; the chain itself
        never raises for a lookup failure. Results are cached unless they
        are incomplete, so a later pass asks the failed providers again.
        """
        cache_key = ("lookup", ProductCodeNormalizer.code_key(code))
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        failed: list[str] = []
        result = LookupResult(code=code)
        for provider in self.providers:
            try:
                names = await provider.search_by_product_code(code)
            except TransientError as e:
                logger.warning(f"{e}; trying the next provider")
                failed.append(provider.name)
                continue
            except Exception:
                logger.exception(f"Lookup provider {provider.name} failed for {code}")
                failed.append(provider.name)
                continue
            if names:
                result = LookupResult(code=code, provider=provider.name, names=list(names))
                break
        result.failed = failed

        if result.incomplete:
            logger.info(f"Lookup for {code} incomplete ({', '.join(failed)} failed); not cached")
        else:
            self.cache.set(cache_key, result)
        return result


def build_lookup_chain(
    config: PerformerResolutionConfig,
    session_factory: sessionmaker,
    cache: TTLCache | None = None,
    user_agent: str = "ASPCatalog/0.1",
    limiter: HostRateLimiter | None = None,
) -> LookupChain:
    """
    Build the lookup chain described by the registry configuration.

    Providers keep their configured order. Every HTTP provider shares one
    HostRateLimiter, each applying its own minimum interval.
    """
    limiter = limiter or HostRateLimiter()
    providers: list[ReferenceLookup] = []
    for provider_config in config.lookups:
        if provider_config.type == "index":
            providers.append(IndexLookup(session_factory, name=provider_config.name))
        elif provider_config.type == "http":
            providers.append(
                HttpReferenceLookup.from_config(provider_config, limiter, user_agent=user_agent)
            )
        else:
            logger.warning(
                f"Unknown lookup provider type '{provider_config.type}' for {provider_config.name}"
            )
    if cache is None:
        cache = TTLCache(config.cache_max_size, config.cache_ttl_seconds)
    return LookupChain(providers, cache)
