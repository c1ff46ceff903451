"""
Source Registry Module
======================

Manages source configurations loaded from YAML files. Sources define
which ASPs are ingested, how their payloads are parsed, how their product
codes are normalized and how much their data is trusted relative to other
sources (priority).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml

from asp_catalog.core.enums import DataSourceKind
from asp_catalog.ingestion.errors import FatalIngestionError

# Fill-don't-clobber ranking; higher wins
DEFAULT_ASP_PRIORITIES: dict[str, int] = {
    "FANZA": 100,
    "MGS": 80,
    "SOKMIL": 60,
    "B10F": 50,
    "DUGA": 40,
    "FC2": 30,
    "JAPANSKA": 20,
    "CARIBBEANCOM": 20,
    "CARIBBEANCOMPR": 20,
    "1PONDO": 20,
    "HEYZO": 20,
    "TOKYOHOT": 20,
}
DEFAULT_PRIORITY = 10

# Keys of a source entry that are handed to its adapter
ADAPTER_CONFIG_KEYS = ("field_map", "selectors", "performer_selector", "performer_text_pattern", "root")


def default_priority(asp_name: str) -> int:
    """Priority for an ASP without an explicit setting."""
    return DEFAULT_ASP_PRIORITIES.get(asp_name.upper(), DEFAULT_PRIORITY)


@dataclass
class RateLimitConfig:
    """Minimum delay between requests to one host."""

    min_interval_seconds: float = 1.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RateLimitConfig:
        if not data:
            return cls()
        return cls(min_interval_seconds=float(data.get("min_interval_seconds", 1.0)))


@dataclass
class SourceConfig:
    """One ASP feed and how its payloads are read and ranked."""

    name: str
    asp_name: str
    adapter: str
    data_source: DataSourceKind = DataSourceKind.HTML
    enabled: bool = True
    description: str = ""
    priority: int = DEFAULT_PRIORITY
    url_template: str | None = None
    qualify_codes: bool = False
    code_namespace: str | None = None
    strip_prefixes: list[str] = field(default_factory=list)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    adapter_config: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], default_rate_limit: RateLimitConfig | None = None
    ) -> SourceConfig:
        """
        Build a source from one sources.yaml entry.

        Sources without their own rate_limit share the global default.
        Adapter-specific keys are gathered into adapter_config.
        """
        if data.get("rate_limit"):
            rate_limit = RateLimitConfig.from_dict(data["rate_limit"])
        else:
            rate_limit = default_rate_limit or RateLimitConfig()

        asp_name = data.get("asp_name", data["name"])
        adapter_config = dict(data.get("custom_config", {}))
        for key in ADAPTER_CONFIG_KEYS:
            if key in data:
                adapter_config[key] = data[key]

        return cls(
            name=data["name"],
            asp_name=asp_name,
            adapter=data["adapter"],
            data_source=DataSourceKind(data.get("data_source", "HTML").upper()),
            enabled=data.get("enabled", True),
            description=data.get("description", ""),
            priority=int(data.get("priority", default_priority(asp_name))),
            url_template=data.get("url_template"),
            qualify_codes=bool(data.get("qualify_codes", False)),
            code_namespace=data.get("code_namespace"),
            strip_prefixes=list(data.get("strip_prefixes", [])),
            rate_limit=rate_limit,
            adapter_config=adapter_config,
        )

    @property
    def domain(self) -> str | None:
        """Host of the source's product URLs, if it has a URL template."""
        if not self.url_template:
            return None
        return urlparse(self.url_template.replace("{id}", "x")).netloc or None

    def build_url(self, source_product_id: str) -> str:
        """Product URL for a source product id."""
        if not self.url_template:
            raise ValueError(f"Source '{self.name}' has no url_template")
        return self.url_template.format(id=source_product_id)


@dataclass
class LookupProviderConfig:
    """One reference lookup in the performer fallback chain."""

    name: str
    type: str = "http"  # "index" or "http"
    url_template: str | None = None
    link_selector: str = "a"
    min_interval_seconds: float = 2.0
    timeout: float = 10.0
    max_retries: int = 2

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LookupProviderConfig:
        return cls(
            name=data["name"],
            type=data.get("type", "http"),
            url_template=data.get("url_template"),
            link_selector=data.get("link_selector", "a"),
            min_interval_seconds=float(data.get("min_interval_seconds", 2.0)),
            timeout=float(data.get("timeout", 10.0)),
            max_retries=int(data.get("max_retries", 2)),
        )


@dataclass
class PerformerResolutionConfig:
    """Thresholds and fallback lookups for performer resolution."""

    min_create_confidence: float = 0.9
    lookup_confidence: float = 0.9
    cache_max_size: int = 10_000
    cache_ttl_seconds: float = 600.0
    denylist: list[str] = field(default_factory=list)
    lookups: list[LookupProviderConfig] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PerformerResolutionConfig:
        """Create from dictionary."""
        if data is None:
            return cls()
        cache = data.get("cache", {})
        return cls(
            min_create_confidence=float(data.get("min_create_confidence", 0.9)),
            lookup_confidence=float(data.get("lookup_confidence", 0.9)),
            cache_max_size=int(cache.get("max_size", 10_000)),
            cache_ttl_seconds=float(cache.get("ttl_seconds", 600.0)),
            denylist=list(data.get("denylist", [])),
            lookups=[LookupProviderConfig.from_dict(p) for p in data.get("lookups", [])],
        )


@dataclass
class BatchConfig:
    """Defaults for processing-driver runs."""

    limit: int = 500
    concurrency: int = 4
    time_budget_seconds: float | None = 150.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> BatchConfig:
        """A null time_budget_seconds disables the budget."""
        if data is None:
            return cls()
        budget = data.get("time_budget_seconds", 150.0)
        return cls(
            limit=int(data.get("limit", 500)),
            concurrency=int(data.get("concurrency", 4)),
            time_budget_seconds=float(budget) if budget is not None else None,
        )


@dataclass
class GlobalConfig:
    """Settings shared by every source: HTTP, object store and batch defaults."""

    default_rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    user_agent: str = "ASPCatalog/0.1"
    object_store_path: str = "~/.asp_catalog/objects"
    inline_body_limit_bytes: int = 64 * 1024
    request_timeout: float = 30.0
    max_retries: int = 3
    batch: BatchConfig = field(default_factory=BatchConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> GlobalConfig:
        if data is None:
            return cls()
        return cls(
            default_rate_limit=RateLimitConfig.from_dict(data.get("default_rate_limit")),
            user_agent=data.get("user_agent", "ASPCatalog/0.1"),
            object_store_path=data.get("object_store_path", "~/.asp_catalog/objects"),
            inline_body_limit_bytes=int(data.get("inline_body_limit_bytes", 64 * 1024)),
            request_timeout=float(data.get("request_timeout", 30.0)),
            max_retries=int(data.get("max_retries", 3)),
            batch=BatchConfig.from_dict(data.get("batch")),
        )


class SourceRegistry:
    """
    The sources, global settings and performer settings of one process.

    Filled from sources.yaml by load_config, or from a mapping by
    load_dict. Tests register SourceConfig objects directly.
    """

    def __init__(self) -> None:
        self._sources: dict[str, SourceConfig] = {}
        self._global_config = GlobalConfig()
        self._performer_resolution = PerformerResolutionConfig()
        self._config_path: Path | None = None

    @property
    def global_config(self) -> GlobalConfig:
        return self._global_config

    @property
    def performer_resolution(self) -> PerformerResolutionConfig:
        return self._performer_resolution

    @property
    def config_path(self) -> Path | None:
        """The YAML file this registry was loaded from, if any."""
        return self._config_path

    def load_config(self, config_path: Path | str) -> None:
        """
        Replace the registry contents with a sources.yaml file.

        Raises:
            FileNotFoundError: If the file does not exist
        """
        path = Path(config_path).expanduser().resolve()
        if not path.is_file():
            raise FileNotFoundError(f"Sources config not found: {path}")

        self.load_dict(yaml.safe_load(path.read_text(encoding="utf-8")) or {})
        self._config_path = path

    def load_dict(self, data: dict[str, Any]) -> None:
        """Replace the registry contents with an already-parsed mapping."""
        self._global_config = GlobalConfig.from_dict(data.get("global"))
        self._performer_resolution = PerformerResolutionConfig.from_dict(
            data.get("performer_resolution")
        )
        inherited = self._global_config.default_rate_limit
        self._sources = {}
        for entry in data.get("sources") or []:
            self.register(SourceConfig.from_dict(entry, inherited))

    def register(self, source: SourceConfig) -> None:
        """Add a source, replacing any source of the same name."""
        self._sources[source.name] = source

    def get_source(self, name: str) -> SourceConfig | None:
        return self._sources.get(name)

    def list_sources(self) -> list[SourceConfig]:
        """Every source in configuration order."""
        return list(self._sources.values())

    def list_enabled_sources(self) -> list[SourceConfig]:
        """The sources a run over "all" processes."""
        return [source for source in self._sources.values() if source.enabled]

    def set_enabled(self, name: str, enabled: bool) -> bool:
        """Switch a source on or off; False when no such source exists."""
        source = self._sources.get(name)
        if source is None:
            return False
        source.enabled = enabled
        return True


_default_registry: SourceRegistry | None = None


def _default_config_path() -> Path | None:
    """
    SOURCES_CONFIG_PATH, else config/sources.yaml in the project root.

    Returns None when neither names an existing file and the environment
    variable is unset, so the registry starts empty.

    Raises:
        FatalIngestionError: SOURCES_CONFIG_PATH is set but missing
    """
    explicit = os.environ.get("SOURCES_CONFIG_PATH")
    if explicit:
        path = Path(explicit).expanduser()
        if not path.is_file():
            raise FatalIngestionError(f"SOURCES_CONFIG_PATH not found: {path}")
        return path

    bundled = Path(__file__).resolve().parents[2] / "config" / "sources.yaml"
    return bundled if bundled.is_file() else None


def get_default_registry() -> SourceRegistry:
    """
    The process-wide registry, loaded on first use.

    Raises:
        FatalIngestionError: If SOURCES_CONFIG_PATH names a missing file
    """
    global _default_registry

    if _default_registry is None:
        registry = SourceRegistry()
        path = _default_config_path()
        if path is not None:
            registry.load_config(path)
        _default_registry = registry
    return _default_registry


def reset_default_registry() -> None:
    """Forget the process-wide registry so the next call reloads it."""
    global _default_registry
    _default_registry = None
