"""
ASP Catalog Ingestion Framework
===============================

This package provides the raw-data ingestion, dedup and cross-source
identity resolution pipeline for affiliate (ASP) product listings.

Pipeline Stages:
1. Fetch - Fetcher pulls API/HTML payloads (or CSV feed rows) per source
2. Store - RawStore keeps payloads with content-hash change detection
3. Extract - Adapters turn payloads into ExtractedProduct records
4. Normalize - Product codes and fields are canonicalized
5. Resolve - Products collapse across ASPs; performers are matched
6. Link - Raw->canonical links record what was produced at which hash
"""

from asp_catalog.ingestion.cache import TTLCache
from asp_catalog.ingestion.crawler import Fetcher, FetchResult, FetchSummary, store_csv_feed
from asp_catalog.ingestion.errors import (
    DataQualityError,
    FatalIngestionError,
    IdentityConflictError,
    IngestionError,
    TransientError,
)
from asp_catalog.ingestion.hashing import canonical_json_bytes, compute_hash, compute_json_hash
from asp_catalog.ingestion.links import RawLinkTable
from asp_catalog.ingestion.lookup import (
    HostRateLimiter,
    HttpReferenceLookup,
    IndexLookup,
    LookupChain,
    LookupResult,
    ReferenceLookup,
    build_lookup_chain,
)
from asp_catalog.ingestion.normalizer import NormalizedProduct, ProductCodeNormalizer
from asp_catalog.ingestion.performers import PerformerOutcome, PerformerResolution, PerformerResolver
from asp_catalog.ingestion.pipeline import BatchStats, ProcessingDriver
from asp_catalog.ingestion.registry import (
    GlobalConfig,
    PerformerResolutionConfig,
    RateLimitConfig,
    SourceConfig,
    SourceRegistry,
    get_default_registry,
)
from asp_catalog.ingestion.resolver import ProductIdentityResolver, ProductMerger, ProductResolution
from asp_catalog.ingestion.storage import LocalFileObjectStore, ObjectStore, RawStore

__all__ = [
    # Registry
    "SourceRegistry",
    "SourceConfig",
    "RateLimitConfig",
    "GlobalConfig",
    "PerformerResolutionConfig",
    "get_default_registry",
    # Fetching
    "Fetcher",
    "FetchResult",
    "FetchSummary",
    "store_csv_feed",
    # Storage
    "RawStore",
    "ObjectStore",
    "LocalFileObjectStore",
    "RawLinkTable",
    "compute_hash",
    "compute_json_hash",
    "canonical_json_bytes",
    # Normalization
    "ProductCodeNormalizer",
    "NormalizedProduct",
    # Resolution
    "ProductIdentityResolver",
    "ProductResolution",
    "ProductMerger",
    "PerformerResolver",
    "PerformerResolution",
    "PerformerOutcome",
    # Lookups
    "TTLCache",
    "HostRateLimiter",
    "ReferenceLookup",
    "IndexLookup",
    "HttpReferenceLookup",
    "LookupChain",
    "LookupResult",
    "build_lookup_chain",
    # Driver
    "ProcessingDriver",
    "BatchStats",
    # Errors
    "IngestionError",
    "TransientError",
    "DataQualityError",
    "IdentityConflictError",
    "FatalIngestionError",
]
