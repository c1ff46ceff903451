"""
Background Jobs Module
======================

Defines arq tasks for running the processing driver in the background.
Uses Redis as the job queue backend. The CLI can also run batches
in-process through run_batch_sync.
"""

from __future__ import annotations

import asyncio
import logging
import os
from enum import Enum
from typing import Any
from uuid import uuid4

from arq import create_pool, cron
from arq.connections import RedisSettings
from arq.jobs import Job
from arq.jobs import JobStatus as ArqJobStatus

from asp_catalog.db.engine import get_session_factory
from asp_catalog.ingestion.errors import FatalIngestionError
from asp_catalog.ingestion.lookup import build_lookup_chain
from asp_catalog.ingestion.pipeline import ALL_SOURCES, BatchStats, ProcessingDriver
from asp_catalog.ingestion.registry import SourceRegistry, get_default_registry
from asp_catalog.ingestion.storage import LocalFileObjectStore, ObjectStore, get_default_object_store

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Status of a processing job."""

    COMPLETED = "completed"
    FAILED = "failed"


def get_redis_settings() -> RedisSettings:
    """Get Redis connection settings from environment."""
    return RedisSettings(
        host=os.environ.get("REDIS_HOST", "localhost"),
        port=int(os.environ.get("REDIS_PORT", "6379")),
        database=int(os.environ.get("REDIS_DB", "0")),
    )


def object_store_for(registry: SourceRegistry) -> ObjectStore:
    """OBJECT_STORE_PATH wins over the registry's object_store_path."""
    if os.environ.get("OBJECT_STORE_PATH"):
        return get_default_object_store()
    return LocalFileObjectStore(registry.global_config.object_store_path)


def build_driver(
    enrich: bool = False,
    concurrency: int | None = None,
    time_budget_seconds: float | None = None,
    registry: SourceRegistry | None = None,
    session_factory=None,
) -> ProcessingDriver:
    """
    Assemble a ProcessingDriver from the default registry and database.

    Unset options fall back to the registry's batch settings.
    """
    registry = registry or get_default_registry()
    session_factory = session_factory or get_session_factory()
    batch = registry.global_config.batch

    lookup_chain = None
    if enrich and registry.performer_resolution.lookups:
        lookup_chain = build_lookup_chain(
            registry.performer_resolution,
            session_factory,
            user_agent=registry.global_config.user_agent,
        )

    return ProcessingDriver(
        session_factory=session_factory,
        registry=registry,
        object_store=object_store_for(registry),
        lookup_chain=lookup_chain,
        enrich=enrich,
        concurrency=concurrency or batch.concurrency,
        time_budget_seconds=(
            time_budget_seconds if time_budget_seconds is not None else batch.time_budget_seconds
        ),
    )


async def process_source(
    ctx: dict[str, Any],
    source: str = ALL_SOURCES,
    limit: int | None = None,
    enrich: bool = False,
) -> dict[str, Any]:
    """
    Main processing task.

    Args:
        ctx: arq context (contains Redis connection)
        source: Source name, or "all" for every enabled source
        limit: Records per source; defaults to the registry's batch limit
        enrich: Query reference lookups for performer-less products

    Returns:
        BatchStats as a dictionary, plus job_id and status
    """
    job_id = ctx.get("job_id", str(uuid4()))
    try:
        driver = build_driver(enrich=enrich)
        limit = limit or driver.registry.global_config.batch.limit
        stats = await driver.run(source, limit)
        status = JobStatus.COMPLETED
    except FatalIngestionError as e:
        logger.error(f"Processing job {job_id} failed: {e}")
        stats = BatchStats(source=source, error_messages=[str(e)])
        status = JobStatus.FAILED

    result = stats.to_dict()
    result["job_id"] = job_id
    result["status"] = status.value
    return result


async def process_all_sources(ctx: dict[str, Any]) -> dict[str, Any]:
    """Scheduled run over every enabled source."""
    return await process_source(ctx, ALL_SOURCES)


async def enrich_performerless(
    ctx: dict[str, Any],
    source: str = ALL_SOURCES,
    limit: int | None = None,
) -> dict[str, Any]:
    """Enrichment pass over products that still have no performers."""
    job_id = ctx.get("job_id", str(uuid4()))
    try:
        driver = build_driver(enrich=True)
        stats = await driver.enrich_performerless(
            source, limit or driver.registry.global_config.batch.limit
        )
        status = JobStatus.COMPLETED
    except FatalIngestionError as e:
        logger.error(f"Enrichment job {job_id} failed: {e}")
        stats = BatchStats(source=source, error_messages=[str(e)])
        status = JobStatus.FAILED

    result = stats.to_dict()
    result["job_id"] = job_id
    result["status"] = status.value
    return result


def run_batch_sync(
    source: str = ALL_SOURCES,
    limit: int | None = None,
    enrich: bool = False,
    concurrency: int | None = None,
    time_budget_seconds: float | None = None,
    registry: SourceRegistry | None = None,
    session_factory=None,
) -> BatchStats:
    """
    Run a batch in-process (without arq).

    Useful for CLI commands with the --sync flag.

    Raises:
        FatalIngestionError: Unknown source or unreachable store
    """
    driver = build_driver(
        enrich=enrich,
        concurrency=concurrency,
        time_budget_seconds=time_budget_seconds,
        registry=registry,
        session_factory=session_factory,
    )
    limit = limit or driver.registry.global_config.batch.limit
    return asyncio.run(driver.run(source, limit))


def run_enrich_sync(
    source: str = ALL_SOURCES,
    limit: int | None = None,
    concurrency: int | None = None,
    registry: SourceRegistry | None = None,
    session_factory=None,
) -> BatchStats:
    """
    Run the enrichment pass in-process.

    Raises:
        FatalIngestionError: No lookup providers configured, or unknown source
    """
    driver = build_driver(
        enrich=True,
        concurrency=concurrency,
        registry=registry,
        session_factory=session_factory,
    )
    limit = limit or driver.registry.global_config.batch.limit
    return asyncio.run(driver.enrich_performerless(source, limit))


async def enqueue_processing(
    source: str = ALL_SOURCES,
    limit: int | None = None,
    enrich: bool = False,
) -> str:
    """
    Enqueue a processing job.

    Returns:
        Job ID
    """
    redis = await create_pool(get_redis_settings())
    try:
        job = await redis.enqueue_job("process_source", source, limit, enrich)
    finally:
        await redis.close()
    if job is None:
        raise RuntimeError("Job was not enqueued (duplicate job id)")
    return job.job_id


async def get_job_status(job_id: str) -> dict[str, Any] | None:
    """
    Get the status of a processing job.

    Returns:
        Job info dict, or None if the job is unknown
    """
    redis = await create_pool(get_redis_settings())
    try:
        job = Job(job_id, redis)
        status = await job.status()
        if status == ArqJobStatus.not_found:
            return None
        info = await job.result_info()
    finally:
        await redis.close()

    return {
        "job_id": job_id,
        "status": status.value,
        "result": info.result if info else None,
    }


class WorkerSettings:
    """arq worker settings."""

    functions = [process_source, enrich_performerless]
    cron_jobs = [cron(process_all_sources, minute={0, 15, 30, 45})]
    redis_settings = get_redis_settings()
    max_jobs = 2
    job_timeout = 3600  # 1 hour
    keep_result = 86400  # 24 hours
