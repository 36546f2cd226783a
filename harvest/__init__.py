"""
Facility Harvester - Harvest Package

Resumable, bounded-concurrency pipeline shared by the per-jurisdiction
facility harvesters.

Modules:
    models: WorkItem, checkpoint records, retry bookkeeping, run summary
    errors: Error taxonomy (transient, permanent, durability)
    source: Loading, caching and deduplicating work items
    checkpoint: Append-only checkpoint log
    fetcher: Retry with exponential backoff, HTTP helpers
    sink: Incremental CSV and per-item JSON output
    progress: Rate and ETA reporting
    context: Per-run PipelineContext
    processor: ItemProcessor contract and registry
    scheduler: Bounded worker pool
    runner: Command line entry point

Usage:
    from harvest import CsvSink, HarvestScheduler, PipelineContext

    sink = CsvSink(settings.output_path, columns=processor.columns)
    async with PipelineContext.create(settings, sink) as context:
        summary = await HarvestScheduler(context).run(items, processor)
"""

from harvest.checkpoint import CheckpointStore
from harvest.context import PipelineContext
from harvest.errors import (
    DurabilityError,
    FetchFailedError,
    HarvestError,
    PermanentItemError,
    ResourceUnavailableError,
    TransientFetchError,
)
from harvest.fetcher import RetryingFetcher, RetryPolicy, create_http_client
from harvest.models import (
    CheckpointRecord,
    CheckpointStatus,
    FetchResult,
    HarvestSummary,
    RetryAttempt,
    WorkItem,
)
from harvest.processor import ItemProcessor, ProcessorFactory, load_processor
from harvest.scheduler import HarvestScheduler
from harvest.sink import BaseSink, CsvSink, JsonFileSink

__all__ = [
    # Data
    "WorkItem",
    "CheckpointRecord",
    "CheckpointStatus",
    "FetchResult",
    "HarvestSummary",
    "RetryAttempt",
    # Errors
    "HarvestError",
    "TransientFetchError",
    "PermanentItemError",
    "ResourceUnavailableError",
    "FetchFailedError",
    "DurabilityError",
    # Components
    "CheckpointStore",
    "RetryingFetcher",
    "RetryPolicy",
    "create_http_client",
    "BaseSink",
    "CsvSink",
    "JsonFileSink",
    "PipelineContext",
    "ItemProcessor",
    "ProcessorFactory",
    "load_processor",
    "HarvestScheduler",
]
