"""
Facility Harvester - Pipeline Context

One PipelineContext is built per run and handed to every component. It owns
everything mutable about the run: the checkpoint store, the sink, the
fetcher and its HTTP client, progress counters and the set of in-flight
item IDs. Nothing in the pipeline keeps state at module level.

Usage:
    sink = CsvSink(settings.output_path, columns=COLUMNS)
    async with PipelineContext.create(settings, sink) as context:
        summary = await HarvestScheduler(context).run(items, process)
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import httpx

from config.logging import get_logger
from config.settings import Settings
from harvest.checkpoint import CheckpointStore
from harvest.fetcher import RetryingFetcher, RetryPolicy, create_http_client
from harvest.progress import ProgressTracker
from harvest.sink import BaseSink


logger = get_logger(__name__)


@dataclass
class PipelineContext:
    """Per-run owner of pipeline state."""

    settings: Settings
    checkpoint: CheckpointStore
    sink: BaseSink
    fetcher: RetryingFetcher
    progress: ProgressTracker
    in_flight: set[str] = field(default_factory=set)
    http_client: Optional[httpx.AsyncClient] = None
    _owns_client: bool = field(default=False, init=False, repr=False)

    @classmethod
    def create(
        cls,
        settings: Settings,
        sink: BaseSink,
        checkpoint_path: Optional[Path] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "PipelineContext":
        """
        Build a context from settings.

        Args:
            settings: Application settings
            sink: Output sink for this run
            checkpoint_path: Override for settings.checkpoint_path
            http_client: Client to share; one is created from settings when
                the context is entered if not given
        """
        checkpoint = CheckpointStore(
            checkpoint_path or settings.checkpoint_path,
            retry_failed=settings.harvest_retry_failed,
            track_in_progress=settings.harvest_track_in_progress,
        )
        return cls(
            settings=settings,
            checkpoint=checkpoint,
            sink=sink,
            fetcher=RetryingFetcher(RetryPolicy.from_settings(settings), client=http_client),
            progress=ProgressTracker(interval=settings.harvest_progress_interval),
            http_client=http_client,
        )

    async def __aenter__(self) -> "PipelineContext":
        """Open the HTTP client if none was supplied."""
        if self.http_client is None:
            self.http_client = create_http_client(self.settings)
            self._owns_client = True
            logger.debug("HTTP client initialized")
        self.fetcher.client = self.http_client
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Close the HTTP client if this context created it."""
        if self.http_client is not None and self._owns_client:
            await self.http_client.aclose()
            self.http_client = None
            self.fetcher.client = None
            self._owns_client = False
            logger.debug("HTTP client closed")


__all__ = ["PipelineContext"]
