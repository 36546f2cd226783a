"""
Facility Harvester - Harvest Scheduler

Runs an item processor over a list of work items with bounded concurrency,
resuming from the checkpoint log of earlier runs.

Per run:
    1. Drop duplicate item ids
    2. Load terminal ids from the checkpoint and skip them
    3. Return early when nothing is pending, otherwise open the sink
       (append when resuming, fresh otherwise)
    4. Start ``harvest_concurrency`` workers draining a queue
    5. Per item: mark in progress, process, append rows, mark completed;
       any item error marks it failed and the run continues
    6. A durability error cancels every worker and propagates

Usage:
    async with PipelineContext.create(settings, sink) as context:
        summary = await HarvestScheduler(context).run(items, processor)
"""

import asyncio
from collections.abc import Mapping
from typing import Awaitable, Callable, Iterable, Union

from config.logging import LogContext, get_logger
from harvest.context import PipelineContext
from harvest.errors import DurabilityError, FetchFailedError, PermanentItemError
from harvest.models import HarvestSummary, WorkItem, utcnow
from harvest.processor import ItemProcessor, OutputRow, ProcessResult
from harvest.source import dedupe_items


logger = get_logger(__name__)

ProcessFn = Callable[[WorkItem], Awaitable[ProcessResult]]


def _normalize_rows(result: ProcessResult) -> list[OutputRow]:
    """Turn a processor result into a list of rows, rejecting anything else."""
    if result is None:
        return []
    if isinstance(result, Mapping):
        return [result]
    if isinstance(result, (list, tuple)):
        for row in result:
            if not isinstance(row, Mapping):
                raise TypeError(f"Processor returned a non-mapping row: {type(row).__name__}")
        return list(result)
    raise TypeError(f"Processor returned unsupported result type: {type(result).__name__}")


def _describe_error(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


class HarvestScheduler:
    """
    Bounded-concurrency executor for one harvest run.

    The worker pool is the only source of concurrency: each item runs as
    one sequential coroutine (fetch, parse, persist, checkpoint), and at
    most ``harvest_concurrency`` of them are in flight at any time.
    """

    def __init__(self, context: PipelineContext):
        self.context = context
        self.settings = context.settings

    async def run(
        self,
        items: Iterable[WorkItem],
        process: Union[ItemProcessor, ProcessFn],
    ) -> HarvestSummary:
        """
        Process every item that has not reached a terminal state yet.

        Args:
            items: Work items for this run
            process: ItemProcessor, or coroutine function taking a WorkItem

        Returns:
            HarvestSummary for this run

        Raises:
            DurabilityError: If output or checkpoint could not be written
        """
        context = self.context
        summary = HarvestSummary()

        unique, duplicates = dedupe_items(items)
        summary.total_items = len(unique)
        summary.duplicates = duplicates
        if duplicates:
            logger.warning(f"Ignoring {duplicates} duplicate work items")

        if self.settings.harvest_skip_completed:
            done = context.checkpoint.load()
        else:
            logger.warning("Skip-completed is off, discarding checkpoint and starting fresh")
            context.checkpoint.reset()
            done = set()

        pending = [item for item in unique if item.id not in done]
        summary.skipped = len(unique) - len(pending)
        summary.pending = len(pending)

        logger.info(
            f"Work items: {summary.total_items} total, {summary.skipped} already done, "
            f"{summary.pending} pending",
        )

        if not pending:
            logger.info("Nothing to do, all work items already processed")
            summary.completed_at = utcnow()
            return summary

        await context.sink.initialize(fresh=not done)

        processor = process if isinstance(process, ItemProcessor) else None
        if processor is not None:
            process_fn: ProcessFn = lambda item: processor.process(item, context)
            await processor.setup(context)
        else:
            process_fn = process

        try:
            await self._run_workers(pending, process_fn, summary)
        finally:
            if processor is not None:
                await processor.teardown(context)
            summary.completed_at = utcnow()

        logger.info(
            f"Harvest finished: {summary.completed} completed, {summary.failed} failed "
            f"in {summary.duration_seconds:.1f}s",
            extra={
                "completed": summary.completed,
                "failed": summary.failed,
                "rows_written": summary.rows_written,
            },
        )
        return summary

    async def _run_workers(
        self,
        pending: list[WorkItem],
        process: ProcessFn,
        summary: HarvestSummary,
    ) -> None:
        queue: asyncio.Queue[WorkItem] = asyncio.Queue()
        for item in pending:
            queue.put_nowait(item)

        worker_count = min(self.settings.harvest_concurrency, len(pending))
        self.context.progress.start(len(pending))
        logger.info(f"Starting {worker_count} workers")

        workers = [
            asyncio.create_task(
                self._worker(queue, process, summary),
                name=f"harvest-worker-{n}",
            )
            for n in range(worker_count)
        ]

        try:
            await asyncio.wait(workers, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            for worker in workers:
                if not worker.done():
                    worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        for worker in workers:
            if worker.cancelled():
                continue
            error = worker.exception()
            if error is not None:
                logger.critical(
                    f"Harvest aborted: {_describe_error(error)}",
                    extra={"completed": summary.completed, "failed": summary.failed},
                )
                raise error

    async def _worker(
        self,
        queue: "asyncio.Queue[WorkItem]",
        process: ProcessFn,
        summary: HarvestSummary,
    ) -> None:
        while True:
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            await self._process_item(item, process, summary)

    async def _process_item(
        self,
        item: WorkItem,
        process: ProcessFn,
        summary: HarvestSummary,
    ) -> None:
        context = self.context
        context.in_flight.add(item.id)
        try:
            with LogContext(item_id=item.id):
                await context.checkpoint.mark_in_progress(item.id)

                try:
                    rows = _normalize_rows(await process(item))
                    for row in rows:
                        if await context.sink.append(row):
                            summary.rows_written += 1

                except DurabilityError:
                    raise

                except (PermanentItemError, FetchFailedError) as e:
                    reason = _describe_error(e)
                    logger.warning(f"Item failed: {reason}")

                except Exception as e:
                    reason = _describe_error(e)
                    logger.exception(f"Unexpected error processing item: {reason}")

                else:
                    await context.checkpoint.mark_completed(item.id)
                    summary.completed += 1
                    context.progress.record(success=True)
                    logger.debug("Item completed", extra={"rows": len(rows)})
                    return

                await context.checkpoint.mark_failed(item.id, reason)
                summary.failed += 1
                summary.failures[item.id] = reason
                context.progress.record(success=False)
        finally:
            context.in_flight.discard(item.id)


__all__ = ["HarvestScheduler", "ProcessFn"]
