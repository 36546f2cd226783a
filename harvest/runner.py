"""
Facility Harvester - Command Line Runner

Runs one processor over a cached list of work items, resuming from the
checkpoint of earlier runs.

Usage:
    python -m harvest.runner --processor snapshot --items data/facilities.json
    python -m harvest.runner --processor mysite.nj:NJProcessor --sample 10
    python -m harvest.runner --stats

Exit codes:
    0  every item reached completed or failed
    1  configuration or input error
    2  output or checkpoint could not be written
    130  interrupted
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from config.logging import get_logger
from config.settings import Settings
from harvest.checkpoint import CheckpointStore
from harvest.context import PipelineContext
from harvest.errors import DurabilityError
from harvest.models import HarvestSummary, WorkItem
from harvest.processor import ItemProcessor, ProcessorFactory, load_processor
from harvest.progress import format_duration
from harvest.scheduler import HarvestScheduler
from harvest.sink import CsvSink
from harvest.source import load_work_items, take_sample
from startup import initialize_application


logger = get_logger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_DURABILITY_ERROR = 2
EXIT_INTERRUPTED = 130


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="harvest",
        description="Resumable facility harvest over a cached work-item list",
    )
    parser.add_argument(
        "--processor", "-p",
        help=(
            "Registered processor name or module:Class "
            f"(registered: {', '.join(ProcessorFactory.available_processors())})"
        ),
    )
    parser.add_argument(
        "--items", "-i",
        type=Path,
        help="JSON file with the work items (default: <data>/facilities.json)",
    )
    parser.add_argument(
        "--id-field",
        default="id",
        help="Record key holding the facility id (default: id)",
    )
    parser.add_argument(
        "--records-key",
        help="Key of the record list when the JSON file is an object",
    )
    parser.add_argument(
        "--output", "-o",
        type=Path,
        help="CSV output path (default: <output>/facilities.csv)",
    )
    parser.add_argument(
        "--sample",
        type=_positive_int,
        help="Only process the first N items",
    )
    parser.add_argument(
        "--concurrency", "-c",
        type=_positive_int,
        help="Override HARVEST_CONCURRENCY",
    )
    parser.add_argument(
        "--fresh",
        action="store_true",
        help="Ignore the checkpoint and rewrite the output",
    )
    parser.add_argument(
        "--skip-failed",
        action="store_true",
        help="Do not retry items that failed in a previous run",
    )
    parser.add_argument(
        "--stats",
        action="store_true",
        help="Print checkpoint statistics and failure reasons, then exit",
    )
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Delete the checkpoint and output, then exit",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    return parser


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    """Fold command line flags into a copy of the settings."""
    updates = {}
    if args.concurrency:
        updates["harvest_concurrency"] = args.concurrency
    if args.fresh:
        updates["harvest_skip_completed"] = False
    if args.skip_failed:
        updates["harvest_retry_failed"] = False
    if not updates:
        return settings
    return settings.model_copy(update=updates)


async def run_harvest(
    settings: Settings,
    processor: ItemProcessor,
    items: Sequence[WorkItem],
    output_path: Optional[Path] = None,
) -> HarvestSummary:
    """
    Run one harvest with a CSV sink.

    Raises:
        DurabilityError: If output or checkpoint could not be written
    """
    sink = CsvSink(
        output_path or settings.output_path,
        columns=processor.columns,
        key_column=processor.key_column,
    )
    async with PipelineContext.create(settings, sink) as context:
        return await HarvestScheduler(context).run(items, processor)


def show_stats(settings: Settings) -> int:
    stats = CheckpointStore(settings.checkpoint_path).stats()
    logger.info(f"Checkpoint: {settings.checkpoint_path}")
    logger.info(f"  Completed: {stats.completed}")
    logger.info(f"  Failed:    {stats.failed}")
    logger.info(f"  Orphaned:  {stats.orphaned}")
    for item_id, reason in sorted(stats.failures.items()):
        logger.info(f"  FAILED {item_id}: {reason}")
    return EXIT_OK


def reset_state(settings: Settings, output_path: Path) -> int:
    CheckpointStore(settings.checkpoint_path).reset()
    if output_path.exists():
        output_path.unlink()
        logger.info(f"Removed {output_path}")
    return EXIT_OK


def log_summary(summary: HarvestSummary, output_path: Path) -> None:
    logger.info("=" * 60)
    logger.info("Harvest Complete")
    logger.info("=" * 60)
    logger.info(f"Work items:      {summary.total_items} ({summary.duplicates} duplicates dropped)")
    logger.info(f"Already done:    {summary.skipped}")
    logger.info(f"Completed:       {summary.completed}")
    logger.info(f"Failed:          {summary.failed}")
    logger.info(f"Rows written:    {summary.rows_written}")
    logger.info(f"Time:            {format_duration(summary.duration_seconds)}")
    logger.info(f"Output:          {output_path}")
    if summary.failed:
        logger.info("Failed items are retried on the next run; see --stats for reasons")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Main entry point for the harvest runner.

    Returns:
        Process exit code
    """
    args = build_parser().parse_args(argv)

    result = initialize_application()
    if not result.success:
        return EXIT_CONFIG_ERROR

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        for handler in logging.getLogger().handlers:
            handler.setLevel(logging.DEBUG)

    settings = apply_overrides(result.settings, args)
    output_path = args.output or settings.output_path

    if args.stats:
        return show_stats(settings)
    if args.reset:
        return reset_state(settings, output_path)

    if not args.processor:
        logger.error("--processor is required")
        return EXIT_CONFIG_ERROR

    try:
        processor = load_processor(args.processor)
    except ValueError as e:
        logger.error(f"Processor error: {e}")
        return EXIT_CONFIG_ERROR
    if not processor.columns:
        logger.error(f"Processor {args.processor} declares no output columns")
        return EXIT_CONFIG_ERROR

    items_path = args.items or settings.get_data_path("facilities.json")
    try:
        items = load_work_items(items_path, args.id_field, args.records_key)
    except FileNotFoundError:
        logger.error(f"Work item file not found: {items_path}")
        return EXIT_CONFIG_ERROR
    except ValueError as e:
        logger.error(f"Invalid work item file: {e}")
        return EXIT_CONFIG_ERROR

    items = take_sample(items, args.sample)

    logger.info("=" * 60)
    logger.info(f"Facility Harvester - {processor.name or args.processor}")
    logger.info("=" * 60)
    logger.info(f"Items:        {len(items)}{' (sample)' if args.sample else ''}")
    logger.info(f"Concurrency:  {settings.harvest_concurrency}")
    logger.info(f"Max attempts: {settings.harvest_max_attempts}")
    logger.info(f"Resume:       {settings.harvest_skip_completed}")
    logger.info(f"Retry failed: {settings.harvest_retry_failed}")

    try:
        summary = asyncio.run(run_harvest(settings, processor, items, output_path))
    except DurabilityError as e:
        logger.critical(f"Cannot record progress, stopping: {e}")
        return EXIT_DURABILITY_ERROR
    except KeyboardInterrupt:
        logger.warning("Interrupted; rerun to resume from the checkpoint")
        return EXIT_INTERRUPTED

    log_summary(summary, output_path)
    return EXIT_OK


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
