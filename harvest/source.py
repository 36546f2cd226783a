"""
Facility Harvester - Work Sources

Builds the list of WorkItems a run will process. The list is fixed before
the scheduler starts; nothing here is consulted again mid-run.

Most harvests start from a crawl of the portal's facility listing that is
cached as JSON, so a restart does not crawl again.

Usage:
    items = await load_or_crawl(settings.get_data_path("facilities.json"),
                                crawl_listing, id_field="facilityId")
"""

import json
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Sequence

from config.logging import get_logger
from harvest.models import WorkItem


logger = get_logger(__name__)


def work_items_from_records(
    records: Iterable[Mapping[str, Any]],
    id_field: str = "id",
) -> list[WorkItem]:
    """
    Wrap raw records as WorkItems.

    Records without a usable id are skipped with a warning.

    Args:
        records: Facility summaries from a crawl
        id_field: Key holding the stable facility id

    Returns:
        WorkItems in input order (duplicates kept)
    """
    items = []
    missing = 0
    for record in records:
        raw_id = record.get(id_field)
        if raw_id is None or str(raw_id).strip() == "":
            missing += 1
            continue
        items.append(WorkItem(id=str(raw_id).strip(), payload=dict(record)))

    if missing:
        logger.warning(f"Skipped {missing} records without {id_field!r}")
    return items


def load_work_items(
    path: Path,
    id_field: str = "id",
    records_key: Optional[str] = None,
) -> list[WorkItem]:
    """
    Load work items from a JSON file.

    The file holds either a list of records or an object with the list
    under ``records_key`` (or "items" when no key is given).

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If no record list can be found
    """
    path = Path(path)
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)

    if isinstance(data, dict):
        key = records_key or "items"
        data = data.get(key)
    if not isinstance(data, list):
        raise ValueError(f"{path} does not contain a list of records")

    items = work_items_from_records(data, id_field)
    logger.info(f"Loaded {len(items)} work items from {path}")
    return items


async def load_or_crawl(
    cache_path: Path,
    crawl: Callable[[], Awaitable[Sequence[Mapping[str, Any]]]],
    id_field: str = "id",
) -> list[WorkItem]:
    """
    Use the cached crawl if present, otherwise crawl and cache the result.

    Args:
        cache_path: JSON file holding the crawled records
        crawl: Coroutine function returning the facility records
        id_field: Key holding the stable facility id
    """
    cache_path = Path(cache_path)
    if cache_path.exists():
        logger.info(f"Using cached listing {cache_path}")
        return load_work_items(cache_path, id_field)

    logger.info("No cached listing, crawling")
    records = list(await crawl())

    cache_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = cache_path.with_suffix(cache_path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as fh:
        json.dump(records, fh, indent=2, default=str, ensure_ascii=False)
    tmp_path.replace(cache_path)
    logger.info(f"Cached {len(records)} records to {cache_path}")

    return work_items_from_records(records, id_field)


def dedupe_items(items: Iterable[WorkItem]) -> tuple[list[WorkItem], int]:
    """
    Drop repeated ids, keeping the first occurrence.

    Returns:
        Tuple of (unique items in input order, number of duplicates dropped)
    """
    seen: set[str] = set()
    unique = []
    duplicates = 0
    for item in items:
        if item.id in seen:
            duplicates += 1
            continue
        seen.add(item.id)
        unique.append(item)
    return unique, duplicates


def take_sample(items: Sequence[WorkItem], size: Optional[int]) -> list[WorkItem]:
    """First ``size`` items, or all of them when size is None."""
    if size is None:
        return list(items)
    if size < 0:
        raise ValueError("sample size must not be negative")
    return list(items[:size])


__all__ = [
    "work_items_from_records",
    "load_work_items",
    "load_or_crawl",
    "dedupe_items",
    "take_sample",
]
