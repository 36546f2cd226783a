"""
Facility Harvester - Item Processors

Contract for the site-specific step of a harvest, plus a registry so the
runner can find processors by name.

A processor turns one WorkItem into zero or more output rows, fetching
whatever it needs through ``context.fetcher``. It signals an unusable item
by raising PermanentItemError; anything else it raises is also recorded as
an item failure. The item only counts as completed once process() returns,
so every download it awaits is part of the item.

Site-specific processors live outside this package and are loaded with
``load_processor("package.module:ProcessorClass")``.

Usage:
    class NJProcessor(ItemProcessor):
        name = "nj"
        columns = ["facility_id", "name", "report_files"]
        key_column = "facility_id"

        async def process(self, item, context):
            html = await context.fetcher.get_text(DETAIL_URL.format(item.id))
            return parse_facility(item, html)

    ProcessorFactory.register("nj", NJProcessor)
"""

import importlib
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Mapping, Optional, Sequence, Type, Union

from config.logging import get_logger
from harvest.errors import PermanentItemError
from harvest.models import WorkItem

if TYPE_CHECKING:
    from harvest.context import PipelineContext


logger = get_logger(__name__)

OutputRow = Mapping[str, Any]
ProcessResult = Union[OutputRow, Sequence[OutputRow], None]


class ItemProcessor(ABC):
    """
    Abstract base class for per-site item processors.

    Subclasses set ``columns`` (the CSV header) and implement process().
    ``key_column`` names the column that identifies an item's row; the CSV
    sink uses it to skip rows that are already on disk.
    """

    name: str = ""
    columns: Sequence[str] = ()
    key_column: Optional[str] = None

    async def setup(self, context: "PipelineContext") -> None:
        """Called once before the first item (log in, warm caches, ...)."""
        pass

    @abstractmethod
    async def process(self, item: WorkItem, context: "PipelineContext") -> ProcessResult:
        """
        Process one work item.

        Returns:
            A row, a list of rows, or None for an item that yields no rows
        """
        pass

    async def teardown(self, context: "PipelineContext") -> None:
        """Called once after the last item, even if the run failed."""
        pass


# =============================================================================
# Built-in Processors
# =============================================================================

class PageSnapshotProcessor(ItemProcessor):
    """
    Saves the detail page of each item as HTML and records where it went.

    Expects a ``url`` field in the item payload. Useful as the first pass of
    a new jurisdiction, before a parser exists: the pages are on disk and
    can be parsed offline.
    """

    name = "snapshot"
    columns = ("id", "url", "path", "bytes", "scraped_at")
    key_column = "id"

    def __init__(self, url_field: str = "url"):
        self.url_field = url_field

    async def process(self, item: WorkItem, context: "PipelineContext") -> ProcessResult:
        url = item.get(self.url_field)
        if not url:
            raise PermanentItemError(f"Item has no {self.url_field!r} to fetch")

        dest = context.settings.get_output_path("pages", f"{_safe_name(item.id)}.html")
        await context.fetcher.download(url, dest)

        return {
            "id": item.id,
            "url": url,
            "path": str(dest),
            "bytes": dest.stat().st_size,
            "scraped_at": datetime.now(timezone.utc).isoformat(),
        }


def _safe_name(value: str) -> str:
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in value) or "item"


# =============================================================================
# Processor Factory
# =============================================================================

class ProcessorFactory:
    """
    Registry of processor classes by name.

    Usage:
        ProcessorFactory.register("nj", NJProcessor)
        processor = ProcessorFactory.create("nj")
    """

    _registry: dict[str, Type[ItemProcessor]] = {}

    @classmethod
    def register(cls, name: str, processor_class: Type[ItemProcessor]) -> None:
        """Register a processor class under a name."""
        cls._registry[name] = processor_class

    @classmethod
    def create(cls, name: str, **kwargs: Any) -> ItemProcessor:
        """
        Create a processor instance.

        Raises:
            ValueError: If name is not registered
        """
        if name not in cls._registry:
            available = ", ".join(sorted(cls._registry)) or "none"
            raise ValueError(f"Unknown processor: {name}. Available: {available}")
        return cls._registry[name](**kwargs)

    @classmethod
    def available_processors(cls) -> list[str]:
        """Names of registered processors."""
        return sorted(cls._registry)


def load_processor(reference: str) -> ItemProcessor:
    """
    Resolve a processor from a registered name or an import path.

    Args:
        reference: Registered name ("snapshot") or "package.module:Attr", where
            Attr is an ItemProcessor subclass or instance

    Returns:
        ItemProcessor instance

    Raises:
        ValueError: If the reference cannot be resolved to a processor
    """
    if ":" not in reference:
        return ProcessorFactory.create(reference)

    module_name, _, attr = reference.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ValueError(f"Cannot import processor module {module_name!r}: {e}") from e

    target = getattr(module, attr, None)
    if target is None:
        raise ValueError(f"Module {module_name!r} has no attribute {attr!r}")
    if isinstance(target, type) and issubclass(target, ItemProcessor):
        return target()
    if isinstance(target, ItemProcessor):
        return target
    raise ValueError(f"{reference} is not an ItemProcessor")


ProcessorFactory.register(PageSnapshotProcessor.name, PageSnapshotProcessor)


__all__ = [
    "ItemProcessor",
    "PageSnapshotProcessor",
    "ProcessorFactory",
    "load_processor",
    "OutputRow",
    "ProcessResult",
]
