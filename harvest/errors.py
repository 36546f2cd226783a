"""
Facility Harvester - Error Types

Exceptions shared by the pipeline components. The split matters for what
happens next: transient errors are retried, permanent ones fail the item,
durability errors stop the run.
"""

from typing import Optional


class HarvestError(Exception):
    """Base class for all pipeline errors."""


class TransientFetchError(HarvestError):
    """
    Raised by an operation to signal a failure worth retrying.

    Useful for rate-limit pages served with a 200 status, or a portal
    returning an empty body while it is under load.
    """


class PermanentItemError(HarvestError):
    """The item cannot be processed; retrying will not help."""


class ResourceUnavailableError(PermanentItemError):
    """The portal intentionally does not provide the requested resource."""


class FetchFailedError(HarvestError):
    """
    A network operation failed after the retry policy gave up.

    Raised by FetchResult.unwrap() so processors can use plain exception
    flow; the scheduler records it as an item failure.
    """

    def __init__(
        self,
        description: str,
        last_error: Optional[BaseException],
        attempts: int,
        permanent: bool = False,
    ):
        self.description = description
        self.last_error = last_error
        self.attempts = attempts
        self.permanent = permanent
        kind = "permanent failure" if permanent else f"gave up after {attempts} attempts"
        detail = f"{type(last_error).__name__}: {last_error}" if last_error else "unknown error"
        super().__init__(f"{description or 'operation'}: {kind} ({detail})")


class DurabilityError(HarvestError):
    """
    Output or checkpoint state could not be written to disk.

    Fatal: once completion cannot be recorded, resuming would either lose
    work or duplicate it, so the run must stop.
    """


__all__ = [
    "HarvestError",
    "TransientFetchError",
    "PermanentItemError",
    "ResourceUnavailableError",
    "FetchFailedError",
    "DurabilityError",
]
