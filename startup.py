"""
Facility Harvester - Application Startup

Validates configuration and the filesystem before a harvest starts, so a
run does not crash on its first checkpoint write after an hour of crawling.

Usage:
    from startup import initialize_application

    result = initialize_application()
    if not result.success:
        sys.exit(1)

    # Standalone check
    python -m startup
"""

import logging
import sys
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from config.settings import Settings, get_settings
from config.logging import setup_logging


logger = logging.getLogger(__name__)

# Above this the portals start answering with 429s and connection resets
HIGH_CONCURRENCY_WARNING = 20


@dataclass
class StartupResult:
    """Result of startup validation."""

    success: bool = True
    settings_valid: bool = False
    directories_writable: bool = False
    checkpoint_readable: bool = False
    settings: Optional[Settings] = None

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def add_error(self, message: str) -> None:
        """Add an error and mark as failed."""
        self.errors.append(message)
        self.success = False

    def add_warning(self, message: str) -> None:
        """Add a warning (doesn't fail startup)."""
        self.warnings.append(message)


def validate_settings() -> tuple[Optional[Settings], list[str], list[str]]:
    """
    Load and sanity-check settings.

    Returns:
        Tuple of (settings or None, error messages, warning messages)
    """
    errors: list[str] = []
    warnings: list[str] = []

    try:
        settings = get_settings()
    except ValidationError as e:
        for err in e.errors():
            location = ".".join(str(part) for part in err.get("loc", ())) or "settings"
            errors.append(f"{location.upper()}: {err.get('msg')}")
        return None, errors, warnings

    if settings.harvest_concurrency > HIGH_CONCURRENCY_WARNING:
        warnings.append(
            f"HARVEST_CONCURRENCY={settings.harvest_concurrency} is high; "
            "government portals often throttle above a handful of connections"
        )
    if not settings.harvest_skip_completed:
        warnings.append("HARVEST_SKIP_COMPLETED is off; the checkpoint and output will be reset")

    return settings, errors, warnings


def validate_directory(path: Path) -> tuple[bool, str]:
    """
    Check that a directory exists (creating it) and accepts writes.

    Returns:
        Tuple of (is_writable, message)
    """
    try:
        path.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=path, prefix=".write-check-"):
            pass
        return True, f"{path} is writable"
    except OSError as e:
        return False, f"{path} is not writable: {e}"


def validate_checkpoint(settings: Settings) -> tuple[bool, str]:
    """
    Read the checkpoint log without modifying it.

    Returns:
        Tuple of (is_readable, message)
    """
    from harvest.checkpoint import CheckpointStore

    path = settings.checkpoint_path
    if not path.exists():
        return True, f"No checkpoint at {path}, starting fresh"

    try:
        stats = CheckpointStore(path).stats()
    except OSError as e:
        return False, f"Cannot read checkpoint {path}: {e}"

    return True, (
        f"Checkpoint {path}: {stats.completed} completed, "
        f"{stats.failed} failed, {stats.orphaned} orphaned"
    )


def initialize_application(setup_logs: bool = True) -> StartupResult:
    """
    Initialize logging and validate everything a harvest needs.

    Args:
        setup_logs: Configure logging (disable when the caller already did)

    Returns:
        StartupResult with validation details
    """
    result = StartupResult()

    # Step 1: Settings (logging depends on them)
    settings, settings_errors, settings_warnings = validate_settings()
    for error in settings_errors:
        result.add_error(error)
    for warning in settings_warnings:
        result.add_warning(warning)

    if settings is None:
        if setup_logs:
            logging.basicConfig(level=logging.INFO)
        for error in result.errors:
            logger.error(f"Settings error: {error}")
        return result

    result.settings_valid = True
    result.settings = settings

    # Step 2: Logging
    if setup_logs:
        try:
            setup_logging(settings=settings)
        except OSError as e:
            result.add_error(f"Logging setup failed: {e}")
            return result

    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Log level: {settings.log_level}")

    # Step 3: Directories
    logger.info("Validating directories...")
    result.directories_writable = True
    for directory in (settings.get_data_path(), settings.get_output_path()):
        writable, message = validate_directory(directory)
        if writable:
            logger.debug(message)
        else:
            result.directories_writable = False
            result.add_error(message)
            logger.error(message)

    # Step 4: Checkpoint
    readable, message = validate_checkpoint(settings)
    result.checkpoint_readable = readable
    if readable:
        logger.info(message)
    else:
        result.add_error(message)
        logger.error(message)

    # Summary
    if result.success:
        logger.info("Startup validation passed")
    else:
        logger.error("Startup validation failed")
        for error in result.errors:
            logger.error(f"  - {error}")

    for warning in result.warnings:
        logger.warning(f"  - {warning}")

    return result


# =============================================================================
# CLI Entry Point
# =============================================================================

def main() -> int:
    """
    Main entry point for validation script.

    Can be run standalone to check configuration:
        python -m startup

    Returns:
        0 on success, 1 on failure
    """
    result = initialize_application()

    if result.success:
        print("\nAll validations passed")
        return 0
    else:
        print("\nValidation failed:")
        for error in result.errors:
            print(f"  - {error}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
