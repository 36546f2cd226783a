"""
Facility Harvester - Configuration Unit Tests

Tests for settings loading and validation, the logging formatters, the
per-task log context and startup validation.
"""

import asyncio
import json
import logging
import sys

import pytest
from pydantic import ValidationError

from config.logging import (
    ConsoleFormatter,
    ContextFilter,
    JSONFormatter,
    LogContext,
    censor_sensitive_data,
)
from config.settings import Settings, get_settings
from startup import initialize_application, validate_checkpoint, validate_directory, validate_settings


def make_record(message="Item completed", level=logging.INFO, **extra):
    record = logging.LogRecord(
        name="harvest.scheduler",
        level=level,
        pathname=__file__,
        lineno=10,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


# =============================================================================
# Settings
# =============================================================================

class TestSettings:
    """Tests for the Settings model."""

    def test_defaults(self, monkeypatch):
        for name in ("HARVEST_CONCURRENCY", "HARVEST_MAX_ATTEMPTS"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings()

        assert settings.harvest_concurrency == 3
        assert settings.harvest_max_attempts == 3
        assert settings.harvest_backoff_base_seconds == 1.0
        assert settings.harvest_backoff_ceiling_seconds == 5.0
        assert settings.harvest_skip_completed is True
        assert settings.checkpoint_filename == "progress.jsonl"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("HARVEST_CONCURRENCY", "8")
        monkeypatch.setenv("HARVEST_SKIP_COMPLETED", "false")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        settings = get_settings()

        assert settings.harvest_concurrency == 8
        assert settings.harvest_skip_completed is False
        assert settings.log_level == "DEBUG"

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()

    def test_concurrency_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(harvest_concurrency=0)

    def test_ceiling_below_base_rejected(self):
        with pytest.raises(ValidationError):
            Settings(harvest_backoff_base_seconds=10, harvest_backoff_ceiling_seconds=5)

    def test_invalid_log_level(self):
        with pytest.raises(ValidationError):
            Settings(log_level="LOUD")

    def test_invalid_environment(self):
        with pytest.raises(ValidationError):
            Settings(environment="staging")

    def test_only_used_directories_configurable(self):
        """Settings expose no options the pipeline never reads."""
        assert {name for name in Settings.model_fields if name.endswith("_directory")} == {
            "data_directory",
            "output_directory",
        }
        assert "debug" not in Settings.model_fields
        assert not hasattr(Settings(), "get_reports_path")

    def test_paths_resolve_under_directories(self, settings, tmp_path):
        assert settings.checkpoint_path == tmp_path / "data" / "progress.jsonl"
        assert settings.output_path == tmp_path / "output" / "facilities.csv"
        assert settings.get_output_path("pages", "1.html") == tmp_path / "output" / "pages" / "1.html"

    def test_relative_paths_use_project_root(self):
        settings = Settings(data_directory="data")
        assert settings.get_data_path() == settings.project_root / "data"

    def test_empty_log_file_disables_file_logging(self):
        assert Settings(log_file="").get_log_file_path() is None


# =============================================================================
# Logging
# =============================================================================

class TestCensoring:
    """Tests for sensitive data censoring."""

    @pytest.mark.parametrize("text, secret", [
        ("password=hunter2", "hunter2"),
        ('{"api_key": "abc123"}', "abc123"),
        ("Cookie: ASP.NET_SessionId=x1y2z3; path=/", "x1y2z3"),
        ("JSESSIONID=9F8E7D", "9F8E7D"),
        ("Authorization: Bearer eyJhbGci.payload", "eyJhbGci.payload"),
    ])
    def test_secrets_redacted(self, text, secret):
        censored = censor_sensitive_data(text)

        assert secret not in censored
        assert "[REDACTED]" in censored

    def test_plain_text_untouched(self):
        assert censor_sensitive_data("Loaded 412 work items") == "Loaded 412 work items"


class TestFormatters:
    """Tests for the JSON and console formatters."""

    def test_json_formatter_fields(self):
        record = make_record(item_id="NJ1A006", attempt=2)

        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "INFO"
        assert entry["logger"] == "harvest.scheduler"
        assert entry["message"] == "Item completed"
        assert entry["extra"] == {"item_id": "NJ1A006", "attempt": 2}
        assert "location" not in entry

    def test_json_formatter_warning_location(self):
        entry = json.loads(JSONFormatter().format(make_record(level=logging.WARNING)))
        assert entry["location"]["line"] == 10

    def test_json_formatter_exception(self):
        try:
            raise ValueError("bad table")
        except ValueError:
            record = make_record(level=logging.ERROR)
            record.exc_info = sys.exc_info()

        entry = json.loads(JSONFormatter().format(record))

        assert entry["exception"]["type"] == "ValueError"
        assert entry["exception"]["message"] == "bad table"

    def test_json_formatter_unserializable_extra(self):
        entry = json.loads(JSONFormatter().format(make_record(path=object())))
        assert isinstance(entry["extra"]["path"], str)

    def test_console_formatter(self):
        line = ConsoleFormatter(use_colors=False).format(make_record(item_id="NJ1A006"))

        assert "INFO" in line
        assert "Item completed" in line
        assert "item_id=NJ1A006" in line


class TestLogContext:
    """Tests for LogContext and ContextFilter."""

    def test_fields_added_and_removed(self):
        with LogContext(item_id="A1"):
            with LogContext(processor="nj"):
                assert LogContext.get_context() == {"item_id": "A1", "processor": "nj"}
            assert LogContext.get_context() == {"item_id": "A1"}
        assert LogContext.get_context() == {}

    def test_filter_adds_fields_to_record(self):
        record = make_record()

        with LogContext(item_id="A1"):
            ContextFilter().filter(record)

        assert record.item_id == "A1"

    def test_filter_keeps_explicit_extras(self):
        record = make_record(item_id="explicit")

        with LogContext(item_id="context"):
            ContextFilter().filter(record)

        assert record.item_id == "explicit"

    @pytest.mark.asyncio
    async def test_concurrent_tasks_isolated(self):
        """Each task sees only its own item_id."""
        seen = {}

        async def worker(item_id):
            with LogContext(item_id=item_id):
                await asyncio.sleep(0.01)
                seen[item_id] = LogContext.get_context()["item_id"]

        await asyncio.gather(*(worker(f"id-{n}") for n in range(10)))

        assert seen == {f"id-{n}": f"id-{n}" for n in range(10)}
        assert LogContext.get_context() == {}


# =============================================================================
# Startup Validation
# =============================================================================

class TestStartup:
    """Tests for startup validation."""

    def test_validate_directory_creates_and_checks_writable(self, tmp_path):
        target = tmp_path / "new" / "data"

        writable, _ = validate_directory(target)

        assert writable
        assert target.is_dir()
        assert list(target.iterdir()) == []

    def test_validate_directory_blocked_by_file(self, tmp_path):
        blocker = tmp_path / "data"
        blocker.write_text("")

        writable, message = validate_directory(blocker)

        assert not writable
        assert "not writable" in message

    def test_validate_checkpoint_missing(self, settings):
        readable, message = validate_checkpoint(settings)

        assert readable
        assert "starting fresh" in message

    def test_validate_checkpoint_counts(self, settings):
        settings.checkpoint_path.parent.mkdir(parents=True)
        settings.checkpoint_path.write_text(
            '{"id": "A1", "status": "completed"}\n{"id": "B2", "status": "failed", "error": "x"}\n',
            encoding="utf-8",
        )

        readable, message = validate_checkpoint(settings)

        assert readable
        assert "1 completed" in message
        assert "1 failed" in message

    def test_validate_settings_reports_errors(self, monkeypatch):
        monkeypatch.setenv("HARVEST_CONCURRENCY", "0")

        settings, errors, _ = validate_settings()

        assert settings is None
        assert any("HARVEST_CONCURRENCY" in error for error in errors)

    def test_validate_settings_warnings(self, monkeypatch):
        monkeypatch.setenv("HARVEST_CONCURRENCY", "50")
        monkeypatch.setenv("HARVEST_SKIP_COMPLETED", "false")

        settings, errors, warnings = validate_settings()

        assert settings is not None
        assert errors == []
        assert len(warnings) == 2

    def test_initialize_application(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATA_DIRECTORY", str(tmp_path / "data"))
        monkeypatch.setenv("OUTPUT_DIRECTORY", str(tmp_path / "output"))
        monkeypatch.setenv("LOG_FILE", "")

        result = initialize_application(setup_logs=False)

        assert result.success
        assert result.settings_valid
        assert result.directories_writable
        assert result.checkpoint_readable
        assert (tmp_path / "data").is_dir()
