"""Unit tests for logging configuration module.

Tests verify that ``setup_logging`` installs the console handler on the
requested stream, honours the format and level names, adds the file handler
only when a directory is given, and applies the per-module levels.
"""

import io
import logging
from pathlib import Path

import pytest

from toolmesh.core.logging_config import (
    DETAILED_FORMAT,
    JSON_FORMAT,
    LOG_FILE_NAME,
    MODULE_LOG_LEVELS,
    SIMPLE_FORMAT,
    get_logger,
    setup_logging,
)


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    module_levels = {name: logging.getLogger(name).level for name in MODULE_LOG_LEVELS}
    yield
    # pytest's capture handlers come and go per phase; only drop the ones setup_logging installed
    for handler in root.handlers[:]:
        if handler not in handlers and type(handler).__module__ == "logging":
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
    for name, module_level in module_levels.items():
        logging.getLogger(name).setLevel(module_level)


def _console_handler() -> logging.StreamHandler:
    return next(
        h
        for h in logging.getLogger().handlers
        if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
    )


class TestSetupLoggingLevels:
    """Test setup_logging with different log levels."""

    @pytest.mark.parametrize(
        "log_level,expected_level",
        [
            ("DEBUG", logging.DEBUG),
            ("INFO", logging.INFO),
            ("WARNING", logging.WARNING),
            ("error", logging.ERROR),
            ("critical", logging.CRITICAL),
        ],
    )
    def test_console_level(self, log_level, expected_level):
        setup_logging(log_level, stream=io.StringIO())
        assert _console_handler().level == expected_level

    def test_default_level_is_info(self):
        setup_logging(stream=io.StringIO())
        assert _console_handler().level == logging.INFO

    def test_root_logger_captures_everything(self):
        setup_logging("ERROR", stream=io.StringIO())
        assert logging.getLogger().level == logging.DEBUG


class TestSetupLoggingFormats:
    """Test setup_logging with different log formats."""

    @pytest.mark.parametrize(
        "log_format,expected_format",
        [("simple", SIMPLE_FORMAT), ("detailed", DETAILED_FORMAT), ("json", JSON_FORMAT), (None, DETAILED_FORMAT)],
    )
    def test_formats(self, log_format, expected_format):
        setup_logging("INFO", log_format, stream=io.StringIO())
        assert _console_handler().formatter._fmt == expected_format

    def test_records_go_to_the_given_stream(self):
        stream = io.StringIO()
        setup_logging("INFO", "simple", stream=stream)

        get_logger("toolmesh.server.test").warning("listening")

        assert "WARNING - toolmesh.server.test - listening" in stream.getvalue()


class TestSetupLoggingFileHandling:
    """Test file logging."""

    def test_no_file_handler_without_directory(self):
        setup_logging(stream=io.StringIO())
        assert not any(isinstance(h, logging.FileHandler) for h in logging.getLogger().handlers)

    def test_file_handler_logs_debug_into_created_directory(self, tmp_path: Path):
        log_dir = tmp_path / "logs" / "nested"
        setup_logging("WARNING", "simple", log_dir, stream=io.StringIO())

        file_handler = next(h for h in logging.getLogger().handlers if isinstance(h, logging.FileHandler))
        get_logger("toolmesh.runtime.test").debug("slot acquired")
        file_handler.flush()

        assert file_handler.level == logging.DEBUG
        assert (log_dir / LOG_FILE_NAME).exists()
        assert "slot acquired" in (log_dir / LOG_FILE_NAME).read_text(encoding="utf-8")

    def test_repeated_setup_does_not_duplicate_handlers(self, tmp_path: Path):
        setup_logging(log_file_dir=tmp_path, stream=io.StringIO())
        setup_logging(log_file_dir=tmp_path, stream=io.StringIO())
        assert len(logging.getLogger().handlers) == 2


class TestModuleLevels:
    @pytest.mark.parametrize("module_name,expected_level", sorted(MODULE_LOG_LEVELS.items()))
    def test_module_specific_log_levels(self, module_name, expected_level):
        setup_logging(stream=io.StringIO())
        assert logging.getLogger(module_name).level == getattr(logging, expected_level)

    def test_child_logger_inherits_module_level(self):
        setup_logging(stream=io.StringIO())
        assert get_logger("toolmesh.protocol.transport.push").getEffectiveLevel() == logging.INFO
        assert get_logger("toolmesh.protocol.client").getEffectiveLevel() == logging.DEBUG


def test_get_logger_returns_named_instance():
    assert get_logger("toolmesh.x") is logging.getLogger("toolmesh.x")
