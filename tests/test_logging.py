"""Tests for the structured logging configuration."""

from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest
import structlog

from encore.logging import setup_logging


@pytest.fixture(autouse=True)
def _reset_logging():
    """Reset logging state between tests."""
    yield
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    structlog.reset_defaults()


def test_setup_creates_log_files(tmp_path: Path):
    log_dir = tmp_path / "logs"
    setup_logging(log_level="info", log_dir=log_dir)

    structlog.get_logger("encore.test").info("hello")

    assert (log_dir / "encore.log").exists()
    assert (log_dir / "import.log").exists()


def test_main_log_human_readable(tmp_path: Path):
    log_dir = tmp_path / "logs"
    setup_logging(log_level="info", log_dir=log_dir)

    structlog.get_logger("encore.server.api").info("test_event", key="value")

    content = (log_dir / "encore.log").read_text()
    assert "test_event" in content
    assert "key=value" in content
    with pytest.raises(json.JSONDecodeError):
        json.loads(content.strip())


def test_import_log_is_json(tmp_path: Path):
    log_dir = tmp_path / "logs"
    setup_logging(log_level="info", log_dir=log_dir)

    structlog.get_logger("encore.importer.orchestrator").info("import_started", artist_id="a1")

    data = json.loads((log_dir / "import.log").read_text().strip())
    assert data["event"] == "import_started"
    assert data["artist_id"] == "a1"
    assert data["level"] == "info"
    assert "timestamp" in data


def test_import_log_only_has_importer_events(tmp_path: Path):
    log_dir = tmp_path / "logs"
    setup_logging(log_level="info", log_dir=log_dir)

    structlog.get_logger("encore.server.api").info("api_event")
    structlog.get_logger("encore.importer.resync").info("resync_event")

    import_content = (log_dir / "import.log").read_text()
    main_content = (log_dir / "encore.log").read_text()
    assert "resync_event" in import_content
    assert "api_event" not in import_content
    assert "api_event" in main_content
    assert "resync_event" in main_content


def test_level_filtering(tmp_path: Path):
    log_dir = tmp_path / "logs"
    setup_logging(log_level="warning", log_dir=log_dir)

    log = structlog.get_logger("encore.test")
    log.info("should_not_appear")
    log.warning("should_appear")

    content = (log_dir / "encore.log").read_text()
    assert "should_not_appear" not in content
    assert "should_appear" in content


def test_rotation_parameters(tmp_path: Path):
    setup_logging(log_level="info", log_dir=tmp_path / "logs")

    rotating = [h for h in logging.getLogger().handlers if isinstance(h, RotatingFileHandler)]
    assert len(rotating) == 2
    for handler in rotating:
        assert handler.maxBytes == 10 * 1024 * 1024
        assert handler.backupCount == 5


def test_no_log_dir_no_handlers():
    setup_logging(log_level="info", log_dir=None)
    assert logging.getLogger().handlers == []


def test_console_handler(tmp_path: Path):
    setup_logging(log_level="info", log_dir=None, console=True)
    handlers = logging.getLogger().handlers
    assert len(handlers) == 1
    assert isinstance(handlers[0], logging.StreamHandler)


def test_noisy_loggers_capped(tmp_path: Path):
    setup_logging(log_level="debug", log_dir=tmp_path / "logs")
    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("aiosqlite").level == logging.WARNING


def test_bound_context_reaches_import_log(tmp_path: Path):
    log_dir = tmp_path / "logs"
    setup_logging(log_level="info", log_dir=log_dir)

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(job_id="j1")
    structlog.get_logger("encore.importer.orchestrator").info("with_context")
    structlog.contextvars.clear_contextvars()

    data = json.loads((log_dir / "import.log").read_text().strip())
    assert data["job_id"] == "j1"
