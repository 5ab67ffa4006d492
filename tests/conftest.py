"""
Pytest fixtures and test configuration for devlog tests.
"""

import logging

import pytest

from devlog.storage.memory_store import MemoryStore
from devlog.storage.queue import EventQueue


@pytest.fixture(autouse=True)
def clean_devlog_logger(monkeypatch):
    """Keep tests from writing log files anywhere but tmp_path."""
    import devlog.logging_config as logging_config

    monkeypatch.setattr(logging_config, "_log_base", None)
    monkeypatch.delenv("DEVLOG_HOME", raising=False)
    for name in (
        "DEVLOG_BATCH_SIZE",
        "DEVLOG_POLL_INTERVAL",
        "DEVLOG_MAX_ATTEMPTS",
        "DEVLOG_WATCHDOG_SECONDS",
        "DEVLOG_EXTRACTOR",
        "DEVLOG_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    logger = logging.getLogger("devlog")
    handlers = list(logger.handlers)
    level = logger.level
    yield
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.handlers[:] = handlers
    logger.setLevel(level)


@pytest.fixture
def base_dir(tmp_path):
    return tmp_path / "devlog"


@pytest.fixture
def queue(base_dir):
    q = EventQueue(base_dir)
    q.init_queue()
    return q


@pytest.fixture
def store(base_dir):
    s = MemoryStore(base_dir)
    s.init_store()
    return s


@pytest.fixture
def tool_event():
    return {"event_type": "tool_use", "session_id": "s1", "tool_name": "Edit"}
