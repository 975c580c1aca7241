"""Common test fixtures for the note store."""

import logging
import sqlite3
from pathlib import Path

import pytest

from notestore.config import StoreConfig
from notestore.observability import metrics
from notestore.store import NoteStore


@pytest.fixture
def data_dir(tmp_path):
    """Empty data directory for one test."""
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def settings(data_dir):
    """Store configuration pointing at the test data directory."""
    return StoreConfig(
        data_dir=data_dir,
        max_file_bytes=64 * 1024,
        ocr_max_attempts=3,
        busy_timeout=10,
        log_to_console=False,
    )


@pytest.fixture
def store(data_dir, settings):
    """Opened store, closed after the test."""
    note_store = NoteStore.open(data_dir, settings)
    yield note_store
    note_store.close()


@pytest.fixture(autouse=True)
def _reset_metrics():
    """Keep the global metrics collector independent between tests."""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def raw_db(data_dir):
    """Open a plain sqlite3 connection to the store database.

    Used to prepare legacy or damaged databases the store itself would
    never write.
    """
    connections = []

    def _connect() -> sqlite3.Connection:
        conn = sqlite3.connect(str(Path(data_dir) / "notes.db"))
        connections.append(conn)
        return conn

    yield _connect
    for conn in connections:
        conn.close()



@pytest.fixture
def restore_store_logger():
    """Undo handler and level changes made by configure_logging."""
    store_logger = logging.getLogger("notestore")
    handlers = list(store_logger.handlers)
    level = store_logger.level
    yield store_logger
    for handler in store_logger.handlers:
        if handler not in handlers:
            handler.close()
    store_logger.handlers = handlers
    store_logger.setLevel(level)
