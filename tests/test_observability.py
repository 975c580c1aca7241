"""Tests for the observability module.

Tests for metrics collection, operation tracing and logging configuration.
"""
import logging
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from unittest.mock import patch

import pytest

from notestore.exceptions import NoteNotFoundError
from notestore.observability import (MetricsCollector, configure_logging,
                                     is_logging_configured, metrics,
                                     timed_operation, traced)


class TestMetricsCollector:
    """Tests for MetricsCollector class."""

    @pytest.fixture
    def metrics_collector(self):
        return MetricsCollector()

    def test_record_successful_operation(self, metrics_collector):
        metrics_collector.record_operation("create_note", 100.0, True)

        recorded = metrics_collector.get_metrics()
        assert recorded["create_note"]["count"] == 1
        assert recorded["create_note"]["success_count"] == 1
        assert recorded["create_note"]["avg_duration_ms"] == 100.0

    def test_record_failed_operation(self, metrics_collector):
        """Failures keep the last error and when it happened."""
        metrics_collector.record_operation("move_notebook", 50.0, False, "bad move")

        recorded = metrics_collector.get_metrics()["move_notebook"]
        assert recorded["error_count"] == 1
        assert recorded["last_error"] == "bad move"
        assert recorded["last_error_time"] is not None

    def test_multiple_operations_aggregated(self, metrics_collector):
        for duration in (100.0, 200.0, 300.0):
            metrics_collector.record_operation("search_notes", duration, True)

        recorded = metrics_collector.get_metrics()["search_notes"]
        assert recorded["avg_duration_ms"] == 200.0
        assert recorded["min_duration_ms"] == 100.0
        assert recorded["max_duration_ms"] == 300.0

    def test_empty_collector_summary(self, metrics_collector):
        summary = metrics_collector.get_summary()

        assert summary["total_operations"] == 0
        assert summary["overall_success_rate"] == 1.0
        assert summary["operations_tracked"] == []

    def test_summary_and_reset(self, metrics_collector):
        metrics_collector.record_operation("op1", 100.0, True)
        metrics_collector.record_operation("op2", 200.0, False, "Error")

        summary = metrics_collector.get_summary()
        assert summary["total_operations"] == 2
        assert summary["total_errors"] == 1
        assert summary["overall_success_rate"] == 0.5

        metrics_collector.reset()
        assert metrics_collector.get_metrics() == {}


class TestTracing:
    """Tests for timed_operation and the traced decorator."""

    def test_timed_operation_records_success(self):
        collector = MetricsCollector()

        with patch("notestore.observability.metrics", collector):
            with timed_operation("export") as op:
                time.sleep(0.01)
                op["notes"] = 3

        recorded = collector.get_metrics()["export"]
        assert recorded["success_count"] == 1
        assert recorded["avg_duration_ms"] >= 10

    def test_timed_operation_records_failure(self):
        collector = MetricsCollector()

        with patch("notestore.observability.metrics", collector):
            with pytest.raises(ValueError):
                with timed_operation("export"):
                    raise ValueError("disk full")

        assert collector.get_metrics()["export"]["last_error"] == "disk full"

    def test_traced_uses_operation_name(self):
        @traced("custom_op")
        def work(note_id=None):
            return [1, 2]

        assert work(note_id=5) == [1, 2]
        assert metrics.get_metrics()["custom_op"]["count"] == 1

    def test_store_operations_are_traced(self, store):
        note = store.notes.create("traced", "")
        store.notes.trash(note.id)
        store.notebooks.create("Work")

        recorded = metrics.get_metrics()
        assert {"create_note", "trash_note", "create_notebook"} <= set(recorded)

    def test_failed_store_operation_counted(self, store):
        with pytest.raises(NoteNotFoundError):
            store.notes.update(999, "missing", "")

        assert metrics.get_metrics()["update_note"]["error_count"] == 1


class TestConfigureLogging:
    """Tests for configure_logging function."""

    def test_creates_directory_and_file_handler(self, tmp_path, restore_store_logger):
        log_dir = tmp_path / "logs"

        result = configure_logging(log_dir=log_dir, console=False)

        assert result == log_dir
        assert log_dir.is_dir()
        assert is_logging_configured()
        assert any(
            isinstance(h, RotatingFileHandler)
            and Path(h.baseFilename) == (log_dir / "notestore.log").resolve()
            for h in restore_store_logger.handlers
        )

    def test_sets_level(self, tmp_path, restore_store_logger):
        configure_logging(log_dir=tmp_path, level=logging.DEBUG, console=False)

        assert restore_store_logger.level == logging.DEBUG

    def test_idempotent(self, tmp_path, restore_store_logger):
        configure_logging(log_dir=tmp_path, console=False)
        configure_logging(log_dir=tmp_path, console=False)

        log_file = (tmp_path / "notestore.log").resolve()
        file_handlers = [
            h for h in restore_store_logger.handlers
            if isinstance(h, RotatingFileHandler) and Path(h.baseFilename) == log_file
        ]
        assert len(file_handlers) == 1

    def test_module_loggers_write_to_file(self, tmp_path, restore_store_logger):
        configure_logging(log_dir=tmp_path, console=False)

        logging.getLogger("notestore.storage.note_repository").info("hello from a repository")
        for handler in restore_store_logger.handlers:
            handler.flush()

        assert "hello from a repository" in (tmp_path / "notestore.log").read_text()
