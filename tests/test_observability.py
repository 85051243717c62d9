"""Tests for the observability module.

Tests for metrics collection, operation timing and logging configuration.
"""
import json
import logging
import time
from logging.handlers import RotatingFileHandler
from unittest.mock import patch

import pytest

from embedding_gemma.observability import (
    ROOT_LOGGER_NAME,
    MetricsCollector,
    configure_logging,
    is_logging_configured,
    timed_operation,
    traced,
)


@pytest.fixture
def restore_root_logger():
    """Remove handlers configure_logging attaches, so tests don't leak them."""
    root = logging.getLogger(ROOT_LOGGER_NAME)
    before = list(root.handlers)
    level = root.level
    yield root
    for handler in list(root.handlers):
        if handler not in before:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


class TestMetricsCollector:
    """Tests for MetricsCollector class."""

    @pytest.fixture
    def metrics_file(self, tmp_path):
        return tmp_path / "metrics" / "metrics.json"

    @pytest.fixture
    def metrics_collector(self, metrics_file):
        return MetricsCollector(metrics_file=metrics_file)

    def test_record_successful_operation(self, metrics_collector):
        """Test recording a successful operation."""
        metrics_collector.record_operation("embed", 100.0, True)

        metrics = metrics_collector.get_metrics()
        assert metrics["embed"]["count"] == 1
        assert metrics["embed"]["success_count"] == 1
        assert metrics["embed"]["error_count"] == 0
        assert metrics["embed"]["avg_duration_ms"] == 100.0

    def test_record_failed_operation(self, metrics_collector):
        """Test recording a failed operation with error."""
        metrics_collector.record_operation("rerank", 50.0, False, "backend fault")

        metrics = metrics_collector.get_metrics()
        assert metrics["rerank"]["error_count"] == 1
        assert metrics["rerank"]["last_error"] == "backend fault"
        assert metrics["rerank"]["last_error_time"] is not None

    def test_multiple_operations_aggregated(self, metrics_collector):
        """Durations aggregate into avg/min/max per operation."""
        metrics_collector.record_operation("embed", 100.0, True)
        metrics_collector.record_operation("embed", 200.0, True)
        metrics_collector.record_operation("embed", 300.0, False, "Error")

        metrics = metrics_collector.get_metrics()
        assert metrics["embed"]["count"] == 3
        assert metrics["embed"]["success_count"] == 2
        assert metrics["embed"]["avg_duration_ms"] == 200.0
        assert metrics["embed"]["min_duration_ms"] == 100.0
        assert metrics["embed"]["max_duration_ms"] == 300.0

    def test_save_metrics_writes_json(self, metrics_collector, metrics_file):
        """save_metrics writes a snapshot, creating the parent directory."""
        metrics_collector.record_operation("resolve", 10.0, True)

        assert metrics_collector.save_metrics() is True

        data = json.loads(metrics_file.read_text())
        assert data["operations"]["resolve"]["count"] == 1
        assert not metrics_file.with_suffix(".tmp").exists()

    def test_save_metrics_disabled_without_file(self):
        """In-memory collectors don't persist."""
        collector = MetricsCollector()
        collector.record_operation("embed", 1.0, True)
        assert collector.save_metrics() is False

    def test_get_summary(self, metrics_collector):
        """Test getting metrics summary."""
        metrics_collector.record_operation("embed", 100.0, True)
        metrics_collector.record_operation("rerank", 200.0, False, "Error")

        summary = metrics_collector.get_summary()
        assert summary["total_operations"] == 2
        assert summary["total_success"] == 1
        assert summary["total_errors"] == 1
        assert set(summary["operations_tracked"]) == {"embed", "rerank"}

    def test_reset_metrics(self, metrics_collector):
        """Test resetting all metrics."""
        metrics_collector.record_operation("embed", 100.0, True)
        metrics_collector.reset()
        assert metrics_collector.get_metrics() == {}


class TestTimedOperation:
    """Tests for timed_operation context manager and traced decorator."""

    def test_timed_operation_records_success(self):
        """Successful operations are timed and recorded."""
        collector = MetricsCollector()

        with patch("embedding_gemma.observability.metrics", collector):
            with timed_operation("embed", count=2) as op:
                time.sleep(0.01)
                op["batches"] = 1

        metrics = collector.get_metrics()
        assert metrics["embed"]["success_count"] == 1
        assert metrics["embed"]["avg_duration_ms"] >= 10
        assert len(op["correlation_id"]) == 8

    def test_timed_operation_records_failure(self):
        """Failed operations are recorded and the error propagates."""
        collector = MetricsCollector()

        with patch("embedding_gemma.observability.metrics", collector):
            with pytest.raises(ValueError, match="bad input"):
                with timed_operation("embed"):
                    raise ValueError("bad input")

        metrics = collector.get_metrics()
        assert metrics["embed"]["error_count"] == 1
        assert "bad input" in metrics["embed"]["last_error"]

    def test_traced_records_under_operation_name(self):
        """traced() wraps a function and records it by name."""
        collector = MetricsCollector()

        @traced("load_model")
        def load():
            return [1, 2, 3]

        with patch("embedding_gemma.observability.metrics", collector):
            assert load() == [1, 2, 3]

        assert collector.get_metrics()["load_model"]["count"] == 1

    def test_traced_defaults_to_function_name(self):
        collector = MetricsCollector()

        @traced()
        def warm_up():
            return None

        with patch("embedding_gemma.observability.metrics", collector):
            warm_up()

        assert "warm_up" in collector.get_metrics()


class TestConfigureLogging:
    """Tests for configure_logging function."""

    def test_creates_directory_and_returns_path(self, tmp_path, restore_root_logger):
        log_dir = tmp_path / "logs"

        result = configure_logging(log_dir=log_dir, console=False)

        assert result == log_dir
        assert log_dir.is_dir()
        assert is_logging_configured()

    def test_sets_level(self, tmp_path, restore_root_logger):
        configure_logging(log_dir=tmp_path / "logs", level=logging.DEBUG, console=False)

        assert restore_root_logger.level == logging.DEBUG

    def test_is_idempotent(self, tmp_path, restore_root_logger):
        """Configuring twice doesn't stack file handlers."""
        log_dir = tmp_path / "logs"
        configure_logging(log_dir=log_dir, console=False)
        configure_logging(log_dir=log_dir, console=False)

        file_handlers = [
            h
            for h in restore_root_logger.handlers
            if isinstance(h, RotatingFileHandler)
        ]
        assert len(file_handlers) == 1

    def test_engine_logs_reach_file(self, tmp_path, restore_root_logger):
        log_dir = tmp_path / "logs"
        configure_logging(log_dir=log_dir, console=False)

        logging.getLogger("embedding_gemma.services.resolver").info("resolved model")
        for handler in restore_root_logger.handlers:
            handler.flush()

        assert "resolved model" in (log_dir / "embedding_gemma.log").read_text()
