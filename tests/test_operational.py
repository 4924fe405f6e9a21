"""
Tests for operational concerns: metrics, logging and the CLI.
"""
import json
import logging
import os
import tempfile
import time

import pytest

from thermo_bandit.cli import main
from thermo_bandit.logging_config import HumanFormatter, JSONFormatter, configure_logging
from thermo_bandit.metrics import LatencyStats, MetricsCollector


class TestMetrics:

    def test_counters(self):
        metrics = MetricsCollector()
        assert metrics.get_counter("rewards.accepted") == 0
        metrics.increment("rewards.accepted")
        metrics.increment("rewards.accepted", 2)
        assert metrics.get_counter("rewards.accepted") == 3

    def test_time_operation(self):
        metrics = MetricsCollector()
        with metrics.time_operation("recommendation"):
            time.sleep(0.01)
        stats = metrics.summary()["latencies"]["recommendation"]
        assert stats["count"] == 1
        assert stats["max_ms"] >= 5

    def test_reset(self):
        metrics = MetricsCollector()
        metrics.increment("windows.armed")
        metrics.reset()
        assert metrics.summary()["counters"] == {}

    def test_latency_percentiles(self):
        stats = LatencyStats()
        for ms in range(1, 101):
            stats.record(float(ms))
        assert stats.percentile(50) == 51.0
        assert stats.min_ms == 1.0
        assert stats.to_dict()["p95_ms"] == 96.0


class TestLogging:

    def _record(self, **extra):
        record = logging.LogRecord("thermo_bandit.test", logging.INFO, __file__, 1, "reward applied", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter_includes_structured_fields(self):
        line = JSONFormatter().format(self._record(entity_id="unit-1", subsystem="rewards", event_type="window_accepted"))
        data = json.loads(line)
        assert data["entity_id"] == "unit-1"
        assert data["subsystem"] == "rewards"
        assert data["event"] == "window_accepted"
        assert data["message"] == "reward applied"

    def test_human_formatter(self):
        line = HumanFormatter(use_colors=False).format(self._record(entity_id="unit-1", latency_ms=2.5))
        assert "entity=unit-1" in line
        assert "(2.5ms)" in line

    def test_configure_logging_writes_files(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        with tempfile.TemporaryDirectory() as tmpdir:
            try:
                configure_logging(level="DEBUG", log_dir=tmpdir)
                logging.getLogger("thermo_bandit.test").info("hello", extra={"entity_id": "unit-1"})
                for handler in root.handlers:
                    handler.flush()
                assert os.path.exists(os.path.join(tmpdir, "thermo_bandit.log"))
                with open(os.path.join(tmpdir, "thermo_bandit.json.log")) as f:
                    assert json.loads(f.readline())["entity_id"] == "unit-1"
            finally:
                for handler in root.handlers:
                    handler.close()
                root.handlers = saved_handlers
                root.setLevel(saved_level)


class TestCli:

    @pytest.fixture
    def config_path(self, tmp_path, monkeypatch):
        monkeypatch.delenv("THERMO_BANDIT_STATE_DIR", raising=False)
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "state_path": str(tmp_path / "learning.json"),
            "log_level": "WARNING",
        }))
        yield str(path)
        root = logging.getLogger()
        for handler in root.handlers:
            handler.close()
        root.handlers = []

    def test_recommend(self, config_path, capsys):
        assert main(["--config", config_path, "recommend", "unit-1", "--outdoor", "32", "--target", "24"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["entity_id"] == "unit-1"
        assert 16.0 <= data["recommended_temp"] <= 30.0

    def test_stats_unknown_entity(self, config_path, capsys):
        assert main(["--config", config_path, "stats", "--entity", "unit-1"]) == 1

    def test_stats_aggregate(self, config_path, capsys):
        assert main(["--config", config_path, "stats"]) == 0
        assert json.loads(capsys.readouterr().out)["total_entities"] == 0

    def test_reset(self, config_path, capsys, tmp_path):
        main(["--config", config_path, "recommend", "unit-1", "--outdoor", "32", "--target", "24"])
        assert main(["--config", config_path, "reset"]) == 0
        assert "all entities" in capsys.readouterr().out
        with open(tmp_path / "learning.json") as f:
            assert json.load(f)["learning_data"] == {}
