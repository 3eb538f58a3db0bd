"""
Application plumbing: config selection, CLI commands, structured logging,
keyed locks.
"""

import json
import logging
import threading
import time

from dealerflow.config import DevelopmentConfig, TestingConfig, config
from dealerflow.core.locks import KeyedLocks
from dealerflow.middleware.logging_config import JSONFormatter, ReadableFormatter
from dealerflow.services.workflow_service import get_engine


class TestConfig:
    def test_config_map(self):
        assert config["testing"] is TestingConfig
        assert config["development"] is DevelopmentConfig

    def test_testing_defaults(self, app):
        assert app.config["TESTING"] is True
        assert app.config["NOTIFICATION_ASYNC"] is False
        assert app.config["WORKFLOW_DEADLINE_ALERT_DAYS"] == 3
        assert app.config["WORKFLOW_BOTTLENECK_MULTIPLIER"] == 2.0

    def test_engine_registered(self, app):
        engine = app.extensions["workflow_engine"]
        assert engine is get_engine()
        assert "lead-to-quote" in engine.catalog.process_types()
        assert engine.order_pipeline == app.config["WORKFLOW_ORDER_PIPELINE"]
        assert engine.order_pipeline[-1] == "order-fulfillment"


class TestCli:
    def test_seed_directory(self, app):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["seed-directory"])
        assert result.exit_code == 0, result.output
        assert "Seeded 12 role(s) and 14 user(s)." in result.output

        again = runner.invoke(args=["seed-directory"])
        assert "Seeded 0 role(s) and 0 user(s)." in again.output

    def test_seed_directory_from_file(self, app, tmp_path):
        path = tmp_path / "directory.json"
        path.write_text(json.dumps({
            "roles": [{"name": "installer"}],
            "users": [{"user_id": "inst.1", "role": "installer"}],
        }), encoding="utf-8")
        result = app.test_cli_runner().invoke(args=["seed-directory", "--file", str(path)])
        assert "Seeded 1 role(s) and 1 user(s)." in result.output

    def test_scan_deadlines(self, app):
        result = app.test_cli_runner().invoke(args=["scan-deadlines"])
        assert result.exit_code == 0, result.output
        assert "Deadline alerts emitted for 0 workflow(s)." in result.output


class TestLogging:
    def _record(self, **extra):
        record = logging.LogRecord("dealerflow.test", logging.INFO, __file__, 10, "advanced %s", ("x",), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter_promotes_workflow_keys(self):
        entry = json.loads(JSONFormatter().format(self._record(workflow_id="wf-1", stage_id="assessment")))
        assert entry["message"] == "advanced x"
        assert entry["level"] == "INFO"
        assert entry["workflow_id"] == "wf-1"
        assert entry["stage_id"] == "assessment"
        assert "record_id" not in entry

    def test_readable_formatter_shows_workflow(self):
        line = ReadableFormatter().format(self._record(workflow_id="wf-9"))
        assert "advanced x" in line
        assert "(wf=wf-9)" in line


class TestKeyedLocks:
    def test_same_key_serialised(self):
        locks = KeyedLocks()
        active = []
        overlaps = []

        def worker():
            with locks.hold("wf-1"):
                active.append(1)
                if len(active) > 1:
                    overlaps.append(True)
                time.sleep(0.01)
                active.pop()

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        assert overlaps == []

    def test_different_keys_independent(self):
        locks = KeyedLocks()
        with locks.hold("wf-1"):
            acquired = threading.Event()

            def other():
                with locks.hold("wf-2"):
                    acquired.set()

            t = threading.Thread(target=other)
            t.start()
            assert acquired.wait(timeout=5)
            t.join(timeout=5)

    def test_entries_released(self):
        locks = KeyedLocks()
        with locks.hold("wf-1"):
            assert len(locks) == 1
        assert len(locks) == 0
