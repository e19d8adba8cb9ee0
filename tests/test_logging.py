"""
Agent Runtime - Structured Logging Tests

Tests:
  - every ExecutionLogger entry carries execution_id and agent_type
  - extra= fields from module loggers land in the JSON line
  - level filtering drops DEBUG plan entries at INFO
  - exceptions are reported by type and message
"""

import io
import json
import logging
import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from engine.logging import ExecutionLogger, JSONFormatter, configure_logging, get_logger


def _parse_log_lines(buf):
    return [json.loads(line) for line in buf.getvalue().splitlines() if line.strip()]


class TestExecutionLogger(unittest.TestCase):
    def setUp(self):
        self.buf = io.StringIO()
        configure_logging(level="DEBUG", stream=self.buf)
        self.log = ExecutionLogger("exe_abc123", agent_type="TEST_GENERATOR",
                                   parent_execution_id="exe_parent")

    def tearDown(self):
        configure_logging(level="WARNING", stream=io.StringIO())

    def test_lifecycle_entries(self):
        self.log.on_execution_start(goal_type="GENERATE_TEST", requested_by="qa-bot")
        self.log.on_action_complete(0, "FETCH_JIRA_STORY", True, 0.0, 12)
        self.log.on_transition("RUNNING", "SUCCEEDED", reason="done")
        self.log.on_execution_end("SUCCEEDED", total_actions=1, total_cost=0.0, elapsed_s=0.5)

        entries = _parse_log_lines(self.buf)
        self.assertEqual([e["event"] for e in entries],
                         ["execution_start", "action_complete", "transition", "execution_end"])
        for entry in entries:
            self.assertEqual(entry["execution_id"], "exe_abc123")
            self.assertEqual(entry["agent_type"], "TEST_GENERATOR")
            self.assertEqual(entry["parent_execution_id"], "exe_parent")
            self.assertEqual(entry["logger"], "agent_runtime.trace")
            self.assertIn("timestamp", entry)

    def test_failed_action_is_warning(self):
        self.log.on_action_complete(3, "EXECUTE_TEST", False, 0.0, 40, error="assertion failed")
        entry = _parse_log_lines(self.buf)[0]
        self.assertEqual(entry["level"], "WARNING")
        self.assertEqual(entry["error"], "assertion failed")
        self.assertFalse(entry["success"])

    def test_reasoning_truncated(self):
        self.log.on_plan(0, "next_action", "READ_FILE", reasoning="x" * 2000)
        self.assertEqual(len(_parse_log_lines(self.buf)[0]["reasoning"]), 500)

    def test_info_level_hides_plan(self):
        buf = io.StringIO()
        configure_logging(level="INFO", stream=buf)
        self.log.on_plan(0, "next_action", "READ_FILE")
        self.log.on_suspended("tkt_1", deadline=123.0)
        entries = _parse_log_lines(buf)
        self.assertEqual([e["event"] for e in entries], ["suspended"])


class TestModuleLoggers(unittest.TestCase):
    def setUp(self):
        self.buf = io.StringIO()
        configure_logging(level="INFO", stream=self.buf)

    def tearDown(self):
        configure_logging(level="WARNING", stream=io.StringIO())

    def test_extra_fields_merged(self):
        get_logger("store").info("Transition %s", "RUNNING→STOPPED",
                                 extra={"execution_id": "exe_1"})
        entry = _parse_log_lines(self.buf)[0]
        self.assertEqual(entry["message"], "Transition RUNNING→STOPPED")
        self.assertEqual(entry["execution_id"], "exe_1")
        self.assertEqual(entry["logger"], "agent_runtime.store")

    def test_exception_fields(self):
        try:
            raise RuntimeError("planner blew up")
        except RuntimeError:
            get_logger("run_loop").error("Planner failed", exc_info=True)
        entry = _parse_log_lines(self.buf)[0]
        self.assertEqual(entry["exception.type"], "RuntimeError")
        self.assertEqual(entry["exception.message"], "planner blew up")

    def test_plain_text_format(self):
        buf = io.StringIO()
        configure_logging(level="INFO", stream=buf, json_format=False)
        get_logger("gate").info("armed")
        self.assertIn("agent_runtime.gate: armed", buf.getvalue())

    def test_formatter_service_name(self):
        record = logging.LogRecord("agent_runtime.x", logging.INFO, "", 0, "hi", (), None)
        entry = json.loads(JSONFormatter(service_name="qa-agents").format(record))
        self.assertEqual(entry["service.name"], "qa-agents")
        self.assertEqual(entry["message"], "hi")


if __name__ == "__main__":
    unittest.main()
