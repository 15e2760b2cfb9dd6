#!/usr/bin/env python3
"""Tests for structured run logging and latest-log lookup."""

import json
import tempfile
import time
import unittest
from pathlib import Path

from events import EventBus, LogRecorded, StreamUpdated
from run_logging import RunLogger, find_latest_run_log, read_last_lines


class TestRunLogging(unittest.TestCase):
    def test_run_logger_writes_jsonl_events(self):
        with tempfile.TemporaryDirectory() as tmp:
            logger = RunLogger.create(
                enabled=True,
                base_dir=Path(tmp),
                provider="codex",
                model="gpt-5-codex",
            )
            self.assertTrue(logger.enabled)
            assert logger.log_file is not None
            self.assertIn("codex", logger.log_file.name)
            self.assertIn("gpt-5-codex", logger.log_file.name)

            bus = EventBus()
            logger.attach(bus)
            bus.publish(LogRecorded(level="info", message="analysis line", source="orchestrator"))

            lines = logger.log_file.read_text(encoding="utf-8").splitlines()
            self.assertEqual(len(lines), 1)
            record = json.loads(lines[0])
            self.assertEqual(record["event"], "log")
            self.assertEqual(record["run_id"], logger.run_id)
            self.assertEqual(record["provider"], "codex")
            self.assertEqual(record["payload"]["message"], "analysis line")

    def test_snapshots_are_dropped_by_default(self):
        with tempfile.TemporaryDirectory() as tmp:
            logger = RunLogger.create(
                enabled=True, base_dir=Path(tmp), provider="Claude Code", model="sonnet"
            )
            assert logger.log_file is not None
            self.assertIn("claude-code", logger.log_file.name)
            logger.handle(
                StreamUpdated(
                    correlation_id="s1",
                    stream_id="s1",
                    operation="extraction",
                    progress=40,
                    snapshot={"functional": []},
                )
            )
            record = json.loads(logger.log_file.read_text(encoding="utf-8"))
            self.assertEqual(record["event"], "stream:update")
            self.assertEqual(record["correlation_id"], "s1")
            self.assertNotIn("snapshot", record["payload"])
            self.assertEqual(record["payload"]["progress"], 40)

    def test_run_logger_disabled_is_noop(self):
        with tempfile.TemporaryDirectory() as tmp:
            logger = RunLogger.create(
                enabled=False,
                base_dir=Path(tmp),
                provider="codex",
                model="gpt-5-codex",
            )
            self.assertFalse(logger.enabled)
            logger.handle(LogRecorded(level="info", message="ignored", source="cli"))
            self.assertEqual(list(Path(tmp).iterdir()), [])


class TestLatestRunLog(unittest.TestCase):
    def test_find_latest_run_log(self):
        with tempfile.TemporaryDirectory() as tmp:
            log_dir = Path(tmp)
            older = log_dir / "old.jsonl"
            newer = log_dir / "new.jsonl"
            older.write_text("old\n", encoding="utf-8")
            time.sleep(0.01)
            newer.write_text("new\n", encoding="utf-8")

            self.assertEqual(find_latest_run_log(log_dir), newer)

    def test_find_latest_run_log_ignores_non_jsonl(self):
        with tempfile.TemporaryDirectory() as tmp:
            log_dir = Path(tmp)
            (log_dir / "note.txt").write_text("x\n", encoding="utf-8")
            self.assertIsNone(find_latest_run_log(log_dir))
            self.assertIsNone(find_latest_run_log(log_dir / "missing"))

    def test_read_last_lines(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "run.jsonl"
            path.write_text("a\nb\nc\nd\n", encoding="utf-8")
            self.assertEqual(read_last_lines(path, 2), ["c", "d"])
            self.assertEqual(read_last_lines(path, 0), [])


if __name__ == "__main__":
    unittest.main()
