#!/usr/bin/env python3
"""Tests for phase ordering, completion weights, sessions and file kinds."""

import unittest

from errors import Cancelled
from models import (
    FileKind,
    Phase,
    StreamSession,
    StreamStatus,
    classify_file,
    compute_flow_completion,
    next_phase,
    previous_work_phase,
)


class RecordingTransport:
    def __init__(self, fail=False):
        self.aborts = 0
        self.fail = fail

    def abort(self):
        self.aborts += 1
        if self.fail:
            raise OSError("pipe closed")


class TestPhases(unittest.TestCase):
    def test_order(self):
        self.assertIs(next_phase(Phase.IDLE), Phase.REQUIREMENTS)
        self.assertIs(next_phase(Phase.TESTING), Phase.COMPLETE)
        self.assertIsNone(next_phase(Phase.COMPLETE))

    def test_gating_phase(self):
        self.assertIsNone(previous_work_phase(Phase.REQUIREMENTS))
        self.assertIs(previous_work_phase(Phase.CODEGEN), Phase.DESIGN)
        self.assertIsNone(previous_work_phase(Phase.COMPLETE))

    def test_compute_flow_completion_uses_phase_weights(self):
        percent = compute_flow_completion(
            {Phase.REQUIREMENTS: True, Phase.DESIGN: True, Phase.CODEGEN: False, Phase.TESTING: False}
        )
        # REQUIREMENTS (30) + DESIGN (15) = 45
        self.assertEqual(percent, 45)

    def test_compute_flow_completion_caps_at_100(self):
        all_done = {phase: True for phase in (Phase.REQUIREMENTS, Phase.DESIGN, Phase.CODEGEN, Phase.TESTING)}
        self.assertEqual(compute_flow_completion(all_done), 100)


class TestStreamSession(unittest.TestCase):
    def test_terminal_state_ignores_updates(self):
        session = StreamSession(operation="file")
        self.assertTrue(session.advance(30, snapshot="partial"))
        self.assertTrue(session.complete("final"))
        self.assertFalse(session.advance(50))
        self.assertFalse(session.fail(StreamStatus.ERROR, "late"))
        self.assertEqual(session.progress, 100)
        self.assertEqual(session.snapshot, "final")

    def test_progress_never_decreases(self):
        session = StreamSession(operation="file")
        session.advance(60)
        session.advance(20)
        self.assertEqual(session.progress, 60)

    def test_abort_is_idempotent_and_aborts_transport(self):
        transport = RecordingTransport()
        session = StreamSession(operation="file", transport=transport)
        first = Cancelled("first")
        session.abort(first)
        session.abort(Cancelled("second"))
        self.assertIs(session.abort_reason, first)
        self.assertEqual(transport.aborts, 1)

    def test_transport_abort_failure_is_logged(self):
        session = StreamSession(operation="file", transport=RecordingTransport(fail=True))
        with self.assertLogs("models", level="ERROR"):
            session.abort(Cancelled("stop"))
        self.assertTrue(session.abort_event.is_set())


class TestClassifyFile(unittest.TestCase):
    def test_kinds(self):
        cases = {
            "components/LoginForm.jsx": FileKind.COMPONENT,
            "pages/login.js": FileKind.PAGE,
            "pages/api/login.js": FileKind.API_ROUTE,
            "styles/globals.css": FileKind.STYLE,
            "package.json": FileKind.CONFIG,
            "next.config.js": FileKind.CONFIG,
            ".env.example": FileKind.CONFIG,
            "__tests__/login.test.js": FileKind.TEST,
            "lib/auth.py": FileKind.SOURCE,
            "README.md": FileKind.OTHER,
        }
        for path, kind in cases.items():
            with self.subTest(path=path):
                self.assertIs(classify_file(path), kind)


if __name__ == "__main__":
    unittest.main()
