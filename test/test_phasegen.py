#!/usr/bin/env python3
"""Tests for the command-line entry point helpers."""

import io
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path

from fakes import LOGIN_DIAGRAMS, LOGIN_EXTRACTION, LOGIN_STRUCTURE, ScriptedBackend, make_config
from models import Phase
from orchestrator import build_orchestrator
from phasegen import create_parser, read_input, show_logs, write_outputs


class TestParser(unittest.TestCase):
    def test_run_arguments(self):
        args = create_parser().parse_args(
            ["run", "Build a login form", "--agent-cli", "codex", "--stop-after", "design", "--no-stream"]
        )
        self.assertEqual(args.command, "run")
        self.assertEqual(args.agent_cli, "codex")
        self.assertEqual(args.stop_after, "design")
        self.assertTrue(args.no_stream)
        self.assertFalse(args.no_auto_progress)

    def test_unknown_phase_is_rejected(self):
        with self.assertRaises(SystemExit), redirect_stderr(io.StringIO()):
            create_parser().parse_args(["run", "x", "--stop-after", "deploy"])

    def test_read_input_joins_text_and_files(self):
        with tempfile.TemporaryDirectory() as tmp:
            brief = Path(tmp) / "brief.md"
            brief.write_text("  Users sign in with email.\n", encoding="utf-8")
            args = create_parser().parse_args(["run", "Build a login form", "--input-file", str(brief)])
            self.assertEqual(read_input(args), "Build a login form\n\nUsers sign in with email.")


class TestShowLogs(unittest.TestCase):
    def test_prints_latest_log_and_tail(self):
        with tempfile.TemporaryDirectory() as tmp:
            (Path(tmp) / "run.jsonl").write_text("one\ntwo\n", encoding="utf-8")
            args = create_parser().parse_args(["logs", "--tail", "1"])
            out = io.StringIO()
            with redirect_stdout(out):
                code = show_logs(args, make_config(run_log_dir=tmp))
            self.assertEqual(code, 0)
            self.assertTrue(out.getvalue().rstrip().endswith("two"))

    def test_missing_logs(self):
        with tempfile.TemporaryDirectory() as tmp:
            args = create_parser().parse_args(["logs"])
            with redirect_stdout(io.StringIO()):
                self.assertEqual(show_logs(args, make_config(run_log_dir=tmp)), 1)


class TestWriteOutputs(unittest.IsolatedAsyncioTestCase):
    async def test_writes_requirements_and_generated_files(self):
        backend = ScriptedBackend(
            LOGIN_EXTRACTION,
            LOGIN_DIAGRAMS,
            LOGIN_STRUCTURE,
            '```json\n{"name": "login"}\n```',
            "```jsx\nexport default function Login() {\n  return null;\n}\n```",
        )
        orchestrator = build_orchestrator(make_config(), backend)
        await orchestrator.initialize()
        await orchestrator.run("Build a login form", stop_after="codegen")
        await orchestrator.cleanup()
        codegen = orchestrator.module_for(Phase.CODEGEN)
        codegen.files["../escape.js"] = {"content": "alert(1)", "kind": "source"}

        with tempfile.TemporaryDirectory() as tmp:
            out_dir = Path(tmp) / "out"
            count = write_outputs(orchestrator, out_dir)

            self.assertEqual(count, 3)
            self.assertTrue((out_dir / "requirements.md").read_text(encoding="utf-8").startswith("#"))
            self.assertEqual(
                (out_dir / "pages" / "login.js").read_text(encoding="utf-8"),
                "export default function Login() {\n  return null;\n}",
            )
            self.assertFalse((Path(tmp) / "escape.js").exists())


if __name__ == "__main__":
    unittest.main()
