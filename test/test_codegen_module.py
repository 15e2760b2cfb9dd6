#!/usr/bin/env python3
"""Tests for project structure planning and file generation."""

import unittest

from codegen_module import CodeGenerationModule, normalize_structure
from errors import BackendError, MalformedOutput
from events import StreamUpdated
from fakes import LOGIN_EXTRACTION, LOGIN_STRUCTURE, ScriptedBackend, collect, make_config
from models import FileKind, TaskStatus

PACKAGE_JSON = '```json\n{"name": "login", "private": true}\n```'
LOGIN_PAGE = "```jsx\nexport default function Login() {\n  return null;\n}\n```"


def build(*responses, **config):
    return CodeGenerationModule(ScriptedBackend(*responses), config=make_config(**config))


class TestNormalizeStructure(unittest.TestCase):
    def test_paths_are_cleaned_and_classified(self):
        structure = normalize_structure(
            {
                "files": [
                    {"path": "./components/LoginForm.jsx", "purpose": "Form"},
                    "components/LoginForm.jsx",
                    ".env.example",
                    {"purpose": "no path"},
                    42,
                ],
                "dependencies": ["next", "react"],
            }
        )
        self.assertEqual(
            [(f["path"], f["kind"]) for f in structure["files"]],
            [("components/LoginForm.jsx", "component"), (".env.example", "config")],
        )
        self.assertEqual(structure["dependencies"], {"next": "latest", "react": "latest"})

    def test_empty_structure_is_malformed(self):
        with self.assertRaises(MalformedOutput):
            normalize_structure({"files": []})
        with self.assertRaises(MalformedOutput):
            normalize_structure({"files": "package.json"})


class TestGenerateProject(unittest.IsolatedAsyncioTestCase):
    async def test_generates_every_planned_file(self):
        module = build(LOGIN_STRUCTURE, PACKAGE_JSON, LOGIN_PAGE)
        events = collect(module.bus)

        outcome = await module.generate_project(LOGIN_EXTRACTION, {"diagrams": {}})

        self.assertEqual(outcome["filesGenerated"], 2)
        self.assertEqual(
            module.file_map(),
            {
                "package.json": '{"name": "login", "private": true}',
                "pages/login.js": "export default function Login() {\n  return null;\n}",
            },
        )
        self.assertEqual(
            outcome["manifest"]["fileKinds"], {"package.json": "config", "pages/login.js": "page"}
        )
        self.assertEqual(outcome["manifest"]["dependencies"], {"next": "14.0.0"})

        names = [e.name for e in events if e.name != "log"]
        self.assertEqual(names.count("project:start"), 1)
        self.assertEqual(names[-1], "project:complete")
        project_progress = [
            e.progress for e in events if isinstance(e, StreamUpdated) and e.operation == "project"
        ]
        self.assertEqual(project_progress, [50, 100])
        project_task = [t for t in module.registry.list_tasks() if t.type == "project_generation"][0]
        self.assertIs(project_task.status, TaskStatus.COMPLETED)

    async def test_existing_structure_is_reused(self):
        module = build(LOGIN_STRUCTURE, PACKAGE_JSON, LOGIN_PAGE, PACKAGE_JSON, LOGIN_PAGE)
        await module.generate_project(LOGIN_EXTRACTION)
        module.files.clear()
        await module.generate_project({"functional": [{"id": "FR-9", "statement": "Other"}]})
        self.assertEqual(module.backend.call_count, 5)
        self.assertEqual(len(module.files), 2)

    async def test_file_failure_fails_project(self):
        module = build(LOGIN_STRUCTURE, BackendError("codex exited with code 2"))
        events = collect(module.bus, "project:error")

        with self.assertRaises(BackendError):
            await module.generate_project(LOGIN_EXTRACTION)

        self.assertEqual(module.metadata["lastError"]["kind"], "backend_error")
        self.assertEqual(len(events), 1)
        project_task = [t for t in module.registry.list_tasks() if t.type == "project_generation"][0]
        self.assertIs(project_task.status, TaskStatus.ERROR)


class TestGenerateFile(unittest.IsolatedAsyncioTestCase):
    async def test_first_write_wins_unless_bypassed(self):
        module = build("```js\nfirst\n```", "```js\nsecond\n```", "```js\nthird\n```")
        await module.generate_file("lib/a.js", {"purpose": "one"}, [])
        await module.generate_file("lib/a.js", {"purpose": "two"}, [])
        self.assertEqual(module.files["lib/a.js"]["content"], "first")

        await module.generate_file("lib/a.js", {"purpose": "three"}, [], bypass_cache=True)
        self.assertEqual(module.files["lib/a.js"]["content"], "third")
        self.assertEqual(module.files["lib/a.js"]["kind"], "source")

    async def test_unfenced_reply_is_whole_file(self):
        module = build("module.exports = {};\n")
        outcome = await module.generate_file("next.config.js", None, [])
        self.assertEqual(outcome.value["content"], "module.exports = {};")
        self.assertIs(module.file_kind("next.config.js"), FileKind.CONFIG)

    async def test_snapshot_restore(self):
        module = build(LOGIN_STRUCTURE, PACKAGE_JSON, LOGIN_PAGE)
        await module.generate_project(LOGIN_EXTRACTION)

        restored = build()
        restored.restore(module.snapshot())
        self.assertEqual(restored.file_map(), module.file_map())
        self.assertEqual(restored.metadata["fileCount"], 2)
        self.assertIs(restored.file_kind("pages/login.js"), FileKind.PAGE)


if __name__ == "__main__":
    unittest.main()
