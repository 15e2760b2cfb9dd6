#!/usr/bin/env python3
"""Tests for requirements extraction, validation, diagrams and export."""

import unittest

from errors import MalformedOutput
from fakes import LOGIN_DIAGRAMS, LOGIN_EXTRACTION, ScriptedBackend, collect, make_config
from requirements_module import RequirementsModule, normalize_extraction

VALIDATION = {
    "validationResults": {
        "status": "issues_found",
        "issues": [
            {
                "requirementId": "FR-1",
                "issueType": "clarity",
                "description": "Fields are not specified precisely",
                "suggestion": "The system shall display a login form with email and password inputs",
            },
            {
                "requirementId": "NFR-1",
                "issueType": "feasibility",
                "description": "Depends on network",
                "suggestion": "Measure on the server side",
            },
        ],
        "missingRequirements": [{"category": "functional", "description": "Password reset"}],
    }
}


def build(*responses, **config):
    return RequirementsModule(ScriptedBackend(*responses), config=make_config(**config))


class TestMerge(unittest.TestCase):
    def test_duplicate_ids_are_ignored_and_bad_ids_renumbered(self):
        module = build()
        added = module._merge_items(
            "functional",
            [
                {"id": "FR-1", "statement": "Alpha"},
                {"id": "FR-1", "statement": "Beta"},
                {"id": "bogus", "statement": "Gamma"},
                {"statement": "alpha"},
            ],
        )
        self.assertEqual([item["id"] for item in added], ["FR-1", "FR-2"])
        self.assertEqual([item["statement"] for item in added], ["Alpha", "Gamma"])
        self.assertEqual(module.total_count(), 2)

    def test_plain_strings_become_items(self):
        module = build()
        added = module._merge_items("constraints", ["Must run on Node 20"])
        self.assertEqual(added[0]["id"], "CON-1")
        self.assertEqual(added[0]["category"], "constraint")
        self.assertEqual(added[0]["status"], "proposed")

    def test_explicit_higher_id_advances_counter(self):
        module = build()
        module._merge_items("functional", [{"id": "FR-7", "statement": "Seven"}])
        added = module._merge_items("functional", [{"statement": "Next"}])
        self.assertEqual(added[0]["id"], "FR-8")

    def test_normalize_extraction_rejects_bad_shapes(self):
        with self.assertRaises(MalformedOutput):
            normalize_extraction(["not", "an", "object"])
        with self.assertRaises(MalformedOutput):
            normalize_extraction({"functional": "one requirement"})
        self.assertEqual(normalize_extraction({})["functional"], [])


class TestOperations(unittest.IsolatedAsyncioTestCase):
    async def test_extract_assigns_ids_per_category(self):
        module = build(LOGIN_EXTRACTION)
        outcome = await module.extract_requirements("Build a login form")
        self.assertEqual([r["id"] for r in outcome.value["functional"]], ["FR-1", "FR-2"])
        self.assertEqual(outcome.value["nonFunctional"][0]["id"], "NFR-1")
        self.assertEqual(outcome.value["userStories"][0]["id"], "US-1")
        self.assertEqual(outcome.value["userStories"][0]["category"], "userStory")

    async def test_redelivered_id_keeps_first_statement(self):
        first = {"functional": [{"id": "FR-1", "statement": "Users sign in with email"}]}
        second = {"functional": [{"id": "FR-1", "statement": "Users sign in with a username"}]}
        module = build(first, second)
        await module.extract_requirements("Build a login form")

        await module.extract_requirements("Build a login form", bypass_cache=True)

        self.assertEqual(module.backend.call_count, 2)
        self.assertEqual([r["id"] for r in module.requirements["functional"]], ["FR-1"])
        self.assertEqual(module.find_requirement("FR-1")["statement"], "Users sign in with email")

    async def test_empty_input_is_rejected_without_events(self):
        module = build()
        events = collect(module.bus, "extraction:start")
        with self.assertRaises(ValueError):
            await module.extract_requirements("   ")
        self.assertEqual(events, [])

    async def test_validation_applies_clarity_fixes(self):
        module = build(LOGIN_EXTRACTION, VALIDATION)
        await module.extract_requirements("Build a login form")

        outcome = await module.validate_requirements(apply_fixes=True)

        self.assertEqual(outcome.value["issueCount"], 2)
        fixed = module.find_requirement("FR-1")
        self.assertEqual(
            fixed["statement"], "The system shall display a login form with email and password inputs"
        )
        self.assertEqual(len(fixed["revisions"]), 1)
        untouched = module.find_requirement("NFR-1")
        self.assertTrue(untouched["reviewed"])
        self.assertEqual(untouched["statement"], "The login response shall complete within 2 seconds")
        self.assertEqual(module.metadata["status"], "reviewed")

    async def test_validation_without_requirements_fails(self):
        with self.assertRaises(ValueError):
            await build().validate_requirements()

    async def test_run_validates_when_configured(self):
        module = build(LOGIN_EXTRACTION, VALIDATION, require_validation=True)
        snapshot = await module.run("Build a login form")
        self.assertEqual(module.backend.call_count, 2)
        self.assertEqual(snapshot["metadata"]["validation"]["issueCount"], 2)

    async def test_generate_diagrams(self):
        module = build(LOGIN_EXTRACTION, LOGIN_DIAGRAMS)
        completed = collect(module.bus, "uml:complete")
        await module.extract_requirements("Build a login form")

        outcome = await module.generate_diagrams()

        self.assertEqual(sorted(outcome.value), ["classDiagram", "sequenceDiagram"])
        self.assertTrue(module.diagrams["classDiagram"].startswith("@startuml"))
        self.assertEqual(len(completed), 1)

    async def test_diagrams_without_plantuml_are_dropped(self):
        reply = {"diagrams": {"good": "text @startuml\nA -> B\n@enduml", "bad": "graph TD; A-->B"}}
        module = build(LOGIN_EXTRACTION, reply)
        await module.extract_requirements("Build a login form")
        outcome = await module.generate_diagrams()
        self.assertEqual(outcome.value, {"good": "@startuml\nA -> B\n@enduml"})

    async def test_no_usable_diagram_is_malformed(self):
        module = build(LOGIN_EXTRACTION, {"diagrams": {"bad": "nothing"}})
        await module.extract_requirements("Build a login form")
        with self.assertRaises(MalformedOutput):
            await module.generate_diagrams()

    async def test_user_stories_continue_numbering(self):
        stories = {"userStories": [{"statement": "As an admin, I want to reset passwords so that users regain access"}]}
        module = build(LOGIN_EXTRACTION, stories)
        await module.extract_requirements("Build a login form")
        outcome = await module.generate_user_stories()
        self.assertEqual([story["id"] for story in outcome.value], ["US-1", "US-2"])


class TestExport(unittest.IsolatedAsyncioTestCase):
    async def test_snapshot_restore_keeps_numbering(self):
        module = build(LOGIN_EXTRACTION)
        await module.extract_requirements("Build a login form")

        restored = build()
        restored.restore(module.snapshot())

        self.assertEqual(restored.total_count(), 4)
        added = restored._merge_items("functional", [{"statement": "Lock the account after 5 failures"}])
        self.assertEqual(added[0]["id"], "FR-3")

    async def test_export_markdown(self):
        module = build(LOGIN_EXTRACTION)
        await module.extract_requirements("Build a login form")
        document = module.export_markdown()
        self.assertTrue(document.startswith("# Requirements Document"))
        self.assertIn("## Functional Requirements", document)
        self.assertIn("### FR-1: The system shall show a login form", document)
        self.assertNotIn("## Constraints", document)


if __name__ == "__main__":
    unittest.main()
