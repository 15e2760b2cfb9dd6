#!/usr/bin/env python3
"""Tests for phase gating, auto-progression, status and project persistence."""

import asyncio
import unittest

from errors import BackendError, Cancelled, PersistenceError, PhaseBusy, PhaseNotReady
from fakes import (
    LOGIN_DIAGRAMS,
    LOGIN_EXTRACTION,
    LOGIN_STRUCTURE,
    ScriptedBackend,
    make_config,
)
from models import Phase, TaskStatus
from orchestrator import PhaseOrchestrator, build_orchestrator
from persistence import InMemoryPersistence
from requirements_module import RequirementsModule

PACKAGE_JSON = '```json\n{"name": "login"}\n```'
LOGIN_PAGE = "```jsx\nexport default function Login() {\n  return null;\n}\n```"
CLEAN_ANALYSIS = {"issues": [], "missingDependencies": [], "overallAssessment": "ok"}

FULL_RUN = (
    LOGIN_EXTRACTION,
    LOGIN_DIAGRAMS,
    LOGIN_STRUCTURE,
    PACKAGE_JSON,
    LOGIN_PAGE,
    CLEAN_ANALYSIS,
    CLEAN_ANALYSIS,
)


class UnavailableBackend(ScriptedBackend):
    def ensure_available(self):
        raise BackendError("claude CLI not found in PATH")


class OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):
    async def start(self, backend, **config):
        orchestrator = build_orchestrator(make_config(**config), backend)
        self.assertTrue(await orchestrator.initialize())
        self.addAsyncCleanup(orchestrator.cleanup)
        return orchestrator


class TestInitialization(OrchestratorTestCase):
    async def test_initialize_moves_to_requirements(self):
        orchestrator = build_orchestrator(make_config(), ScriptedBackend())
        self.assertIs(orchestrator.current_phase, Phase.IDLE)
        with self.assertRaises(RuntimeError):
            await orchestrator.run_phase(Phase.REQUIREMENTS, text="x")
        self.assertTrue(await orchestrator.initialize())
        self.assertIs(orchestrator.current_phase, Phase.REQUIREMENTS)
        await orchestrator.cleanup()

    async def test_unavailable_backend_blocks_initialization(self):
        orchestrator = build_orchestrator(make_config(), UnavailableBackend())
        self.assertFalse(await orchestrator.initialize())
        self.assertFalse(orchestrator.initialized)
        self.assertIs(orchestrator.current_phase, Phase.IDLE)
        self.assertEqual(orchestrator.get_status()["error"]["kind"], "backend_error")


class TestPhaseControl(OrchestratorTestCase):
    async def test_phase_gating(self):
        orchestrator = await self.start(ScriptedBackend())
        with self.assertRaises(PhaseNotReady):
            await orchestrator.run_phase(Phase.DESIGN)
        with self.assertRaises(ValueError):
            await orchestrator.run_phase(Phase.COMPLETE)

    async def test_manual_run_walks_every_phase(self):
        backend = ScriptedBackend(*FULL_RUN)
        orchestrator = await self.start(backend)

        status = await orchestrator.run("Build a login form")

        self.assertEqual(backend.call_count, len(FULL_RUN))
        self.assertEqual(status["currentPhase"], "complete")
        self.assertEqual(status["completion"], 100)
        self.assertTrue(all(status["phasesCompleted"].values()))
        self.assertEqual(status["phases"]["codegen"]["result"], {"filesGenerated": 2})
        self.assertEqual(status["phases"]["testing"]["result"]["filesAnalyzed"], 2)
        self.assertIsNone(status["error"])

    async def test_manual_run_respects_stop_after(self):
        backend = ScriptedBackend(LOGIN_EXTRACTION, LOGIN_DIAGRAMS)
        orchestrator = await self.start(backend)
        status = await orchestrator.run("Build a login form", stop_after="design")
        self.assertEqual(status["currentPhase"], "design")
        self.assertEqual(status["completion"], 45)
        self.assertFalse(status["phasesCompleted"]["codegen"])

    async def test_auto_progression_runs_remaining_phases(self):
        backend = ScriptedBackend(*FULL_RUN)
        orchestrator = await self.start(backend, auto_progress=True)

        result = await orchestrator.run_phase(Phase.REQUIREMENTS, text="Build a login form")
        self.assertTrue(result.success)
        await orchestrator.wait_idle()

        self.assertIs(orchestrator.current_phase, Phase.COMPLETE)
        self.assertEqual(orchestrator.get_status()["completion"], 100)

    async def test_auto_progression_stops_after_requested_phase(self):
        backend = ScriptedBackend(LOGIN_EXTRACTION, LOGIN_DIAGRAMS)
        orchestrator = await self.start(backend, auto_progress=True)
        status = await orchestrator.run("Build a login form", stop_after=Phase.DESIGN)
        self.assertIs(orchestrator.current_phase, Phase.DESIGN)
        self.assertFalse(status["phasesCompleted"]["codegen"])

    async def test_auto_progression_failure_is_recorded(self):
        backend = ScriptedBackend(LOGIN_EXTRACTION, BackendError("codex exited with code 1"))
        orchestrator = await self.start(backend, auto_progress=True)
        status = await orchestrator.run("Build a login form")
        self.assertEqual(status["error"]["phase"], "design")
        self.assertEqual(status["phases"]["design"]["progress"], "error")
        self.assertIs(orchestrator.current_phase, Phase.DESIGN)

    async def test_missing_module_reports_phase_not_available(self):
        backend = ScriptedBackend(LOGIN_EXTRACTION)
        config = make_config()
        base = build_orchestrator(config, backend)
        requirements = base.module_for(Phase.REQUIREMENTS)
        orchestrator = PhaseOrchestrator(
            {Phase.REQUIREMENTS: requirements},
            bus=base.bus,
            registry=base.registry,
            config=config,
        )
        await orchestrator.initialize()
        await orchestrator.run_phase(Phase.REQUIREMENTS, text="Build a login form")

        result = await orchestrator.run_phase(Phase.DESIGN)

        self.assertFalse(result.success)
        self.assertEqual(result.status, "phase_not_available")
        self.assertIs(orchestrator.current_phase, Phase.REQUIREMENTS)
        self.assertFalse(orchestrator.get_status()["modules"]["design"])
        await orchestrator.cleanup()

    async def test_busy_phase_is_rejected(self):
        backend = ScriptedBackend(LOGIN_EXTRACTION, chunk_size=100, delay=0.02)
        orchestrator = await self.start(backend)

        running = asyncio.ensure_future(
            orchestrator.run_phase(Phase.REQUIREMENTS, text="Build a login form")
        )
        await asyncio.sleep(0.01)
        with self.assertRaises(PhaseBusy):
            await orchestrator.run_phase(Phase.REQUIREMENTS, text="Build a login form")
        self.assertTrue((await running).success)

    async def test_concurrent_phase_allows_overlap(self):
        backend = ScriptedBackend(LOGIN_EXTRACTION, chunk_size=100, delay=0.02)
        orchestrator = await self.start(backend, concurrent_phases="requirements")

        results = await asyncio.gather(
            orchestrator.run_phase(Phase.REQUIREMENTS, text="Build a login form"),
            orchestrator.run_phase(Phase.REQUIREMENTS, text="Build a login form"),
        )

        self.assertTrue(all(result.success for result in results))
        self.assertEqual(backend.call_count, 1)
        self.assertFalse(orchestrator.phases[Phase.REQUIREMENTS].in_progress)

    async def test_failure_sets_error_flag_until_next_success(self):
        backend = ScriptedBackend(BackendError("claude exited with code 1"), LOGIN_EXTRACTION)
        orchestrator = await self.start(backend)

        with self.assertRaises(BackendError):
            await orchestrator.run_phase(Phase.REQUIREMENTS, text="Build a login form")
        status = orchestrator.get_status()
        self.assertEqual(status["error"]["kind"], "backend_error")
        self.assertEqual(status["phases"]["requirements"]["lastError"]["kind"], "backend_error")
        self.assertIs(orchestrator.current_phase, Phase.REQUIREMENTS)

        await orchestrator.run_phase(Phase.REQUIREMENTS, text="Build a login form")
        self.assertIsNone(orchestrator.get_status()["error"])

    async def test_progress_history(self):
        orchestrator = await self.start(ScriptedBackend(LOGIN_EXTRACTION))
        await orchestrator.run_phase(Phase.REQUIREMENTS, text="Build a login form")
        statuses = [(e["phase"], e["status"], e["percentage"]) for e in orchestrator.progress_history]
        self.assertEqual(
            statuses,
            [
                ("requirements", "extracting", 5),
                ("requirements", "extracted", 40),
                ("requirements", "completed", 100),
            ],
        )

    async def test_reset_forgets_progress(self):
        orchestrator = await self.start(ScriptedBackend(LOGIN_EXTRACTION))
        await orchestrator.run_phase(Phase.REQUIREMENTS, text="Build a login form")
        orchestrator.reset()
        self.assertFalse(orchestrator.phases[Phase.REQUIREMENTS].completed)
        self.assertEqual(orchestrator.progress_history, [])
        self.assertIs(orchestrator.current_phase, Phase.REQUIREMENTS)

    async def test_cleanup_cancels_running_work(self):
        backend = ScriptedBackend(LOGIN_EXTRACTION, chunk_size=20, delay=0.05)
        orchestrator = build_orchestrator(make_config(), backend)
        await orchestrator.initialize()
        running = asyncio.ensure_future(
            orchestrator.run_phase(Phase.REQUIREMENTS, text="Build a login form")
        )
        await asyncio.sleep(0.02)

        await orchestrator.cleanup()

        with self.assertRaises(Cancelled):
            await running
        self.assertTrue(
            all(task.status is TaskStatus.CANCELLED for task in orchestrator.registry.list_tasks())
        )


class TestPersistence(OrchestratorTestCase):
    async def test_save_and_load_project(self):
        first = await self.start(ScriptedBackend(LOGIN_EXTRACTION))
        await first.run_phase(Phase.REQUIREMENTS, text="Build a login form")
        await first.save_project_data()

        backend = ScriptedBackend(LOGIN_DIAGRAMS)
        second = build_orchestrator(make_config(), backend, persistence=first.persistence)
        await second.load_project_data()
        self.assertTrue(await second.initialize())
        self.addAsyncCleanup(second.cleanup)

        self.assertEqual(second.project["id"], first.project["id"])
        self.assertTrue(second.phases[Phase.REQUIREMENTS].completed)
        requirements = second.module_for(Phase.REQUIREMENTS)
        self.assertIsInstance(requirements, RequirementsModule)
        self.assertEqual(requirements.total_count(), 4)

        result = await second.run_phase(Phase.DESIGN)
        self.assertTrue(result.success)

    async def test_invalid_saved_data_leaves_state_alone(self):
        persistence = InMemoryPersistence()
        persistence.save("project-bad", {"project": "not an object"})
        persistence.save("project-phase", {"project": {"id": "phase"}, "state": {"currentPhase": "deploy"}})
        orchestrator = build_orchestrator(make_config(), ScriptedBackend(), persistence=persistence)
        original_id = orchestrator.project["id"]

        with self.assertRaises(PersistenceError):
            await orchestrator.load_project_data("bad")
        with self.assertRaises(PersistenceError):
            await orchestrator.load_project_data("phase")
        with self.assertRaises(PersistenceError):
            await orchestrator.load_project_data("missing")
        self.assertEqual(orchestrator.project["id"], original_id)

    async def test_nothing_saved_yet(self):
        orchestrator = build_orchestrator(make_config(), ScriptedBackend())
        with self.assertRaises(PersistenceError):
            await orchestrator.load_project_data()

    async def test_auto_save_writes_periodically(self):
        orchestrator = await self.start(
            ScriptedBackend(), auto_save=True, auto_save_interval_seconds=0.01
        )
        await asyncio.sleep(0.05)
        latest = orchestrator.persistence.load("latest")
        self.assertEqual(latest["projectId"], orchestrator.project["id"])


if __name__ == "__main__":
    unittest.main()
