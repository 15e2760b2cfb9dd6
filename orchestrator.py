"""
Phase Orchestrator
==================

State machine over the module facades:

    idle -> requirements -> design -> codegen -> testing -> complete

plus an orthogonal error flag. A phase may start only once the phase before
it has completed. With auto-progression on, each `phase:complete` event
starts the next phase in the background.

Usage:
    orchestrator = build_orchestrator(get_config(), backend)
    if await orchestrator.initialize():
        status = await orchestrator.run("Build a login form")
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable

from backend import GenerativeBackend, ensure_available
from cache import GenerationCache, InMemoryStore
from code_repair_module import CodeRepairModule
from codegen_module import CodeGenerationModule
from config import PipelineConfig, get_config
from errors import PersistenceError, PhaseBusy, PhaseNotReady, PipelineError, classify_error
from events import (
    EventBus,
    LogRecorded,
    OperationCompleted,
    OperationStarted,
    PhaseCompleted,
    PhaseStarted,
    ProgressUpdated,
    StreamUpdated,
)
from facade import ModuleFacade
from models import (
    PHASE_ORDER,
    WORK_PHASES,
    ErrorInfo,
    Phase,
    PhaseResult,
    PhaseState,
    compute_flow_completion,
    new_id,
    next_phase,
    previous_work_phase,
    utc_iso,
)
from persistence import AutoSaver, InMemoryPersistence, JsonFilePersistence, Persistence
from requirements_module import RequirementsModule
from task_registry import TaskRegistry

logger = logging.getLogger(__name__)

# (operation, stage) -> (phase, status, percentage)
OPERATION_PROGRESS: dict[tuple[str, str], tuple[str, str, int]] = {
    ("extraction", "start"): ("requirements", "extracting", 5),
    ("extraction", "complete"): ("requirements", "extracted", 40),
    ("validation", "start"): ("requirements", "validating", 50),
    ("validation", "complete"): ("requirements", "validated", 90),
    ("stories", "start"): ("requirements", "writing_stories", 60),
    ("uml", "start"): ("design", "modeling", 10),
    ("uml", "complete"): ("design", "modeled", 90),
    ("structure", "start"): ("codegen", "planning", 5),
    ("structure", "complete"): ("codegen", "planned", 10),
    ("repair", "start"): ("testing", "repairing", 5),
}

LATEST_KEY = "latest"


class PhaseOrchestrator:
    def __init__(
        self,
        modules: dict[Phase, ModuleFacade | None],
        *,
        bus: EventBus,
        registry: TaskRegistry,
        config: PipelineConfig | None = None,
        persistence: Persistence | None = None,
        backend: GenerativeBackend | None = None,
        project_name: str = "untitled",
    ) -> None:
        self.modules = {Phase(phase): module for phase, module in modules.items()}
        self.bus = bus
        self.registry = registry
        self.config = config or get_config()
        self.persistence = persistence
        self.backend = backend

        self.auto_progress = self.config.auto_progress
        self.stop_after: Phase | None = None
        self.initialized = False
        self.current_phase = Phase.IDLE
        self.phases = {phase: PhaseState(phase) for phase in WORK_PHASES}
        self.error: ErrorInfo | None = None
        self.progress_history: list[dict[str, Any]] = []
        self.inputs: dict[str, Any] = {}
        self.project: dict[str, Any] = {
            "id": new_id(),
            "name": project_name,
            "createdAt": utc_iso(),
            "updatedAt": utc_iso(),
        }
        self.start_time: float | None = None
        self.last_update: str | None = None
        self._running: dict[Phase, int] = {phase: 0 for phase in WORK_PHASES}
        self._stopped = False
        self._auto_saver: AutoSaver | None = None
        self._subscriptions: list[Callable[[], None]] = [
            bus.subscribe(PhaseCompleted, self._on_phase_complete),
            bus.subscribe(OperationStarted, self._on_operation_event),
            bus.subscribe(OperationCompleted, self._on_operation_event),
            bus.subscribe(StreamUpdated, self._on_project_progress),
        ]

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _log(self, level: int, message: str, *args: Any) -> None:
        logger.log(level, message, *args)
        self.bus.publish(
            LogRecorded(
                level=logging.getLevelName(level).lower(),
                message=message % args if args else message,
                source="orchestrator",
            )
        )

    async def initialize(self) -> bool:
        """Check the backend and persistence, then move idle -> requirements."""
        if self.initialized:
            return True
        try:
            if self.backend is not None:
                ensure_available(self.backend)
            if self.persistence is not None and hasattr(self.persistence, "ensure_ready"):
                self.persistence.ensure_ready()
        except PipelineError as exc:
            self.error = ErrorInfo(kind=exc.kind, message=exc.message, phase=Phase.IDLE.value)
            self._log(logging.ERROR, "Initialization failed: %s", exc.message)
            return False

        self.initialized = True
        self.start_time = time.monotonic()
        if self.current_phase is Phase.IDLE:
            self.current_phase = Phase.REQUIREMENTS
        if self.config.auto_save and self.persistence is not None:
            self._auto_saver = AutoSaver(self.save_project_data, self.config.auto_save_interval_seconds)
            self._auto_saver.start()
        self._log(logging.INFO, "Orchestrator initialized (project %s)", self.project["id"])
        return True

    # ------------------------------------------------------------------
    # Phase control
    # ------------------------------------------------------------------

    def module_for(self, phase: Phase) -> ModuleFacade | None:
        return self.modules.get(phase)

    async def run_phase(self, phase: Phase | str, **options: Any) -> PhaseResult:
        """Run one phase's entry point. Raises the classified error on failure."""
        if not self.initialized:
            raise RuntimeError("Orchestrator must be initialized first")
        phase = Phase(phase)
        if phase not in WORK_PHASES:
            raise ValueError(f"Not a runnable phase: {phase.value}")

        gate = previous_work_phase(phase)
        if gate is not None and not self.phases[gate].completed:
            raise PhaseNotReady(
                f"{gate.value.title()} phase must be completed first", phase=phase.value
            )

        if self.module_for(phase) is None:
            self._log(logging.WARNING, "No module provisioned for %s phase", phase.value)
            return PhaseResult(
                phase=phase,
                success=False,
                status="phase_not_available",
                message=f"{phase.value} module not available",
            )

        state = self.phases[phase]
        if state.in_progress and phase.value not in self.config.concurrent_phase_set:
            raise PhaseBusy(f"{phase.value} phase is already running", phase=phase.value)

        self._running[phase] += 1
        state.in_progress = True
        state.progress = "running"
        if PHASE_ORDER.index(phase) > PHASE_ORDER.index(self.current_phase):
            self.current_phase = phase
        self.bus.publish(PhaseStarted(phase=phase.value))
        self._log(logging.INFO, "Starting %s phase", phase.value)

        try:
            result = await self._entry_point(phase)(**options)
        except Exception as exc:
            error = classify_error(exc, phase=phase.value)
            state.last_error = ErrorInfo(
                kind=error.kind, message=error.message, phase=phase.value, operation=error.operation
            )
            state.progress = "error"
            self.error = state.last_error
            self._log(logging.ERROR, "%s phase failed: %s", phase.value, error.message)
            raise error
        finally:
            self._running[phase] -= 1
            state.in_progress = self._running[phase] > 0

        state.completed = True
        state.progress = "completed"
        state.result = result
        self.error = None
        self._touch()
        self._update_progress(phase.value, "completed", 100)
        if phase is Phase.TESTING:
            self.current_phase = Phase.COMPLETE
        self._log(logging.INFO, "%s phase completed", phase.value)
        self.bus.publish(PhaseCompleted(phase=phase.value))
        return PhaseResult(phase=phase, success=True, status="completed", result=result)

    def _entry_point(self, phase: Phase) -> Callable[..., Awaitable[Any]]:
        return {
            Phase.REQUIREMENTS: self._run_requirements,
            Phase.DESIGN: self._run_design,
            Phase.CODEGEN: self._run_codegen,
            Phase.TESTING: self._run_testing,
        }[phase]

    def _requirements_module(self) -> RequirementsModule | None:
        module = self.modules.get(Phase.REQUIREMENTS)
        return module if isinstance(module, RequirementsModule) else None

    async def _run_requirements(
        self,
        text: str | None = None,
        *,
        validate: bool | None = None,
        apply_fixes: bool = False,
        bypass_cache: bool = False,
    ) -> dict[str, Any]:
        text = text if text is not None else self.inputs.get("text")
        if not text:
            raise ValueError("No input text for requirements extraction")
        self.inputs["text"] = text
        module = self.modules[Phase.REQUIREMENTS]
        snapshot = await module.run(
            text, validate=validate, apply_fixes=apply_fixes, bypass_cache=bypass_cache
        )
        requirements = snapshot["requirements"]
        return {key: len(items) for key, items in requirements.items()}

    async def _run_design(self, *, bypass_cache: bool = False) -> dict[str, Any]:
        module = self.modules[Phase.DESIGN]
        outcome = await module.generate_diagrams(bypass_cache=bypass_cache)
        return {"diagrams": sorted(outcome.value)}

    async def _run_codegen(self, *, bypass_cache: bool = False) -> dict[str, Any]:
        requirements = self._requirements_module()
        module = self.modules[Phase.CODEGEN]
        outcome = await module.run(
            requirements.categorized() if requirements else self.inputs.get("requirements", {}),
            design={"diagrams": dict(requirements.diagrams)} if requirements else None,
            bypass_cache=bypass_cache,
        )
        return {"filesGenerated": outcome["filesGenerated"]}

    async def _run_testing(
        self, *, files: dict[str, str] | None = None, bypass_cache: bool = False
    ) -> dict[str, Any]:
        if files is None:
            codegen = self.modules.get(Phase.CODEGEN)
            files = codegen.file_map() if isinstance(codegen, CodeGenerationModule) else {}
        module = self.modules[Phase.TESTING]
        report = await module.run(files, bypass_cache=bypass_cache)
        return report["summary"]

    def _on_phase_complete(self, event: PhaseCompleted) -> Awaitable[None] | None:
        if not self.auto_progress or self._stopped:
            return None
        phase = Phase(event.phase)
        if self.stop_after is not None and phase is self.stop_after:
            return None
        upcoming = next_phase(phase)
        if upcoming is None or upcoming not in WORK_PHASES:
            return None
        return self._auto_start(upcoming)

    async def _auto_start(self, phase: Phase) -> None:
        try:
            result = await self.run_phase(phase)
        except PipelineError as exc:
            self._log(logging.ERROR, "Auto-progression to %s failed: %s", phase.value, exc.message)
            return
        if not result.success:
            self._log(logging.INFO, "Auto-progression stopped at %s: %s", phase.value, result.status)

    async def run(self, text: str, *, stop_after: Phase | str | None = None) -> dict[str, Any]:
        """Run the workflow from requirements up to `stop_after` (or to the end)."""
        self.stop_after = Phase(stop_after) if stop_after is not None else None
        if self.auto_progress:
            await self.run_phase(Phase.REQUIREMENTS, text=text)
            await self.wait_idle()
            return self.get_status()

        for phase in WORK_PHASES:
            options = {"text": text} if phase is Phase.REQUIREMENTS else {}
            result = await self.run_phase(phase, **options)
            if not result.success or phase is self.stop_after:
                break
        return self.get_status()

    async def wait_idle(self) -> None:
        """Wait for background auto-progression to settle."""
        await self.bus.drain()

    def cancel(self, task_id: str) -> bool:
        return self.registry.cancel_task(task_id)

    def reset(self) -> None:
        """Forget workflow progress. Module state is kept."""
        if any(self._running.values()):
            raise PhaseBusy("Cannot reset while a phase is running")
        self.phases = {phase: PhaseState(phase) for phase in WORK_PHASES}
        self.current_phase = Phase.REQUIREMENTS if self.initialized else Phase.IDLE
        self.error = None
        self.progress_history.clear()
        self._log(logging.INFO, "Workflow reset")

    # ------------------------------------------------------------------
    # Progress and status
    # ------------------------------------------------------------------

    def _touch(self) -> None:
        self.project["updatedAt"] = utc_iso()
        self.last_update = self.project["updatedAt"]

    def _update_progress(self, phase: str, status: str, percentage: int) -> None:
        entry = {"phase": phase, "status": status, "percentage": percentage, "timestamp": utc_iso()}
        self.progress_history.append(entry)
        self.last_update = entry["timestamp"]
        self.bus.publish(
            ProgressUpdated(
                correlation_id=self.project["id"], phase=phase, status=status, percentage=percentage
            )
        )

    def _on_operation_event(self, event: OperationStarted | OperationCompleted) -> None:
        stage = "start" if isinstance(event, OperationStarted) else "complete"
        mapped = OPERATION_PROGRESS.get((event.operation, stage))
        if mapped is not None:
            self._update_progress(*mapped)

    def _on_project_progress(self, event: StreamUpdated) -> None:
        if event.operation == "project":
            self._update_progress("codegen", "generating", 10 + round(event.progress * 0.85))

    def get_status(self) -> dict[str, Any]:
        return {
            "initialized": self.initialized,
            "currentPhase": self.current_phase.value,
            "phasesCompleted": {phase.value: state.completed for phase, state in self.phases.items()},
            "phases": {
                phase.value: {
                    "completed": state.completed,
                    "inProgress": state.in_progress,
                    "progress": state.progress,
                    "lastError": vars(state.last_error) if state.last_error else None,
                    "result": state.result,
                }
                for phase, state in self.phases.items()
            },
            "error": vars(self.error) if self.error else None,
            "modules": {phase.value: self.modules.get(phase) is not None for phase in WORK_PHASES},
            "project": dict(self.project),
            "tasks": [task.to_dict() for task in self.registry.list_tasks()],
            "completion": compute_flow_completion(
                {phase: state.completed for phase, state in self.phases.items()}
            ),
            "runtime": {
                "uptimeSeconds": round(time.monotonic() - self.start_time, 3) if self.start_time else 0,
                "lastUpdate": self.last_update,
            },
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _project_key(self, project_id: str | None = None) -> str:
        return f"project-{project_id or self.project['id']}"

    def project_data(self) -> dict[str, Any]:
        modules: dict[str, Any] = {}
        for module in self.modules.values():
            if module is not None and module.module_name not in modules:
                modules[module.module_name] = module.snapshot()
        return {
            "project": dict(self.project),
            "inputs": dict(self.inputs),
            "state": {
                "currentPhase": self.current_phase.value,
                "phasesCompleted": {p.value: s.completed for p, s in self.phases.items()},
            },
            "modules": modules,
            "savedAt": utc_iso(),
        }

    async def save_project_data(self) -> str:
        if self.persistence is None:
            raise PersistenceError("No persistence backend configured")
        data = self.project_data()
        key = self._project_key()
        await asyncio.to_thread(self.persistence.save, key, data)
        await asyncio.to_thread(self.persistence.save, LATEST_KEY, {"projectId": self.project["id"]})
        self._log(logging.DEBUG, "Project data saved to %s", key)
        return key

    async def load_project_data(self, project_id: str | None = None) -> dict[str, Any]:
        """Restore a saved project. Nothing changes unless the whole snapshot is valid."""
        if self.persistence is None:
            raise PersistenceError("No persistence backend configured")
        if project_id is None:
            latest = await asyncio.to_thread(self.persistence.load, LATEST_KEY)
            project_id = (latest or {}).get("projectId")
            if not project_id:
                raise PersistenceError("No saved project found")
        data = await asyncio.to_thread(self.persistence.load, self._project_key(project_id))
        if not isinstance(data, dict) or not isinstance(data.get("project"), dict):
            raise PersistenceError(f"Invalid project data for {project_id}")

        state = data.get("state") or {}
        try:
            current = Phase(state.get("currentPhase", self.current_phase.value))
            completed = {Phase(name): bool(flag) for name, flag in (state.get("phasesCompleted") or {}).items()}
        except ValueError as exc:
            raise PersistenceError(f"Invalid phase state in saved project: {exc}") from exc

        for module in {id(m): m for m in self.modules.values() if m is not None}.values():
            snapshot = (data.get("modules") or {}).get(module.module_name)
            if snapshot is not None:
                module.restore(snapshot)
        self.project = dict(data["project"])
        self.inputs = dict(data.get("inputs") or {})
        self.current_phase = current
        for phase, flag in completed.items():
            if phase in self.phases:
                self.phases[phase].completed = flag
        self._log(logging.INFO, "Project data loaded for %s", project_id)
        return data

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def cleanup(self) -> None:
        """Stop background work, cancel live tasks and flush a final save."""
        self._stopped = True
        if self._auto_saver is not None:
            await self._auto_saver.stop()
            self._auto_saver = None
        self.registry.shutdown()
        await self.bus.drain()
        if self.config.auto_save and self.persistence is not None and self.initialized:
            try:
                await self.save_project_data()
            except PersistenceError as exc:
                self._log(logging.ERROR, "Final save failed: %s", exc.message)
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions.clear()
        self._log(logging.INFO, "Orchestrator cleaned up")


def build_orchestrator(
    config: PipelineConfig,
    backend: GenerativeBackend,
    *,
    bus: EventBus | None = None,
    persistence: Persistence | None = None,
    model: str | None = None,
) -> PhaseOrchestrator:
    """Wire the bus, registry, cache and the three facades together."""
    bus = bus or EventBus()
    registry = TaskRegistry(
        bus, max_concurrent=config.max_concurrent, throttle_mode=config.throttle_mode
    )
    cache = GenerationCache(InMemoryStore(config.cache_max_entries))
    shared = {"bus": bus, "registry": registry, "cache": cache, "config": config, "model": model}
    requirements = RequirementsModule(backend, **shared)
    codegen = CodeGenerationModule(backend, **shared)
    repair = CodeRepairModule(backend, **shared)
    if persistence is None:
        persistence = (
            JsonFilePersistence(Path(config.data_dir)) if config.data_dir else InMemoryPersistence()
        )
    return PhaseOrchestrator(
        {
            Phase.REQUIREMENTS: requirements,
            Phase.DESIGN: requirements,
            Phase.CODEGEN: codegen,
            Phase.TESTING: repair,
        },
        bus=bus,
        registry=registry,
        config=config,
        persistence=persistence,
        backend=backend,
    )
