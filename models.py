"""Shared models for the generation pipeline."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

logger = logging.getLogger(__name__)


def utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def new_id() -> str:
    return uuid.uuid4().hex


class Phase(str, Enum):
    """Ordered workflow phases."""

    IDLE = "idle"
    REQUIREMENTS = "requirements"
    DESIGN = "design"
    CODEGEN = "codegen"
    TESTING = "testing"
    COMPLETE = "complete"


WORK_PHASES: list[Phase] = [
    Phase.REQUIREMENTS,
    Phase.DESIGN,
    Phase.CODEGEN,
    Phase.TESTING,
]

PHASE_ORDER: list[Phase] = [Phase.IDLE, *WORK_PHASES, Phase.COMPLETE]

PHASE_WEIGHTS: dict[Phase, int] = {
    Phase.REQUIREMENTS: 30,
    Phase.DESIGN: 15,
    Phase.CODEGEN: 40,
    Phase.TESTING: 15,
}


def next_phase(phase: Phase) -> Phase | None:
    """Return the phase after `phase`, or None at the end of the sequence."""
    index = PHASE_ORDER.index(phase)
    if index + 1 >= len(PHASE_ORDER):
        return None
    return PHASE_ORDER[index + 1]


def previous_work_phase(phase: Phase) -> Phase | None:
    """Return the work phase whose completion gates `phase`."""
    if phase not in WORK_PHASES:
        return None
    index = WORK_PHASES.index(phase)
    return WORK_PHASES[index - 1] if index > 0 else None


def compute_flow_completion(completed: dict[Phase, bool]) -> int:
    """Return integer completion percentage using weighted phase totals."""
    total = sum(PHASE_WEIGHTS[phase] for phase, done in completed.items() if done)
    return min(total, 100)


class TaskStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self is not TaskStatus.IN_PROGRESS


class StreamStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self is not StreamStatus.PROCESSING


class DecodeTarget(str, Enum):
    JSON = "json"
    FENCED_CODE = "fenced-code"


@dataclass(frozen=True)
class GenerationRequest:
    """One call to the generative backend."""

    provider: str
    model: str
    prompt: str
    system_prompt: str = ""
    temperature: float = 0.2
    max_tokens: int = 4096
    streaming: bool = True

    @property
    def fingerprint(self) -> str:
        """Stable hash of the payload and model parameters."""
        material = json.dumps(
            {
                "model": self.model,
                "prompt": self.prompt,
                "system_prompt": self.system_prompt,
                "temperature": self.temperature,
                "max_tokens": self.max_tokens,
            },
            sort_keys=True,
            ensure_ascii=True,
        )
        return hashlib.sha256(material.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CacheEntry:
    fingerprint: str
    result: Any
    created_at: str = field(default_factory=utc_iso)


class Transport(Protocol):
    def abort(self) -> None: ...


@dataclass
class StreamSession:
    """Decode state of one in-flight streaming call."""

    operation: str
    task_id: str | None = None
    id: str = field(default_factory=new_id)
    status: StreamStatus = StreamStatus.PROCESSING
    progress: int = 0
    text: str = ""
    snapshot: Any = None
    start_time: float = field(default_factory=time.monotonic)
    end_time: float | None = None
    error: str | None = None
    transport: Transport | None = field(default=None, repr=False)
    abort_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    abort_reason: Exception | None = field(default=None, repr=False)

    def advance(self, progress: int, text: str | None = None, snapshot: Any = None) -> bool:
        """Record progress while processing. Returns False if ignored."""
        if self.status.terminal:
            return False
        self.progress = max(self.progress, min(int(progress), 100))
        if text is not None:
            self.text = text
        if snapshot is not None:
            self.snapshot = snapshot
        return True

    def complete(self, result: Any) -> bool:
        if self.status.terminal:
            return False
        self.status = StreamStatus.COMPLETED
        self.progress = 100
        self.snapshot = result
        self.end_time = time.monotonic()
        return True

    def fail(self, status: StreamStatus, message: str) -> bool:
        if self.status.terminal:
            return False
        self.status = status
        self.error = message
        self.end_time = time.monotonic()
        return True

    def abort(self, reason: Exception) -> None:
        """Stop chunk delivery. Transport failures are logged, not raised."""
        if self.abort_event.is_set():
            return
        self.abort_reason = reason
        self.abort_event.set()
        if self.transport is not None:
            try:
                self.transport.abort()
            except Exception:
                logger.exception("Failed to abort transport for stream %s", self.id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "operation": self.operation,
            "task_id": self.task_id,
            "status": self.status.value,
            "progress": self.progress,
            "text_length": len(self.text),
            "error": self.error,
            "elapsed_seconds": round((self.end_time or time.monotonic()) - self.start_time, 3),
        }


@dataclass
class Task:
    """Caller-visible unit of work."""

    type: str
    id: str = field(default_factory=new_id)
    status: TaskStatus = TaskStatus.IN_PROGRESS
    progress: int = 0
    started_at: str = field(default_factory=utc_iso)
    ended_at: str | None = None
    start_time: float = field(default_factory=time.monotonic)
    correlation_id: str | None = None
    result: Any = field(default=None, repr=False)
    error: str | None = None
    session_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status.value,
            "progress": self.progress,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "error": self.error,
            "sessions": list(self.session_ids),
        }


@dataclass
class ErrorInfo:
    kind: str
    message: str
    phase: str | None = None
    operation: str | None = None
    timestamp: str = field(default_factory=utc_iso)


@dataclass
class PhaseState:
    """Runtime state for a phase."""

    phase: Phase
    completed: bool = False
    in_progress: bool = False
    progress: str = "queued"
    last_error: ErrorInfo | None = None
    result: Any = field(default=None, repr=False)


@dataclass
class PhaseResult:
    """Outcome of starting a phase."""

    phase: Phase
    success: bool
    status: str
    result: Any = None
    message: str = ""


class FileKind(str, Enum):
    """Role of a generated file, fixed when the structure is decoded."""

    COMPONENT = "component"
    PAGE = "page"
    API_ROUTE = "api_route"
    STYLE = "style"
    CONFIG = "config"
    TEST = "test"
    SOURCE = "source"
    OTHER = "other"


_CONFIG_NAMES = {
    "package.json",
    "tsconfig.json",
    "pyproject.toml",
    "requirements.txt",
    "dockerfile",
    ".env.example",
}
_SOURCE_SUFFIXES = {".js", ".jsx", ".ts", ".tsx", ".py", ".go", ".rs", ".rb", ".php"}


def classify_file(path: str) -> FileKind:
    """Classify a file path once so later stages never re-derive it."""
    normalized = path.replace("\\", "/").lower()
    parts = normalized.split("/")
    name = parts[-1]
    suffix = "." + name.rsplit(".", 1)[-1] if "." in name else ""

    if ".test." in name or ".spec." in name or name.startswith("test_") or "__tests__" in parts:
        return FileKind.TEST
    if "api" in parts[:-1] or name.startswith("route."):
        return FileKind.API_ROUTE
    if suffix in {".css", ".scss", ".sass", ".less"}:
        return FileKind.STYLE
    if name in _CONFIG_NAMES or name.endswith((".config.js", ".config.mjs", ".config.ts")):
        return FileKind.CONFIG
    if suffix in {".json", ".yaml", ".yml", ".toml", ".ini"}:
        return FileKind.CONFIG
    if "components" in parts[:-1]:
        return FileKind.COMPONENT
    if "pages" in parts[:-1] or name.startswith(("page.", "layout.")):
        return FileKind.PAGE
    if suffix in _SOURCE_SUFFIXES:
        return FileKind.SOURCE
    return FileKind.OTHER
