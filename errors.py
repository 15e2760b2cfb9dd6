"""
Pipeline Errors
===============

Error kinds surfaced by the generation pipeline. Every error carries the
phase and operation it originated from so callers can show it verbatim and
offer a retry of the same operation.
"""

from __future__ import annotations

import asyncio
import json
import subprocess


class PipelineError(Exception):
    """Base class for all classified pipeline failures."""

    kind = "pipeline_error"

    def __init__(
        self,
        message: str,
        *,
        phase: str | None = None,
        operation: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.operation = operation

    def with_context(
        self, *, phase: str | None = None, operation: str | None = None
    ) -> "PipelineError":
        """Fill in phase/operation if they are not set yet. Returns self."""
        if self.phase is None:
            self.phase = phase
        if self.operation is None:
            self.operation = operation
        return self

    def to_dict(self) -> dict[str, str | None]:
        return {
            "kind": self.kind,
            "message": self.message,
            "phase": self.phase,
            "operation": self.operation,
        }

    def __str__(self) -> str:
        where = self.operation or self.phase
        if where:
            return f"[{where}] {self.message}"
        return self.message


class MalformedOutput(PipelineError, ValueError):
    """The decoder could not resolve a structured value."""

    kind = "malformed_output"


class BackendError(PipelineError):
    """Transport-level failure from the generative backend."""

    kind = "backend_error"


class Timeout(PipelineError):
    """A deadline elapsed before the work finished."""

    kind = "timeout"


class Cancelled(PipelineError):
    """Work was cancelled explicitly."""

    kind = "cancelled"


class PhaseBusy(PipelineError):
    """A phase operation was started while the phase was already running."""

    kind = "phase_busy"


class PhaseNotReady(PipelineError):
    """A phase was started before the phase it depends on completed."""

    kind = "phase_not_ready"


class PersistenceError(PipelineError):
    """Saving or loading state failed."""

    kind = "persistence_error"


class Throttled(PipelineError):
    """The concurrent task limit was reached."""

    kind = "throttled"


def classify_error(
    exc: BaseException,
    *,
    phase: str | None = None,
    operation: str | None = None,
) -> PipelineError:
    """Map an arbitrary exception onto a pipeline error kind."""
    if isinstance(exc, PipelineError):
        return exc.with_context(phase=phase, operation=operation)
    if isinstance(exc, asyncio.TimeoutError):
        error: PipelineError = Timeout(
            str(exc) or "Deadline elapsed", phase=phase, operation=operation
        )
    elif isinstance(exc, asyncio.CancelledError):
        error = Cancelled("Operation cancelled", phase=phase, operation=operation)
    elif isinstance(exc, (OSError, subprocess.SubprocessError, ConnectionError)):
        error = BackendError(str(exc), phase=phase, operation=operation)
    elif isinstance(exc, (json.JSONDecodeError, ValueError, KeyError, TypeError)):
        error = MalformedOutput(str(exc), phase=phase, operation=operation)
    else:
        error = BackendError(
            f"{type(exc).__name__}: {exc}", phase=phase, operation=operation
        )
    error.__cause__ = exc
    return error
