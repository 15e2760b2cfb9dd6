"""
Module Facade
=============

Base class for domain modules. Each operation goes through `_generate`:

    cache hit      -> <operation>:complete (from_cache=True)
    in-flight      -> join the running computation, no backend call
    miss           -> <operation>:start, task + stream session, stream:update*,
                      stream:complete | stream:error, then
                      <operation>:complete | <operation>:error

Domain state is only touched by the `merge` callback, which runs after the
result is cached and before the task completes, with no await in between.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from backend import GenerativeBackend, invoke
from cache import GenerationCache, InMemoryStore
from config import PipelineConfig, get_config
from errors import BackendError, Cancelled, MalformedOutput, PipelineError, Timeout, classify_error
from events import (
    EventBus,
    LogRecorded,
    OperationCompleted,
    OperationFailed,
    OperationStarted,
    StreamCompleted,
    StreamFailed,
    StreamUpdated,
)
from models import (
    DecodeTarget,
    GenerationRequest,
    Phase,
    StreamSession,
    StreamStatus,
    Task,
)
from prompts import render_prompt
from stream_decoder import DecodeUpdate, StreamDecoder
from task_registry import TaskRegistry

logger = logging.getLogger(__name__)

Finalizer = Callable[[Any], Any]
Merger = Callable[[Any], Any]


@dataclass
class OperationResult:
    """What a facade operation hands back to its caller."""

    operation: str
    value: Any
    from_cache: bool = False
    task_id: str | None = None
    stream_id: str | None = None


@dataclass
class _Run:
    session: StreamSession
    task_id: str | None = None
    streaming: bool = True
    extra: dict[str, Any] = field(default_factory=dict)


class ModuleFacade:
    module_name = "module"
    phase: Phase | None = None

    def __init__(
        self,
        backend: GenerativeBackend,
        *,
        bus: EventBus | None = None,
        registry: TaskRegistry | None = None,
        cache: GenerationCache | None = None,
        config: PipelineConfig | None = None,
        decoder: StreamDecoder | None = None,
        model: str | None = None,
    ) -> None:
        self.backend = backend
        self.config = config or get_config()
        self.bus = bus or EventBus()
        self.registry = registry or TaskRegistry(
            self.bus,
            max_concurrent=self.config.max_concurrent,
            throttle_mode=self.config.throttle_mode,
        )
        self.cache = cache or GenerationCache(InMemoryStore(self.config.cache_max_entries))
        self.decoder = decoder or StreamDecoder(self.config.stream_expected_chars)
        self.model = model or getattr(backend, "default_model", None) or "default"

    @property
    def phase_name(self) -> str | None:
        return self.phase.value if self.phase is not None else None

    # ------------------------------------------------------------------
    # Public surface implemented by subclasses
    # ------------------------------------------------------------------

    async def run(self, *args: Any, **options: Any) -> Any:
        raise NotImplementedError

    def snapshot(self) -> dict[str, Any]:
        raise NotImplementedError

    def restore(self, data: dict[str, Any]) -> None:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _log(self, level: int, message: str, *args: Any) -> None:
        """Log through the module logger and mirror the line onto the bus."""
        logger.log(level, f"[{self.module_name}] {message}", *args)
        self.bus.publish(
            LogRecorded(
                level=logging.getLevelName(level).lower(),
                message=message % args if args else message,
                source=self.module_name,
            )
        )

    def build_request(
        self,
        template: str,
        prompt: str,
        *,
        streaming: bool | None = None,
        **values: Any,
    ) -> GenerationRequest:
        return GenerationRequest(
            provider=getattr(self.backend, "name", "backend"),
            model=self.model,
            prompt=prompt,
            system_prompt=render_prompt(template, framework=self.config.framework, **values),
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            streaming=self.config.streaming_enabled if streaming is None else streaming,
        )

    # ------------------------------------------------------------------
    # Generation pipeline
    # ------------------------------------------------------------------

    async def _generate(
        self,
        operation: str,
        request: GenerationRequest,
        *,
        target: DecodeTarget,
        readiness_key: str | None = None,
        finalize: Finalizer | None = None,
        merge: Merger | None = None,
        bypass_cache: bool = False,
        details: dict[str, Any] | None = None,
        task_timeout: float | None = None,
    ) -> OperationResult:
        fingerprint = request.fingerprint

        if not bypass_cache:
            entry = self.cache.lookup(fingerprint)
            if entry is not None:
                self._log(logging.DEBUG, "Using cached %s result", operation)
                return self._deliver_cached(operation, entry.result, merge)
            inflight = self.cache.pending(fingerprint)
            if inflight is not None:
                self._log(logging.DEBUG, "Joining in-flight %s", operation)
                try:
                    result = await asyncio.shield(inflight)
                except Exception as exc:
                    error = classify_error(exc, phase=self.phase_name, operation=operation)
                    self._publish_operation_failed(operation, error, None)
                    raise error
                return self._deliver_cached(operation, result, merge)

        run = _Run(
            session=StreamSession(operation=operation),
            streaming=request.streaming,
        )
        self.bus.publish(
            OperationStarted(
                correlation_id=run.session.id,
                operation=operation,
                module=self.module_name,
                details=details or {},
            )
        )

        async def _compute() -> Any:
            return await self._execute(
                operation,
                request,
                run,
                target=DecodeTarget(target),
                readiness_key=readiness_key,
                finalize=finalize,
                task_timeout=task_timeout,
            )

        try:
            result = await self.cache.compute(fingerprint, _compute)
        except asyncio.CancelledError:
            self._abandon(operation, run)
            raise
        except Exception as exc:
            error = classify_error(exc, phase=self.phase_name, operation=operation)
            self._fail(operation, run, error)
            raise error

        # Merge and completion run back-to-back with the cache write.
        try:
            value = merge(result) if merge is not None else result
        except Exception as exc:
            error = classify_error(exc, phase=self.phase_name, operation=operation)
            self._fail(operation, run, error)
            raise error
        if run.task_id is not None:
            self.registry.complete_task(run.task_id, value)
        self.bus.publish(
            OperationCompleted(
                correlation_id=run.session.id,
                operation=operation,
                module=self.module_name,
                from_cache=False,
                result=value,
            )
        )
        return OperationResult(
            operation=operation,
            value=value,
            task_id=run.task_id,
            stream_id=run.session.id,
        )

    def _deliver_cached(self, operation: str, result: Any, merge: Merger | None) -> OperationResult:
        value = merge(result) if merge is not None else result
        self.bus.publish(
            OperationCompleted(
                operation=operation,
                module=self.module_name,
                from_cache=True,
                result=value,
            )
        )
        return OperationResult(operation=operation, value=value, from_cache=True)

    async def _execute(
        self,
        operation: str,
        request: GenerationRequest,
        run: _Run,
        *,
        target: DecodeTarget,
        readiness_key: str | None,
        finalize: Finalizer | None,
        task_timeout: float | None,
    ) -> Any:
        session = run.session
        deadline = (
            task_timeout
            if task_timeout is not None
            else self.config.phase_timeout(self.phase_name or "")
        )

        def _on_timeout(task: Task) -> None:
            session.abort(
                Timeout(
                    f"{operation} exceeded its {deadline:g}s deadline",
                    phase=self.phase_name,
                    operation=operation,
                )
            )

        run.task_id = await self.registry.start_task(
            operation,
            timeout=deadline,
            correlation_id=session.id,
            on_timeout=_on_timeout,
        )
        self.registry.register_session(session, run.task_id)

        value, text = await self._decode(operation, request, run, target, readiness_key)
        if finalize is not None:
            value = finalize(value)

        # A timeout or cancel that landed during the last await wins.
        if self.registry.is_terminal(run.task_id):
            raise session.abort_reason or Cancelled(
                f"{operation} was stopped before it finished", operation=operation
            )
        session.text = text
        session.complete(value)
        self.bus.publish(
            StreamCompleted(
                correlation_id=session.id,
                stream_id=session.id,
                operation=operation,
                result=value,
            )
        )
        return value

    async def _decode(
        self,
        operation: str,
        request: GenerationRequest,
        run: _Run,
        target: DecodeTarget,
        readiness_key: str | None,
    ) -> tuple[Any, str]:
        try:
            return await self._decode_with_retries(operation, request, run, target, readiness_key)
        except MalformedOutput as exc:
            if request.streaming or target is not DecodeTarget.JSON:
                raise
            bad_text = getattr(exc, "raw_text", "")
            self._log(
                logging.WARNING,
                "%s returned malformed JSON; retrying once with repair instructions",
                operation,
            )
        repair = replace(
            request,
            system_prompt=render_prompt("repair_json"),
            prompt=f"{request.prompt}\n\nPrevious reply:\n{bad_text}",
        )
        return await self._decode_with_retries(operation, repair, run, target, readiness_key)

    async def _decode_with_retries(
        self,
        operation: str,
        request: GenerationRequest,
        run: _Run,
        target: DecodeTarget,
        readiness_key: str | None,
    ) -> tuple[Any, str]:
        """Retry backend failures with exponential backoff while the task is live."""
        session = run.session
        attempt = 0
        while True:
            try:
                return await self._decode_once(operation, request, run, target, readiness_key)
            except BackendError as exc:
                if attempt >= self.config.backend_retries or session.abort_event.is_set():
                    raise
                if run.task_id is not None and self.registry.is_terminal(run.task_id):
                    raise
                delay = self.config.backend_retry_delay_seconds * 2**attempt
                attempt += 1
                self._log(
                    logging.WARNING,
                    "%s backend call failed (%s); retrying (%d/%d) in %.2fs",
                    operation,
                    exc.message,
                    attempt,
                    self.config.backend_retries,
                    delay,
                )
            await asyncio.sleep(delay)
            if session.abort_event.is_set():
                raise session.abort_reason or Cancelled(
                    f"{operation} was stopped before it finished", operation=operation
                )

    async def _decode_once(
        self,
        operation: str,
        request: GenerationRequest,
        run: _Run,
        target: DecodeTarget,
        readiness_key: str | None,
    ) -> tuple[Any, str]:
        session = run.session

        def _on_update(update: DecodeUpdate) -> None:
            if not session.advance(update.progress, snapshot=update.snapshot):
                return
            if run.task_id is None or self.registry.is_terminal(run.task_id):
                return
            self.registry.update_progress(run.task_id, update.progress)
            self.bus.publish(
                StreamUpdated(
                    correlation_id=session.id,
                    stream_id=session.id,
                    operation=operation,
                    progress=session.progress,
                    snapshot=update.snapshot,
                    text_length=update.text_length,
                )
            )

        stream = invoke(self.backend, request, streaming=request.streaming)
        session.transport = stream
        limit = self.config.stream_timeout_seconds
        try:
            outcome = await asyncio.wait_for(
                self.decoder.decode(
                    stream,
                    target=target,
                    readiness_key=readiness_key,
                    on_update=_on_update,
                    abort=session.abort_event,
                ),
                timeout=limit if limit and limit > 0 else None,
            )
        except asyncio.TimeoutError as exc:
            raise Timeout(
                f"No complete response within {limit:g}s",
                phase=self.phase_name,
                operation=operation,
            ) from exc
        except Cancelled:
            if session.abort_reason is not None:
                raise session.abort_reason from None
            raise
        return outcome.value, outcome.text

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def _fail(self, operation: str, run: _Run, error: PipelineError) -> None:
        session = run.session
        if isinstance(error, Timeout):
            status = StreamStatus.TIMEOUT
        elif isinstance(error, Cancelled):
            status = StreamStatus.CANCELLED
        else:
            status = StreamStatus.ERROR
        if run.task_id is not None and session.fail(status, error.message):
            self.bus.publish(
                StreamFailed(
                    correlation_id=session.id,
                    stream_id=session.id,
                    operation=operation,
                    kind=error.kind,
                    message=error.message,
                    progress=session.progress,
                )
            )
        if run.task_id is not None:
            if isinstance(error, Timeout):
                self.registry.expire_task(run.task_id)
            elif isinstance(error, Cancelled):
                self.registry.cancel_task(run.task_id)
            else:
                self.registry.fail_task(run.task_id, error)
        self._log(logging.ERROR, "%s failed: %s", operation, error.message)
        self._publish_operation_failed(operation, error, session.id)

    def _abandon(self, operation: str, run: _Run) -> None:
        """The awaiting coroutine itself was cancelled."""
        if run.task_id is not None:
            self.registry.cancel_task(run.task_id)
        self._fail(
            operation,
            run,
            Cancelled(f"{operation} cancelled", phase=self.phase_name, operation=operation),
        )

    def _publish_operation_failed(
        self, operation: str, error: PipelineError, correlation_id: str | None
    ) -> None:
        self.bus.publish(
            OperationFailed(
                correlation_id=correlation_id,
                operation=operation,
                module=self.module_name,
                kind=error.kind,
                message=error.message,
                phase=error.phase,
            )
        )
