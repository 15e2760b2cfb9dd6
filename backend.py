"""
Generative backend interface.

A backend answers a GenerationRequest either in one piece (`complete`) or as
a ChunkStream of text deltas (`stream`). `invoke` hides the difference from
callers: a non-streaming answer is delivered as a single-chunk stream.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator, Protocol, runtime_checkable

from models import GenerationRequest

logger = logging.getLogger(__name__)


@runtime_checkable
class ChunkStream(Protocol):
    def __aiter__(self) -> AsyncIterator[str]: ...

    async def __anext__(self) -> str: ...

    def abort(self) -> None: ...

    async def aclose(self) -> None: ...


class GenerativeBackend(Protocol):
    name: str

    async def complete(self, request: GenerationRequest) -> str: ...

    def stream(self, request: GenerationRequest) -> ChunkStream: ...


class StaticChunkStream:
    """A finished response replayed as a stream of precomputed chunks."""

    def __init__(self, chunks: list[str] | None = None) -> None:
        self._chunks = list(chunks or [])
        self._aborted = False

    def __aiter__(self) -> "StaticChunkStream":
        return self

    async def __anext__(self) -> str:
        if self._aborted or not self._chunks:
            raise StopAsyncIteration
        return self._chunks.pop(0)

    def abort(self) -> None:
        self._aborted = True

    async def aclose(self) -> None:
        self._chunks.clear()


class _DeferredCompletion(StaticChunkStream):
    """Runs backend.complete() on first read so the call sits inside the caller's deadline."""

    def __init__(self, backend: GenerativeBackend, request: GenerationRequest) -> None:
        super().__init__()
        self._backend = backend
        self._request = request
        self._started = False

    async def __anext__(self) -> str:
        if not self._started and not self._aborted:
            self._started = True
            text = await self._backend.complete(self._request)
            self._chunks = [text] if text else []
        return await super().__anext__()


def invoke(
    backend: GenerativeBackend,
    request: GenerationRequest,
    *,
    streaming: bool | None = None,
) -> ChunkStream:
    """Open a generation call. `streaming` defaults to the request's own flag."""
    use_stream = request.streaming if streaming is None else streaming
    logger.debug(
        "Invoking %s (%s, streaming=%s)", getattr(backend, "name", "backend"), request.model, use_stream
    )
    if use_stream:
        return backend.stream(request)
    return _DeferredCompletion(backend, request)


def ensure_available(backend: GenerativeBackend) -> None:
    """Run the backend's availability check when it has one."""
    check = getattr(backend, "ensure_available", None)
    if check is not None:
        check()
