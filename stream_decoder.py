"""
Stream Decoder
==============

Incrementally extracts structured values from a generation stream.

Two targets are supported:
  - json: a JSON object, emitted as a snapshot whenever the buffer holds a
    parseable object carrying the readiness key
  - fenced-code: the body of the first ``` fenced block, emitted line by line

Usage:
    decoder = StreamDecoder(expected_chars=4000)
    result = await decoder.decode(
        chunks,
        target=DecodeTarget.JSON,
        readiness_key="files",
        on_update=lambda update: print(update.progress),
    )
    print(result.value)
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass, replace
from typing import Any, AsyncIterable, Callable

from errors import Cancelled, MalformedOutput
from models import DecodeTarget

FENCE = "```"
MAX_STREAMING_PROGRESS = 90

_FENCED_JSON_PATTERN = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)```")
_UML_PATTERN = re.compile(r"@startuml[\s\S]*?@enduml")


# =============================================================================
# JSON extraction
# =============================================================================


def _validate_json_object(
    obj: object,
    required_keys: set[str] | None,
    exact_keys: bool,
) -> tuple[bool, str]:
    """Validate the parsed JSON object shape."""
    if not isinstance(obj, dict):
        return False, f"Parsed JSON was {type(obj).__name__}, expected object"

    if not required_keys:
        return True, ""

    parsed_keys = set(obj.keys())
    missing = required_keys - parsed_keys
    if missing:
        return False, f"Missing required keys: {sorted(missing)}"

    if exact_keys and parsed_keys != required_keys:
        extra = parsed_keys - required_keys
        return False, f"Unexpected keys present: {sorted(extra)}"

    return True, ""


def _balanced_span_end(text: str, start: int) -> int:
    """Index just past the object opened at `start`, or -1 if still open."""
    depth = 0
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        char = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return idx + 1
    return -1


def iter_balanced_objects(text: str):
    """Yield top-level balanced {...} spans, stopping at the first open one."""
    start = text.find("{")
    while start != -1:
        end = _balanced_span_end(text, start)
        if end == -1:
            return
        yield text[start:end]
        start = text.find("{", end)


def _fenced_blocks(text: str) -> list[str]:
    return [
        match.group(1).strip()
        for match in _FENCED_JSON_PATTERN.finditer(text)
        if match.group(1).strip()
    ]


def try_extract_json(text: str) -> dict | None:
    """
    Best-effort extraction used while a stream is still arriving.

    Tries a direct parse, then complete fenced blocks, then balanced
    brace spans. Returns None instead of raising.
    """
    cleaned = text.strip()
    if not cleaned:
        return None

    try:
        parsed = json.loads(cleaned)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    if FENCE in cleaned:
        for block in _fenced_blocks(cleaned):
            try:
                parsed = json.loads(block)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                return parsed

    for span in iter_balanced_objects(cleaned):
        try:
            parsed = json.loads(span)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def extract_json_from_text(
    text: str,
    required_keys: set[str] | None = None,
    exact_keys: bool = False,
) -> dict:
    """
    Extract a JSON object from complete model output.

    The model is instructed to output only JSON, but may occasionally
    include surrounding text. This handles that gracefully.
    """
    cleaned = text.strip()
    errors: list[str] = []

    # Stage 1: try parsing whole output directly
    try:
        parsed = json.loads(cleaned)
        valid, reason = _validate_json_object(parsed, required_keys, exact_keys)
        if valid:
            return parsed
        errors.append(f"Direct parse shape invalid: {reason}")
    except json.JSONDecodeError as exc:
        errors.append(f"Direct parse failed: {exc.msg} at pos {exc.pos}")

    # Stage 2: parse fenced code blocks (```json ... ``` or generic ``` ... ```)
    for i, block in enumerate(_fenced_blocks(cleaned) if FENCE in cleaned else [], 1):
        try:
            parsed = json.loads(block)
            valid, reason = _validate_json_object(parsed, required_keys, exact_keys)
            if valid:
                return parsed
            errors.append(f"Fenced block #{i} shape invalid: {reason}")
        except json.JSONDecodeError as exc:
            errors.append(f"Fenced block #{i} parse failed: {exc.msg} at pos {exc.pos}")

    # Stage 3: scan for JSON objects with raw_decode from each '{' position
    decoder = json.JSONDecoder()
    for idx, char in enumerate(cleaned):
        if char != "{":
            continue
        try:
            parsed, _ = decoder.raw_decode(cleaned, idx)
        except json.JSONDecodeError:
            continue

        valid, reason = _validate_json_object(parsed, required_keys, exact_keys)
        if valid:
            return parsed
        errors.append(f"raw_decode object at index {idx} shape invalid: {reason}")

    start_preview = cleaned[:300]
    end_preview = cleaned[-300:] if len(cleaned) > 300 else cleaned
    raise MalformedOutput(
        "Could not extract valid JSON from model output.\n"
        f"Required keys: {sorted(required_keys) if required_keys else 'none'}\n"
        f"Exact keys required: {exact_keys}\n"
        f"Parsing stages attempted: {' | '.join(errors[:8])}\n"
        f"Output start:\n{start_preview}\n\n"
        f"Output end:\n{end_preview}"
    )


def extract_uml_code(text: str) -> str | None:
    """Return the first @startuml ... @enduml block in text, tags included."""
    match = _UML_PATTERN.search(text)
    return match.group(0).strip() if match else None


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ``` fence (and its language tag) if present."""
    state = FenceState()
    state, _ = step_fenced(state, text)
    return finish_fenced(state)


# =============================================================================
# Incremental JSON decoding
# =============================================================================


class JsonStreamDecoder:
    """Accumulates chunks and yields snapshots once the readiness key appears."""

    def __init__(
        self,
        readiness_key: str | None = None,
        required_keys: set[str] | None = None,
    ) -> None:
        self.readiness_key = readiness_key
        self.required_keys = set(required_keys or ())
        if readiness_key:
            self.required_keys.add(readiness_key)
        self.buffer = ""
        self.last_snapshot: dict | None = None

    def feed(self, chunk: str) -> dict | None:
        self.buffer += chunk
        # A new complete object can only appear once a closing brace or fence arrives.
        if "}" not in chunk and "`" not in chunk:
            return None
        candidate = try_extract_json(self.buffer)
        if candidate is None:
            return None
        if self.readiness_key and self.readiness_key not in candidate:
            return None
        if candidate == self.last_snapshot:
            return None
        self.last_snapshot = candidate
        return candidate

    def finish(self) -> dict:
        return extract_json_from_text(self.buffer, required_keys=self.required_keys or None)


# =============================================================================
# Fenced code state machine
# =============================================================================

IDLE = "idle"
IN_FENCE = "in_fence"
RESOLVED = "resolved"


@dataclass(frozen=True)
class FenceState:
    mode: str = IDLE
    raw: str = ""
    fence_end: int = -1
    body_start: int = -1
    scanned: int = 0
    code: str = ""


@dataclass(frozen=True)
class FenceEmission:
    code: str
    final: bool = False


def _trim_final_newline(code: str) -> str:
    if code.endswith("\r\n"):
        return code[:-2]
    if code.endswith("\n"):
        return code[:-1]
    return code


def step_fenced(state: FenceState, chunk: str) -> tuple[FenceState, FenceEmission | None]:
    """Advance the fence machine by one chunk. Pure: returns a new state."""
    if state.mode == RESOLVED:
        return state, None

    raw = state.raw + chunk
    state = replace(state, raw=raw)

    if state.mode == IDLE:
        idx = raw.find(FENCE, max(0, state.scanned - len(FENCE) + 1))
        if idx == -1:
            return replace(state, scanned=len(raw)), None
        state = replace(state, mode=IN_FENCE, fence_end=idx + len(FENCE), scanned=idx + len(FENCE))

    if state.body_start == -1:
        newline = raw.find("\n", state.fence_end)
        if newline == -1:
            return state, None
        state = replace(state, body_start=newline + 1, scanned=newline + 1)

    search_from = max(state.body_start, state.scanned - len(FENCE) + 1)
    close = raw.find(FENCE, search_from)
    if close != -1:
        code = _trim_final_newline(raw[state.body_start:close])
        return replace(state, mode=RESOLVED, code=code, scanned=close), FenceEmission(code, final=True)

    state = replace(state, scanned=len(raw))
    body = raw[state.body_start:]
    last_newline = body.rfind("\n")
    partial = body[:last_newline] if last_newline != -1 else ""
    if partial and partial != state.code:
        return replace(state, code=partial), FenceEmission(partial)
    return state, None


def finish_fenced(state: FenceState) -> str:
    """Resolve the code at end of stream."""
    if state.mode == RESOLVED:
        return state.code
    if state.mode == IN_FENCE:
        if state.body_start == -1:
            return ""
        return state.raw[state.body_start:].rstrip("\r\n")
    # No fence ever appeared: the whole response is the code.
    return state.raw.strip("\r\n")


# =============================================================================
# Async decoding
# =============================================================================


def estimate_progress(length: int, expected_chars: int) -> int:
    """Approximate progress from buffer size; never reaches 100 mid-stream."""
    if expected_chars <= 0:
        return 0
    return int(min(MAX_STREAMING_PROGRESS, length * 100 / expected_chars))


@dataclass(frozen=True)
class DecodeUpdate:
    progress: int
    text_length: int
    snapshot: Any = None
    final: bool = False


@dataclass(frozen=True)
class DecodeResult:
    value: Any
    text: str
    snapshots: int


UpdateCallback = Callable[[DecodeUpdate], None]


class _Accumulator:
    """Target-specific feed/finish pair behind a common interface."""

    def __init__(self, target: DecodeTarget, readiness_key: str | None) -> None:
        self.target = DecodeTarget(target)
        self.text = ""
        self._json = JsonStreamDecoder(readiness_key) if self.target is DecodeTarget.JSON else None
        self._fence = FenceState()

    def feed(self, chunk: str) -> Any:
        self.text += chunk
        if self._json is not None:
            return self._json.feed(chunk)
        self._fence, emission = step_fenced(self._fence, chunk)
        return emission.code if emission is not None else None

    def finish(self) -> Any:
        if self._json is not None:
            return self._json.finish()
        code = finish_fenced(self._fence)
        if not code.strip():
            raise MalformedOutput("Response contained no code")
        return code


class StreamDecoder:
    """Turns a chunk stream into snapshots and a final value."""

    def __init__(self, expected_chars: int = 4000) -> None:
        self.expected_chars = expected_chars

    async def decode(
        self,
        chunks: AsyncIterable[str],
        *,
        target: DecodeTarget | str,
        readiness_key: str | None = None,
        on_update: UpdateCallback | None = None,
        abort: asyncio.Event | None = None,
    ) -> DecodeResult:
        """
        Consume `chunks` until end of stream.

        Raises MalformedOutput when the final value cannot be resolved and
        Cancelled when `abort` is set before the stream ends. No update is
        delivered after abort.
        """
        accumulator = _Accumulator(DecodeTarget(target), readiness_key)
        abort = abort or asyncio.Event()
        iterator = chunks.__aiter__()
        abort_waiter = asyncio.ensure_future(abort.wait())
        next_chunk: asyncio.Future[str] | None = None
        progress = 0
        snapshots = 0

        try:
            while True:
                if abort.is_set():
                    raise Cancelled("Stream aborted")
                next_chunk = asyncio.ensure_future(iterator.__anext__())
                done, _ = await asyncio.wait(
                    {next_chunk, abort_waiter},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if next_chunk not in done:
                    raise Cancelled("Stream aborted")
                try:
                    chunk = next_chunk.result()
                except StopAsyncIteration:
                    break
                finally:
                    next_chunk = None
                if abort.is_set():
                    raise Cancelled("Stream aborted")
                if not chunk:
                    continue

                snapshot = accumulator.feed(chunk)
                new_progress = max(
                    progress, estimate_progress(len(accumulator.text), self.expected_chars)
                )
                if snapshot is None and new_progress == progress:
                    continue
                progress = new_progress
                if snapshot is not None:
                    snapshots += 1
                if on_update is not None:
                    on_update(DecodeUpdate(progress, len(accumulator.text), snapshot))
        finally:
            abort_waiter.cancel()
            if next_chunk is not None and not next_chunk.done():
                next_chunk.cancel()
                await asyncio.gather(next_chunk, return_exceptions=True)
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()

        if abort.is_set():
            raise Cancelled("Stream aborted")
        try:
            value = accumulator.finish()
        except MalformedOutput as exc:
            exc.raw_text = accumulator.text
            raise
        if on_update is not None:
            on_update(DecodeUpdate(100, len(accumulator.text), value, final=True))
        return DecodeResult(value=value, text=accumulator.text, snapshots=snapshots + 1)


def decode_text(
    text: str,
    *,
    target: DecodeTarget | str,
    readiness_key: str | None = None,
) -> Any:
    """Resolve a complete (non-streamed) response with the same rules."""
    accumulator = _Accumulator(DecodeTarget(target), readiness_key)
    accumulator.feed(text)
    return accumulator.finish()
