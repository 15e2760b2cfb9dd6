"""Provider-aware stream cleaning: raw CLI stdout lines -> text deltas."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Literal

PieceKind = Literal["text", "thinking"]

JSON_STREAM_PROVIDERS = {"claude", "omp"}


def emits_json_events(provider: str, streaming: bool) -> bool:
    """claude prints stream-json only for streaming calls; omp's json mode is unconditional."""
    provider = provider.strip().lower()
    if provider == "claude":
        return streaming
    return provider in JSON_STREAM_PROVIDERS


@dataclass(frozen=True)
class StreamPiece:
    kind: PieceKind
    text: str


@dataclass
class StreamCleaner:
    """Turn raw provider output lines into generated-text pieces."""

    show_thinking: bool = False

    def ingest(self, provider: str, raw_line: str, *, streaming: bool = True) -> list[StreamPiece]:
        """
        `raw_line` keeps its trailing newline. Plain-text output passes
        through untouched so the reassembled text matches stdout.
        """
        provider = provider.strip().lower()
        if not emits_json_events(provider, streaming):
            return [StreamPiece("text", raw_line)] if raw_line else []
        stripped = raw_line.strip()
        if not stripped:
            return []
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError:
            return [StreamPiece("text", raw_line)]
        if not isinstance(payload, dict):
            return []
        if provider == "omp":
            return _clean_omp_event(payload, self.show_thinking)
        return _clean_claude_event(payload, self.show_thinking)


def _clean_omp_event(payload: dict, show_thinking: bool) -> list[StreamPiece]:
    if payload.get("type") != "message_update":
        return []
    update = payload.get("assistantMessageEvent")
    if not isinstance(update, dict):
        return []
    update_type = update.get("type")
    delta = update.get("delta")
    if not isinstance(delta, str) or not delta:
        return []
    if update_type == "text_delta":
        return [StreamPiece("text", delta)]
    if update_type == "thinking_delta" and show_thinking:
        return [StreamPiece("thinking", delta)]
    return []


def _clean_claude_event(payload: dict, show_thinking: bool) -> list[StreamPiece]:
    # --output-format stream-json --include-partial-messages wraps raw API events.
    if payload.get("type") != "stream_event":
        return []
    event = payload.get("event")
    if not isinstance(event, dict) or event.get("type") != "content_block_delta":
        return []
    delta = event.get("delta")
    if not isinstance(delta, dict):
        return []
    if delta.get("type") == "text_delta":
        text = delta.get("text")
        return [StreamPiece("text", text)] if isinstance(text, str) and text else []
    if delta.get("type") == "thinking_delta" and show_thinking:
        thinking = delta.get("thinking")
        if isinstance(thinking, str) and thinking:
            return [StreamPiece("thinking", thinking)]
    return []
