"""Structured per-run JSONL logging of pipeline events."""

from __future__ import annotations

import json
import re
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from events import Event, EventBus, StreamUpdated


def _utc_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _sanitize_label(value: str) -> str:
    lowered = value.strip().lower()
    cleaned = re.sub(r"[^a-z0-9._-]+", "-", lowered).strip("-")
    return cleaned or "unknown"


@dataclass
class RunLogger:
    """Append-only JSONL logger for one pipeline run."""

    enabled: bool
    run_id: str
    provider: str
    model: str
    log_file: Path | None = None
    include_snapshots: bool = False
    _write_failed: bool = False

    @classmethod
    def create(
        cls,
        *,
        enabled: bool,
        base_dir: Path,
        provider: str,
        model: str,
        include_snapshots: bool = False,
    ) -> "RunLogger":
        run_id = uuid.uuid4().hex[:8]
        logger = cls(
            enabled=False,
            run_id=run_id,
            provider=provider,
            model=model,
            include_snapshots=include_snapshots,
        )
        if not enabled:
            return logger

        try:
            base_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            return logger
        filename = (
            f"{_utc_stamp()}_{_sanitize_label(provider)}_"
            f"{_sanitize_label(model)}_{run_id}.jsonl"
        )
        logger.enabled = True
        logger.log_file = base_dir / filename
        return logger

    def attach(self, bus: EventBus) -> Callable[[], None]:
        """Log every event published on `bus`. Returns the unsubscribe callable."""
        return bus.subscribe("*", self.handle)

    def handle(self, event: Event) -> None:
        payload = event.payload()
        if isinstance(event, StreamUpdated) and not self.include_snapshots:
            payload.pop("snapshot", None)
        self.write(
            {
                "ts": event.timestamp,
                "run_id": self.run_id,
                "event": event.name,
                "correlation_id": event.correlation_id,
                "provider": self.provider,
                "model": self.model,
                "payload": payload,
            }
        )

    def write(self, record: dict[str, Any]) -> None:
        if not self.enabled or self.log_file is None or self._write_failed:
            return
        try:
            with self.log_file.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, ensure_ascii=True, default=str) + "\n")
        except OSError:
            self._write_failed = True


def find_latest_run_log(log_dir: Path) -> Path | None:
    """Return the newest JSONL log file in log_dir, or None when absent."""
    if not log_dir.exists() or not log_dir.is_dir():
        return None
    candidates = [path for path in log_dir.iterdir() if path.is_file() and path.suffix == ".jsonl"]
    if not candidates:
        return None
    return max(candidates, key=lambda path: path.stat().st_mtime)


def read_last_lines(path: Path, line_count: int) -> list[str]:
    """Read the last N lines from a text file."""
    if line_count <= 0:
        return []
    with path.open("r", encoding="utf-8") as handle:
        return [line.rstrip("\n") for line in deque(handle, maxlen=line_count)]
