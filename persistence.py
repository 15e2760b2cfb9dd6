"""
Project state persistence.

Stores plain JSON-serializable values under string keys. Failures raise
PersistenceError and never touch the caller's in-memory state.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

from errors import PersistenceError

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")


class Persistence(Protocol):
    def save(self, key: str, value: Any) -> None: ...

    def load(self, key: str) -> Any | None: ...


def _check_key(key: str) -> str:
    if not _KEY_PATTERN.match(key):
        raise PersistenceError(f"Invalid persistence key: {key!r}")
    return key


class JsonFilePersistence:
    """One JSON file per key under `base_dir`, written atomically."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = Path(base_dir)

    def ensure_ready(self) -> None:
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(f"Cannot create data directory {self.base_dir}: {exc}") from exc

    def path_for(self, key: str) -> Path:
        return self.base_dir / f"{_check_key(key)}.json"

    def save(self, key: str, value: Any) -> None:
        path = self.path_for(key)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            payload = json.dumps(value, indent=2, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise PersistenceError(f"State for {key!r} is not serializable: {exc}") from exc
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(payload + "\n", encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as exc:
            raise PersistenceError(f"Failed to save {key!r}: {exc}") from exc

    def load(self, key: str) -> Any | None:
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"Failed to load {key!r}: {exc}") from exc


class InMemoryPersistence:
    """Keeps JSON-encoded copies so saved state cannot alias live objects."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def ensure_ready(self) -> None:
        return None

    def save(self, key: str, value: Any) -> None:
        try:
            self._data[_check_key(key)] = json.dumps(value)
        except (TypeError, ValueError) as exc:
            raise PersistenceError(f"State for {key!r} is not serializable: {exc}") from exc

    def load(self, key: str) -> Any | None:
        raw = self._data.get(_check_key(key))
        return json.loads(raw) if raw is not None else None


class AutoSaver:
    """Calls `save` every `interval` seconds until stopped.

    A failed save is logged and retried on the next cycle.
    """

    def __init__(self, save: Callable[[], Awaitable[Any] | Any], interval: float) -> None:
        self.save = save
        self.interval = interval
        self.failures = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running or self.interval <= 0:
            return
        self._task = asyncio.ensure_future(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                outcome = self.save()
                if asyncio.iscoroutine(outcome):
                    await outcome
            except PersistenceError as exc:
                self.failures += 1
                logger.warning("Auto-save failed (attempt %d): %s", self.failures, exc)
            except Exception:
                self.failures += 1
                logger.exception("Auto-save raised unexpectedly (attempt %d)", self.failures)
            else:
                self.failures = 0
