"""Async key-value persistence for the learner model.

Every component keeps an in-memory index of its records and writes the whole
aggregate back under one string key after each mutation. The store only has to
offer ``get`` and ``set`` of JSON-serialisable values, last write wins.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Protocol

logger = logging.getLogger(__name__)

PACKAGE_ROOT = Path(__file__).resolve().parent
PROJECT_ROOT = PACKAGE_ROOT.parent.parent
DATA_DIR = PROJECT_ROOT / "data"
DEFAULT_DB_PATH = DATA_DIR / "skill_mastery.db"
DB_PATH = Path(os.environ.get("SKILL_MASTERY_DB_PATH", DEFAULT_DB_PATH))


class KeyValueStore(Protocol):
    async def get(self, key: str, default: Any = None) -> Any: ...

    async def set(self, key: str, value: Any) -> None: ...


def _roundtrip(value: Any) -> Any:
    return json.loads(json.dumps(value))


class MemoryStore:
    """Dict-backed store; values are copied in and out so callers cannot alias state."""

    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = {
            key: _roundtrip(value) for key, value in (initial or {}).items()
        }

    async def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return copy.deepcopy(default)
        return copy.deepcopy(self._data[key])

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = _roundtrip(value)

    def keys(self) -> list[str]:
        return sorted(self._data)

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class SQLiteStore:
    """JSON values in a single ``progress(key, value, updated_at)`` table."""

    def __init__(self, path: Path | str | None = None) -> None:
        self.path = Path(path) if path is not None else DB_PATH

    def _open_connection(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        connection = sqlite3.connect(self.path)
        connection.row_factory = sqlite3.Row
        return connection

    def init(self) -> None:
        """Create the table if it is missing."""

        with self._open_connection() as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS progress (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            connection.commit()

    def _get_sync(self, key: str, default: Any) -> Any:
        connection = self._open_connection()
        try:
            row = connection.execute(
                "SELECT value FROM progress WHERE key = ?", (key,)
            ).fetchone()
        finally:
            connection.close()
        if row is None:
            return copy.deepcopy(default)
        return json.loads(row["value"])

    def _set_sync(self, key: str, value: Any) -> None:
        payload = json.dumps(value)
        connection = self._open_connection()
        try:
            connection.execute(
                """
                INSERT INTO progress (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, payload, _now_iso()),
            )
            connection.commit()
        finally:
            connection.close()

    async def get(self, key: str, default: Any = None) -> Any:
        return await asyncio.to_thread(self._get_sync, key, default)

    async def set(self, key: str, value: Any) -> None:
        logger.debug("Writing %s to %s", key, self.path)
        await asyncio.to_thread(self._set_sync, key, value)

    def keys(self) -> list[str]:
        connection = self._open_connection()
        try:
            rows = connection.execute("SELECT key FROM progress ORDER BY key").fetchall()
        finally:
            connection.close()
        return [row["key"] for row in rows]


__all__ = [
    "DB_PATH",
    "KeyValueStore",
    "MemoryStore",
    "SQLiteStore",
]
