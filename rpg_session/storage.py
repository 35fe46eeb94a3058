"""Key-value session storage.

The store only offers get/put of JSON-serialisable values. There are no
transactions and no conditional writes; single-writer consistency comes from
each session coordinator serialising its own operations.

Two implementations are provided:

    JsonFileStore — one JSON file per key under a base directory.
    MemoryStore   — dict-backed, for tests and throwaway dev servers.

Key layout:

    session/{session_id}   ← full SessionSnapshot of one session
    sessions               ← list of known session ids (the directory)
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import quote

from rpg_session.models import SessionSnapshot

SESSIONS_KEY = "sessions"


def session_key(session_id: str) -> str:
    return f"session/{session_id}"


class StorageError(RuntimeError):
    """Raised when the store cannot read or write a value."""


# ---------------------------------------------------------------------------
# Protocol: every store must match this signature
# ---------------------------------------------------------------------------

class SessionStore(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def put(self, key: str, value: Any) -> None: ...


# ---------------------------------------------------------------------------
# JsonFileStore
# ---------------------------------------------------------------------------

class JsonFileStore:
    """Flat JSON files under a base directory, one per key.

    Keys are percent-encoded into file names, so "session/abc" is stored
    as ``{base}/session%2Fabc.json``. Writes go through a temp file and an
    atomic rename so a crash never leaves a half-written snapshot.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._base.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self._base / f"{quote(key, safe='')}.json"

    async def get(self, key: str) -> Any | None:
        path = self._path(key)
        if not path.is_file():
            return None
        try:
            return json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Cannot read {key!r}: {e}") from e

    async def put(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(value, indent=2))
            tmp.replace(path)
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Cannot write {key!r}: {e}") from e


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------

class MemoryStore:
    """Keeps values as JSON text so callers never share mutable references."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> Any | None:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    async def put(self, key: str, value: Any) -> None:
        try:
            self._data[key] = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Cannot write {key!r}: {e}") from e

    def keys(self) -> list[str]:
        return list(self._data)


# ---------------------------------------------------------------------------
# StorageManager: typed access on top of a raw store
# ---------------------------------------------------------------------------

class StorageManager:
    """Hides snapshot serialisation details from the coordinator and directory."""

    def __init__(self, store: SessionStore) -> None:
        self._store = store

    async def load_session(self, session_id: str) -> SessionSnapshot | None:
        data = await self._store.get(session_key(session_id))
        if data is None:
            return None
        return SessionSnapshot.model_validate(data)

    async def save_session(self, session_id: str, snapshot: SessionSnapshot) -> None:
        await self._store.put(
            session_key(session_id),
            snapshot.model_dump(mode="json", by_alias=True),
        )

    async def load_sessions(self) -> list[str]:
        stored = await self._store.get(SESSIONS_KEY)
        return list(stored) if stored else []

    async def save_sessions(self, session_ids: list[str]) -> None:
        await self._store.put(SESSIONS_KEY, list(session_ids))
