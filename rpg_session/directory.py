"""Session directory — the shared set of known session ids.

SessionDirectory is the directory service itself: an ordered set of ids kept
under the ``sessions`` store key. It is shared by every session coordinator,
so it guards its own set with a lock. Every call is idempotent: adding an id
twice or removing a missing id is a no-op.

DirectoryClient is what a coordinator holds. Directory membership is only
used for discovery, so the client logs and swallows every failure and never
retries.
"""

from __future__ import annotations

import asyncio
import logging

from rpg_session.storage import SessionStore, StorageManager

logger = logging.getLogger(__name__)


class SessionDirectory:
    def __init__(self, store: SessionStore) -> None:
        self._storage = StorageManager(store)
        self._sessions: dict[str, None] | None = None  # insertion-ordered set
        self._lock = asyncio.Lock()

    async def _loaded(self) -> dict[str, None]:
        if self._sessions is None:
            self._sessions = dict.fromkeys(await self._storage.load_sessions())
        return self._sessions

    async def _persist(self) -> None:
        await self._storage.save_sessions(list(self._sessions or {}))

    async def add(self, session_id: str) -> None:
        async with self._lock:
            sessions = await self._loaded()
            if session_id in sessions:
                return
            sessions[session_id] = None
            await self._persist()

    async def remove(self, session_id: str) -> None:
        async with self._lock:
            sessions = await self._loaded()
            if session_id not in sessions:
                return
            del sessions[session_id]
            await self._persist()

    async def list_sessions(self) -> list[str]:
        async with self._lock:
            return list(await self._loaded())

    async def clear(self) -> None:
        async with self._lock:
            sessions = await self._loaded()
            sessions.clear()
            await self._persist()


class DirectoryClient:
    """Best-effort add/remove notifications to the session directory."""

    def __init__(self, directory: SessionDirectory) -> None:
        self._directory = directory

    async def add(self, session_id: str) -> None:
        await self._safe_call("add", session_id)

    async def remove(self, session_id: str) -> None:
        await self._safe_call("remove", session_id)

    async def _safe_call(self, op: str, session_id: str) -> None:
        try:
            await getattr(self._directory, op)(session_id)
        except Exception:
            logger.warning("Directory %s failed for session %s", op, session_id, exc_info=True)
