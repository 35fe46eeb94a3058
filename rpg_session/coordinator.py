"""Session coordinator: the single writer for one session's state.

SessionHub maps every session id to exactly one SessionCoordinator, created on
first use and hydrated from the last stored snapshot. Each coordinator runs
its operations under its own lock, so join/state/act calls on one session never
interleave, while different sessions proceed independently.

Operation flow (every operation):
  1. Take the session lock; hydrate from storage on first use.
  2. Idle check: players present and idle for >= idle_timeout → deregister
     from the directory and reset, exactly like an explicit end command.
  3. Run the operation.
  4. Persist a full SessionSnapshot before returning. A state read on a
     session nobody has joined writes nothing.

act():
  - unknown player → PlayerNotJoinedError (no state touched)
  - end command ("end game", "stop session", ...) → closing narration,
    deregister, reset, reset=True
  - otherwise narrate; only non-degraded narration goes through effect
    resolution, then the turn advances if the actor held it
  - the action and the narration are appended to the log

Directory calls are best-effort (see DirectoryClient). Storage errors
propagate to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from rpg_session.combat import advance_turn, is_turn, new_combat_state
from rpg_session.directory import DirectoryClient, SessionDirectory
from rpg_session.effects import resolve_effects
from rpg_session.models import (
    MAX_HP,
    NARRATOR,
    RECENT_MESSAGE_LIMIT,
    STARTER_INVENTORY,
    ActionResult,
    JoinResult,
    Message,
    Player,
    SessionContext,
    SessionSnapshot,
    SessionView,
    StateResult,
)
from rpg_session.narrator import Narrator
from rpg_session.storage import SessionStore, StorageManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

IDLE_TIMEOUT = 30 * 60  # seconds
CLOSING_TEXT = "The game has ended. Thank you for playing!"

_END_COMMAND = re.compile(r"(?:end|finish|close|stop)\s*(?:game|session)?", re.IGNORECASE)


class SessionError(Exception):
    """Base class for client-facing session errors."""


class InvalidPayloadError(SessionError):
    """A join/act argument is missing or has the wrong type."""


class PlayerNotJoinedError(SessionError):
    """An action came from a player id that never joined the session."""


def is_end_command(action: str) -> bool:
    return _END_COMMAND.fullmatch(action.strip()) is not None


def _require_text(value: object, field: str) -> str:
    if not isinstance(value, str) or not value:
        raise InvalidPayloadError(f"{field} must be a non-empty string")
    return value


class SessionCoordinator:
    def __init__(
        self,
        session_id: str,
        *,
        store: SessionStore,
        directory: DirectoryClient,
        narrator: Narrator,
        idle_timeout: float = IDLE_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.session_id = session_id
        self._storage = StorageManager(store)
        self._directory = directory
        self._narrator = narrator
        self._idle_timeout = idle_timeout
        self._clock = clock
        self._lock = asyncio.Lock()
        self._loaded = False
        self.pending = 0

        self.players: dict[str, Player] = {}
        self.messages: list[Message] = []
        self.combat = new_combat_state()
        self.last_activity = clock()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def join(self, player_id: str, name: str) -> JoinResult:
        _require_text(player_id, "playerId")
        _require_text(name, "name")

        async with self._lock:
            await self._prepare()
            was_empty = not self.players

            existing = self.players.get(player_id)
            if existing is None:
                self.players[player_id] = Player(
                    id=player_id, name=name, hp=MAX_HP, inventory=list(STARTER_INVENTORY),
                )
                self._narrate(f"{name} enters the campaign with basic equipment.")
                logger.info("Session %s: player %s joined as %s", self.session_id, player_id, name)
            elif existing.name != name:
                self._narrate(f"{existing.name} is now known as {name}.")
                existing.name = name

            self._touch()
            await self._persist()

            if was_empty:
                await self._directory.add(self.session_id)

            return JoinResult(players=self._player_views(), messages=self.recent_messages())

    async def state(self) -> StateResult:
        async with self._lock:
            await self._prepare()
            if self.players:
                self._touch()
                await self._persist()
            return StateResult(
                players=self._player_views(),
                messages=self.recent_messages(),
                combat=self.combat.model_copy(deep=True),
            )

    async def act(self, player_id: str, action: str) -> ActionResult:
        _require_text(player_id, "playerId")
        if not isinstance(action, str):
            raise InvalidPayloadError("playerAction must be a string")

        async with self._lock:
            await self._prepare()

            player = self.players.get(player_id)
            if player is None:
                logger.warning(
                    "Session %s: action from unknown player %s (known: %s)",
                    self.session_id, player_id, list(self.players),
                )
                raise PlayerNotJoinedError("Player not joined.")

            if is_end_command(action):
                logger.info("Session %s ended by %s", self.session_id, player.name)
                await self._directory.remove(self.session_id)
                self._reset()
                await self._persist()
                return ActionResult(
                    result=CLOSING_TEXT,
                    reset=True,
                    state=SessionView(players=[], combat=self.combat.model_copy(deep=True)),
                )

            context = SessionContext(
                players=self._player_views(),
                messages=self.recent_messages(),
                combat=self.combat.model_copy(deep=True),
            )
            narration = await self._narrator.narrate(context, player, action)

            if not narration.degraded:
                # Resolve on copies; live state only changes if resolution succeeds.
                players = {pid: p.model_copy(deep=True) for pid, p in self.players.items()}
                combat = self.combat.model_copy(deep=True)
                resolve_effects(narration.text, players, combat)
                if combat.active and is_turn(combat, player.name):
                    advance_turn(combat)
                self.players, self.combat = players, combat
                player = players[player_id]

            now = self._clock()
            self.messages.append(Message(actor=player.name, content=action, ts=now))
            self.messages.append(Message(actor=NARRATOR, content=narration.text, ts=now))

            self._touch()
            await self._persist()

            return ActionResult(
                result=narration.text,
                reasoning=narration.reasoning,
                degraded=narration.degraded,
                reset=False,
                state=SessionView(
                    players=self._player_views(),
                    combat=self.combat.model_copy(deep=True),
                ),
            )

    # ------------------------------------------------------------------
    # Snapshot lifecycle
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """Replay the latest stored snapshot into memory."""
        snapshot = await self._storage.load_session(self.session_id)
        if snapshot is not None:
            self.players = dict(snapshot.players)
            self.messages = list(snapshot.messages)
            self.combat = snapshot.combat
            self.last_activity = snapshot.last_activity or self._clock()
        self._loaded = True

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            players=list(self.players.items()),
            messages=self.messages,
            combat=self.combat,
            last_activity=self.last_activity,
            session_id=self.session_id,
        )

    async def _persist(self) -> None:
        await self._storage.save_session(self.session_id, self.snapshot())

    async def _prepare(self) -> None:
        if not self._loaded:
            await self.load()
        await self._cleanup_if_idle()

    async def _cleanup_if_idle(self) -> None:
        if not self.players:
            return
        idle = self._clock() - self.last_activity
        if idle < self._idle_timeout:
            return
        logger.info("Session %s expired after %.0fs of inactivity", self.session_id, idle)
        await self._directory.remove(self.session_id)
        self._reset()
        await self._persist()

    def _reset(self) -> None:
        self.players = {}
        self.messages = []
        self.combat = new_combat_state()
        self._touch()

    def _touch(self) -> None:
        self.last_activity = self._clock()

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def _narrate(self, content: str) -> None:
        self.messages.append(Message(actor=NARRATOR, content=content, ts=self._clock()))

    def _player_views(self) -> list[Player]:
        return [p.model_copy(deep=True) for p in self.players.values()]

    def recent_messages(self) -> list[Message]:
        return [m.model_copy() for m in self.messages[-RECENT_MESSAGE_LIMIT:]]


class SessionHub:
    """Routes each session id to its one coordinator.

    Coordinators are created synchronously on first lookup, so two concurrent
    requests for a new id always end up on the same instance. A coordinator
    with no players and no call in flight is dropped after the call returns;
    the next lookup hydrates a fresh one from storage.
    """

    def __init__(
        self,
        *,
        store: SessionStore,
        directory: SessionDirectory,
        narrator: Narrator,
        idle_timeout: float = IDLE_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._directory = directory
        self._directory_client = DirectoryClient(directory)
        self._narrator = narrator
        self._idle_timeout = idle_timeout
        self._clock = clock
        self._coordinators: dict[str, SessionCoordinator] = {}

    def coordinator(self, session_id: str) -> SessionCoordinator:
        _require_text(session_id, "sessionId")
        coordinator = self._coordinators.get(session_id)
        if coordinator is None:
            coordinator = SessionCoordinator(
                session_id,
                store=self._store,
                directory=self._directory_client,
                narrator=self._narrator,
                idle_timeout=self._idle_timeout,
                clock=self._clock,
            )
            self._coordinators[session_id] = coordinator
        return coordinator

    async def join(self, session_id: str, player_id: str, name: str) -> JoinResult:
        return await self._run(session_id, lambda c: c.join(player_id, name))

    async def state(self, session_id: str) -> StateResult:
        return await self._run(session_id, lambda c: c.state())

    async def act(self, session_id: str, player_id: str, action: str) -> ActionResult:
        return await self._run(session_id, lambda c: c.act(player_id, action))

    async def _run(self, session_id: str, operation: Callable[[SessionCoordinator], Awaitable[T]]) -> T:
        coordinator = self.coordinator(session_id)
        coordinator.pending += 1
        try:
            return await operation(coordinator)
        finally:
            coordinator.pending -= 1
            if coordinator.pending == 0 and not coordinator.players:
                if self._coordinators.get(session_id) is coordinator:
                    del self._coordinators[session_id]

    async def list_sessions(self) -> list[str]:
        return await self._directory.list_sessions()

    async def clear_sessions(self) -> None:
        await self._directory.clear()
