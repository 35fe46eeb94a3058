"""Core domain models.

Every coordinator operation, the narrator and the effect resolver work on
these types. Pydantic is used for validation and serialisation at every data
boundary: request payloads, stored snapshots and API results.

Wire field names follow the browser client (camelCase) through aliases;
Python code uses the snake_case attribute names.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

NARRATOR = "DM"  # reserved actor label for narrator messages
MAX_HP = 20
RECENT_MESSAGE_LIMIT = 50
STARTER_INVENTORY = ("basic sword", "leather armor", "health potion")


class Player(BaseModel):
    """A participant in the session, keyed by an opaque client id."""

    id: str
    name: str
    hp: int = MAX_HP
    inventory: list[str] = Field(default_factory=list)


class Message(BaseModel):
    """A single entry in the session's append-only message log."""

    actor: str  # player name or NARRATOR
    content: str
    ts: float


class Enemy(BaseModel):
    name: str
    hp: int


class CombatState(BaseModel):
    """Combat tracker state.

    When ``active`` is false, ``turn_order`` and ``enemies`` are empty and
    ``current_turn_index`` is 0.
    """

    model_config = ConfigDict(populate_by_name=True)

    active: bool = False
    turn_order: list[str] = Field(default_factory=list, alias="turnOrder")
    current_turn_index: int = Field(default=0, alias="currentTurnIndex")
    enemies: list[Enemy] = Field(default_factory=list)


class SessionSnapshot(BaseModel):
    """Full persisted state of one session. The only unit of persistence."""

    model_config = ConfigDict(populate_by_name=True)

    players: list[tuple[str, Player]] = Field(default_factory=list)
    messages: list[Message] = Field(default_factory=list)
    combat: CombatState = Field(default_factory=CombatState)
    last_activity: float = Field(default=0.0, alias="lastActivity")
    session_id: str | None = Field(default=None, alias="sessionId")


class SessionContext(BaseModel):
    """What the narrator gets to see of a session."""

    players: list[Player]
    messages: list[Message]
    combat: CombatState


class NarrationResult(BaseModel):
    text: str
    reasoning: str = ""
    degraded: bool = False


# ---------------------------------------------------------------------------
# Request payloads
# ---------------------------------------------------------------------------

class JoinPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId", min_length=1)
    player_id: str = Field(alias="playerId", min_length=1)
    name: str = Field(min_length=1)


class ActionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId", min_length=1)
    player_id: str = Field(alias="playerId", min_length=1)
    player_action: str = Field(alias="playerAction")


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------

class SessionView(BaseModel):
    players: list[Player]
    combat: CombatState


class JoinResult(BaseModel):
    ok: bool = True
    players: list[Player]
    messages: list[Message]


class StateResult(BaseModel):
    players: list[Player]
    messages: list[Message]
    combat: CombatState


class ActionResult(BaseModel):
    result: str
    reasoning: str = ""
    degraded: bool = False
    reset: bool = False
    state: SessionView
