"""Tests for SessionCoordinator and SessionHub: join/state/act lifecycle,
persistence, idle expiry, directory and storage failure handling."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from rpg_session.combat import current_turn
from rpg_session.coordinator import (
    CLOSING_TEXT,
    InvalidPayloadError,
    PlayerNotJoinedError,
    SessionCoordinator,
    SessionHub,
    is_end_command,
)
from rpg_session.directory import DirectoryClient, SessionDirectory
from rpg_session.models import MAX_HP, NARRATOR, STARTER_INVENTORY
from rpg_session.narrator import FALLBACK_TEXT, Narrator
from rpg_session.storage import MemoryStore, StorageError


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def directory(store) -> SessionDirectory:
    return SessionDirectory(store)


@pytest.fixture
def llm() -> AsyncMock:
    return AsyncMock(return_value="The tavern is quiet.")


@pytest.fixture
def coordinator(store, directory, llm, clock) -> SessionCoordinator:
    return SessionCoordinator(
        "s1",
        store=store,
        directory=DirectoryClient(directory),
        narrator=Narrator(llm, backoff_ms=0),
        clock=clock,
    )


# ── join ─────────────────────────────────────────────────────


class TestJoin:
    async def test_new_player_gets_starter_kit(self, coordinator) -> None:
        result = await coordinator.join("p1", "Thia")

        assert result.ok is True
        [player] = result.players
        assert (player.id, player.name, player.hp) == ("p1", "Thia", MAX_HP)
        assert player.inventory == list(STARTER_INVENTORY)
        assert result.messages[-1].actor == NARRATOR
        assert result.messages[-1].content == "Thia enters the campaign with basic equipment."

    async def test_rejoin_is_idempotent(self, coordinator) -> None:
        await coordinator.join("p1", "Thia")
        result = await coordinator.join("p1", "Thia")
        assert len(result.players) == 1
        assert len(result.messages) == 1

    async def test_rename(self, coordinator) -> None:
        await coordinator.join("p1", "Thia")
        result = await coordinator.join("p1", "Thialyn")
        assert [p.name for p in result.players] == ["Thialyn"]
        assert result.messages[-1].content == "Thia is now known as Thialyn."

    async def test_first_join_registers_session(self, coordinator, directory) -> None:
        await coordinator.join("p1", "Thia")
        await coordinator.join("p2", "Lia")
        assert await directory.list_sessions() == ["s1"]

    async def test_join_persists_snapshot(self, coordinator, store) -> None:
        await coordinator.join("p1", "Thia")
        raw = await store.get("session/s1")
        assert raw["players"][0][0] == "p1"
        assert raw["sessionId"] == "s1"

    async def test_results_are_detached_from_live_state(self, coordinator) -> None:
        result = await coordinator.join("p1", "Thia")
        result.players[0].hp = 1
        assert coordinator.players["p1"].hp == MAX_HP

    @pytest.mark.parametrize("player_id, name", [("", "Thia"), ("p1", ""), (None, "Thia"), ("p1", 3)])
    async def test_invalid_arguments(self, coordinator, player_id, name) -> None:
        with pytest.raises(InvalidPayloadError):
            await coordinator.join(player_id, name)


# ── state ────────────────────────────────────────────────────


class TestState:
    async def test_empty_session(self, coordinator) -> None:
        result = await coordinator.state()
        assert result.players == []
        assert result.messages == []
        assert result.combat.active is False

    async def test_empty_session_is_not_persisted(self, coordinator, store) -> None:
        await coordinator.state()
        assert "session/s1" not in store.keys()

    async def test_state_touches_activity(self, coordinator, clock) -> None:
        await coordinator.join("p1", "Thia")
        clock.now += 100
        await coordinator.state()
        assert coordinator.last_activity == clock.now

    async def test_recent_messages_are_capped(self, coordinator, llm) -> None:
        await coordinator.join("p1", "Thia")
        for i in range(30):
            await coordinator.act("p1", f"step {i}")
        result = await coordinator.state()
        assert len(coordinator.messages) == 61
        assert len(result.messages) == 50
        assert result.messages[-1].content == "The tavern is quiet."


# ── act ──────────────────────────────────────────────────────


class TestAct:
    async def test_unjoined_player(self, coordinator, llm) -> None:
        with pytest.raises(PlayerNotJoinedError, match="Player not joined."):
            await coordinator.act("ghost", "I look around")
        llm.assert_not_awaited()

    async def test_action_appends_messages(self, coordinator, llm) -> None:
        llm.return_value = "<thinking>quiet night</thinking>The tavern is quiet."
        await coordinator.join("p1", "Thia")

        result = await coordinator.act("p1", "I order an ale")

        assert result.result == "The tavern is quiet."
        assert result.reasoning == "quiet night"
        assert result.degraded is False
        assert result.reset is False
        assert [(m.actor, m.content) for m in coordinator.messages[-2:]] == [
            ("Thia", "I order an ale"),
            (NARRATOR, "The tavern is quiet."),
        ]

    async def test_effects_are_applied(self, coordinator, llm) -> None:
        llm.return_value = "A goblin slashes at you. Thia takes 6 damage. Thia finds a rusty key."
        await coordinator.join("p1", "Thia")

        result = await coordinator.act("p1", "I search the body")

        [player] = result.state.players
        assert player.hp == 14
        assert "rusty key" in player.inventory

    async def test_degraded_narration_never_mutates(self, coordinator, llm) -> None:
        llm.side_effect = RuntimeError("400 bad request")
        await coordinator.join("p1", "Thia")

        with patch("rpg_session.narrator.FALLBACK_TEXT", "Thia takes 5 damage. A Goblin (7 HP) attacks!"):
            result = await coordinator.act("p1", "I attack")

        assert result.degraded is True
        assert result.result == "Thia takes 5 damage. A Goblin (7 HP) attacks!"
        assert coordinator.players["p1"].hp == MAX_HP
        assert coordinator.combat.active is False
        assert coordinator.messages[-1].content == result.result

    async def test_default_fallback_text(self, coordinator, llm) -> None:
        llm.side_effect = RuntimeError("500 internal error")
        await coordinator.join("p1", "Thia")
        result = await coordinator.act("p1", "hello")
        assert result.result == FALLBACK_TEXT
        assert result.degraded is True

    async def test_turn_advances_after_holder_acts(self, coordinator, llm) -> None:
        llm.return_value = "Roll initiative! A Goblin (7 HP) appears."
        await coordinator.join("p1", "Thia")
        await coordinator.join("p2", "Lia")

        result = await coordinator.act("p1", "I draw my sword")

        assert result.state.combat.turn_order == ["Thia", "Lia", "Goblin"]
        assert current_turn(result.state.combat) == "Lia"

    async def test_turn_holds_when_others_act(self, coordinator, llm) -> None:
        llm.return_value = "Roll initiative! A Goblin (7 HP) appears."
        await coordinator.join("p1", "Thia")
        await coordinator.join("p2", "Lia")
        await coordinator.act("p1", "I draw my sword")

        llm.return_value = "Thia shouts a warning."
        await coordinator.act("p1", "I shout")

        assert current_turn(coordinator.combat) == "Lia"

    async def test_failed_resolution_leaves_state_untouched(self, coordinator, llm, store) -> None:
        await coordinator.join("p1", "Thia")
        before = await store.get("session/s1")
        llm.return_value = "Roll initiative! A Goblin (7 HP) appears. Thia takes 6 damage."

        def half_applied(text, players, combat):
            players["p1"].hp -= 6
            combat.active = True
            raise ValueError("unreadable narration")

        with patch("rpg_session.coordinator.resolve_effects", side_effect=half_applied):
            with pytest.raises(ValueError):
                await coordinator.act("p1", "I attack")

        assert coordinator.players["p1"].hp == MAX_HP
        assert coordinator.combat.active is False
        assert coordinator.messages[-1].content == "Thia enters the campaign with basic equipment."
        assert await store.get("session/s1") == before

    async def test_oversized_number_in_narration(self, coordinator, llm) -> None:
        llm.return_value = "Thia takes 5 damage. Thia takes " + "9" * 5000 + " damage."
        await coordinator.join("p1", "Thia")

        result = await coordinator.act("p1", "I stumble")

        assert result.state.players[0].hp == MAX_HP - 5

    async def test_invalid_action_type(self, coordinator) -> None:
        await coordinator.join("p1", "Thia")
        with pytest.raises(InvalidPayloadError):
            await coordinator.act("p1", None)


# ── end command ──────────────────────────────────────────────


@pytest.mark.parametrize("text, expected", [
    ("end game", True),
    ("  Stop Session ", True),
    ("finish", True),
    ("closegame", True),
    ("end the game", False),
    ("I end the goblin", False),
])
def test_is_end_command(text, expected):
    assert is_end_command(text) is expected


class TestEndGame:
    async def test_end_game_resets(self, coordinator, llm, directory, store) -> None:
        llm.return_value = "Roll initiative! A Goblin (7 HP) appears."
        await coordinator.join("p1", "Thia")
        await coordinator.act("p1", "I attack")
        assert coordinator.combat.active is True

        result = await coordinator.act("p1", "End Game")

        assert result.result == CLOSING_TEXT
        assert result.reset is True
        assert result.state.players == []
        assert result.state.combat.active is False
        assert coordinator.messages == []
        assert await directory.list_sessions() == []
        assert (await store.get("session/s1"))["players"] == []
        assert llm.await_count == 1

    async def test_unjoined_player_cannot_end(self, coordinator) -> None:
        with pytest.raises(PlayerNotJoinedError):
            await coordinator.act("ghost", "end game")


# ── idle expiry ──────────────────────────────────────────────


class TestIdleExpiry:
    async def test_idle_session_is_reset(self, coordinator, clock, directory) -> None:
        await coordinator.join("p1", "Thia")
        clock.now += 30 * 60

        result = await coordinator.state()

        assert result.players == []
        assert result.messages == []
        assert await directory.list_sessions() == []

    async def test_active_session_survives(self, coordinator, clock) -> None:
        await coordinator.join("p1", "Thia")
        clock.now += 30 * 60 - 1
        result = await coordinator.state()
        assert len(result.players) == 1

    async def test_expired_player_must_rejoin(self, coordinator, clock) -> None:
        await coordinator.join("p1", "Thia")
        clock.now += 3600
        with pytest.raises(PlayerNotJoinedError):
            await coordinator.act("p1", "I wake up")


# ── persistence and failures ─────────────────────────────────


class TestPersistence:
    async def test_fresh_coordinator_hydrates(self, coordinator, store, directory, llm, clock) -> None:
        await coordinator.join("p1", "Thia")
        await coordinator.act("p1", "I order an ale")

        revived = SessionCoordinator(
            "s1", store=store, directory=DirectoryClient(directory),
            narrator=Narrator(llm), clock=clock,
        )
        result = await revived.state()

        assert [p.name for p in result.players] == ["Thia"]
        assert [m.content for m in result.messages] == [m.content for m in coordinator.messages]

    async def test_directory_failure_does_not_fail_join(self, store, llm, clock) -> None:
        broken = MagicMock()
        broken.add = AsyncMock(side_effect=ConnectionError("directory down"))
        coordinator = SessionCoordinator(
            "s1", store=store, directory=DirectoryClient(broken),
            narrator=Narrator(llm), clock=clock,
        )

        result = await coordinator.join("p1", "Thia")

        assert result.ok is True
        broken.add.assert_awaited_once_with("s1")

    async def test_storage_failure_propagates(self, directory, llm, clock) -> None:
        store = MagicMock()
        store.get = AsyncMock(return_value=None)
        store.put = AsyncMock(side_effect=StorageError("disk full"))
        coordinator = SessionCoordinator(
            "s1", store=store, directory=DirectoryClient(directory),
            narrator=Narrator(llm), clock=clock,
        )

        with pytest.raises(StorageError):
            await coordinator.join("p1", "Thia")


# ── hub ──────────────────────────────────────────────────────


class TestSessionHub:
    @pytest.fixture
    def hub(self, store, directory, llm, clock) -> SessionHub:
        return SessionHub(store=store, directory=directory, narrator=Narrator(llm), clock=clock)

    def test_one_coordinator_per_session(self, hub) -> None:
        assert hub.coordinator("s1") is hub.coordinator("s1")
        assert hub.coordinator("s1") is not hub.coordinator("s2")

    def test_rejects_empty_session_id(self, hub) -> None:
        with pytest.raises(InvalidPayloadError):
            hub.coordinator("")

    async def test_sessions_are_isolated(self, hub) -> None:
        await hub.join("s1", "p1", "Thia")
        await hub.join("s2", "p2", "Lia")
        assert [p.name for p in (await hub.state("s1")).players] == ["Thia"]
        assert await hub.list_sessions() == ["s1", "s2"]

    async def test_concurrent_actions_are_serialised(self, hub, llm) -> None:
        in_flight = 0
        peak = 0

        async def slow_llm(stage, messages, max_tokens):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return "Time passes."

        llm.side_effect = slow_llm
        await hub.join("s1", "p1", "Thia")
        await hub.join("s1", "p2", "Lia")

        await asyncio.gather(
            hub.act("s1", "p1", "I wait"),
            hub.act("s1", "p2", "I wait too"),
        )

        assert peak == 1
        assert len(hub.coordinator("s1").messages) == 6

    async def test_reading_unknown_session_keeps_nothing(self, hub, store) -> None:
        result = await hub.state("ghost")

        assert result.players == []
        assert "session/ghost" not in store.keys()
        assert "ghost" not in hub._coordinators

    async def test_ended_session_is_released(self, hub) -> None:
        await hub.join("s1", "p1", "Thia")
        assert "s1" in hub._coordinators

        await hub.act("s1", "p1", "end game")

        assert "s1" not in hub._coordinators
        assert (await hub.state("s1")).players == []

    async def test_released_session_rehydrates(self, hub, llm) -> None:
        await hub.join("s1", "p1", "Thia")
        await hub.act("s1", "p1", "I order an ale")
        hub._coordinators.clear()

        result = await hub.state("s1")

        assert [p.name for p in result.players] == ["Thia"]
        assert result.messages[-1].content == "The tavern is quiet."

    async def test_failed_join_releases_coordinator(self, hub) -> None:
        with pytest.raises(InvalidPayloadError):
            await hub.join("s1", "p1", "")
        assert "s1" not in hub._coordinators

    async def test_clear_sessions(self, hub) -> None:
        await hub.join("s1", "p1", "Thia")
        await hub.clear_sessions()
        assert await hub.list_sessions() == []
