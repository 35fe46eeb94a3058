"""Combat turn tracker.

A cyclic turn pointer over a participant list that is fixed when combat
starts: all players by name, then all enemies by name.

Transitions:
  start_combat  — inactive → active, index 0 (triggered by effect resolution)
  advance_turn  — index + 1 modulo participant count; no-op when inactive
  end_combat    — active → inactive, enemies/turn order cleared, index 0

The coordinator advances the turn only after an action by the player who
currently holds it, so the tracker moves at player cadence.
"""

from __future__ import annotations

import logging

from rpg_session.models import CombatState, Enemy

logger = logging.getLogger(__name__)


def new_combat_state() -> CombatState:
    """Fresh inactive state, so resets never share list references."""
    return CombatState()


def start_combat(combat: CombatState, enemies: list[Enemy], player_names: list[str]) -> None:
    combat.active = True
    combat.enemies = list(enemies)
    combat.turn_order = [*player_names, *(e.name for e in enemies)]
    combat.current_turn_index = 0
    logger.info(
        "Combat started enemies=%s turn_order=%s",
        [f"{e.name}({e.hp})" for e in enemies], combat.turn_order,
    )


def end_combat(combat: CombatState) -> None:
    combat.active = False
    combat.enemies = []
    combat.turn_order = []
    combat.current_turn_index = 0


def all_enemies_defeated(combat: CombatState) -> bool:
    return not any(e.hp > 0 for e in combat.enemies)


def advance_turn(combat: CombatState) -> None:
    if not combat.active or not combat.turn_order:
        return
    combat.current_turn_index = (combat.current_turn_index + 1) % len(combat.turn_order)


def current_turn(combat: CombatState) -> str | None:
    """Name of the participant holding the turn, or None outside combat."""
    if not combat.active or not combat.turn_order:
        return None
    if not 0 <= combat.current_turn_index < len(combat.turn_order):
        return None
    return combat.turn_order[combat.current_turn_index]


def is_turn(combat: CombatState, name: str) -> bool:
    return current_turn(combat) == name
