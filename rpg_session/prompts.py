"""Narrator prompts: fixed rules framing, Handlebars context summary, player turn."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pybars

from rpg_session.combat import current_turn
from rpg_session.models import RECENT_MESSAGE_LIMIT, Player, SessionContext

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}} — iterate over the last N items."""
    result = []
    for item in list(items)[-int(count):]:
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "last": _helper_last,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return compiled(context, helpers=_HELPERS)
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Narrator prompts ─────────────────────────────────────

# The effect resolver depends on the phrasing rules below; keep them in sync
# with the patterns in rpg_session.effects.
SYSTEM_PROMPT = " ".join([
    "You are the Dungeon Master for a Dungeons & Dragons game.",
    "Use official D&D 5e rules as guidance (Player's Handbook, Dungeon Master's Guide, Monster Manual).",
    "Narrate vividly but concisely, respecting turn order and mechanics. Keep it short, no more than 5 paragraphs.",
    "Simulate dice rolls using standard notation (d20, 2d6+3).",
    "Show reasoning and rolls inside <thinking> ... </thinking>.",
    "CRITICAL: When introducing enemies in combat, name them clearly: 'A Goblin (7 HP) appears' or 'Two Orcs emerge to attack'.",
    "CRITICAL: When a character takes damage, always write '[Character Name] takes [X] damage' or '[Character Name] suffers [X] damage'.",
    "CRITICAL: When enemies take damage, write 'deals [X] damage to the Goblin' or 'the Orc takes [X] damage'.",
    "CRITICAL: When a character heals, write '[Character Name] heals [X] HP' or '[Character Name] recovers [X] health'.",
    "CRITICAL: When a character gains items, write '[Character Name] finds a sword' or '[Character Name] receives a potion'.",
    "CRITICAL: When a character uses items, write '[Character Name] uses a potion' or '[Character Name] drinks a healing potion'.",
    "CRITICAL: When combat begins, mention 'roll initiative' or 'combat begins'.",
    "Always state clear outcomes: hit/miss, exact damage numbers, conditions, or consequences.",
    "Do not alter player stats directly; only describe narrative outcomes.",
    "Encourage creativity and roleplay while keeping rules consistent with D&D 5e.",
    "Respond in markdown, using headers (# Title, ## Subtitle) for scene changes, combat rounds and character interactions.",
    "Avoid using <thinking> tags if there is no internal reasoning to show.",
])

SUMMARY_TEMPLATE = (
    "Recent:\n"
    "{{#last messages " + str(RECENT_MESSAGE_LIMIT) + "}}{{{actor}}}: {{{content}}}\n{{/last}}"
    "Players: {{#if roster}}{{{roster}}}{{else}}None{{/if}}\n"
    "Enemies: {{#if enemies}}{{{enemies}}}{{else}}None{{/if}}"
    "{{#if defeated}} | Defeated: {{{defeated}}}{{/if}}\n"
    "Combat active: {{active}}"
    "{{#if turn}} | Current turn: {{{turn}}}{{/if}}"
)


def build_summary_context(context: SessionContext) -> dict[str, Any]:
    """Assemble template variables for SUMMARY_TEMPLATE."""
    combat = context.combat
    alive = [e for e in combat.enemies if e.hp > 0]
    down = [e for e in combat.enemies if e.hp <= 0]
    return {
        "messages": [{"actor": m.actor, "content": m.content} for m in context.messages],
        "roster": ", ".join(f"{p.name}(HP:{p.hp})" for p in context.players),
        "enemies": ", ".join(f"{e.name}(HP:{e.hp})" for e in alive),
        "defeated": ", ".join(e.name for e in down),
        "active": "true" if combat.active else "false",
        "turn": (current_turn(combat) or "Unknown") if combat.active and combat.turn_order else "",
    }


def render_summary(context: SessionContext) -> str:
    """One compact primer of recent messages, roster, enemies and turn."""
    return render_prompt(SUMMARY_TEMPLATE, build_summary_context(context))


def player_turn(player: Player, action: str) -> str:
    return f"{player.name} ({player.id}) acts: {action}"
