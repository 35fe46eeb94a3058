"""Effect resolution: heuristic state deltas from free-text narration.

The narrator is not a structured API, so game state is inferred from its
prose by an ordered list of independent pattern scans:

  1. combat detection   (only while combat is inactive)
  2. enemy damage       (only while combat is active)
  3. player damage      floor 0
  4. player healing     cap MAX_HP
  5. inventory gain / loss
  6. combat end check   (every enemy at 0 → combat ends)

Each scan tolerates zero matches; unrecognised text means no state change and
never an error. Within one scan a text span claimed by an earlier pattern is
not re-used by a later one (first match wins), so "deals 7 damage to Goblin"
counts once even though "7 damage to Goblin" also matches.

This is a lossy matcher, not a grammar. Known false-positive source: enemy
lookup falls back to substring containment in both directions, so damage
meant for "Orc Chieftain" can land on "Orc" when both are present. Names
span at most five words and amounts at most six digits; longer runs are not
read as names or numbers.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator

from rpg_session.combat import all_enemies_defeated, end_combat, start_combat
from rpg_session.models import MAX_HP, CombatState, Enemy, Player

logger = logging.getLogger(__name__)

DEFAULT_ENEMY_HP = 15

ENEMY_HP = {
    "goblin": 7,
    "orc": 15,
    "skeleton": 13,
    "zombie": 22,
    "wolf": 11,
    "spider": 4,
    "bandit": 11,
    "guard": 11,
    "troll": 84,
    "ogre": 59,
    "dragon": 200,
    "lich": 135,
    "demon": 85,
    "devil": 85,
    "giant": 138,
    "minotaur": 76,
    "basilisk": 52,
    "harpy": 38,
    "cyclops": 138,
    "hydra": 172,
}

CREATURES = (
    "goblin", "orc", "skeleton", "dragon", "wolf", "spider", "bandit", "guard",
    "troll", "ogre", "zombie", "ghoul", "wraith", "lich", "demon", "devil",
    "giant", "minotaur", "basilisk", "manticore", "harpy", "medusa", "cyclops",
    "hydra", "griffin", "pegasus", "unicorn", "phoenix", "roc", "kraken",
    "leviathan", "behemoth", "colossus",
)

_I = re.IGNORECASE

# Names and items are short runs of words, numbers at most six digits. The
# bounds keep every scan linear in the narration length.
_WORD = r"[A-Za-z][A-Za-z']*"
_NAME = rf"{_WORD}(?:\s+{_WORD}){{0,4}}"
_LAZY_NAME = rf"\b{_WORD}(?:\s+{_WORD}){{0,4}}?"
_ITEM = r"[A-Za-z][A-Za-z'\-]*(?:\s+[A-Za-z][A-Za-z'\-]*){0,5}"
_AMOUNT = r"(?<!\d)(?P<amount>\d{1,6})(?!\d)"
_HP_VALUE = r"(?<!\d)(?P<hp>\d{1,6})(?!\d)"
_POINTS = r"(?:points?\s+of\s+)?"
_HP = r"(?:hit\s+points?|hp)"
_ARTICLE = r"\b(?:an?|the|\d{1,6})\s+"
_CREATURE = "|".join(CREATURES)
_ENEMY_NAME = rf"{_WORD}(?:\s+{_WORD}){{0,3}}?"

_COMBAT_TRIGGERS = [
    re.compile(r"(?:attack|combat|fight|battle|engage)(?:s|ing)?", _I),
    re.compile(r"(?:enemy|enemies|monsters?|creatures?|foes?)\s+(?:appear|emerges?|attack|charge)", _I),
    re.compile(r"(?:roll|make)\s+(?:initiative|an?\s+initiative)", _I),
    re.compile(r"initiative\s+(?:roll|order)", _I),
    re.compile(r"(?:a|the)\s+(?:goblin|orc|skeleton|dragon|wolf|spider|bandit|guard)s?\s+(?:attack|charge|leap|strike)", _I),
]

_ENEMY_MENTIONS = [
    # "a Goblin (7 HP)", "the orcs"
    re.compile(rf"{_ARTICLE}(?P<name>{_CREATURE})s?\b(?:\s+\({_HP_VALUE}\s+HP\))?", _I),
    # "a Shadow Beast (30 HP)"
    re.compile(rf"{_ARTICLE}(?P<name>{_ENEMY_NAME})\s+\({_HP_VALUE}\s+HP\)", _I),
    # "a Shadow Beast appears"
    re.compile(rf"{_ARTICLE}(?P<name>{_ENEMY_NAME})\s+(?:appears?|emerges?|materializes?|attacks?)\b", _I),
]

_ENEMY_DAMAGE = [
    re.compile(rf"deals\s+{_AMOUNT}\s+{_POINTS}damage\s+to\s+(?:the\s+)?(?P<name>{_NAME})", _I),
    re.compile(rf"(?:the\s+)?(?P<name>{_LAZY_NAME})\s+takes?\s+{_AMOUNT}\s+{_POINTS}damage", _I),
    re.compile(rf"{_AMOUNT}\s+{_POINTS}damage\s+to\s+(?:the\s+)?(?P<name>{_NAME})", _I),
    re.compile(rf"(?:the\s+)?(?P<name>{_LAZY_NAME})\s+suffers?\s+{_AMOUNT}\s+{_POINTS}damage", _I),
    re.compile(rf"strikes?\s+(?:the\s+)?(?P<name>{_LAZY_NAME})\s+for\s+{_AMOUNT}\s+damage", _I),
]

_PLAYER_DAMAGE = [
    re.compile(rf"(?P<name>{_LAZY_NAME})\s+takes?\s+{_AMOUNT}\s+{_POINTS}damage", _I),
    re.compile(rf"{_AMOUNT}\s+{_POINTS}damage\s+to\s+(?P<name>{_NAME})", _I),
    re.compile(rf"(?P<name>{_LAZY_NAME})\s+suffers?\s+{_AMOUNT}\s+{_POINTS}damage", _I),
    re.compile(rf"(?P<name>{_LAZY_NAME})\s+loses?\s+{_AMOUNT}\s+{_HP}", _I),
]

_PLAYER_HEALING = [
    re.compile(rf"(?P<name>{_LAZY_NAME})\s+heals?\s+{_AMOUNT}\s+{_HP}", _I),
    re.compile(rf"(?P<name>{_LAZY_NAME})\s+recovers?\s+{_AMOUNT}\s+{_POINTS}(?:damage|health|hp)", _I),
    re.compile(rf"(?P<name>{_LAZY_NAME})\s+gains?\s+{_AMOUNT}\s+(?:{_HP}|health)", _I),
    re.compile(rf"{_AMOUNT}\s+(?:{_HP}|health)\s+(?:restored|healed)\s+to\s+(?P<name>{_NAME})", _I),
]

_ITEM_GAIN = [
    re.compile(rf"(?P<name>{_LAZY_NAME})\s+(?:finds?|discovers?|picks?\s+up|obtains?)\s+(?:an?|the)\s+(?P<item>{_ITEM})", _I),
    re.compile(rf"(?P<name>{_LAZY_NAME})\s+(?:receives?|gets?|gains?)\s+(?:an?|the)\s+(?P<item>{_ITEM})", _I),
    re.compile(rf"(?:give|hand)s?\s+(?P<name>{_LAZY_NAME})\s+(?:an?|the)\s+(?P<item>{_ITEM})", _I),
    re.compile(rf"(?P<name>{_LAZY_NAME})\s+is\s+(?:given|handed)\s+(?:an?|the)\s+(?P<item>{_ITEM})", _I),
    re.compile(rf"(?P<name>{_LAZY_NAME})\s+(?:loots?|takes?)\s+(?:an?|the)\s+(?P<item>{_ITEM})", _I),
]

_ITEM_LOSS = [
    re.compile(rf"(?P<name>{_LAZY_NAME})\s+(?:uses?|consumes?|drinks?)\s+(?:an?|the|their|his|her)\s+(?P<item>{_ITEM})", _I),
    re.compile(rf"(?P<name>{_LAZY_NAME})\s+(?:drops?|loses?|discards?)\s+(?:an?|the|their|his|her)\s+(?P<item>{_ITEM})", _I),
]

_NOT_AN_ITEM = re.compile(r"\b(?:room|door|way|path|area|place|time|chance)\b", _I)
_ITEM_TAIL = re.compile(r"\s+\b(?:and|from|with|in|on|into|which|that)\b.*$", _I)
_LEADING_ARTICLE = re.compile(r"^(?:an?|the)\s+", _I)


def resolve_effects(text: str, players: dict[str, Player], combat: CombatState) -> None:
    """Apply every state delta found in ``text`` to ``players`` and ``combat`` in place."""
    if not text:
        return
    _detect_combat(text, players, combat)
    _apply_enemy_damage(text, combat)
    _apply_player_damage(text, players)
    _apply_player_healing(text, players)
    _apply_inventory_changes(text, players)
    _check_combat_end(combat)


# ---------------------------------------------------------------------------
# Matching helpers
# ---------------------------------------------------------------------------

def _scan(patterns: list[re.Pattern[str]], text: str) -> Iterator[re.Match[str]]:
    """Yield matches of each pattern in order, skipping spans already claimed."""
    claimed: list[tuple[int, int]] = []
    for pattern in patterns:
        for match in pattern.finditer(text):
            start, end = match.span()
            if any(start < e and s < end for s, e in claimed):
                continue
            claimed.append((start, end))
            yield match


def _amount(match: re.Match[str]) -> int:
    return int(match.group("amount"))


def find_player(players: dict[str, Player], raw_name: str) -> Player | None:
    """Case-insensitive exact name match.

    Leading words are dropped one at a time, so "Then Thia" still resolves
    to "Thia" while "Thialia" never does.
    """
    by_name: dict[str, Player] = {}
    for player in players.values():
        by_name.setdefault(player.name.lower(), player)
    words = raw_name.lower().split()
    for i in range(len(words)):
        player = by_name.get(" ".join(words[i:]))
        if player is not None:
            return player
    return None


def find_enemy(enemies: list[Enemy], raw_name: str) -> Enemy | None:
    """Exact match, then enemy name contains search, then search contains enemy name."""
    search = _LEADING_ARTICLE.sub("", raw_name.strip().lower()).strip()
    if not search:
        return None
    for enemy in enemies:
        if enemy.name.lower() == search:
            return enemy
    for enemy in enemies:
        if search in enemy.name.lower():
            return enemy
    for enemy in enemies:
        if enemy.name.lower() in search:
            return enemy
    return None


def normalize_item(raw: str) -> str:
    item = _ITEM_TAIL.sub("", raw.strip())
    item = re.sub(r"[^a-z\s\-]", "", item.lower())
    return " ".join(item.split())


def default_enemy_hp(name: str) -> int:
    return ENEMY_HP.get(name.lower(), DEFAULT_ENEMY_HP)


def _clean_enemy_name(raw: str) -> str:
    name = _LEADING_ARTICLE.sub("", raw.strip())
    return " ".join(word[:1].upper() + word[1:] for word in name.lower().split())


# ---------------------------------------------------------------------------
# Scans
# ---------------------------------------------------------------------------

def _detect_combat(text: str, players: dict[str, Player], combat: CombatState) -> None:
    if combat.active:
        return
    if not any(trigger.search(text) for trigger in _COMBAT_TRIGGERS):
        return

    player_names = {p.name.lower() for p in players.values()}
    enemies: list[Enemy] = []
    seen: set[str] = set()
    for match in _scan(_ENEMY_MENTIONS, text):
        name = _clean_enemy_name(match.group("name"))
        key = name.lower()
        if len(name) <= 1 or key in seen or key in player_names:
            continue
        hp_text = match.groupdict().get("hp")
        hp = int(hp_text) if hp_text else default_enemy_hp(name)
        seen.add(key)
        enemies.append(Enemy(name=name, hp=hp))

    if enemies:
        start_combat(combat, enemies, [p.name for p in players.values()])


def _apply_enemy_damage(text: str, combat: CombatState) -> None:
    if not combat.active or not combat.enemies:
        return
    for match in _scan(_ENEMY_DAMAGE, text):
        damage = _amount(match)
        if damage <= 0:
            continue
        enemy = find_enemy(combat.enemies, match.group("name"))
        if enemy is None:
            continue
        old_hp = enemy.hp
        enemy.hp = max(0, enemy.hp - damage)
        logger.debug("enemy damage %s: %d -> %d", enemy.name, old_hp, enemy.hp)


def _apply_player_damage(text: str, players: dict[str, Player]) -> None:
    for match in _scan(_PLAYER_DAMAGE, text):
        damage = _amount(match)
        player = find_player(players, match.group("name"))
        if player is None or damage <= 0:
            continue
        old_hp = player.hp
        player.hp = max(0, player.hp - damage)
        logger.debug("player damage %s: %d -> %d", player.name, old_hp, player.hp)


def _apply_player_healing(text: str, players: dict[str, Player]) -> None:
    for match in _scan(_PLAYER_HEALING, text):
        heal = _amount(match)
        player = find_player(players, match.group("name"))
        if player is None or heal <= 0:
            continue
        old_hp = player.hp
        player.hp = min(MAX_HP, player.hp + heal)
        logger.debug("player healing %s: %d -> %d", player.name, old_hp, player.hp)


def _apply_inventory_changes(text: str, players: dict[str, Player]) -> None:
    for match in _scan(_ITEM_GAIN, text):
        raw_item = _ITEM_TAIL.sub("", match.group("item").strip())
        if len(raw_item) < 2 or _NOT_AN_ITEM.search(raw_item):
            continue
        player = find_player(players, match.group("name"))
        item = normalize_item(raw_item)
        if player is None or not item:
            continue
        if item not in player.inventory:
            player.inventory.append(item)
            logger.debug("item added %s: %s", player.name, item)

    for match in _scan(_ITEM_LOSS, text):
        player = find_player(players, match.group("name"))
        item = normalize_item(match.group("item"))
        if player is None or not item:
            continue
        for i, owned in enumerate(player.inventory):
            if item in owned:
                removed = player.inventory.pop(i)
                logger.debug("item removed %s: %s", player.name, removed)
                break


def _check_combat_end(combat: CombatState) -> None:
    if combat.active and all_enemies_defeated(combat):
        end_combat(combat)
        logger.info("Combat ended: all enemies defeated")
