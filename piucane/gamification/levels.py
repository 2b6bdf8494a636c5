"""
Level Table

Derives the deterministic 100-level progression curve and the metadata
attached to each level: titles, rewards, unlocks and colour schemes.
"""

import math
from typing import List, Optional, Sequence, Tuple

from piucane.common.exceptions import InvalidInputError
from piucane.gamification.models import (
    Level, LevelReward, LevelRequirements, XPBonusReward, ItemReward, BadgeReward,
    ColorScheme, RewardType
)

MAX_LEVEL = 100
XP_CURVE_EXPONENT = 2.2
XP_CURVE_SCALE = 100

# (upper bound inclusive, value) band tables
LEVEL_TITLES: Sequence[Tuple[int, str]] = (
    (5, "Cucciolo Curioso"),
    (10, "Amico a Quattro Zampe"),
    (15, "Compagno Fedele"),
    (20, "Cane Addestrato"),
    (25, "Esploratore Canino"),
    (30, "Cane Esperto"),
    (40, "Veterano Peloso"),
    (50, "Maestro Cinofilo"),
    (60, "Leggenda a Quattro Zampe"),
    (80, "Campione Canino"),
    (MAX_LEVEL, "Gran Maestro PiùCane"),
)

LEVEL_DESCRIPTIONS: Sequence[Tuple[int, str]] = (
    (5, "Stai muovendo i primi passi nel mondo di PiùCane"),
    (10, "Hai imparato le basi della cura del tuo cane"),
    (20, "Sei diventato un proprietario esperto"),
    (30, "Il tuo cane e tu siete un team perfetto"),
    (50, "Sei un vero esperto nel mondo cinofilo"),
    (MAX_LEVEL, "Hai raggiunto la maestria assoluta"),
)

COLOR_SCHEMES: Sequence[Tuple[int, ColorScheme]] = (
    (10, ColorScheme(primary="#E3F2FD", secondary="#BBDEFB", accent="#2196F3")),
    (20, ColorScheme(primary="#E8F5E8", secondary="#C8E6C9", accent="#4CAF50")),
    (40, ColorScheme(primary="#F3E5F5", secondary="#E1BEE7", accent="#9C27B0")),
    (60, ColorScheme(primary="#FFF3E0", secondary="#FFE0B2", accent="#FF9800")),
    (MAX_LEVEL, ColorScheme(primary="#FFFDE7", secondary="#FFF9C4", accent="#FFC107")),
)

# (minimum level, identifier) unlock tables; unlocks are cumulative
FEATURE_UNLOCKS: Sequence[Tuple[int, str]] = (
    (5, "advanced_missions"),
    (10, "premium_content"),
    (15, "community_challenges"),
    (20, "ai_agent_advanced"),
    (25, "expert_mode"),
    (30, "mentor_program"),
    (50, "beta_features"),
)

MISSION_UNLOCKS: Sequence[Tuple[int, str]] = (
    (5, "intermediate_training"),
    (10, "advanced_health"),
    (15, "expert_grooming"),
    (20, "behavioral_specialist"),
    (30, "master_challenges"),
)

BADGE_UNLOCKS: Sequence[Tuple[int, str]] = (
    (5, "level_5_champion"),
    (10, "dedicated_owner"),
    (25, "expert_trainer"),
    (50, "piucane_master"),
)

MILESTONE_ITEMS = {
    5: ItemReward(
        item_type=RewardType.DISCOUNT,
        title="10% di sconto",
        description="Primo traguardo raggiunto!",
        value=10,
    ),
    10: ItemReward(
        item_type=RewardType.FREE_ITEM,
        title="Snack di Benvenuto",
        description="Campione gratuito per il tuo cane",
        value=8.99,
        sku="WELCOME_TREATS",
    ),
    25: ItemReward(
        item_type=RewardType.DISCOUNT,
        title="25% di sconto VIP",
        description="Sconto speciale per utenti esperti",
        value=25,
    ),
}

XP_BONUS_INTERVAL = 5
XP_BONUS_PER_LEVEL = 10


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives."""
    return int(math.floor(value + 0.5))


def required_xp_for_level(level: int) -> int:
    """Total XP needed to reach ``level``: round((level-1)^2.2 * 100)."""
    if level < 1 or level > MAX_LEVEL:
        raise InvalidInputError(f"Level must be between 1 and {MAX_LEVEL}", "level", level)
    if level == 1:
        return 0
    return round_half_up(math.pow(level - 1, XP_CURVE_EXPONENT) * XP_CURVE_SCALE)


def _band(table: Sequence[Tuple[int, object]], level: int):
    for upper, value in table:
        if level <= upper:
            return value
    return table[-1][1]


def _unlocked(table: Sequence[Tuple[int, str]], level: int) -> frozenset:
    return frozenset(name for minimum, name in table if level >= minimum)


def level_rewards(level: int) -> Tuple[LevelReward, ...]:
    """Rewards granted on reaching ``level``, XP first, then items, then badges."""
    rewards: List[LevelReward] = []

    if level % XP_BONUS_INTERVAL == 0:
        rewards.append(XPBonusReward(amount=level * XP_BONUS_PER_LEVEL))

    if level in MILESTONE_ITEMS:
        rewards.append(MILESTONE_ITEMS[level])

    rewards.extend(BadgeReward(badge_id=name) for minimum, name in BADGE_UNLOCKS if minimum == level)

    return tuple(rewards)


def build_level(level: int) -> Level:
    return Level(
        level=level,
        required_xp=required_xp_for_level(level),
        title=_band(LEVEL_TITLES, level),
        description=_band(LEVEL_DESCRIPTIONS, level),
        icon_url=f"/levels/level_{level}.svg",
        rewards=level_rewards(level),
        unlocked_features=_unlocked(FEATURE_UNLOCKS, level),
        unlocked_missions=_unlocked(MISSION_UNLOCKS, level),
        unlocked_badges=_unlocked(BADGE_UNLOCKS, level),
        color_scheme=_band(COLOR_SCHEMES, level),
    )


def generate_levels(max_level: int = MAX_LEVEL) -> Tuple[Level, ...]:
    """Generate the ordered level table. Pure and deterministic."""
    return tuple(build_level(level) for level in range(1, max_level + 1))


class LevelTable:
    """
    Read-only view over the generated levels.

    Lookups are linear scans; the table is bounded at 100 entries.
    """

    def __init__(self, levels: Optional[Sequence[Level]] = None):
        self._levels: Tuple[Level, ...] = tuple(levels) if levels is not None else generate_levels()
        if not self._levels:
            raise InvalidInputError("Level table cannot be empty", "levels", levels)

    def __len__(self) -> int:
        return len(self._levels)

    def __iter__(self):
        return iter(self._levels)

    @property
    def max_level(self) -> int:
        return self._levels[-1].level

    def all(self) -> List[Level]:
        return list(self._levels)

    def get(self, level: int) -> Optional[Level]:
        for definition in self._levels:
            if definition.level == level:
                return definition
        return None

    def level_for_xp(self, total_xp: int) -> Level:
        """Highest level whose threshold is at or below ``total_xp``."""
        current = self._levels[0]
        for definition in self._levels:
            if definition.required_xp <= total_xp:
                current = definition
            else:
                break
        return current

    def next_level_requirements(self, current_level: int) -> Optional[LevelRequirements]:
        """Describe the level after ``current_level``; None at max level."""
        next_level = self.get(current_level + 1)
        if next_level is None:
            return None

        return LevelRequirements(
            next_level=next_level,
            xp_required=next_level.required_xp,
            unlocked_features=sorted(next_level.unlocked_features),
            unlocked_missions=sorted(next_level.unlocked_missions),
            unlocked_badges=sorted(next_level.unlocked_badges),
            rewards=next_level.rewards,
        )


_default_table: Optional[LevelTable] = None


def get_level_table() -> LevelTable:
    """Shared level table, generated on first use."""
    global _default_table
    if _default_table is None:
        _default_table = LevelTable()
    return _default_table
