"""
XP Award Engine

This module turns raw XP amounts into final awards and level changes:
1. Source, difficulty, quality and user multipliers
2. Level recomputation against the level table
3. Level-up reward generation in ascending level order
4. Mission, streak and badge XP calculators

The engine works on profile snapshots and returns partial updates; it
never touches storage.
"""

import math
import numbers
import datetime
from typing import List, Optional

from piucane.common.config import XPConfig, get_config
from piucane.common.exceptions import InvalidInputError
from piucane.common.logger import app_logger, anonymize_user_id
from piucane.gamification.levels import LevelTable, get_level_table, round_half_up
from piucane.gamification.models import (
    DifficultyLevel, XPSource, XPSourceType, UserContext, GamificationProfile,
    LevelInfo, LevelChange, ProfileUpdate, XPAwardResult, EarnedReward,
    Level, LevelRequirements, RewardKind, RewardType, RewardSourceType,
    MissionType, BadgeRarity
)

# Set up module logger
logger = app_logger.getChild("gamification.xp")

BASE_XP_BY_MISSION_TYPE = {
    MissionType.TRAINING: 50,
    MissionType.GROOMING: 40,
    MissionType.HEALTH: 60,
    MissionType.CONTENT: 30,
    MissionType.COMMUNITY: 35,
}
DEFAULT_MISSION_BASE_XP = 40
XP_PER_EXTRA_STEP = 10

BADGE_XP_BY_RARITY = {
    BadgeRarity.COMMON: 25,
    BadgeRarity.RARE: 75,
    BadgeRarity.EPIC: 200,
    BadgeRarity.LEGENDARY: 500,
}

# (max consecutive days inclusive, xp)
STREAK_XP_STEPS = ((3, 10), (7, 25), (14, 50), (30, 100), (60, 200))
STREAK_XP_CAP = 300


def _require_number(value, field: str) -> float:
    if isinstance(value, bool) or not isinstance(value, numbers.Real) or not math.isfinite(value):
        raise InvalidInputError(f"{field} must be a finite number", field, value)
    return float(value)


class XPSystem:
    """
    Computes XP awards and level progression.

    Multiplier tables come from ``XPConfig``; the level curve comes from a
    ``LevelTable`` shared across the process.
    """

    def __init__(
        self,
        level_table: Optional[LevelTable] = None,
        xp_config: Optional[XPConfig] = None
    ):
        """
        Initialize the XP system.

        Args:
            level_table: Level table to score against (defaults to the shared table)
            xp_config: Multiplier configuration (defaults to the app config)
        """
        self.levels = level_table or get_level_table()
        self.config = xp_config or get_config().xp

    # XP Calculation and Award

    def award_xp(
        self,
        user_id: str,
        amount: float,
        source: XPSource,
        profile: GamificationProfile,
        context: Optional[UserContext] = None,
        now: Optional[datetime.datetime] = None
    ) -> XPAwardResult:
        """
        Award XP to a user profile snapshot.

        Args:
            user_id: User receiving the XP
            amount: Raw XP amount, must be positive
            source: What the XP is for
            profile: Current profile snapshot (not modified)
            context: Premium/event inputs to the user multiplier
            now: User's local time, used for weekend and happy hour bonuses

        Returns:
            The awarded XP, the level change with any level-up rewards, and
            a partial profile update for the caller to persist

        Raises:
            InvalidInputError: If the amount, source or profile is invalid
        """
        if profile.user_id != user_id:
            raise InvalidInputError(
                f"Profile belongs to {profile.user_id!r}, not {user_id!r}", "profile", profile.user_id
            )
        if profile.total_xp < 0:
            raise InvalidInputError("Profile total XP cannot be negative", "total_xp", profile.total_xp)

        now = now or datetime.datetime.now()
        context = context or UserContext(is_premium=profile.is_premium)

        final_xp = self.calculate_final_xp(amount, source, context, now)

        previous_level = self.levels.level_for_xp(profile.total_xp).level
        new_total_xp = profile.total_xp + final_xp
        level_info = self.calculate_level_from_xp(new_total_xp)
        leveled_up = level_info.level > previous_level

        level_rewards: List[EarnedReward] = []
        if leveled_up:
            level_rewards = self.generate_level_up_rewards(previous_level, level_info.level, now)

        profile_update = ProfileUpdate(
            xp_delta=final_xp,
            total_xp=new_total_xp,
            current_level=level_info.level,
            xp_to_next_level=level_info.xp_to_next_level,
            level_progress=level_info.level_progress,
            updated_at=now
        )

        logger.info(
            f"Awarded {final_xp} XP to {anonymize_user_id(user_id)} "
            f"from {source.type.value}: {source.source_name}",
            extra={"data": {
                "event": "xp_awarded",
                "xp_amount": final_xp,
                "source_type": source.type.value,
                "source_id": source.source_id,
            }}
        )
        if leveled_up:
            logger.info(
                f"{anonymize_user_id(user_id)} leveled up: {previous_level} -> {level_info.level}"
            )

        return XPAwardResult(
            xp_awarded=final_xp,
            level_change=LevelChange(
                leveled_up=leveled_up,
                previous_level=previous_level,
                new_level=level_info.level,
                level_rewards=level_rewards
            ),
            profile_update=profile_update
        )

    def calculate_final_xp(
        self,
        amount: float,
        source: XPSource,
        context: UserContext,
        now: datetime.datetime
    ) -> int:
        """Apply every multiplier to ``amount`` and round half up."""
        amount = _require_number(amount, "amount")
        if amount <= 0:
            raise InvalidInputError("XP amount must be positive", "amount", amount)

        final_xp = amount * self.source_multiplier(source.type)

        if source.difficulty is not None:
            final_xp *= self.difficulty_multiplier(source.difficulty)

        if source.quality_bonus:
            quality_bonus = _require_number(source.quality_bonus, "quality_bonus")
            if quality_bonus <= -1:
                raise InvalidInputError("Quality bonus must be above -1", "quality_bonus", quality_bonus)
            final_xp *= 1 + quality_bonus

        final_xp *= self.user_multiplier(context, now)

        return round_half_up(final_xp)

    # Level Calculations

    def calculate_level_from_xp(self, total_xp: int) -> LevelInfo:
        """
        Derive level and in-level progress from a total XP value.

        Args:
            total_xp: Cumulative XP, must not be negative

        Returns:
            LevelInfo with progress clamped to [0, 1]; at the top level the
            XP to next level is 0 and progress is 1
        """
        total_xp = _require_number(total_xp, "total_xp")
        if total_xp < 0:
            raise InvalidInputError("Total XP cannot be negative", "total_xp", total_xp)

        current = self.levels.level_for_xp(total_xp)
        next_level = self.levels.get(current.level + 1)
        next_level_xp = next_level.required_xp if next_level else current.required_xp

        xp_in_level = total_xp - current.required_xp
        xp_needed = next_level_xp - current.required_xp
        progress = xp_in_level / xp_needed if xp_needed > 0 else 1.0

        return LevelInfo(
            level=current.level,
            xp_to_next_level=int(max(0, next_level_xp - total_xp)),
            level_progress=max(0.0, min(1.0, progress)),
            current_level_xp=current.required_xp,
            next_level_xp=next_level_xp
        )

    def get_level_definition(self, level: int) -> Optional[Level]:
        return self.levels.get(level)

    def get_all_levels(self) -> List[Level]:
        return self.levels.all()

    def get_next_level_requirements(self, current_level: int) -> Optional[LevelRequirements]:
        return self.levels.next_level_requirements(current_level)

    # XP Multipliers and Bonuses

    def source_multiplier(self, source_type: XPSourceType) -> float:
        try:
            return self.config.source_multipliers[source_type.value]
        except (KeyError, AttributeError):
            raise InvalidInputError(f"Unknown XP source type: {source_type!r}", "type", source_type)

    def difficulty_multiplier(self, difficulty: DifficultyLevel) -> float:
        difficulty = DifficultyLevel.parse(difficulty)
        return self.config.difficulty_multipliers[difficulty.value]

    def user_multiplier(self, context: UserContext, now: datetime.datetime) -> float:
        """
        Product of the user-level factors.

        Premium, weekend, happy hour, active event and temporary boosts
        compose multiplicatively and independently.
        """
        multiplier = 1.0

        if context.is_premium:
            multiplier *= self.config.premium_multiplier

        if self.is_weekend(now):
            multiplier *= self.config.weekend_multiplier

        if self.is_happy_hour(now):
            multiplier *= self.config.happy_hour_multiplier

        multiplier *= context.event_multiplier
        multiplier *= context.temporary_multiplier

        return multiplier

    @staticmethod
    def is_weekend(now: datetime.datetime) -> bool:
        return now.weekday() >= 5

    def is_happy_hour(self, now: datetime.datetime) -> bool:
        return self.config.happy_hour_start <= now.hour <= self.config.happy_hour_end

    # Level Up Rewards

    def generate_level_up_rewards(
        self,
        previous_level: int,
        new_level: int,
        now: Optional[datetime.datetime] = None
    ) -> List[EarnedReward]:
        """
        Build the rewards for every level in (previous_level, new_level].

        Rewards of lower levels always come before those of higher levels.
        """
        now = now or datetime.datetime.now()
        rewards: List[EarnedReward] = []

        for level in range(previous_level + 1, new_level + 1):
            definition = self.levels.get(level)
            if definition is None:
                continue

            for reward in definition.rewards:
                if reward.kind is RewardKind.XP:
                    rewards.append(EarnedReward(
                        type=RewardType.XP,
                        title=f"Level {level} Bonus",
                        description=f"Congratulations on reaching level {level}!",
                        value=reward.amount,
                        source_type=RewardSourceType.LEVEL_UP,
                        source_id=str(level),
                        source_name=definition.title,
                        earned_at=now
                    ))
                elif reward.kind is RewardKind.ITEM:
                    rewards.append(EarnedReward(
                        type=reward.item_type,
                        title=reward.title,
                        description=reward.description,
                        value=reward.value,
                        sku=reward.sku,
                        source_type=RewardSourceType.LEVEL_UP,
                        source_id=str(level),
                        source_name=definition.title,
                        earned_at=now
                    ))
                elif reward.kind is RewardKind.BADGE:
                    rewards.append(EarnedReward(
                        type=RewardType.BADGE,
                        title="Level Badge",
                        description=f"Badge earned for reaching level {level}",
                        value=0,
                        badge_id=reward.badge_id,
                        source_type=RewardSourceType.LEVEL_UP,
                        source_id=str(level),
                        source_name=definition.title,
                        earned_at=now
                    ))
                else:
                    raise TypeError(f"Unhandled level reward kind: {reward.kind!r}")

        return rewards

    # XP Sources and Categories

    def calculate_mission_xp(
        self,
        mission_type: MissionType,
        difficulty: DifficultyLevel,
        steps: int,
        quality_score: float
    ) -> int:
        """
        XP for completing a mission.

        (base + (steps - 1) * 10) * difficulty multiplier * quality factor,
        where the quality factor is 1 + (quality - 0.5) * 0.5 clamped to
        [0.75, 1.25].
        """
        if isinstance(mission_type, str):
            try:
                mission_type = MissionType(mission_type)
            except ValueError:
                mission_type = None
        if steps < 1:
            raise InvalidInputError("A mission has at least one step", "steps", steps)
        quality_score = _require_number(quality_score, "quality_score")

        base_xp = BASE_XP_BY_MISSION_TYPE.get(mission_type, DEFAULT_MISSION_BASE_XP)
        base_xp += (steps - 1) * XP_PER_EXTRA_STEP

        xp = base_xp * self.difficulty_multiplier(difficulty)

        quality_multiplier = 1 + (quality_score - 0.5) * 0.5
        xp *= max(0.75, min(1.25, quality_multiplier))

        return round_half_up(xp)

    @staticmethod
    def calculate_streak_xp(streak_days: int) -> int:
        """Escalating XP for longer streaks of consecutive days."""
        for max_days, xp in STREAK_XP_STEPS:
            if streak_days <= max_days:
                return xp
        return STREAK_XP_CAP

    @staticmethod
    def calculate_badge_xp(rarity) -> int:
        """Fixed XP per badge rarity; unknown rarities count as common."""
        if not isinstance(rarity, BadgeRarity):
            try:
                rarity = BadgeRarity(rarity)
            except ValueError:
                rarity = BadgeRarity.COMMON
        return BADGE_XP_BY_RARITY[rarity]
