"""
Gamification Service Module

This module provides the service layer of the gamification engine:
1. Profile reads and level information
2. XP awards persisted through an atomic increment
3. Level-up reward hand-off to the reward ledger
4. Temporary XP multipliers
5. Dynamic difficulty evaluation with lazy state initialization

The engines it drives are pure; this layer owns every storage side effect.
"""

import math
import numbers
import datetime
from typing import Optional

from piucane.common.config import AppConfig, get_config
from piucane.common.exceptions import DuplicateError, InvalidInputError
from piucane.common.logger import app_logger, for_user, log_execution_time
from piucane.gamification.difficulty import DynamicDifficultyAdjustment
from piucane.gamification.repository import GamificationRepository, create_repository
from piucane.gamification.rewards import RewardLedger
from piucane.gamification.xp import XPSystem
from piucane.gamification.models import (
    GamificationProfile, XPSource, UserContext, LevelInfo, LevelChange,
    ProfileUpdate, XPAwardResult, MissionProgress, DDAdjustment
)

# Set up module logger
logger = app_logger.getChild("gamification.service")


class GamificationService:
    """
    Service for gamification features.

    Ties the XP engine, DDA engine and reward ledger to one repository.
    """

    def __init__(
        self,
        repository: Optional[GamificationRepository] = None,
        xp_system: Optional[XPSystem] = None,
        dda: Optional[DynamicDifficultyAdjustment] = None,
        ledger: Optional[RewardLedger] = None,
        app_config: Optional[AppConfig] = None
    ):
        """
        Initialize the gamification service.

        Args:
            repository: Repository for gamification data (defaults to the configured backend)
            xp_system: XP award engine
            dda: Dynamic difficulty adjustment engine
            ledger: Reward ledger
            app_config: Application configuration
        """
        self.config = app_config or get_config()
        self.repository = repository or create_repository(self.config)
        self.xp_system = xp_system or XPSystem(xp_config=self.config.xp)
        self.dda = dda or DynamicDifficultyAdjustment(self.repository, self.config.dda)
        self.ledger = ledger or RewardLedger(self.repository)

    async def get_profile(self, user_id: str) -> GamificationProfile:
        """
        Get a user's gamification profile, creating it on first read.

        Args:
            user_id: User identifier

        Returns:
            User's gamification profile
        """
        if not user_id:
            raise InvalidInputError("User id is required", "user_id", user_id)

        profile = await self.repository.get_profile(user_id)
        if profile is not None:
            return profile

        async with self.repository.lock(user_id):
            profile = await self.repository.get_profile(user_id)
            if profile is None:
                first_step = self.xp_system.calculate_level_from_xp(0)
                profile = GamificationProfile.create(user_id, first_step.xp_to_next_level)
                await self.repository.save_profile(profile)
                for_user(logger, user_id).info("Created gamification profile")

        return profile

    async def get_level_info(self, user_id: str) -> LevelInfo:
        profile = await self.get_profile(user_id)
        return self.xp_system.calculate_level_from_xp(profile.total_xp)

    @log_execution_time(logger)
    async def award_xp(
        self,
        user_id: str,
        amount: float,
        source: XPSource,
        now: Optional[datetime.datetime] = None
    ) -> XPAwardResult:
        """
        Award XP to a user and persist it.

        The XP is added with an atomic increment; the level change is derived
        from the total the store returns, so concurrent awards never lose XP
        and each crossed level yields its rewards exactly once.

        Args:
            user_id: User identifier
            amount: Raw XP amount
            source: What the XP is for; a non-empty ``source_id`` makes the
                award idempotent per source type and id
            now: User's local time

        Returns:
            The persisted award result

        Raises:
            InvalidInputError: If the amount or source is invalid
            DuplicateError: If this source was already rewarded
        """
        now = now or datetime.datetime.now()
        profile = await self.get_profile(user_id)

        context = UserContext(
            is_premium=profile.is_premium,
            event_multiplier=self.xp_system.config.event_multiplier,
            temporary_multiplier=await self.repository.get_temporary_multiplier(user_id, now)
        )

        # Validates input before anything is written
        snapshot_result = self.xp_system.award_xp(user_id, amount, source, profile, context, now)
        xp_awarded = snapshot_result.xp_awarded

        award_key = None
        if source.source_id:
            award_key = f"{source.type.value}:{source.source_id}"
            if not await self.repository.claim_award_key(user_id, award_key):
                raise DuplicateError("XP award", award_key)

        try:
            new_total = await self.repository.increment_total_xp(user_id, xp_awarded)
        except Exception:
            # Nothing was credited, so the source stays claimable for a retry
            if award_key is not None:
                await self.repository.release_award_key(user_id, award_key)
            raise

        previous_level = self.xp_system.levels.level_for_xp(new_total - xp_awarded).level
        level_info = self.xp_system.calculate_level_from_xp(new_total)
        level_rewards = []
        if level_info.level > previous_level:
            level_rewards = self.xp_system.generate_level_up_rewards(previous_level, level_info.level, now)

        await self._refresh_derived_fields(user_id, now)

        if level_rewards:
            await self.ledger.award_rewards(user_id, level_rewards, now)

        return XPAwardResult(
            xp_awarded=xp_awarded,
            level_change=LevelChange(
                leveled_up=level_info.level > previous_level,
                previous_level=previous_level,
                new_level=level_info.level,
                level_rewards=level_rewards
            ),
            profile_update=ProfileUpdate(
                xp_delta=xp_awarded,
                total_xp=new_total,
                current_level=level_info.level,
                xp_to_next_level=level_info.xp_to_next_level,
                level_progress=level_info.level_progress,
                updated_at=now
            )
        )

    async def _refresh_derived_fields(self, user_id: str, now: datetime.datetime) -> None:
        # Recompute from the latest stored total so a slower writer never
        # leaves level fields behind a newer increment
        async with self.repository.lock(user_id):
            profile = await self.repository.get_profile(user_id)
            level_info = self.xp_system.calculate_level_from_xp(profile.total_xp)
            await self.repository.update_profile_fields(user_id, {
                "current_level": level_info.level,
                "xp_to_next_level": level_info.xp_to_next_level,
                "level_progress": level_info.level_progress,
                "updated_at": now,
            })

    async def set_temporary_xp_multiplier(
        self,
        user_id: str,
        multiplier: float,
        duration_minutes: float,
        reason: str,
        now: Optional[datetime.datetime] = None
    ) -> None:
        """
        Boost a user's XP for a limited time.

        Args:
            user_id: User identifier
            multiplier: Factor applied to every award while active
            duration_minutes: How long the boost lasts
            reason: Why the boost was granted, for the record
            now: Start of the boost
        """
        for name, value in (("multiplier", multiplier), ("duration_minutes", duration_minutes)):
            if (isinstance(value, bool) or not isinstance(value, numbers.Real)
                    or not math.isfinite(value) or value <= 0):
                raise InvalidInputError(f"{name} must be a positive number", name, value)

        await self.repository.set_temporary_multiplier(
            user_id, float(multiplier), datetime.timedelta(minutes=duration_minutes), reason, now
        )
        for_user(logger, user_id).info(
            f"Temporary XP multiplier {multiplier} for {duration_minutes} minutes: {reason}",
            extra={"data": {"multiplier": multiplier, "reason": reason}}
        )

    async def evaluate_difficulty(
        self,
        user_id: str,
        mission_progress: MissionProgress,
        now: Optional[datetime.datetime] = None
    ) -> Optional[DDAdjustment]:
        """
        Record mission progress and run a difficulty evaluation.

        The user's DDA state is created from their profile on the first call.
        """
        if mission_progress.user_id != user_id:
            raise InvalidInputError(
                "Mission progress belongs to another user", "mission_progress", mission_progress.user_id
            )

        now = now or datetime.datetime.now()
        await self.repository.record_mission_progress(mission_progress)

        if await self.dda.get_user_dda_state(user_id) is None:
            profile = await self.get_profile(user_id)
            await self.dda.initialize_user_dda(user_id, profile, now)

        return await self.dda.evaluate_and_adjust_difficulty(user_id, mission_progress, now)


# Singleton instance
_gamification_service: Optional[GamificationService] = None


def get_gamification_service() -> GamificationService:
    """
    Get the singleton gamification service instance.

    Returns:
        Gamification service instance
    """
    global _gamification_service

    if _gamification_service is None:
        _gamification_service = GamificationService()

    return _gamification_service


def reset_gamification_service() -> None:
    """Drop the singleton so the next call rebuilds it from the current config."""
    global _gamification_service
    _gamification_service = None
