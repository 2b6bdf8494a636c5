"""
Tests for the gamification service.

This module covers:
1. Profile creation on first read
2. Persisted XP awards and level-up reward hand-off
3. Award idempotency and concurrent awards
4. Temporary multipliers and configured event multipliers
5. Difficulty evaluation with lazy DDA initialization
"""

import asyncio
import datetime
from unittest.mock import AsyncMock, patch

import pytest

from piucane.common.config import AppConfig, XPConfig
from piucane.common.exceptions import DuplicateError, InvalidInputError, StorageError
from piucane.gamification.models import (
    DifficultyLevel, MissionStatus, RewardStatus, RewardType, XPSource, XPSourceType
)
from piucane.gamification.service import GamificationService
from piucane.gamification.xp import XPSystem
from piucane.tests.conftest import WEEKDAY_MORNING, make_progress


def mission_source(mission_id="m1"):
    return XPSource(type=XPSourceType.MISSION, source_id=mission_id, source_name="Seduto!")


@pytest.mark.asyncio
async def test_profile_created_on_first_read(service, repository):
    assert await repository.get_profile("user-1") is None

    profile = await service.get_profile("user-1")

    assert profile.total_xp == 0
    assert profile.current_level == 1
    assert profile.xp_to_next_level == 100
    assert await repository.get_profile("user-1") == profile


@pytest.mark.asyncio
async def test_award_is_persisted(service, repository):
    result = await service.award_xp("user-1", 150, mission_source(), WEEKDAY_MORNING)

    assert result.xp_awarded == 150
    assert result.profile_update.total_xp == 150

    stored = await repository.get_profile("user-1")
    assert stored.total_xp == 150
    assert stored.current_level == 2
    assert stored.xp_to_next_level == 459 - 150
    assert stored.updated_at == WEEKDAY_MORNING

    info = await service.get_level_info("user-1")
    assert info.level == 2


@pytest.mark.asyncio
async def test_level_up_rewards_reach_the_ledger(service, ledger):
    result = await service.award_xp("user-1", 2200, mission_source(), WEEKDAY_MORNING)

    assert result.level_change.new_level == 5
    pending = await ledger.get_pending_rewards("user-1", WEEKDAY_MORNING)
    assert [r.type for r in pending] == [RewardType.XP, RewardType.DISCOUNT, RewardType.BADGE]
    assert all(r.status is RewardStatus.PENDING for r in pending)
    assert pending[1].code.startswith("PC")


@pytest.mark.asyncio
async def test_repeated_source_is_rejected(service, repository):
    await service.award_xp("user-1", 100, mission_source("m1"), WEEKDAY_MORNING)

    with pytest.raises(DuplicateError):
        await service.award_xp("user-1", 100, mission_source("m1"), WEEKDAY_MORNING)

    assert (await repository.get_profile("user-1")).total_xp == 100

    # Same id from another source type is a different award
    badge = XPSource(type=XPSourceType.BADGE, source_id="m1")
    await service.award_xp("user-1", 100, badge, WEEKDAY_MORNING)
    assert (await repository.get_profile("user-1")).total_xp == 220


@pytest.mark.asyncio
async def test_failed_increment_leaves_award_retryable(service, repository):
    await service.get_profile("user-1")
    failure = StorageError("hincrby failed", ConnectionError("down"))

    with patch.object(repository, "increment_total_xp", AsyncMock(side_effect=failure)):
        with pytest.raises(StorageError):
            await service.award_xp("user-1", 100, mission_source("m1"), WEEKDAY_MORNING)

    assert (await repository.get_profile("user-1")).total_xp == 0

    result = await service.award_xp("user-1", 100, mission_source("m1"), WEEKDAY_MORNING)
    assert result.profile_update.total_xp == 100

    with pytest.raises(DuplicateError):
        await service.award_xp("user-1", 100, mission_source("m1"), WEEKDAY_MORNING)


@pytest.mark.asyncio
async def test_awards_without_source_id_are_not_deduplicated(service, repository):
    source = XPSource(type=XPSourceType.DAILY_BONUS)
    await service.award_xp("user-1", 100, source, WEEKDAY_MORNING)
    await service.award_xp("user-1", 100, source, WEEKDAY_MORNING)
    assert (await repository.get_profile("user-1")).total_xp == 160


@pytest.mark.asyncio
async def test_invalid_award_consumes_nothing(service, repository):
    with pytest.raises(InvalidInputError):
        await service.award_xp("user-1", -5, mission_source("m1"), WEEKDAY_MORNING)

    result = await service.award_xp("user-1", 50, mission_source("m1"), WEEKDAY_MORNING)
    assert result.xp_awarded == 50
    assert (await repository.get_profile("user-1")).total_xp == 50


@pytest.mark.asyncio
async def test_concurrent_awards_lose_nothing(service, repository):
    results = await asyncio.gather(*[
        service.award_xp("user-1", 500, mission_source(f"m{i}"), WEEKDAY_MORNING)
        for i in range(10)
    ])

    stored = await repository.get_profile("user-1")
    assert stored.total_xp == 5000
    assert stored.current_level == 6
    assert sorted(r.profile_update.total_xp for r in results) == list(range(500, 5001, 500))

    # Every crossed level is rewarded exactly once across the awards
    reward_levels = [r.source_id for result in results for r in result.level_change.level_rewards]
    assert sorted(reward_levels) == ["5", "5", "5"]


@pytest.mark.asyncio
async def test_temporary_multiplier(service):
    await service.set_temporary_xp_multiplier("user-1", 2.0, 60, "comeback", WEEKDAY_MORNING)

    boosted = await service.award_xp(
        "user-1", 100, mission_source("m1"), WEEKDAY_MORNING + datetime.timedelta(minutes=30)
    )
    assert boosted.xp_awarded == 200

    expired = await service.award_xp(
        "user-1", 100, mission_source("m2"), WEEKDAY_MORNING + datetime.timedelta(minutes=61)
    )
    assert expired.xp_awarded == 100


@pytest.mark.asyncio
@pytest.mark.parametrize("multiplier, minutes", [(0, 60), (-1, 60), (2.0, 0), (float("nan"), 60)])
async def test_temporary_multiplier_validation(service, multiplier, minutes):
    with pytest.raises(InvalidInputError):
        await service.set_temporary_xp_multiplier("user-1", multiplier, minutes, "bad")


@pytest.mark.asyncio
async def test_configured_event_multiplier(repository, dda, ledger, level_table):
    config = AppConfig(xp=XPConfig(event_multiplier=1.5))
    service = GamificationService(
        repository, XPSystem(level_table, config.xp), dda, ledger, config
    )

    result = await service.award_xp("user-1", 100, mission_source(), WEEKDAY_MORNING)
    assert result.xp_awarded == 150


@pytest.mark.asyncio
async def test_premium_profile(service, repository):
    await service.get_profile("user-1")
    await repository.update_profile_fields("user-1", {"is_premium": True})

    result = await service.award_xp("user-1", 100, mission_source(), WEEKDAY_MORNING)
    assert result.xp_awarded == 150


@pytest.mark.asyncio
async def test_evaluate_difficulty_initializes_state(service, dda):
    assert await dda.get_user_dda_state("user-1") is None

    progress = make_progress("user-1", 0, MissionStatus.FAILED)
    adjustment = await service.evaluate_difficulty("user-1", progress, WEEKDAY_MORNING)

    state = await dda.get_user_dda_state("user-1")
    assert state is not None
    # One failed mission: 0.5 * 0.2 - 0.1 = 0.0
    assert adjustment.to_difficulty is DifficultyLevel.EASY
    assert state.adjustment_history == [adjustment]


@pytest.mark.asyncio
async def test_evaluate_difficulty_rejects_foreign_progress(service):
    with pytest.raises(InvalidInputError):
        await service.evaluate_difficulty("user-1", make_progress("user-2", 0))
