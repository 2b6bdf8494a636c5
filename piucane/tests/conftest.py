"""
Shared fixtures for the gamification tests.

Every fixture builds its own configuration objects so tests never depend
on environment variables or a config file.
"""

import datetime

import pytest

from piucane.common.config import AppConfig, DDAConfig, StorageConfig, XPConfig
from piucane.gamification.levels import LevelTable
from piucane.gamification.xp import XPSystem
from piucane.gamification.difficulty import DynamicDifficultyAdjustment
from piucane.gamification.rewards import RewardLedger
from piucane.gamification.repository import MemoryGamificationRepository
from piucane.gamification.service import GamificationService
from piucane.gamification.models import (
    DifficultyLevel, GamificationProfile, MissionProgress, MissionStatus
)

# Wednesday morning: no weekend or happy hour bonus
WEEKDAY_MORNING = datetime.datetime(2024, 1, 10, 10, 0)
# Wednesday evening, inside happy hour
WEEKDAY_EVENING = datetime.datetime(2024, 1, 10, 19, 0)
# Saturday morning
SATURDAY_MORNING = datetime.datetime(2024, 1, 13, 10, 0)


def make_progress(
    user_id: str,
    index: int,
    status: MissionStatus = MissionStatus.COMPLETED,
    efficiency=1.0,
    now: datetime.datetime = WEEKDAY_MORNING,
    difficulty: DifficultyLevel = DifficultyLevel.MEDIUM,
    inactive_for: datetime.timedelta = datetime.timedelta(0)
) -> MissionProgress:
    """Progress record whose activity time orders records by ``index``."""
    last_active = now - inactive_for - datetime.timedelta(minutes=index)
    return MissionProgress(
        user_id=user_id,
        mission_id=f"mission_{index}",
        status=status,
        current_difficulty=difficulty,
        time_spent=20.0,
        efficiency=efficiency,
        started_at=last_active - datetime.timedelta(hours=1),
        last_active_at=last_active,
        completed_at=last_active if status is MissionStatus.COMPLETED else None
    )


@pytest.fixture
def level_table():
    return LevelTable()


@pytest.fixture
def xp_system(level_table):
    return XPSystem(level_table, XPConfig())


@pytest.fixture
def repository():
    return MemoryGamificationRepository(StorageConfig())


@pytest.fixture
def dda(repository):
    return DynamicDifficultyAdjustment(repository, DDAConfig())


@pytest.fixture
def ledger(repository):
    return RewardLedger(repository)


@pytest.fixture
def app_config():
    return AppConfig()


@pytest.fixture
def service(repository, xp_system, dda, ledger, app_config):
    return GamificationService(repository, xp_system, dda, ledger, app_config)


@pytest.fixture
def profile():
    return GamificationProfile(
        user_id="user-1",
        created_at=WEEKDAY_MORNING - datetime.timedelta(days=30)
    )
