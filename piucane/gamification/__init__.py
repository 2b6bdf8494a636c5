"""
Gamification Package

This package provides the gamification engine:
- Level table and XP awards
- Dynamic difficulty adjustment and mission adaptation
- Reward ledger
- Repositories and the orchestrating service
"""

from piucane.gamification.levels import LevelTable, generate_levels, get_level_table
from piucane.gamification.xp import XPSystem
from piucane.gamification.difficulty import DynamicDifficultyAdjustment
from piucane.gamification.missions import adapt_mission_for_difficulty
from piucane.gamification.rewards import RewardLedger
from piucane.gamification.repository import (
    GamificationRepository,
    MemoryGamificationRepository,
    RedisGamificationRepository,
    create_repository
)
from piucane.gamification.service import GamificationService, get_gamification_service

__all__ = [
    'LevelTable',
    'generate_levels',
    'get_level_table',
    'XPSystem',
    'DynamicDifficultyAdjustment',
    'adapt_mission_for_difficulty',
    'RewardLedger',
    'GamificationRepository',
    'MemoryGamificationRepository',
    'RedisGamificationRepository',
    'create_repository',
    'GamificationService',
    'get_gamification_service',
]
