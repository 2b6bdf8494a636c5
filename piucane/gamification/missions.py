"""
Mission Adapter

Reshapes a mission's steps, duration and XP payout to a difficulty tier.
Adaptation never mutates its input; it returns an adapted deep copy.
"""

import copy
import math
from typing import List, Optional

from piucane.common.logger import app_logger
from piucane.gamification.models import (
    DifficultyLevel, GamificationProfile, Mission, MissionStep
)

# Set up module logger
logger = app_logger.getChild("gamification.missions")

EASY_TIME_FACTOR = 0.7
EASY_XP_FACTOR = 0.8
HARD_TIME_FACTOR = 1.3
HARD_XP_FACTOR = 1.2

EASY_INSTRUCTION_NOTE = (
    "\n\n💡 Suggerimento: Prenditi tutto il tempo che ti serve e ricorda di "
    "premiare il tuo cane per ogni piccolo progresso!"
)
HARD_INSTRUCTION_NOTE = (
    "\n\n🎯 Sfida avanzata: Prova ad aggiungere una distrazione controllata "
    "per testare la solidità dell'apprendimento."
)
EASY_TIP = "Se hai difficoltà, prova sessioni più brevi di 2-3 minuti"
HARD_TIP = "Mantieni sessioni più lunghe (10-15 minuti) per consolidare l'apprendimento"


def _scale_up(value: float, factor: float) -> int:
    return int(math.ceil(value * factor))


def adapt_steps_for_easy(steps: List[MissionStep]) -> List[MissionStep]:
    """Shorter steps, extra encouragement, optional verification."""
    adapted_steps = []
    for step in steps:
        adapted = copy.deepcopy(step)
        adapted.estimated_minutes = _scale_up(step.estimated_minutes, EASY_TIME_FACTOR)

        if adapted.instructions:
            adapted.instructions += EASY_INSTRUCTION_NOTE

        if adapted.verification is not None and adapted.verification.required:
            adapted.verification.required = False

        adapted.tips.append(EASY_TIP)
        adapted_steps.append(adapted)
    return adapted_steps


def adapt_steps_for_hard(steps: List[MissionStep]) -> List[MissionStep]:
    """Longer steps, an added challenge, mandatory verification."""
    adapted_steps = []
    for step in steps:
        adapted = copy.deepcopy(step)
        adapted.estimated_minutes = _scale_up(step.estimated_minutes, HARD_TIME_FACTOR)

        if adapted.instructions:
            adapted.instructions += HARD_INSTRUCTION_NOTE

        if adapted.verification is not None:
            adapted.verification.required = True

        adapted.tips.append(HARD_TIP)
        adapted_steps.append(adapted)
    return adapted_steps


def adapt_mission_for_difficulty(
    mission: Mission,
    target: DifficultyLevel,
    profile: GamificationProfile,
    recommended: Optional[DifficultyLevel] = None
) -> Mission:
    """
    Adapt a mission to a difficulty tier.

    Args:
        mission: Mission to adapt (not modified)
        target: Requested tier; ``adaptive`` resolves to ``recommended``
        profile: Profile of the user the mission is adapted for
        recommended: DDA recommendation for the user, medium when unknown

    Returns:
        A new mission whose ``difficulty`` is the resolved tier
    """
    target = DifficultyLevel.parse(target)

    if target is DifficultyLevel.ADAPTIVE:
        resolved = recommended or DifficultyLevel.MEDIUM
        if resolved is DifficultyLevel.ADAPTIVE:
            resolved = DifficultyLevel.MEDIUM
        logger.debug(f"Adaptive mission {mission.id} resolved to {resolved.value}")
        return adapt_mission_for_difficulty(mission, resolved, profile)

    adapted = copy.deepcopy(mission)

    if target is DifficultyLevel.EASY:
        adapted.steps = adapt_steps_for_easy(mission.steps)
        adapted.estimated_duration = _scale_up(mission.estimated_duration, EASY_TIME_FACTOR)
        adapted.rewards.xp = _scale_up(mission.rewards.xp, EASY_XP_FACTOR)
    elif target is DifficultyLevel.HARD:
        adapted.steps = adapt_steps_for_hard(mission.steps)
        adapted.estimated_duration = _scale_up(mission.estimated_duration, HARD_TIME_FACTOR)
        adapted.rewards.xp = _scale_up(mission.rewards.xp, HARD_XP_FACTOR)

    adapted.difficulty = target
    return adapted
