"""
Dynamic Difficulty Adjustment

This module keeps a rolling performance score per user and moves the
user's mission difficulty one tier at a time along easy, medium, hard.

Scores are computed from the most recent mission progress records; an
adjustment is made at most once per cooldown window and only when the
score leaves the maintain band.
"""

import math
import datetime
from typing import List, Optional

from piucane.common.config import DDAConfig, get_config
from piucane.common.logger import app_logger, anonymize_user_id, for_user
from piucane.gamification.missions import adapt_mission_for_difficulty
from piucane.gamification.repository import GamificationRepository
from piucane.gamification.models import (
    EPOCH, TIER_ORDER, DifficultyLevel, GamificationProfile, Mission,
    MissionProgress, MissionStatus, DDAMetrics, DDAThresholds, DDAState,
    DDAdjustment, AdjustmentFactors, DDAInsights
)

# Module logger
logger = app_logger.getChild("gamification.difficulty")

# Defaults used when there is no mission history to measure
DEFAULT_COMPLETION_RATE = 0.5
DEFAULT_AVERAGE_TIME = 30.0
DEFAULT_DROP_RATE = 0.3
DEFAULT_ENGAGEMENT_RATE = 0.5
DEFAULT_EFFICIENCY = 0.5

# Performance score weights
COMPLETION_WEIGHT = 0.4
STREAK_WEIGHT = 0.3
ENGAGEMENT_WEIGHT = 0.2
DROP_PENALTY_WEIGHT = -0.1

STREAK_SATURATION_DAYS = 15
RECENT_INSIGHT_ADJUSTMENTS = 5

UP = "up"
DOWN = "down"
NONE = "none"


# Metric calculations

def calculate_streak_factor(streak_days: int) -> float:
    """Logarithmic streak factor in [0, 1], saturating at 14 days."""
    if streak_days <= 0:
        return 0.0
    return min(1.0, math.log(streak_days + 1) / math.log(STREAK_SATURATION_DAYS))


def calculate_performance_score(metrics: DDAMetrics) -> float:
    """Weighted performance score clamped to [0, 1]."""
    raw_score = (
        metrics.completion_rate * COMPLETION_WEIGHT +
        calculate_streak_factor(metrics.streak_days) * STREAK_WEIGHT +
        metrics.engagement_rate * ENGAGEMENT_WEIGHT +
        metrics.drop_rate * DROP_PENALTY_WEIGHT
    )
    return max(0.0, min(1.0, raw_score))


def calculate_initial_performance_score(profile: GamificationProfile) -> float:
    """
    Starting score for a user, from historical profile aggregates.

    Users with no completed missions start at a neutral 0.5.
    """
    if profile.total_missions_completed == 0:
        return 0.5

    completion_score = profile.completion_rate if profile.completion_rate is not None else DEFAULT_COMPLETION_RATE
    streak_score = min(profile.streak_days / 14, 1)
    engagement_score = profile.engagement_rate if profile.engagement_rate is not None else DEFAULT_ENGAGEMENT_RATE
    experience_score = min(profile.current_level / 20, 1)

    return (
        completion_score * 0.4 +
        streak_score * 0.3 +
        engagement_score * 0.2 +
        experience_score * 0.1
    )


def calculate_session_frequency(profile: GamificationProfile, now: datetime.datetime) -> float:
    days_since_creation = max(1, (now - profile.created_at).days)
    return profile.total_active_days / days_since_creation


def determine_adaptation_sensitivity(profile: GamificationProfile) -> float:
    """Between 0.8 for new users and 0.5 after ten completed missions."""
    experience_factor = min(profile.total_missions_completed / 10, 1)
    return 0.8 - experience_factor * 0.3


def _completed(missions: List[MissionProgress]) -> List[MissionProgress]:
    return [m for m in missions if m.status is MissionStatus.COMPLETED]


def calculate_completion_rate(missions: List[MissionProgress]) -> float:
    if not missions:
        return DEFAULT_COMPLETION_RATE
    return len(_completed(missions)) / len(missions)


def calculate_average_time_to_complete(missions: List[MissionProgress]) -> float:
    completed = _completed(missions)
    if not completed:
        return DEFAULT_AVERAGE_TIME
    return sum(m.time_spent for m in completed) / len(completed)


def is_stagnant(
    mission: MissionProgress,
    now: datetime.datetime,
    stagnant_after_days: float = 3.0
) -> bool:
    """An active mission with no activity for more than ``stagnant_after_days``."""
    return now - mission.last_active_at > datetime.timedelta(days=stagnant_after_days)


def calculate_drop_rate(
    missions: List[MissionProgress],
    now: datetime.datetime,
    stagnant_after_days: float = 3.0
) -> float:
    """Share of failed missions plus active missions that went stagnant."""
    if not missions:
        return DEFAULT_DROP_RATE

    dropped = [
        m for m in missions
        if m.status is MissionStatus.FAILED
        or (m.status is MissionStatus.ACTIVE and is_stagnant(m, now, stagnant_after_days))
    ]
    return len(dropped) / len(missions)


def calculate_engagement_rate(missions: List[MissionProgress]) -> float:
    """Mean efficiency of completed missions, capped at 1."""
    completed = _completed(missions)
    if not completed:
        return DEFAULT_ENGAGEMENT_RATE

    efficiencies = [m.efficiency if m.efficiency is not None else DEFAULT_EFFICIENCY for m in completed]
    return min(1.0, sum(efficiencies) / len(efficiencies))


# Difficulty decisions

def adjustment_direction(score: float, thresholds: DDAThresholds) -> Optional[str]:
    """
    Direction a score asks for, using strict comparisons.

    Returns:
        "down" below the decrease threshold, "up" above the increase
        threshold, otherwise None
    """
    if score < thresholds.decrease_difficulty:
        return DOWN
    if score > thresholds.increase_difficulty:
        return UP
    return None


def recommend_difficulty_level(
    score: float,
    thresholds: Optional[DDAThresholds] = None
) -> DifficultyLevel:
    thresholds = thresholds or DDAThresholds()
    if score < thresholds.decrease_difficulty:
        return DifficultyLevel.EASY
    if score > thresholds.increase_difficulty:
        return DifficultyLevel.HARD
    return DifficultyLevel.MEDIUM


def _tier_index(difficulty: DifficultyLevel) -> int:
    # Adaptive sits on the medium rung of the scale
    if difficulty is DifficultyLevel.ADAPTIVE:
        return TIER_ORDER.index(DifficultyLevel.MEDIUM)
    return TIER_ORDER.index(difficulty)


def shift_difficulty(
    current: DifficultyLevel,
    direction: str,
    min_difficulty: DifficultyLevel = DifficultyLevel.EASY,
    max_difficulty: DifficultyLevel = DifficultyLevel.HARD
) -> DifficultyLevel:
    """
    Move one tier in ``direction`` when the bounds allow it.

    The current tier is returned unchanged when it already sits at or
    beyond the bound in that direction; it never moves against the signal.
    """
    index = _tier_index(current)

    if direction == UP and index < _tier_index(max_difficulty):
        return TIER_ORDER[index + 1]
    if direction == DOWN and index > _tier_index(min_difficulty):
        return TIER_ORDER[index - 1]
    return current


def difficulty_direction(from_difficulty: DifficultyLevel, to_difficulty: DifficultyLevel) -> str:
    from_index = _tier_index(DifficultyLevel.parse(from_difficulty))
    to_index = _tier_index(DifficultyLevel.parse(to_difficulty))
    if to_index > from_index:
        return UP
    if to_index < from_index:
        return DOWN
    return NONE


def adjustment_reason(direction: str, score: float) -> str:
    if direction == UP:
        return f"Performance excellent ({score * 100:.1f}%) - increasing challenge"
    return f"Performance needs support ({score * 100:.1f}%) - providing easier tasks"


def identify_strengths(metrics: DDAMetrics) -> List[str]:
    strengths = []
    if metrics.completion_rate > 0.8:
        strengths.append("Eccellente tasso di completamento missioni")
    if metrics.streak_days > 7:
        strengths.append("Costanza nell'utilizzo dell'app")
    if metrics.engagement_rate > 0.7:
        strengths.append("Alto livello di coinvolgimento")
    if metrics.drop_rate < 0.2:
        strengths.append("Ottima persistenza nelle attività")
    return strengths


def identify_improvement_areas(metrics: DDAMetrics) -> List[str]:
    areas = []
    if metrics.completion_rate < 0.5:
        areas.append("Completamento delle missioni")
    if metrics.streak_days < 3:
        areas.append("Costanza nell'utilizzo quotidiano")
    if metrics.engagement_rate < 0.5:
        areas.append("Coinvolgimento nelle attività")
    if metrics.drop_rate > 0.4:
        areas.append("Persistenza nelle missioni difficili")
    return areas


class DynamicDifficultyAdjustment:
    """
    Per-user difficulty adjustment backed by the gamification repository.

    Each user's state is a persisted ``DDAState`` record. Every
    read-modify-write of that record happens under the repository's
    per-user lock and is saved with a version check.
    """

    def __init__(
        self,
        repository: GamificationRepository,
        dda_config: Optional[DDAConfig] = None
    ):
        """
        Initialize the DDA engine.

        Args:
            repository: Store for DDA state and mission history
            dda_config: Cooldown, window and threshold configuration
        """
        self.repository = repository
        self.config = dda_config or get_config().dda

    @property
    def cooldown(self) -> datetime.timedelta:
        return datetime.timedelta(hours=self.config.cooldown_hours)

    def default_thresholds(self) -> DDAThresholds:
        return DDAThresholds(
            decrease_difficulty=self.config.decrease_threshold,
            maintain_min=self.config.maintain_min,
            maintain_max=self.config.maintain_max,
            increase_difficulty=self.config.increase_threshold
        )

    def update_metrics(
        self,
        metrics: DDAMetrics,
        recent_missions: List[MissionProgress],
        now: datetime.datetime
    ) -> None:
        """Recompute mission-derived metrics in place; streak and session frequency are kept."""
        metrics.completion_rate = calculate_completion_rate(recent_missions)
        metrics.average_time_to_complete = calculate_average_time_to_complete(recent_missions)
        metrics.drop_rate = calculate_drop_rate(recent_missions, now, self.config.stagnant_after_days)
        metrics.engagement_rate = calculate_engagement_rate(recent_missions)

    async def initialize_user_dda(
        self,
        user_id: str,
        profile: GamificationProfile,
        now: Optional[datetime.datetime] = None
    ) -> DDAState:
        """
        Create and persist the DDA state for a user.

        Args:
            user_id: User identifier
            profile: Profile whose aggregates seed the metrics
            now: Reference time for the session frequency

        Returns:
            The stored state; an existing state is returned unchanged
        """
        now = now or datetime.datetime.now()

        async with self.repository.lock(user_id):
            existing = await self.repository.get_dda_state(user_id)
            if existing is not None:
                return existing

            has_history = profile.total_missions_completed > 0

            def seeded(value: Optional[float], default: float) -> float:
                return value if has_history and value is not None else default

            state = DDAState(
                user_id=user_id,
                current_performance_score=calculate_initial_performance_score(profile),
                metrics=DDAMetrics(
                    completion_rate=seeded(profile.completion_rate, DEFAULT_COMPLETION_RATE),
                    average_time_to_complete=seeded(profile.average_time_to_complete, DEFAULT_AVERAGE_TIME),
                    streak_days=profile.streak_days,
                    drop_rate=seeded(profile.drop_rate, DEFAULT_DROP_RATE),
                    engagement_rate=seeded(profile.engagement_rate, DEFAULT_ENGAGEMENT_RATE),
                    session_frequency=calculate_session_frequency(profile, now)
                ),
                adaptation_sensitivity=determine_adaptation_sensitivity(profile),
                min_difficulty=DifficultyLevel(self.config.min_difficulty),
                max_difficulty=DifficultyLevel(self.config.max_difficulty),
                last_adjustment_at=EPOCH,
                thresholds=self.default_thresholds()
            )
            state = await self.repository.save_dda_state(state)

        logger.info(
            f"Initialized DDA for {anonymize_user_id(user_id)} "
            f"with score {state.current_performance_score:.3f}"
        )
        return state

    async def evaluate_and_adjust_difficulty(
        self,
        user_id: str,
        mission_progress: MissionProgress,
        now: Optional[datetime.datetime] = None
    ) -> Optional[DDAdjustment]:
        """
        Re-score a user and move their difficulty one tier if warranted.

        Args:
            user_id: User identifier
            mission_progress: The progress record that triggered evaluation;
                its ``current_difficulty`` is the tier being adjusted
            now: Evaluation time

        Returns:
            The adjustment made, or None when the user has no DDA state, is
            inside the cooldown window, scores inside the maintain band, or
            is already at the bound in the requested direction
        """
        now = now or datetime.datetime.now()

        async with self.repository.lock(user_id):
            state = await self.repository.get_dda_state(user_id)
            if state is None:
                logger.warning(f"DDA state not found for {anonymize_user_id(user_id)}")
                return None

            if now - state.last_adjustment_at < self.cooldown:
                return None

            recent = await self.repository.get_recent_mission_progress(user_id, self.config.history_window)
            self.update_metrics(state.metrics, recent, now)

            score = calculate_performance_score(state.metrics)
            direction = adjustment_direction(score, state.thresholds)

            from_difficulty = mission_progress.current_difficulty
            to_difficulty = from_difficulty
            if direction is not None:
                to_difficulty = shift_difficulty(
                    from_difficulty, direction, state.min_difficulty, state.max_difficulty
                )

            if direction is None or _tier_index(to_difficulty) == _tier_index(from_difficulty):
                # Keep the refreshed metrics even when the tier stays put
                await self.repository.save_dda_state(state)
                return None

            adjustment = DDAdjustment(
                timestamp=now,
                from_difficulty=from_difficulty,
                to_difficulty=to_difficulty,
                reason=adjustment_reason(direction, score),
                performance_score=score,
                adjustment_factors=AdjustmentFactors(
                    completion_rate=state.metrics.completion_rate,
                    streak_factor=calculate_streak_factor(state.metrics.streak_days),
                    engagement_rate=state.metrics.engagement_rate,
                    drop_rate=state.metrics.drop_rate
                )
            )

            state.current_performance_score = score
            state.last_adjustment_at = now
            state.adjustment_history.append(adjustment)
            if len(state.adjustment_history) > self.config.history_max:
                state.adjustment_history = state.adjustment_history[-self.config.history_keep:]

            await self.repository.save_dda_state(state)

        self._log_adjustment(user_id, adjustment)
        return adjustment

    def _log_adjustment(self, user_id: str, adjustment: DDAdjustment) -> None:
        for_user(logger, user_id).info(
            f"DDA adjustment {adjustment.from_difficulty.value} -> {adjustment.to_difficulty.value} "
            f"({adjustment.reason})",
            extra={"data": {
                "event": "dda_adjustment",
                "from_difficulty": adjustment.from_difficulty.value,
                "to_difficulty": adjustment.to_difficulty.value,
                "performance_score": round(adjustment.performance_score * 100),
                "direction": difficulty_direction(adjustment.from_difficulty, adjustment.to_difficulty),
            }}
        )

    async def update_streak(self, user_id: str, streak_days: int) -> Optional[DDAState]:
        """Record the user's current streak; None if the user has no DDA state."""
        async with self.repository.lock(user_id):
            state = await self.repository.get_dda_state(user_id)
            if state is None:
                return None
            state.metrics.streak_days = max(0, streak_days)
            return await self.repository.save_dda_state(state)

    async def get_user_dda_state(self, user_id: str) -> Optional[DDAState]:
        return await self.repository.get_dda_state(user_id)

    async def get_recommended_difficulty(self, user_id: str) -> DifficultyLevel:
        state = await self.repository.get_dda_state(user_id)
        if state is None:
            return DifficultyLevel.MEDIUM
        return recommend_difficulty_level(state.current_performance_score, state.thresholds)

    async def get_dda_insights(self, user_id: str) -> DDAInsights:
        """
        Summarize a user's DDA state.

        Returns neutral insights for users without state.
        """
        state = await self.repository.get_dda_state(user_id)
        if state is None:
            return DDAInsights(
                current_performance_score=0.5,
                recommended_difficulty=DifficultyLevel.MEDIUM,
                recent_adjustments=[],
                strengths=[],
                improvement_areas=[]
            )

        return DDAInsights(
            current_performance_score=state.current_performance_score,
            recommended_difficulty=recommend_difficulty_level(
                state.current_performance_score, state.thresholds
            ),
            recent_adjustments=state.adjustment_history[-RECENT_INSIGHT_ADJUSTMENTS:],
            strengths=identify_strengths(state.metrics),
            improvement_areas=identify_improvement_areas(state.metrics)
        )

    async def adapt_mission_for_difficulty(
        self,
        mission: Mission,
        target: DifficultyLevel,
        profile: GamificationProfile
    ) -> Mission:
        """Adapt a mission, resolving ``adaptive`` from the user's stored score."""
        target = DifficultyLevel.parse(target)
        recommended = None
        if target is DifficultyLevel.ADAPTIVE:
            recommended = await self.get_recommended_difficulty(profile.user_id)
        return adapt_mission_for_difficulty(mission, target, profile, recommended)

    @staticmethod
    def difficulty_direction(from_difficulty: DifficultyLevel, to_difficulty: DifficultyLevel) -> str:
        return difficulty_direction(from_difficulty, to_difficulty)

    @staticmethod
    def recommend_difficulty_level(score: float) -> DifficultyLevel:
        return recommend_difficulty_level(score)
