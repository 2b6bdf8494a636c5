"""
Gamification System Models

This module defines the core data models for the gamification system including:
1. Level definitions and the tagged reward variants they grant
2. Per-user gamification profiles and XP award results
3. Missions, mission progress and earned rewards
4. Dynamic difficulty adjustment state and adjustment records

These models are plain dataclasses; the engines treat them as value
snapshots and the repository persists them through SerializableMixin.
"""

import enum
import uuid
import datetime
from typing import List, Optional, Tuple, FrozenSet, Union
from dataclasses import dataclass, field

from piucane.common.exceptions import InvalidInputError
from piucane.common.serialization import SerializableMixin

EPOCH = datetime.datetime(1970, 1, 1)


class DifficultyLevel(enum.Enum):
    """Difficulty tiers for missions and XP sources."""
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"
    ADAPTIVE = "adaptive"

    @classmethod
    def parse(cls, value: Union[str, 'DifficultyLevel'], field_name: str = "difficulty") -> 'DifficultyLevel':
        """Coerce a raw value to a difficulty, rejecting unknown tiers."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise InvalidInputError(f"Unknown difficulty: {value!r}", field_name, value)


# Ordered scale used for one-step adjustments; ADAPTIVE is never a terminal tier
TIER_ORDER: List[DifficultyLevel] = [
    DifficultyLevel.EASY,
    DifficultyLevel.MEDIUM,
    DifficultyLevel.HARD,
]


class XPSourceType(enum.Enum):
    """Sources of XP in the system."""
    MISSION = "mission"
    BADGE = "badge"
    STREAK = "streak"
    SPECIAL_EVENT = "special_event"
    DAILY_BONUS = "daily_bonus"


class RewardType(enum.Enum):
    """Kinds of reward a user can earn."""
    XP = "xp"
    BADGE = "badge"
    DISCOUNT = "discount"
    FREE_ITEM = "free_item"
    EXCLUSIVE_CONTENT = "exclusive_content"


class RewardStatus(enum.Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    EXPIRED = "expired"


class RewardSourceType(enum.Enum):
    MISSION = "mission"
    BADGE = "badge"
    LEVEL_UP = "level_up"
    STREAK = "streak"
    SPECIAL_EVENT = "special_event"


class MissionType(enum.Enum):
    TRAINING = "training"
    GROOMING = "grooming"
    HEALTH = "health"
    CONTENT = "content"
    COMMUNITY = "community"


class MissionStatus(enum.Enum):
    AVAILABLE = "available"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class BadgeRarity(enum.Enum):
    """Rarity tiers for badges."""
    COMMON = "common"
    RARE = "rare"
    EPIC = "epic"
    LEGENDARY = "legendary"


class RewardKind(enum.Enum):
    """Discriminator for the rewards a level grants."""
    XP = "xp"
    ITEM = "item"
    BADGE = "badge"


# ---------------------------------------------------------------------------
# Level definitions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class XPBonusReward(SerializableMixin):
    """Bonus XP granted on reaching a level."""
    amount: int

    @property
    def kind(self) -> RewardKind:
        return RewardKind.XP


@dataclass(frozen=True)
class ItemReward(SerializableMixin):
    """A shop item or discount granted on reaching a level."""
    item_type: RewardType
    title: str
    description: str
    value: float
    quantity: int = 1
    sku: Optional[str] = None

    @property
    def kind(self) -> RewardKind:
        return RewardKind.ITEM


@dataclass(frozen=True)
class BadgeReward(SerializableMixin):
    """A badge granted on reaching a level."""
    badge_id: str

    @property
    def kind(self) -> RewardKind:
        return RewardKind.BADGE


LevelReward = Union[XPBonusReward, ItemReward, BadgeReward]


@dataclass(frozen=True)
class ColorScheme(SerializableMixin):
    primary: str
    secondary: str
    accent: str


@dataclass(frozen=True)
class Level(SerializableMixin):
    """
    A single entry of the level table.

    Generated once at start-up and never mutated. Unlock sets are
    cumulative: every identifier unlocked at level n is also present at
    every level above n.
    """
    level: int
    required_xp: int
    title: str
    description: str
    icon_url: str
    rewards: Tuple[LevelReward, ...]
    unlocked_features: FrozenSet[str]
    unlocked_missions: FrozenSet[str]
    unlocked_badges: FrozenSet[str]
    color_scheme: ColorScheme

    @property
    def xp_bonus(self) -> int:
        return sum(r.amount for r in self.rewards if r.kind is RewardKind.XP)

    @property
    def items(self) -> List[ItemReward]:
        return [r for r in self.rewards if r.kind is RewardKind.ITEM]

    @property
    def badges(self) -> List[str]:
        return [r.badge_id for r in self.rewards if r.kind is RewardKind.BADGE]


@dataclass
class LevelRequirements:
    """What the next level asks for and what it unlocks."""
    next_level: Level
    xp_required: int
    unlocked_features: List[str]
    unlocked_missions: List[str]
    unlocked_badges: List[str]
    rewards: Tuple[LevelReward, ...]


# ---------------------------------------------------------------------------
# Profiles and XP awards
# ---------------------------------------------------------------------------

@dataclass
class GamificationProfile(SerializableMixin):
    """
    Per-user gamification state owned by the calling service.

    ``current_level``, ``xp_to_next_level`` and ``level_progress`` are
    derived from ``total_xp`` through the level table and are only ever
    written together with it.
    """
    user_id: str
    total_xp: int = 0
    current_level: int = 1
    xp_to_next_level: int = 0
    level_progress: float = 0.0

    streak_days: int = 0
    longest_streak: int = 0
    total_active_days: int = 0
    last_activity_at: Optional[datetime.datetime] = None

    completion_rate: Optional[float] = None
    drop_rate: Optional[float] = None
    engagement_rate: Optional[float] = None
    average_time_to_complete: Optional[float] = None
    total_missions_completed: int = 0
    total_missions_started: int = 0

    badges: List[str] = field(default_factory=list)
    is_premium: bool = False
    preferred_difficulty: DifficultyLevel = DifficultyLevel.MEDIUM

    created_at: datetime.datetime = field(default_factory=datetime.datetime.now)
    updated_at: datetime.datetime = field(default_factory=datetime.datetime.now)

    @classmethod
    def create(cls, user_id: str, xp_to_next_level: int = 0) -> 'GamificationProfile':
        """Create a fresh level 1 profile."""
        return cls(user_id=user_id, xp_to_next_level=xp_to_next_level)


@dataclass
class XPSource:
    """Describes what an XP award is for."""
    type: XPSourceType
    source_id: str = ""
    source_name: str = ""
    difficulty: Optional[DifficultyLevel] = None
    quality_bonus: Optional[float] = None

    def __post_init__(self):
        if not isinstance(self.type, XPSourceType):
            try:
                self.type = XPSourceType(self.type)
            except ValueError:
                raise InvalidInputError(f"Unknown XP source type: {self.type!r}", "type", self.type)

        if self.difficulty is not None:
            self.difficulty = DifficultyLevel.parse(self.difficulty)


@dataclass
class UserContext:
    """User-level inputs to the XP multiplier."""
    is_premium: bool = False
    event_multiplier: float = 1.0
    temporary_multiplier: float = 1.0


@dataclass
class LevelInfo:
    level: int
    xp_to_next_level: int
    level_progress: float
    current_level_xp: int
    next_level_xp: int


@dataclass
class ProfileUpdate(SerializableMixin):
    """
    Partial profile update produced by an XP award.

    ``xp_delta`` is meant to be applied as an atomic increment; the other
    fields are set semantics computed from ``total_xp``.
    """
    xp_delta: int
    total_xp: int
    current_level: int
    xp_to_next_level: int
    level_progress: float
    updated_at: datetime.datetime = field(default_factory=datetime.datetime.now)


@dataclass
class EarnedReward(SerializableMixin):
    """
    A reward a user has earned and may claim.

    Rewards start ``pending`` and move to ``claimed`` on user action or to
    ``expired`` once ``expires_at`` has passed.
    """
    type: RewardType
    title: str
    description: str
    value: float
    source_type: RewardSourceType
    source_id: str
    source_name: str
    id: str = field(default_factory=lambda: f"reward_{uuid.uuid4().hex}")
    status: RewardStatus = RewardStatus.PENDING
    earned_at: datetime.datetime = field(default_factory=datetime.datetime.now)
    sku: Optional[str] = None
    code: Optional[str] = None
    badge_id: Optional[str] = None
    expires_at: Optional[datetime.datetime] = None
    claimed_at: Optional[datetime.datetime] = None

    def is_past_expiry(self, now: datetime.datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now


@dataclass
class LevelChange:
    leveled_up: bool
    previous_level: int
    new_level: int
    level_rewards: List[EarnedReward] = field(default_factory=list)

    @property
    def levels_gained(self) -> int:
        return self.new_level - self.previous_level


@dataclass
class XPAwardResult:
    xp_awarded: int
    level_change: LevelChange
    profile_update: ProfileUpdate


# ---------------------------------------------------------------------------
# Missions
# ---------------------------------------------------------------------------

@dataclass
class StepVerification(SerializableMixin):
    type: str = "photo"
    required: bool = False
    instructions: str = ""


@dataclass
class MissionStep(SerializableMixin):
    id: str
    order: int
    title: str
    estimated_minutes: int
    instructions: str = ""
    description: str = ""
    tips: List[str] = field(default_factory=list)
    verification: Optional[StepVerification] = None
    xp_reward: int = 0


@dataclass
class MissionReward(SerializableMixin):
    xp: int
    badges: List[str] = field(default_factory=list)
    items: List[ItemReward] = field(default_factory=list)


@dataclass
class Mission(SerializableMixin):
    """A user-facing task with steps, an estimated duration and a payout."""
    id: str
    title: str
    type: MissionType
    steps: List[MissionStep]
    estimated_duration: int
    rewards: MissionReward
    difficulty: DifficultyLevel = DifficultyLevel.MEDIUM
    category: str = ""
    description: str = ""
    dda_enabled: bool = True
    min_level: int = 1

    @property
    def total_steps(self) -> int:
        return len(self.steps)


@dataclass
class MissionProgress(SerializableMixin):
    """A user's progress record for one mission."""
    user_id: str
    mission_id: str
    status: MissionStatus
    current_difficulty: DifficultyLevel = DifficultyLevel.MEDIUM
    time_spent: float = 0.0
    efficiency: Optional[float] = None
    quality_score: Optional[float] = None
    started_at: datetime.datetime = field(default_factory=datetime.datetime.now)
    last_active_at: datetime.datetime = field(default_factory=datetime.datetime.now)
    completed_at: Optional[datetime.datetime] = None


# ---------------------------------------------------------------------------
# Dynamic difficulty adjustment
# ---------------------------------------------------------------------------

@dataclass
class DDAMetrics(SerializableMixin):
    completion_rate: float = 0.5
    average_time_to_complete: float = 30.0
    streak_days: int = 0
    drop_rate: float = 0.3
    engagement_rate: float = 0.5
    session_frequency: float = 0.0


@dataclass(frozen=True)
class DDAThresholds(SerializableMixin):
    """
    Score bands for difficulty decisions.

    Scores strictly below ``decrease_difficulty`` step down, strictly above
    ``increase_difficulty`` step up, anything in between is maintained.
    """
    decrease_difficulty: float = 0.4
    maintain_min: float = 0.4
    maintain_max: float = 0.7
    increase_difficulty: float = 0.7

    def __post_init__(self):
        if not (self.decrease_difficulty <= self.maintain_min
                <= self.maintain_max <= self.increase_difficulty):
            raise InvalidInputError("DDA thresholds are not ordered", "thresholds", self)
        if self.decrease_difficulty >= self.increase_difficulty:
            raise InvalidInputError(
                "DDA decrease threshold must be below the increase threshold", "thresholds", self
            )


@dataclass(frozen=True)
class AdjustmentFactors(SerializableMixin):
    completion_rate: float
    streak_factor: float
    engagement_rate: float
    drop_rate: float


@dataclass(frozen=True)
class DDAdjustment(SerializableMixin):
    """Immutable record of one difficulty change."""
    timestamp: datetime.datetime
    from_difficulty: DifficultyLevel
    to_difficulty: DifficultyLevel
    reason: str
    performance_score: float
    adjustment_factors: AdjustmentFactors


@dataclass
class DDAState(SerializableMixin):
    """
    Persisted per-user difficulty adjustment record.

    Created on the first evaluation for a user and rewritten on every
    adjustment. ``version`` increases on each save and is used to detect
    conflicting writers.
    """
    user_id: str
    current_performance_score: float = 0.5
    metrics: DDAMetrics = field(default_factory=DDAMetrics)
    adaptation_sensitivity: float = 0.8
    min_difficulty: DifficultyLevel = DifficultyLevel.EASY
    max_difficulty: DifficultyLevel = DifficultyLevel.HARD
    adjustment_history: List[DDAdjustment] = field(default_factory=list)
    last_adjustment_at: datetime.datetime = EPOCH
    thresholds: DDAThresholds = field(default_factory=DDAThresholds)
    version: int = 0


@dataclass
class DDAInsights:
    current_performance_score: float
    recommended_difficulty: DifficultyLevel
    recent_adjustments: List[DDAdjustment]
    strengths: List[str]
    improvement_areas: List[str]
