"""
Gamification Repository

This module provides data persistence for the gamification engine:
1. Profiles, with an atomic increment for total XP
2. Mission progress history
3. Earned rewards
4. Dynamic difficulty adjustment state
5. Award idempotency keys and temporary XP multipliers

Two implementations are provided: an in-memory store for tests and
single-process deployments, and a Redis store for shared deployments.
"""

import abc
import copy
import json
import asyncio
import datetime
import functools
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from redis.asyncio import Redis as AsyncRedis
from redis.exceptions import LockError, RedisError, WatchError

from piucane.common.config import AppConfig, StorageConfig, get_config
from piucane.common.exceptions import (
    ConcurrencyError, ConfigurationError, InvalidInputError, NotFoundError, StorageError
)
from piucane.common.logger import app_logger, anonymize_user_id
from piucane.common.redis import get_redis_client
from piucane.common.serialization import serialize
from piucane.gamification.models import (
    GamificationProfile, MissionProgress, EarnedReward, DDAState
)

# Set up module logger
logger = app_logger.getChild("gamification.repository")

# Fields owned by increment_total_xp; never written through update_profile_fields
_INCREMENT_ONLY_FIELDS = frozenset({"total_xp", "user_id"})


class GamificationRepository(abc.ABC):
    """
    Storage interface used by the gamification service and DDA engine.

    Implementations must make ``increment_total_xp`` atomic, must reject a
    DDA state save whose ``version`` does not match the stored record, and
    must provide a per-user mutual exclusion through ``lock``.
    """

    # Profiles

    @abc.abstractmethod
    async def get_profile(self, user_id: str) -> Optional[GamificationProfile]:
        """Return the stored profile or None."""

    @abc.abstractmethod
    async def save_profile(self, profile: GamificationProfile) -> None:
        """Create or replace a profile."""

    @abc.abstractmethod
    async def increment_total_xp(self, user_id: str, delta: int) -> int:
        """
        Atomically add ``delta`` to a profile's total XP.

        Returns:
            The total XP after the increment

        Raises:
            NotFoundError: If the profile does not exist
        """

    @abc.abstractmethod
    async def update_profile_fields(self, user_id: str, fields: Dict[str, Any]) -> None:
        """
        Set profile fields other than ``total_xp``.

        Raises:
            InvalidInputError: If a field is unknown or owned by ``increment_total_xp``
            NotFoundError: If the profile does not exist
        """

    # Mission history

    @abc.abstractmethod
    async def get_recent_mission_progress(self, user_id: str, limit: int) -> List[MissionProgress]:
        """Most recently active mission progress records, newest first."""

    @abc.abstractmethod
    async def record_mission_progress(self, progress: MissionProgress) -> None:
        """Create or replace the progress record for a user's mission."""

    # Rewards

    @abc.abstractmethod
    async def add_rewards(self, user_id: str, rewards: List[EarnedReward]) -> None:
        """Store newly earned rewards."""

    @abc.abstractmethod
    async def get_rewards(self, user_id: str) -> List[EarnedReward]:
        """All rewards of a user, oldest first."""

    @abc.abstractmethod
    async def save_reward(self, user_id: str, reward: EarnedReward) -> None:
        """Replace a stored reward."""

    # DDA state

    @abc.abstractmethod
    async def get_dda_state(self, user_id: str) -> Optional[DDAState]:
        """Return the stored DDA state or None."""

    @abc.abstractmethod
    async def save_dda_state(self, state: DDAState) -> DDAState:
        """
        Persist a DDA state read at ``state.version``.

        Returns:
            The state with its version incremented

        Raises:
            ConcurrencyError: If the stored version moved on since the read
        """

    # Idempotency and temporary multipliers

    @abc.abstractmethod
    async def claim_award_key(self, user_id: str, award_key: str) -> bool:
        """Record an award key; False if it was already recorded."""

    @abc.abstractmethod
    async def release_award_key(self, user_id: str, award_key: str) -> None:
        """Forget an award key so the award can be retried."""

    @abc.abstractmethod
    async def set_temporary_multiplier(
        self,
        user_id: str,
        multiplier: float,
        duration: datetime.timedelta,
        reason: str,
        now: Optional[datetime.datetime] = None
    ) -> None:
        """Apply an XP multiplier to a user for ``duration``."""

    @abc.abstractmethod
    async def get_temporary_multiplier(
        self,
        user_id: str,
        now: Optional[datetime.datetime] = None
    ) -> float:
        """Active temporary multiplier, 1.0 when none."""

    # Locking

    @abc.abstractmethod
    def lock(self, user_id: str):
        """
        Async context manager holding a per-user lock.

        Raises:
            ConcurrencyError: If the lock cannot be acquired in time
        """


class MemoryGamificationRepository(GamificationRepository):
    """
    In-process repository.

    Stored objects are copied on the way in and out so callers never share
    mutable state with the store. Per-user locks live only while some task
    holds or waits for them.
    """

    def __init__(self, storage_config: Optional[StorageConfig] = None):
        self.config = storage_config or get_config().storage
        self._profiles: Dict[str, GamificationProfile] = {}
        self._missions: Dict[str, Dict[str, MissionProgress]] = {}
        self._rewards: Dict[str, Dict[str, EarnedReward]] = {}
        self._dda_states: Dict[str, DDAState] = {}
        self._award_keys: Dict[str, set] = {}
        self._multipliers: Dict[str, Tuple[float, datetime.datetime, str]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    async def get_profile(self, user_id: str) -> Optional[GamificationProfile]:
        profile = self._profiles.get(user_id)
        return copy.deepcopy(profile) if profile else None

    async def save_profile(self, profile: GamificationProfile) -> None:
        self._profiles[profile.user_id] = copy.deepcopy(profile)

    async def increment_total_xp(self, user_id: str, delta: int) -> int:
        profile = self._profiles.get(user_id)
        if profile is None:
            raise NotFoundError("GamificationProfile", user_id)
        profile.total_xp += delta
        return profile.total_xp

    async def update_profile_fields(self, user_id: str, fields: Dict[str, Any]) -> None:
        profile = self._profiles.get(user_id)
        if profile is None:
            raise NotFoundError("GamificationProfile", user_id)
        for name, value in fields.items():
            if name in _INCREMENT_ONLY_FIELDS:
                raise InvalidInputError(f"Field {name} cannot be set directly", name, value)
            if not hasattr(profile, name):
                raise InvalidInputError(f"Unknown profile field: {name}", name, value)
            setattr(profile, name, copy.deepcopy(value))

    async def get_recent_mission_progress(self, user_id: str, limit: int) -> List[MissionProgress]:
        records = sorted(
            self._missions.get(user_id, {}).values(),
            key=lambda p: p.last_active_at,
            reverse=True
        )
        return [copy.deepcopy(p) for p in records[:limit]]

    async def record_mission_progress(self, progress: MissionProgress) -> None:
        missions = self._missions.setdefault(progress.user_id, {})
        missions[progress.mission_id] = copy.deepcopy(progress)

        retention = self.config.mission_history_retention
        if len(missions) > retention:
            by_age = sorted(missions.values(), key=lambda p: p.last_active_at)
            for stale in by_age[:len(missions) - retention]:
                del missions[stale.mission_id]

    async def add_rewards(self, user_id: str, rewards: List[EarnedReward]) -> None:
        stored = self._rewards.setdefault(user_id, {})
        for reward in rewards:
            stored[reward.id] = copy.deepcopy(reward)

    async def get_rewards(self, user_id: str) -> List[EarnedReward]:
        rewards = sorted(self._rewards.get(user_id, {}).values(), key=lambda r: r.earned_at)
        return [copy.deepcopy(r) for r in rewards]

    async def save_reward(self, user_id: str, reward: EarnedReward) -> None:
        stored = self._rewards.get(user_id, {})
        if reward.id not in stored:
            raise NotFoundError("Reward", reward.id)
        stored[reward.id] = copy.deepcopy(reward)

    async def get_dda_state(self, user_id: str) -> Optional[DDAState]:
        state = self._dda_states.get(user_id)
        return copy.deepcopy(state) if state else None

    async def save_dda_state(self, state: DDAState) -> DDAState:
        current = self._dda_states.get(state.user_id)
        stored_version = current.version if current else 0
        if stored_version != state.version:
            raise ConcurrencyError(
                "DDAState", state.user_id,
                f"expected version {state.version}, found {stored_version}"
            )

        saved = copy.deepcopy(state)
        saved.version += 1
        self._dda_states[state.user_id] = saved
        return copy.deepcopy(saved)

    async def claim_award_key(self, user_id: str, award_key: str) -> bool:
        keys = self._award_keys.setdefault(user_id, set())
        if award_key in keys:
            return False
        keys.add(award_key)
        return True

    async def release_award_key(self, user_id: str, award_key: str) -> None:
        self._award_keys.get(user_id, set()).discard(award_key)

    async def set_temporary_multiplier(
        self,
        user_id: str,
        multiplier: float,
        duration: datetime.timedelta,
        reason: str,
        now: Optional[datetime.datetime] = None
    ) -> None:
        now = now or datetime.datetime.now()
        self._multipliers[user_id] = (multiplier, now + duration, reason)

    async def get_temporary_multiplier(
        self,
        user_id: str,
        now: Optional[datetime.datetime] = None
    ) -> float:
        entry = self._multipliers.get(user_id)
        if entry is None:
            return 1.0

        multiplier, expires_at, _ = entry
        if expires_at <= (now or datetime.datetime.now()):
            del self._multipliers[user_id]
            return 1.0
        return multiplier

    @asynccontextmanager
    async def lock(self, user_id: str) -> AsyncIterator[None]:
        user_lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            try:
                await asyncio.wait_for(user_lock.acquire(), timeout=self.config.lock_timeout)
            except asyncio.TimeoutError:
                raise ConcurrencyError("User", user_id, "lock timeout")
            try:
                yield
            finally:
                user_lock.release()
        finally:
            self._lock_users[user_id] -= 1
            # Drop the lock once no task holds or waits for it
            if not self._lock_users[user_id]:
                del self._lock_users[user_id]
                del self._locks[user_id]


def redis_operation(func):
    """Translate Redis client failures into StorageError."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except RedisError as e:
            logger.error(f"Redis operation {func.__name__} failed: {e}")
            raise StorageError(f"{func.__name__} failed: {e}", e)

    return wrapper


class RedisGamificationRepository(GamificationRepository):
    """
    Redis-backed repository.

    Layout, all keys under the configured prefix:
        profile:{user}        hash, ``total_xp`` counter plus a ``data`` JSON document
        missions:{user}       sorted set of mission ids scored by last activity
        mission_docs:{user}   hash of mission id to progress JSON
        rewards:{user}        hash of reward id to reward JSON
        dda:{user}            DDA state JSON
        award:{user}:{key}    idempotency marker set with NX
        multiplier:{user}     temporary multiplier JSON with a TTL
        lock:{user}           Redis lock
    """

    def __init__(
        self,
        redis_client: Optional[AsyncRedis] = None,
        storage_config: Optional[StorageConfig] = None
    ):
        """
        Initialize the Redis repository.

        Args:
            redis_client: Redis client (defaults to the shared client); it must
                be created with ``decode_responses=True``
            storage_config: Storage configuration (defaults to the app config)

        Raises:
            ConfigurationError: If the client returns bytes instead of strings
        """
        self.redis = redis_client or get_redis_client()
        self.config = storage_config or get_config().storage

        pool = getattr(self.redis, "connection_pool", None)
        connection_kwargs = getattr(pool, "connection_kwargs", None)
        if isinstance(connection_kwargs, dict) and not connection_kwargs.get("decode_responses"):
            raise ConfigurationError(
                "Redis client must be created with decode_responses=True", "redis.decode_responses"
            )

    def _key(self, kind: str, *parts: str) -> str:
        return self.config.key_prefix + ":".join((kind,) + parts)

    @staticmethod
    def _dumps(data: Dict[str, Any]) -> str:
        return json.dumps(serialize(data), ensure_ascii=False)

    # Profiles

    @redis_operation
    async def get_profile(self, user_id: str) -> Optional[GamificationProfile]:
        stored = await self.redis.hgetall(self._key("profile", user_id))
        if not stored:
            return None

        data = json.loads(stored["data"])
        data["total_xp"] = int(stored.get("total_xp", 0))
        return GamificationProfile.from_dict(data)

    @redis_operation
    async def save_profile(self, profile: GamificationProfile) -> None:
        data = profile.to_dict()
        await self.redis.hset(
            self._key("profile", profile.user_id),
            mapping={"data": self._dumps(data), "total_xp": profile.total_xp}
        )

    @redis_operation
    async def increment_total_xp(self, user_id: str, delta: int) -> int:
        key = self._key("profile", user_id)
        if not await self.redis.exists(key):
            raise NotFoundError("GamificationProfile", user_id)
        return int(await self.redis.hincrby(key, "total_xp", delta))

    @redis_operation
    async def update_profile_fields(self, user_id: str, fields: Dict[str, Any]) -> None:
        for name, value in fields.items():
            if name in _INCREMENT_ONLY_FIELDS:
                raise InvalidInputError(f"Field {name} cannot be set directly", name, value)

        key = self._key("profile", user_id)
        raw = await self.redis.hget(key, "data")
        if raw is None:
            raise NotFoundError("GamificationProfile", user_id)

        data = json.loads(raw)
        data.update(serialize(fields))
        await self.redis.hset(key, "data", json.dumps(data, ensure_ascii=False))

    # Mission history

    @redis_operation
    async def get_recent_mission_progress(self, user_id: str, limit: int) -> List[MissionProgress]:
        if limit <= 0:
            return []

        mission_ids = await self.redis.zrevrange(self._key("missions", user_id), 0, limit - 1)
        if not mission_ids:
            return []

        docs = await self.redis.hmget(self._key("mission_docs", user_id), mission_ids)
        return [MissionProgress.from_json(doc) for doc in docs if doc is not None]

    @redis_operation
    async def record_mission_progress(self, progress: MissionProgress) -> None:
        index_key = self._key("missions", progress.user_id)
        docs_key = self._key("mission_docs", progress.user_id)

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zadd(index_key, {progress.mission_id: progress.last_active_at.timestamp()})
            pipe.hset(docs_key, progress.mission_id, progress.to_json())
            await pipe.execute()

        retention = self.config.mission_history_retention
        count = await self.redis.zcard(index_key)
        if count > retention:
            stale = await self.redis.zrange(index_key, 0, count - retention - 1)
            if stale:
                await self.redis.zrem(index_key, *stale)
                await self.redis.hdel(docs_key, *stale)

    # Rewards

    @redis_operation
    async def add_rewards(self, user_id: str, rewards: List[EarnedReward]) -> None:
        if not rewards:
            return
        await self.redis.hset(
            self._key("rewards", user_id),
            mapping={reward.id: reward.to_json() for reward in rewards}
        )

    @redis_operation
    async def get_rewards(self, user_id: str) -> List[EarnedReward]:
        docs = await self.redis.hvals(self._key("rewards", user_id))
        rewards = [EarnedReward.from_json(doc) for doc in docs]
        return sorted(rewards, key=lambda r: r.earned_at)

    @redis_operation
    async def save_reward(self, user_id: str, reward: EarnedReward) -> None:
        key = self._key("rewards", user_id)
        if not await self.redis.hexists(key, reward.id):
            raise NotFoundError("Reward", reward.id)
        await self.redis.hset(key, reward.id, reward.to_json())

    # DDA state

    @redis_operation
    async def get_dda_state(self, user_id: str) -> Optional[DDAState]:
        raw = await self.redis.get(self._key("dda", user_id))
        return DDAState.from_json(raw) if raw is not None else None

    @redis_operation
    async def save_dda_state(self, state: DDAState) -> DDAState:
        key = self._key("dda", state.user_id)
        saved = copy.deepcopy(state)
        saved.version += 1

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                raw = await pipe.get(key)
                stored_version = json.loads(raw)["version"] if raw is not None else 0
                if stored_version != state.version:
                    raise ConcurrencyError(
                        "DDAState", state.user_id,
                        f"expected version {state.version}, found {stored_version}"
                    )
                pipe.multi()
                pipe.set(key, saved.to_json())
                await pipe.execute()
        except WatchError as e:
            raise ConcurrencyError("DDAState", state.user_id, f"concurrent write: {e}")

        return saved

    # Idempotency and temporary multipliers

    @redis_operation
    async def claim_award_key(self, user_id: str, award_key: str) -> bool:
        return bool(await self.redis.set(self._key("award", user_id, award_key), "1", nx=True))

    @redis_operation
    async def release_award_key(self, user_id: str, award_key: str) -> None:
        await self.redis.delete(self._key("award", user_id, award_key))

    @redis_operation
    async def set_temporary_multiplier(
        self,
        user_id: str,
        multiplier: float,
        duration: datetime.timedelta,
        reason: str,
        now: Optional[datetime.datetime] = None
    ) -> None:
        ttl = max(1, int(duration.total_seconds()))
        await self.redis.set(
            self._key("multiplier", user_id),
            json.dumps({"multiplier": multiplier, "reason": reason}, ensure_ascii=False),
            ex=ttl
        )

    @redis_operation
    async def get_temporary_multiplier(
        self,
        user_id: str,
        now: Optional[datetime.datetime] = None
    ) -> float:
        raw = await self.redis.get(self._key("multiplier", user_id))
        if raw is None:
            return 1.0
        return float(json.loads(raw)["multiplier"])

    # Locking

    @asynccontextmanager
    async def lock(self, user_id: str) -> AsyncIterator[None]:
        user_lock = self.redis.lock(
            self._key("lock", user_id),
            timeout=self.config.lock_timeout * 2,
            blocking_timeout=self.config.lock_timeout
        )
        try:
            acquired = await user_lock.acquire()
        except RedisError as e:
            raise StorageError(f"lock failed: {e}", e)
        if not acquired:
            raise ConcurrencyError("User", user_id, "lock timeout")

        try:
            yield
        finally:
            try:
                await user_lock.release()
            except LockError as e:
                logger.warning(f"Lock for {anonymize_user_id(user_id)} expired before release: {e}")


def create_repository(
    app_config: Optional[AppConfig] = None,
    redis_client: Optional[AsyncRedis] = None
) -> GamificationRepository:
    """
    Create the repository selected by ``storage.backend``.

    Args:
        app_config: Application configuration (defaults to the loaded config)
        redis_client: Redis client override for the Redis backend

    Returns:
        Repository instance
    """
    app_config = app_config or get_config()
    backend = app_config.storage.backend

    if backend == "redis":
        logger.info("Using Redis gamification repository")
        return RedisGamificationRepository(
            redis_client or get_redis_client(app_config.redis),
            app_config.storage
        )

    logger.info("Using in-memory gamification repository")
    return MemoryGamificationRepository(app_config.storage)
