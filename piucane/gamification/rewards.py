"""
Reward Ledger

Stores earned rewards and drives their lifecycle:
pending -> claimed on user action, pending -> expired once past expiry.
Discount rewards receive a unique code when they are awarded.
"""

import secrets
import datetime
from typing import List, Optional

from piucane.common.exceptions import InvalidStateError, NotFoundError, RewardExpiredError
from piucane.common.logger import app_logger, anonymize_user_id
from piucane.gamification.repository import GamificationRepository
from piucane.gamification.models import EarnedReward, RewardStatus, RewardType

# Set up module logger
logger = app_logger.getChild("gamification.rewards")

DISCOUNT_VALIDITY = datetime.timedelta(days=30)


def generate_discount_code(user_id: str) -> str:
    """Code of the form PC<user suffix><8 random hex digits>."""
    user_suffix = "".join(c for c in user_id if c.isalnum())[-4:].upper()
    return f"PC{user_suffix}{secrets.token_hex(4).upper()}"


class RewardLedger:
    """Reward storage and claim/expiry transitions for a user."""

    def __init__(self, repository: GamificationRepository):
        self.repository = repository

    async def award_rewards(
        self,
        user_id: str,
        rewards: List[EarnedReward],
        now: Optional[datetime.datetime] = None
    ) -> List[EarnedReward]:
        """
        Store newly earned rewards.

        Args:
            user_id: User receiving the rewards
            rewards: Rewards to store, typically level-up rewards
            now: Reference time for default discount expiry

        Returns:
            The stored rewards, with discount codes filled in
        """
        if not rewards:
            return []

        now = now or datetime.datetime.now()
        for reward in rewards:
            if reward.type is RewardType.DISCOUNT and reward.code is None:
                reward.code = generate_discount_code(user_id)
                if reward.expires_at is None:
                    reward.expires_at = now + DISCOUNT_VALIDITY

        await self.repository.add_rewards(user_id, rewards)

        for reward in rewards:
            logger.info(
                f"Reward awarded to {anonymize_user_id(user_id)}: {reward.title} ({reward.type.value})"
            )
        return rewards

    async def claim_reward(
        self,
        user_id: str,
        reward_id: str,
        now: Optional[datetime.datetime] = None
    ) -> EarnedReward:
        """
        Claim a pending reward.

        Raises:
            NotFoundError: If the user has no such reward
            InvalidStateError: If the reward is not pending
            RewardExpiredError: If the reward is past its expiry; it is
                marked expired before raising
        """
        now = now or datetime.datetime.now()

        async with self.repository.lock(user_id):
            reward = await self._get_reward(user_id, reward_id)

            if reward.status is not RewardStatus.PENDING:
                raise InvalidStateError("Reward", reward_id, reward.status.value)

            if reward.is_past_expiry(now):
                reward.status = RewardStatus.EXPIRED
                await self.repository.save_reward(user_id, reward)
                raise RewardExpiredError(reward_id)

            reward.status = RewardStatus.CLAIMED
            reward.claimed_at = now
            await self.repository.save_reward(user_id, reward)

        logger.info(f"Reward claimed by {anonymize_user_id(user_id)}: {reward.title}")
        return reward

    async def expire_rewards(
        self,
        user_id: str,
        now: Optional[datetime.datetime] = None
    ) -> List[EarnedReward]:
        """Mark every pending reward past its expiry as expired; returns those rewards."""
        now = now or datetime.datetime.now()
        expired = []

        async with self.repository.lock(user_id):
            for reward in await self.repository.get_rewards(user_id):
                if reward.status is RewardStatus.PENDING and reward.is_past_expiry(now):
                    reward.status = RewardStatus.EXPIRED
                    await self.repository.save_reward(user_id, reward)
                    expired.append(reward)

        if expired:
            logger.info(f"Expired {len(expired)} rewards for {anonymize_user_id(user_id)}")
        return expired

    async def get_pending_rewards(
        self,
        user_id: str,
        now: Optional[datetime.datetime] = None
    ) -> List[EarnedReward]:
        now = now or datetime.datetime.now()
        return [
            reward for reward in await self.repository.get_rewards(user_id)
            if reward.status is RewardStatus.PENDING and not reward.is_past_expiry(now)
        ]

    async def get_claimed_rewards(self, user_id: str, limit: int = 10) -> List[EarnedReward]:
        """Claimed rewards, most recently claimed first."""
        claimed = [
            reward for reward in await self.repository.get_rewards(user_id)
            if reward.status is RewardStatus.CLAIMED
        ]
        claimed.sort(key=lambda r: r.claimed_at or r.earned_at, reverse=True)
        return claimed[:limit]

    async def _get_reward(self, user_id: str, reward_id: str) -> EarnedReward:
        for reward in await self.repository.get_rewards(user_id):
            if reward.id == reward_id:
                return reward
        raise NotFoundError("Reward", reward_id)
