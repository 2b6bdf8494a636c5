"""
Tests for the reward ledger.

This module covers:
1. Awarding rewards and discount code generation
2. Claim transitions and their error cases
3. Time-based expiry
"""

import datetime

import pytest

from piucane.common.exceptions import InvalidStateError, NotFoundError, RewardExpiredError
from piucane.gamification.models import (
    EarnedReward, RewardSourceType, RewardStatus, RewardType
)
from piucane.gamification.rewards import DISCOUNT_VALIDITY, generate_discount_code
from piucane.tests.conftest import WEEKDAY_MORNING


def make_reward(reward_type=RewardType.XP, expires_at=None, **kwargs):
    return EarnedReward(
        type=reward_type,
        title="Level 5 Bonus",
        description="Congratulations!",
        value=50,
        source_type=RewardSourceType.LEVEL_UP,
        source_id="5",
        source_name="Cucciolo Curioso",
        earned_at=WEEKDAY_MORNING,
        expires_at=expires_at,
        **kwargs
    )


def test_discount_code_format():
    code = generate_discount_code("user-abcd")
    assert code.startswith("PCABCD")
    assert len(code) == len("PCABCD") + 8
    assert generate_discount_code("user-abcd") != code


@pytest.mark.asyncio
async def test_award_assigns_discount_codes(ledger, repository):
    discount = make_reward(RewardType.DISCOUNT)
    bonus = make_reward(RewardType.XP)

    await ledger.award_rewards("user-1", [discount, bonus], WEEKDAY_MORNING)

    stored = {r.id: r for r in await repository.get_rewards("user-1")}
    assert stored[discount.id].code.startswith("PC")
    assert stored[discount.id].expires_at == WEEKDAY_MORNING + DISCOUNT_VALIDITY
    assert stored[bonus.id].code is None
    assert stored[bonus.id].status is RewardStatus.PENDING


@pytest.mark.asyncio
async def test_claim_pending_reward(ledger):
    reward = make_reward()
    await ledger.award_rewards("user-1", [reward])

    claimed = await ledger.claim_reward("user-1", reward.id, WEEKDAY_MORNING)

    assert claimed.status is RewardStatus.CLAIMED
    assert claimed.claimed_at == WEEKDAY_MORNING
    assert await ledger.get_pending_rewards("user-1", WEEKDAY_MORNING) == []
    assert [r.id for r in await ledger.get_claimed_rewards("user-1")] == [reward.id]


@pytest.mark.asyncio
async def test_claim_twice_is_rejected(ledger):
    reward = make_reward()
    await ledger.award_rewards("user-1", [reward])
    await ledger.claim_reward("user-1", reward.id, WEEKDAY_MORNING)

    with pytest.raises(InvalidStateError):
        await ledger.claim_reward("user-1", reward.id, WEEKDAY_MORNING)


@pytest.mark.asyncio
async def test_claim_expired_reward(ledger, repository):
    reward = make_reward(expires_at=WEEKDAY_MORNING - datetime.timedelta(minutes=1))
    await ledger.award_rewards("user-1", [reward])

    with pytest.raises(RewardExpiredError):
        await ledger.claim_reward("user-1", reward.id, WEEKDAY_MORNING)

    (stored,) = await repository.get_rewards("user-1")
    assert stored.status is RewardStatus.EXPIRED

    with pytest.raises(InvalidStateError):
        await ledger.claim_reward("user-1", reward.id, WEEKDAY_MORNING)


@pytest.mark.asyncio
async def test_claim_unknown_reward(ledger):
    with pytest.raises(NotFoundError):
        await ledger.claim_reward("user-1", "reward_missing", WEEKDAY_MORNING)


@pytest.mark.asyncio
async def test_expire_rewards(ledger):
    fresh = make_reward(expires_at=WEEKDAY_MORNING + datetime.timedelta(days=1))
    stale = make_reward(expires_at=WEEKDAY_MORNING - datetime.timedelta(days=1))
    forever = make_reward()
    await ledger.award_rewards("user-1", [fresh, stale, forever])

    expired = await ledger.expire_rewards("user-1", WEEKDAY_MORNING)

    assert [r.id for r in expired] == [stale.id]
    pending = await ledger.get_pending_rewards("user-1", WEEKDAY_MORNING)
    assert {r.id for r in pending} == {fresh.id, forever.id}


@pytest.mark.asyncio
async def test_claimed_rewards_most_recent_first(ledger):
    rewards = [make_reward() for _ in range(3)]
    await ledger.award_rewards("user-1", rewards)
    for offset, reward in enumerate(rewards):
        await ledger.claim_reward(
            "user-1", reward.id, WEEKDAY_MORNING + datetime.timedelta(minutes=offset)
        )

    claimed = await ledger.get_claimed_rewards("user-1", limit=2)
    assert [r.id for r in claimed] == [rewards[2].id, rewards[1].id]
