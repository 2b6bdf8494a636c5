"""
Tests for the shared logging, error, Redis client and serialization helpers.
"""

import json
import logging
import datetime
from typing import Tuple
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from piucane.common import redis as redis_module
from piucane.common.config import RedisConfig
from piucane.common.exceptions import (
    DuplicateError, InvalidInputError, RewardExpiredError, StorageError
)
from piucane.common.logger import (
    JsonFormatter, LoggerAdapter, anonymize_user_id, for_user, log_execution_time
)
from piucane.common.serialization import deserialize, serialize
from piucane.gamification.levels import LevelTable
from piucane.gamification.models import DDAState, DifficultyLevel, Level, LevelReward


def test_anonymize_user_id_is_stable_and_opaque():
    anonymized = anonymize_user_id("mario.rossi@example.com")
    assert anonymized == anonymize_user_id("mario.rossi@example.com")
    assert anonymized.startswith("user_")
    assert "mario" not in anonymized
    assert anonymized != anonymize_user_id("luigi@example.com")


def test_json_formatter_merges_event_data():
    record = logging.LogRecord("piucane.test", logging.INFO, __file__, 1, "awarded", None, None)
    record.data = {"event": "xp_awarded", "xp_amount": 100}

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "awarded"
    assert payload["event"] == "xp_awarded"
    assert payload["xp_amount"] == 100


def test_logger_adapter_context():
    adapter = LoggerAdapter(logging.getLogger("piucane.test"), {"user": "user_abc"})
    child = adapter.with_context(mission="m1")

    _, kwargs = child.process("message", {})
    assert kwargs["extra"]["data"] == {"user": "user_abc", "mission": "m1"}


def test_serialize_rejects_unknown_objects():
    with pytest.raises(TypeError):
        serialize(object())


def test_dda_state_survives_json():
    state = DDAState(
        user_id="user-1",
        max_difficulty=DifficultyLevel.MEDIUM,
        last_adjustment_at=datetime.datetime(2024, 1, 10, 10, 0),
        version=4
    )
    assert DDAState.from_json(state.to_json()) == state


def test_level_rewards_keep_their_variant():
    level = LevelTable().get(10)
    data = serialize(level.rewards)
    assert deserialize(data, Tuple[LevelReward, ...]) == level.rewards
    assert Level.from_dict(level.to_dict()) == level


def test_for_user_tags_records_with_anonymized_id():
    adapter = for_user(logging.getLogger("piucane.test"), "user-1")

    _, kwargs = adapter.process("message", {"extra": {"data": {"xp": 10}}})
    assert kwargs["extra"]["data"] == {"user": anonymize_user_id("user-1"), "xp": 10}


@pytest.mark.asyncio
async def test_log_execution_time_reraises_and_logs_failure():
    logger = MagicMock()

    @log_execution_time(logger)
    async def failing():
        raise DuplicateError("XP award", "mission:m1")

    with pytest.raises(DuplicateError):
        await failing()
    logger.warning.assert_called_once()
    assert "DuplicateError" in logger.warning.call_args[0][0]


@pytest.mark.asyncio
async def test_log_execution_time_returns_result():
    logger = MagicMock()

    @log_execution_time(logger)
    async def succeeding(value):
        return value * 2

    assert await succeeding(21) == 42
    logger.debug.assert_called_once()


def test_errors_expose_structured_details():
    error = InvalidInputError("amount must be positive", "amount", -5)
    assert error.to_dict() == {
        "code": "invalid_input",
        "message": "amount must be positive",
        "details": {"errors": {"amount": "-5"}},
    }

    expired = RewardExpiredError("reward-1")
    assert expired.state == "expired"
    assert expired.to_dict()["code"] == "reward_expired"
    assert expired.details["resource_id"] == "reward-1"


def test_storage_error_records_cause():
    error = StorageError("hincrby failed", ConnectionError("down"))
    assert error.message.startswith("Storage error:")
    assert error.details == {"cause": "ConnectionError"}


@pytest.mark.asyncio
async def test_redis_client_is_shared_until_reset():
    client = MagicMock()
    client.aclose = AsyncMock()
    redis_config = RedisConfig(host="cache", port=6380, db=2)

    with patch.object(redis_module.AsyncRedis, "from_url", return_value=client) as from_url:
        await redis_module.reset_redis_client()
        assert redis_module.get_redis_client(redis_config) is client
        assert redis_module.get_redis_client() is client
        from_url.assert_called_once_with(
            "redis://cache:6380/2", socket_connect_timeout=10, decode_responses=True
        )

        await redis_module.reset_redis_client()
        client.aclose.assert_awaited_once()
