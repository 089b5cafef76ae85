"""
Tests for the cross-process training lock

Redis is mocked: the lock is exercised through the registry exactly as the
API and the worker use it.
"""
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from services.prediction_orchestrator import PredictionOrchestrator, TrainingRegistry
from services.risk_classifier import CancellationToken
from services.risk_training_lock import (
    LOCK_TTL_S,
    acquire_training_lock,
    release_training_lock,
    training_lock_held,
)


@pytest.fixture
def redis_client():
    client = MagicMock()
    with patch("services.risk_training_lock.get_redis_client", return_value=client):
        yield client


def test_acquire_sets_expiring_key(redis_client):
    redis_client.set.return_value = True

    assert acquire_training_lock("user-1") is True
    redis_client.set.assert_called_once_with("risk_training_lock:user-1", "1", nx=True, ex=LOCK_TTL_S)


def test_acquire_refused_when_key_exists(redis_client):
    redis_client.set.return_value = None
    assert acquire_training_lock("user-1") is False


def test_release_deletes_key(redis_client):
    release_training_lock("user-1")
    redis_client.delete.assert_called_once_with("risk_training_lock:user-1")


def test_redis_errors_fail_open(redis_client):
    redis_client.set.side_effect = RedisConnectionError("down")
    redis_client.exists.side_effect = RedisConnectionError("down")

    assert acquire_training_lock("user-1") is True
    assert training_lock_held("user-1") is False


def test_no_redis_configured():
    with patch("services.risk_training_lock.get_redis_client", return_value=None):
        assert acquire_training_lock("user-1") is True
        assert training_lock_held("user-1") is False


class TestRegistryWithLock:

    def test_run_in_another_process_is_refused(self, redis_client):
        redis_client.set.return_value = None
        registry = TrainingRegistry()
        user_id = uuid4()

        assert registry.begin(user_id, CancellationToken()) is False
        # Nothing was registered locally, so there is nothing to release
        registry.end(user_id)
        redis_client.delete.assert_not_called()

    def test_lock_released_after_run(self, redis_client):
        redis_client.set.return_value = True
        registry = TrainingRegistry()
        user_id = uuid4()

        assert registry.begin(user_id, CancellationToken()) is True
        registry.end(user_id)

        redis_client.delete.assert_called_once_with(f"risk_training_lock:{user_id}")

    def test_is_training_sees_other_processes(self, redis_client):
        redis_client.exists.return_value = 1
        assert TrainingRegistry().is_training(uuid4()) is True

    def test_train_refused_while_another_process_trains(self, redis_client, db_session, user_data):
        redis_client.set.return_value = None
        engine = PredictionOrchestrator(db_session, uuid4(), share_aggregates=False)

        result = engine.train(user_data)

        assert result["success"] is False
        assert result["error"] == "training_in_progress"
        assert engine.is_ready is False
