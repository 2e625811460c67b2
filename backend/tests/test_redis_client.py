"""
Tests for the Redis progress publisher
"""

import json
from unittest.mock import Mock

from redis.exceptions import ConnectionError as RedisConnectionError

from config import settings
from redis_client import RedisClient


def client_with(mock_redis, enabled=True):
    client = RedisClient(url="redis://localhost:6379/0", enabled=enabled)
    client._client = mock_redis
    return client


def test_publish_status():
    redis = Mock()
    client = client_with(redis)

    assert client.publish_status("job-1", "encoding", outputs=[]) is True

    channel, message = redis.publish.call_args.args
    assert channel == settings.JOB_STATUS_CHANNEL
    assert json.loads(message) == {"job_id": "job-1", "status": "encoding", "outputs": []}


def test_publish_progress():
    redis = Mock()
    client = client_with(redis)

    client.publish_progress("job-1", "encoding", 0, message="Retrying composition (attempt 2 of 4)")

    channel, message = redis.publish.call_args.args
    assert channel == settings.JOB_PROGRESS_CHANNEL
    assert json.loads(message)["progress"] == 0
    assert json.loads(message)["message"] == "Retrying composition (attempt 2 of 4)"


def test_publish_failure_does_not_raise():
    redis = Mock()
    redis.publish.side_effect = RedisConnectionError("connection refused")
    client = client_with(redis)

    assert client.publish_status("job-1", "failed", error="boom") is False


def test_disabled_client_never_connects():
    client = RedisClient(enabled=False)

    assert client.publish_status("job-1", "running") is False
    assert client.ping() is False
    assert client._client is None


def test_close():
    redis = Mock()
    client = client_with(redis)

    client.close()

    redis.close.assert_called_once()
    assert client._client is None
