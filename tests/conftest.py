import fakeredis
import pytest

from heavytask.registry import TaskRegistry
from heavytask.task_queue.coordinator import KeyCoordinator
from heavytask.tasks import register_builtin_tasks


@pytest.fixture
def redis_client():
    client = fakeredis.FakeRedis()
    yield client
    client.flushall()


@pytest.fixture
def coordinator(redis_client):
    return KeyCoordinator(redis_client, ttl_seconds=30, owner_id="test-worker")


@pytest.fixture
def registry(redis_client):
    return register_builtin_tasks(TaskRegistry(), redis_client)
