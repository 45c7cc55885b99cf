import json

import fakeredis
import pytest
from typer.testing import CliRunner

from heavytask import cli
from heavytask.config import Settings
from heavytask.task_queue.broker import RedisTaskBroker
from heavytask.task_queue.coordinator import KeyCoordinator
from heavytask.tasks import ACTION_LOG_KEY

runner = CliRunner()


@pytest.fixture
def fake_redis(monkeypatch):
    client = fakeredis.FakeRedis()
    monkeypatch.setattr(cli, "get_redis", lambda settings: client)
    monkeypatch.setattr(cli, "get_settings", lambda: Settings(_env_file=None, poll_interval=0.01))
    # Worker installs signal handlers; keep pytest's own
    monkeypatch.setattr("heavytask.worker.worker.signal.signal", lambda *args: None)
    return client


def test_submit_then_worker_runs_task(fake_redis):
    result = runner.invoke(
        cli.app,
        ["submit", "UserActionTask", "--key", "u1", "--payload", json.dumps({"user_index": 7})],
    )
    assert result.exit_code == 0, result.output
    assert RedisTaskBroker(fake_redis).stats()["pending"] == 1

    result = runner.invoke(cli.app, ["worker", "--max-messages", "1", "--timeout", "5"])

    assert result.exit_code == 0, result.output
    assert fake_redis.get(ACTION_LOG_KEY) == b"user_index : 7\n"


def test_submit_rejects_unknown_type(fake_redis):
    result = runner.invoke(cli.app, ["submit", "Nope"])

    assert result.exit_code == 1
    assert RedisTaskBroker(fake_redis).stats()["pending"] == 0


def test_submit_rejects_bad_payload(fake_redis):
    result = runner.invoke(cli.app, ["submit", "UserActionTask", "--key", "u1", "--payload", "{"])
    assert result.exit_code == 1


def test_submit_rejects_unknown_transport(fake_redis):
    result = runner.invoke(
        cli.app,
        ["submit", "RedisNoteTask", "--payload", '{"redis_key": "n"}', "--transport", "carrier-pigeon"],
    )
    assert result.exit_code == 2


def test_status_and_occupied(fake_redis):
    coordinator = KeyCoordinator(fake_redis, owner_id="worker-9")
    coordinator.try_acquire("u1")
    coordinator.enqueue("u1", "x")

    status = runner.invoke(cli.app, ["status", "u1"])
    listing = runner.invoke(cli.app, ["occupied"])

    assert status.exit_code == 0
    assert "worker-9" in status.output
    assert "u1" in listing.output


def test_force_release(fake_redis):
    coordinator = KeyCoordinator(fake_redis)
    coordinator.try_acquire("stuck")
    coordinator.enqueue("stuck", "x")

    aborted = runner.invoke(cli.app, ["force-release", "stuck"], input="n\n")
    assert aborted.exit_code != 0
    assert coordinator.is_occupied("stuck")

    result = runner.invoke(cli.app, ["force-release", "stuck", "--yes"])
    assert result.exit_code == 0
    assert not coordinator.is_occupied("stuck")
    assert coordinator.queue_size("stuck") == 0


def test_types_lists_builtin_kinds(fake_redis):
    result = runner.invoke(cli.app, ["types"])

    assert "UserActionTask" in result.output
    assert "RedisNoteTask" in result.output
