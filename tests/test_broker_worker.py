import time

import pytest

from heavytask.models import TaskEnvelope
from heavytask.task_queue import broker as broker_module
from heavytask.task_queue.broker import RedisTaskBroker
from heavytask.task_queue.redis_keys import BrokerKeys
from heavytask.tasks import ACTION_LOG_KEY, UserActionTask
from heavytask.worker.consumer import TaskConsumer
from heavytask.worker.worker import Worker


@pytest.fixture
def broker(redis_client):
    return RedisTaskBroker(redis_client)


def test_deliveries_leave_in_submission_order(broker):
    for i in range(3):
        broker.submit(TaskEnvelope(task_type="Demo", payload={"i": i}))

    bodies = [TaskEnvelope.from_json(broker.dequeue(timeout=0).body) for _ in range(3)]

    assert [b.payload["i"] for b in bodies] == [0, 1, 2]
    assert broker.dequeue(timeout=0) is None


def test_ack_clears_processing(broker):
    broker.submit(b'{"task_type": "Demo"}')
    delivery = broker.dequeue(timeout=0)

    assert broker.stats() == {"pending": 0, "processing": 1, "failed": 0}
    broker.ack(delivery)
    assert broker.stats() == {"pending": 0, "processing": 0, "failed": 0}


def test_stale_delivery_is_requeued_ahead_of_newer_ones(broker):
    broker.submit("first")
    broker.dequeue(timeout=0)  # worker dies holding it
    broker.submit("second")

    time.sleep(0.05)
    assert broker.requeue_stale(timeout=0.01) == 1

    redelivered = broker.dequeue(timeout=0)
    assert redelivered.body == "first"
    assert redelivered.attempts == 1


def test_fresh_delivery_is_not_requeued(broker):
    broker.submit("busy")
    broker.dequeue(timeout=0)

    assert broker.requeue_stale(timeout=60) == 0


def test_delivery_without_start_time_is_not_requeued_at_once(broker, redis_client):
    broker.submit("in-flight")
    # A worker that has done its LMOVE but not yet recorded the start time
    redis_client.lmove(BrokerKeys.PENDING.value, BrokerKeys.PROCESSING.value, "RIGHT", "LEFT")

    assert broker.requeue_stale(timeout=0.01) == 0
    assert broker.stats()["processing"] == 1

    time.sleep(0.05)
    assert broker.requeue_stale(timeout=0.01) == 1
    assert broker.dequeue(timeout=0).body == "in-flight"


def test_delivery_fails_after_max_attempts(broker, redis_client):
    broker.submit("doomed")
    for _ in range(broker_module.MAX_ATTEMPTS):
        broker.dequeue(timeout=0)
        time.sleep(0.02)
        broker.requeue_stale(timeout=0.01)

    assert broker.stats()["failed"] == 1
    assert redis_client.llen(BrokerKeys.PENDING.value) == 0


def test_worker_runs_user_tasks_in_submission_order(broker, registry, coordinator, redis_client):
    # Scenario: three actions by one user submitted back to back
    for index in range(3):
        broker.submit(UserActionTask.create("u1", index, "click"))

    worker = Worker(
        broker,
        TaskConsumer(registry, coordinator),
        poll_interval=0.01,
        install_signal_handlers=False,
    )
    worker.start(timeout=5, max_messages=3)

    log = redis_client.get(ACTION_LOG_KEY).decode()
    assert log == "user_index : 0\nuser_index : 1\nuser_index : 2\n"
    assert worker.processed == 3
    assert broker.stats() == {"pending": 0, "processing": 0, "failed": 0}
    assert not coordinator.is_occupied("u1")


def test_worker_acks_rejected_deliveries(broker, registry, coordinator):
    broker.submit(b"not an envelope")

    worker = Worker(
        broker,
        TaskConsumer(registry, coordinator),
        poll_interval=0.01,
        install_signal_handlers=False,
    )
    worker.start(timeout=5, max_messages=1)

    assert broker.stats()["processing"] == 0


def test_worker_stops_on_timeout(broker, registry, coordinator):
    worker = Worker(
        broker,
        TaskConsumer(registry, coordinator),
        poll_interval=0.01,
        install_signal_handlers=False,
    )
    started = time.time()
    worker.start(timeout=0.2)

    assert time.time() - started < 2
    assert worker.processed == 0


def test_idle_worker_waits_only_inside_dequeue(registry, coordinator, monkeypatch):
    sleeps = []
    monkeypatch.setattr("heavytask.worker.worker.time.sleep", sleeps.append)

    class EmptyBroker:
        def __init__(self):
            self.timeouts = []

        def dequeue(self, timeout):
            self.timeouts.append(timeout)
            if len(self.timeouts) == 3:
                worker.stop()
            return None

    empty = EmptyBroker()
    worker = Worker(
        empty,
        TaskConsumer(registry, coordinator),
        poll_interval=0.25,
        install_signal_handlers=False,
    )
    worker.start()

    assert empty.timeouts == [0.25, 0.25, 0.25]
    assert sleeps == []
