import json
import time
import uuid
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Union

from redis import Redis

from heavytask.models import TaskEnvelope
from .redis_keys import BrokerKeys

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
POLL_INTERVAL = 0.1


@dataclass
class Delivery:
    """One message handed to a worker. raw is the exact stored record."""

    id: str
    body: str
    attempts: int
    raw: Union[bytes, str]


class RedisTaskBroker:
    """
    Redis-list broker transport for local and single-host deployments.

    Design rules:
    - Global FIFO: deliveries leave PENDING in submission order, so per-key
      order matches submission order
    - Envelope body is opaque
    - At-least-once: a delivery stays in PROCESSING until acked, and
      requeue_stale returns it if its worker died
    """

    def __init__(self, redis_client: Redis):
        self.redis = redis_client

    # ------------------------------------------------------------------
    # SUBMIT
    # ------------------------------------------------------------------

    def submit(self, envelope: Union[TaskEnvelope, bytes, str]) -> str:
        """
        Publish an envelope.

        Returns:
            The delivery id.
        """
        if isinstance(envelope, TaskEnvelope):
            body = envelope.to_json()
        elif isinstance(envelope, bytes):
            body = envelope.decode("utf-8")
        else:
            body = envelope

        delivery_id = str(uuid.uuid4())
        self.redis.lpush(BrokerKeys.PENDING.value, _encode(delivery_id, body, 0))
        logger.debug(f"Broker: submitted delivery {delivery_id}")
        return delivery_id

    # ------------------------------------------------------------------
    # DEQUEUE
    # ------------------------------------------------------------------

    def dequeue(self, timeout: float = 5) -> Optional[Delivery]:
        """
        Fetch the oldest delivery, polling until timeout.

        The move PENDING → PROCESSING is a single LMOVE, no delivery is
        lost if the worker crashes right after it.
        """
        deadline = time.time() + timeout

        while True:
            delivery = self._dequeue_once()
            if delivery:
                return delivery
            if time.time() >= deadline:
                return None
            time.sleep(POLL_INTERVAL)

    def _dequeue_once(self) -> Optional[Delivery]:
        raw = self.redis.lmove(
            BrokerKeys.PENDING.value, BrokerKeys.PROCESSING.value, "RIGHT", "LEFT"
        )
        if raw is None:
            return None

        record = json.loads(raw)
        self.redis.hset(BrokerKeys.STARTED.value, record["id"], time.time())
        return Delivery(record["id"], record["body"], record["attempts"], raw)

    # ------------------------------------------------------------------
    # ACKNOWLEDGEMENT
    # ------------------------------------------------------------------

    def ack(self, delivery: Delivery) -> None:
        """
        Mark a delivery as handled.

        The consumer pipeline reports task failures through its own hooks,
        so every delivery it returns from is acked.
        """
        pipe = self.redis.pipeline()
        pipe.lrem(BrokerKeys.PROCESSING.value, 1, delivery.raw)
        pipe.hdel(BrokerKeys.STARTED.value, delivery.id)
        pipe.execute()

    # ------------------------------------------------------------------
    # STALE REQUEUE
    # ------------------------------------------------------------------

    def requeue_stale(self, timeout: float) -> int:
        """
        Return deliveries stuck in PROCESSING longer than timeout.

        A requeued delivery goes to the head of PENDING so it is picked
        up before anything submitted after it.
        """
        moved = 0
        now = time.time()

        for raw in self.redis.lrange(BrokerKeys.PROCESSING.value, 0, -1):
            record = json.loads(raw)
            started = self.redis.hget(BrokerKeys.STARTED.value, record["id"])
            if started is None:
                # Between LMOVE and HSET, or the worker died there. Start the
                # clock now; a later sweep requeues it once it goes stale.
                self.redis.hsetnx(BrokerKeys.STARTED.value, record["id"], now)
                continue
            if now - float(started) <= timeout:
                continue

            attempts = record["attempts"] + 1
            pipe = self.redis.pipeline()
            pipe.lrem(BrokerKeys.PROCESSING.value, 1, raw)
            pipe.hdel(BrokerKeys.STARTED.value, record["id"])
            if attempts < MAX_ATTEMPTS:
                pipe.rpush(
                    BrokerKeys.PENDING.value,
                    _encode(record["id"], record["body"], attempts),
                )
            else:
                record.update(
                    attempts=attempts,
                    error="Timeout: max attempts exceeded",
                    failed_at=now,
                )
                pipe.hset(BrokerKeys.FAILED.value, record["id"], json.dumps(record))
                logger.warning(f"Broker: delivery {record['id']} failed permanently")
            pipe.execute()
            moved += 1

        return moved

    # ------------------------------------------------------------------
    # STATS
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, int]:
        """Return current broker stats."""
        pipe = self.redis.pipeline()
        pipe.llen(BrokerKeys.PENDING.value)
        pipe.llen(BrokerKeys.PROCESSING.value)
        pipe.hlen(BrokerKeys.FAILED.value)

        pending, processing, failed = pipe.execute()

        return {
            "pending": pending,
            "processing": processing,
            "failed": failed,
        }


def _encode(delivery_id: str, body: str, attempts: int) -> str:
    return json.dumps({"id": delivery_id, "body": body, "attempts": attempts})
