import logging
import os
import socket
import uuid
from typing import Optional, Set, Union

from redis import Redis
from redis.exceptions import RedisError

from heavytask.errors import CoordinationUnavailable
from .redis_keys import CoordinatorKeys

logger = logging.getLogger(__name__)

OCCUPATION_TTL_SECONDS = 300


def default_owner_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class KeyCoordinator:
    """
    Redis-backed per-key mutex with a FIFO wait queue.

    Design rules:
    - At most one task per key is in flight across all consumers
    - Waiting envelopes for a key start in the order they were enqueued
    - Every occupancy carries a TTL, a crashed holder cannot block a key forever
    - Owns STATE, not LOGIC: envelopes are opaque bytes here

    Known limitations:
    - acquire-or-enqueue is two steps. If the holder releases between a
      failed try_acquire and the enqueue, the enqueued envelope waits for
      the next release of that key instead of running immediately.
    - When a holder outlives its TTL, a second consumer can acquire the
      same key and both believe they own it. The late release of the first
      holder then clears the second holder's occupancy.
    - force_release drops queued envelopes and may reorder work that is
      being drained concurrently.
    """

    def __init__(
        self,
        redis_client: Redis,
        ttl_seconds: float = OCCUPATION_TTL_SECONDS,
        owner_id: Optional[str] = None,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.redis = redis_client
        self.ttl_ms = int(ttl_seconds * 1000)
        self.owner_id = owner_id or default_owner_id()

    # ------------------------------------------------------------------
    # ACQUIRE / ENQUEUE
    # ------------------------------------------------------------------

    def try_acquire(self, key: str) -> bool:
        """
        Claim exclusive ownership of key.

        Returns:
            True  -> this call took ownership
            False -> key already occupied, or Redis unreachable
        """
        occupied = CoordinatorKeys.OCCUPIED.for_key(key)

        try:
            # SET NX is the single atomic step, only one caller can see OK
            acquired = self.redis.set(occupied, self.owner_id, nx=True, px=self.ttl_ms)
        except RedisError as e:
            # Fail closed: never run a keyed task without coordination
            logger.error(f"Coordinator: acquire failed for key {key}: {e}")
            return False

        if not acquired:
            logger.debug(f"Coordinator: key {key} is already occupied")
            return False

        try:
            pipe = self.redis.pipeline()
            pipe.sadd(CoordinatorKeys.OCCUPIED_INDEX.value, key)
            pipe.pexpire(CoordinatorKeys.WAIT_QUEUE.for_key(key), self.ttl_ms)
            pipe.execute()
        except RedisError as e:
            logger.warning(f"Coordinator: key {key} acquired but bookkeeping failed: {e}")

        logger.debug(f"Coordinator: key {key} acquired by {self.owner_id}")
        return True

    def enqueue(self, key: str, envelope: Union[bytes, str]) -> int:
        """
        Append an envelope to the tail of key's wait queue.

        Call only after try_acquire(key) returned False.

        Returns:
            The queue length after the push.

        Raises:
            CoordinationUnavailable: Redis could not be reached.
        """
        queue = CoordinatorKeys.WAIT_QUEUE.for_key(key)

        try:
            pipe = self.redis.pipeline()
            pipe.rpush(queue, envelope)
            pipe.pexpire(queue, self.ttl_ms)
            size, _ = pipe.execute()
        except RedisError as e:
            raise CoordinationUnavailable(
                f"Could not enqueue task for key {key}: {e}"
            ) from e

        logger.info(f"Coordinator: task enqueued for key {key}. Queue size: {size}")
        return size

    # ------------------------------------------------------------------
    # RELEASE
    # ------------------------------------------------------------------

    def release(self, key: str) -> Optional[Union[bytes, str]]:
        """
        Hand key to the next waiting envelope, or free it.

        Returns:
            The next envelope (key stays occupied, ownership passes to
            whoever runs it) or None when the queue was empty and the key
            has been freed.
        """
        occupied = CoordinatorKeys.OCCUPIED.for_key(key)
        queue = CoordinatorKeys.WAIT_QUEUE.for_key(key)

        try:
            next_envelope = self.redis.lpop(queue)
        except RedisError as e:
            logger.error(
                f"Coordinator: release failed for key {key}: {e}. "
                f"Force-clearing occupancy, queued tasks for this key may be lost."
            )
            self._clear_occupancy(key)
            return None

        if next_envelope is None:
            try:
                pipe = self.redis.pipeline()
                pipe.delete(occupied)
                pipe.srem(CoordinatorKeys.OCCUPIED_INDEX.value, key)
                pipe.execute()
            except RedisError as e:
                logger.error(
                    f"Coordinator: could not free key {key}: {e}. "
                    f"It will become acquirable when its TTL elapses."
                )
            else:
                logger.debug(f"Coordinator: key {key} released (no more tasks)")
            return None

        try:
            # Re-arm occupancy for the new holder
            pipe = self.redis.pipeline()
            pipe.set(occupied, self.owner_id, px=self.ttl_ms)
            pipe.sadd(CoordinatorKeys.OCCUPIED_INDEX.value, key)
            pipe.execute()
        except RedisError as e:
            logger.warning(f"Coordinator: could not refresh occupancy for key {key}: {e}")

        logger.info(f"Coordinator: key {key} has next task in queue")
        return next_envelope

    def force_release(self, key: str) -> None:
        """
        Operator escape hatch: free key and drop its wait queue.

        Raises:
            CoordinationUnavailable: Redis could not be reached.
        """
        try:
            pipe = self.redis.pipeline()
            pipe.delete(CoordinatorKeys.OCCUPIED.for_key(key))
            pipe.srem(CoordinatorKeys.OCCUPIED_INDEX.value, key)
            pipe.delete(CoordinatorKeys.WAIT_QUEUE.for_key(key))
            pipe.execute()
        except RedisError as e:
            raise CoordinationUnavailable(f"Could not force release key {key}: {e}") from e

        logger.warning(f"Coordinator: key {key} forcefully released")

    # ------------------------------------------------------------------
    # DIAGNOSTICS
    # ------------------------------------------------------------------

    def is_occupied(self, key: str) -> bool:
        try:
            return bool(self.redis.exists(CoordinatorKeys.OCCUPIED.for_key(key)))
        except RedisError as e:
            logger.error(f"Coordinator: could not check occupancy for key {key}: {e}")
            return False

    def occupied_by(self, key: str) -> Optional[str]:
        try:
            owner = self.redis.get(CoordinatorKeys.OCCUPIED.for_key(key))
        except RedisError as e:
            logger.error(f"Coordinator: could not read owner for key {key}: {e}")
            return None
        return _to_str(owner) if owner is not None else None

    def queue_size(self, key: str) -> int:
        try:
            return int(self.redis.llen(CoordinatorKeys.WAIT_QUEUE.for_key(key)))
        except RedisError as e:
            logger.error(f"Coordinator: could not read queue size for key {key}: {e}")
            return 0

    def list_occupied_keys(self) -> Set[str]:
        """
        Keys whose occupancy record is still alive.

        Index entries left behind by an expired TTL are pruned on the way.
        """
        try:
            members = [_to_str(m) for m in self.redis.smembers(CoordinatorKeys.OCCUPIED_INDEX.value)]
            if not members:
                return set()

            pipe = self.redis.pipeline()
            for key in members:
                pipe.exists(CoordinatorKeys.OCCUPIED.for_key(key))
            alive = pipe.execute()

            stale = [key for key, exists in zip(members, alive) if not exists]
            if stale:
                self.redis.srem(CoordinatorKeys.OCCUPIED_INDEX.value, *stale)
                logger.debug(f"Coordinator: pruned {len(stale)} expired keys from index")
        except RedisError as e:
            logger.error(f"Coordinator: could not list occupied keys: {e}")
            return set()

        return {key for key, exists in zip(members, alive) if exists}

    # ------------------------------------------------------------------
    # HELPERS
    # ------------------------------------------------------------------

    def _clear_occupancy(self, key: str) -> None:
        try:
            pipe = self.redis.pipeline()
            pipe.delete(CoordinatorKeys.OCCUPIED.for_key(key))
            pipe.srem(CoordinatorKeys.OCCUPIED_INDEX.value, key)
            pipe.execute()
        except RedisError as e:
            logger.error(
                f"Coordinator: force-clear failed for key {key}: {e}. "
                f"It will become acquirable when its TTL elapses."
            )


def _to_str(value: Union[bytes, str]) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value
