from enum import Enum


class CoordinatorKeys(str, Enum):
    """
    Centralized Redis key names.

    This file is the single source of truth for all Redis structures.
    """

    OCCUPIED = "task:lock:{key}"  # STRING → owner of a key, with TTL
    OCCUPIED_INDEX = "task:occupied:keys"  # SET    → keys currently occupied
    WAIT_QUEUE = "task:queue:{key}"  # LIST   → envelopes waiting for a key

    def for_key(self, key: str) -> str:
        return self.value.format(key=key)


class BrokerKeys(str, Enum):
    """Redis structures used by the list-based broker transport."""

    PENDING = "broker:pending"  # LIST → deliveries not yet picked up
    PROCESSING = "broker:processing"  # LIST → deliveries being handled
    STARTED = "broker:started"  # HASH → delivery id → pickup timestamp
    FAILED = "broker:failed"  # HASH → deliveries that ran out of attempts
