import json
import time
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Optional

from .errors import InvalidStatusTransition

DEFAULT_MAX_RETRIES = 3


class TaskStatus(str, Enum):
    CREATED = "CREATED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Allowed forward moves. COMPLETED and FAILED are terminal.
_TRANSITIONS = {
    TaskStatus.CREATED: {TaskStatus.PROCESSING, TaskStatus.FAILED},
    TaskStatus.PROCESSING: {TaskStatus.COMPLETED, TaskStatus.FAILED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
}


@dataclass
class TaskEnvelope:
    """
    Represents a unit of work.

    IMPORTANT:
    - task_id, task_type and created_at never change after construction
    - key is optional; tasks without one run with no ordering constraint
    - payload belongs to the concrete task kind, the core never inspects it
    """

    task_type: str
    key: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    priority: int = 0

    task_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.time)

    # Execution tracking, mutated only by the consumer pipeline
    status: TaskStatus = TaskStatus.CREATED
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES

    @property
    def has_key(self) -> bool:
        return bool(self.key and self.key.strip())

    def mark(self, status: TaskStatus) -> None:
        """
        Move the task to a new status.

        Raises:
            InvalidStatusTransition: if the move is backwards or leaves a
            terminal state.
        """
        status = TaskStatus(status)
        if status not in _TRANSITIONS[self.status]:
            raise InvalidStatusTransition(
                f"Task {self.task_id}: {self.status.value} -> {status.value} not allowed"
            )
        self.status = status

    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    def increment_retry(self) -> None:
        self.retry_count += 1

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    def to_json(self) -> str:
        """Serialize the envelope to JSON for the broker and the wait queues."""
        return json.dumps(self.to_dict())

    def to_bytes(self) -> bytes:
        return self.to_json().encode("utf-8")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskEnvelope":
        """
        Build an envelope from a decoded JSON object.

        Unknown top-level fields are ignored so that producers running a
        newer envelope version do not break older consumers.

        status is not read back: every decoded envelope starts at CREATED,
        so a resubmitted FAILED task can run again.
        """
        kwargs: Dict[str, Any] = {
            "task_type": data["task_type"],
            "key": data.get("key"),
            "payload": dict(data.get("payload") or {}),
            "priority": int(data.get("priority", 0)),
            "retry_count": int(data.get("retry_count", 0)),
            "max_retries": int(data.get("max_retries", DEFAULT_MAX_RETRIES)),
        }
        if data.get("task_id"):
            kwargs["task_id"] = str(data["task_id"])
        if data.get("created_at") is not None:
            kwargs["created_at"] = float(data["created_at"])
        return cls(**kwargs)

    @classmethod
    def from_json(cls, raw: str) -> "TaskEnvelope":
        return cls.from_dict(json.loads(raw))
