import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from redis import Redis

from heavytask.models import TaskEnvelope
from heavytask.worker.executor import TaskHandler

REDIS_NOTE = "RedisNoteTask"


@dataclass
class RedisNoteTask(TaskEnvelope):
    """Writes a description into a Redis hash. The key is optional."""

    task_type: str = REDIS_NOTE
    priority: int = 1

    @classmethod
    def create(
        cls,
        redis_key: str,
        description: str,
        requester_id: str,
        user_id: Optional[str] = None,
    ) -> "RedisNoteTask":
        return cls(
            key=user_id,
            payload={
                "redis_key": redis_key,
                "description": description,
                "requester_id": requester_id,
            },
        )

    @property
    def redis_key(self) -> str:
        return self.payload["redis_key"]


def decode_redis_note(data: Dict[str, Any]) -> RedisNoteTask:
    task = RedisNoteTask.from_dict(data)
    if not task.payload.get("redis_key"):
        raise ValueError("RedisNoteTask requires payload.redis_key")
    return task


class RedisNoteHandler(TaskHandler):
    def __init__(self, redis_client: Redis):
        self.redis = redis_client

    def process_task(self, task: RedisNoteTask) -> None:
        self.redis.hset(
            task.redis_key,
            mapping={
                "task_id": task.task_id,
                "description": task.payload.get("description", ""),
                "requester_id": task.payload.get("requester_id", ""),
                "processed_at": time.time(),
            },
        )
