import logging
from dataclasses import dataclass
from typing import Any, Dict

from redis import Redis

from heavytask.models import TaskEnvelope
from heavytask.worker.executor import TaskHandler

logger = logging.getLogger(__name__)

USER_ACTION = "UserActionTask"
ACTION_LOG_KEY = "task:user-action-log"


@dataclass
class UserActionTask(TaskEnvelope):
    """
    An action performed by one user. Keyed by user id, so a user's
    actions run one at a time and in the order they were submitted.
    """

    task_type: str = USER_ACTION
    priority: int = 1

    @classmethod
    def create(cls, user_id: str, user_index: int, user_action: str) -> "UserActionTask":
        return cls(
            key=user_id,
            payload={"user_index": user_index, "user_action": user_action},
        )

    @property
    def user_id(self) -> str:
        return self.key

    @property
    def user_index(self) -> int:
        return int(self.payload["user_index"])

    @property
    def user_action(self) -> str:
        return self.payload.get("user_action", "")


def decode_user_action(data: Dict[str, Any]) -> UserActionTask:
    task = UserActionTask.from_dict(data)
    if not task.has_key:
        raise ValueError("UserActionTask requires a user id key")
    # Fail at decode time rather than mid-run
    int(task.payload["user_index"])
    return task


class UserActionLogHandler(TaskHandler):
    """Appends each processed user_index to a Redis string, in run order."""

    def __init__(self, redis_client: Redis, log_key: str = ACTION_LOG_KEY):
        self.redis = redis_client
        self.log_key = log_key

    def process_task(self, task: UserActionTask) -> None:
        self.redis.append(self.log_key, f"user_index : {task.user_index}\n")
        logger.info(
            f"UserAction: processed user_index={task.user_index} "
            f"action={task.user_action!r} (user {task.user_id})"
        )
