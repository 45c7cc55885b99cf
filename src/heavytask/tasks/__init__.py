from redis import Redis

from heavytask.registry import TaskRegistry
from .user_action import (
    ACTION_LOG_KEY,
    USER_ACTION,
    UserActionTask,
    UserActionLogHandler,
    decode_user_action,
)
from .redis_note import REDIS_NOTE, RedisNoteTask, RedisNoteHandler, decode_redis_note


def register_builtin_tasks(registry: TaskRegistry, redis_client: Redis) -> TaskRegistry:
    """Install the task kinds shipped with heavytask."""
    registry.register(USER_ACTION, decode_user_action, UserActionLogHandler(redis_client))
    registry.register(REDIS_NOTE, decode_redis_note, RedisNoteHandler(redis_client))
    return registry


__all__ = [
    "ACTION_LOG_KEY",
    "USER_ACTION",
    "REDIS_NOTE",
    "UserActionTask",
    "UserActionLogHandler",
    "RedisNoteTask",
    "RedisNoteHandler",
    "decode_user_action",
    "decode_redis_note",
    "register_builtin_tasks",
]
