from .errors import (
    HeavyTaskError,
    TaskDecodeError,
    MalformedEnvelope,
    UnknownTaskType,
    CoordinationUnavailable,
    TaskExecutionFailed,
    InvalidStatusTransition,
)
from .models import TaskEnvelope, TaskStatus
from .registry import TaskKind, TaskRegistry
from .task_queue import KeyCoordinator, RedisTaskBroker
from .worker.executor import FunctionHandler, TaskHandler
from .worker.consumer import ConsumeResult, Outcome, TaskConsumer

__version__ = "0.1.0"

__all__ = [
    "HeavyTaskError",
    "TaskDecodeError",
    "MalformedEnvelope",
    "UnknownTaskType",
    "CoordinationUnavailable",
    "TaskExecutionFailed",
    "InvalidStatusTransition",
    "TaskEnvelope",
    "TaskStatus",
    "TaskKind",
    "TaskRegistry",
    "KeyCoordinator",
    "RedisTaskBroker",
    "FunctionHandler",
    "TaskHandler",
    "ConsumeResult",
    "Outcome",
    "TaskConsumer",
]
