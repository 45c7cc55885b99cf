class HeavyTaskError(Exception):
    """Base class for all heavytask errors."""


class TaskDecodeError(HeavyTaskError):
    """
    Raised when a raw message cannot be turned into a task.

    Decode errors are never retried by the consumer; the message is
    considered consumed once the error hook has run.
    """


class MalformedEnvelope(TaskDecodeError):
    """The message is not a JSON object or its task_type is unreadable."""


class UnknownTaskType(TaskDecodeError):
    """No decoder is registered for the envelope's task_type."""

    def __init__(self, task_type: str):
        super().__init__(f"No decoder registered for task type '{task_type}'")
        self.task_type = task_type


class CoordinationUnavailable(HeavyTaskError):
    """The key-value store backing the coordinator could not be reached."""


class TaskExecutionFailed(HeavyTaskError):
    """Wraps any exception raised while running a task body or its hooks."""

    def __init__(self, task_id: str, cause: BaseException):
        super().__init__(f"Task {task_id} failed: {cause}")
        self.task_id = task_id
        self.cause = cause


class InvalidStatusTransition(HeavyTaskError):
    """A task status was moved backwards or out of a terminal state."""
