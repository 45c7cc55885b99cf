import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional, Union

from heavytask.models import TaskEnvelope

logger = logging.getLogger(__name__)


def log_task_error(
    task: Optional[TaskEnvelope],
    raw: Union[bytes, str, None],
    error: Exception,
) -> None:
    """Structured error line shared by every handler and the consumer."""
    if task is None:
        preview = raw[:200] if raw is not None else None
        logger.error(
            f"Task rejected | error={type(error).__name__}: {error} | raw={preview!r}"
        )
        return

    logger.error(
        f"Task failed | task_id={task.task_id} key={task.key} type={task.task_type} "
        f"error={type(error).__name__}: {error}",
        exc_info=error,
    )


class TaskHandler(ABC):
    """
    Runs the body of one task kind.

    The consumer calls before_process, process_task and after_process in
    that order, and handle_error when any of them raises. Only
    process_task is mandatory.
    """

    @abstractmethod
    def process_task(self, task: TaskEnvelope) -> None:
        """
        Execute the task.

        Args:
           task (TaskEnvelope): The decoded task.
        """
        pass

    def before_process(self, task: TaskEnvelope) -> None:
        pass

    def after_process(self, task: TaskEnvelope) -> None:
        pass

    def handle_error(
        self,
        task: Optional[TaskEnvelope],
        raw: Union[bytes, str, None],
        error: Exception,
    ) -> None:
        """
        Called once per failure. task is None when decoding failed.

        The default only logs. Override to retry or forward to a dead-letter
        destination.
        """
        log_task_error(task, raw, error)


class FunctionHandler(TaskHandler):
    """Adapts a plain callable to the TaskHandler interface."""

    def __init__(self, func: Callable[[TaskEnvelope], None]):
        self.func = func

    def process_task(self, task: TaskEnvelope) -> None:
        self.func(task)
