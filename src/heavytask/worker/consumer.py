import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from heavytask.errors import CoordinationUnavailable, TaskDecodeError, TaskExecutionFailed
from heavytask.models import TaskEnvelope, TaskStatus
from heavytask.registry import TaskRegistry
from heavytask.task_queue.coordinator import KeyCoordinator
from .executor import TaskHandler, log_task_error

logger = logging.getLogger(__name__)

Raw = Union[bytes, str]


class Outcome(str, Enum):
    COMPLETED = "completed"  # ran now and succeeded
    FAILED = "failed"  # ran now and raised, or could not be coordinated
    DEFERRED = "deferred"  # key busy, parked in the key's wait queue
    REJECTED = "rejected"  # could not be decoded


@dataclass
class ConsumeResult:
    outcome: Outcome
    task: Optional[TaskEnvelope] = None
    error: Optional[Exception] = None
    elapsed_ms: Optional[float] = None
    # Queued envelopes for the same key that this call drained and ran
    drained: int = 0


class TaskConsumer:
    """
    Broker-agnostic consumer pipeline.

    Flow per delivery:
    - decode via the registry
    - no key  -> run now
    - key     -> try_acquire; run now, or park the raw message in the
                 key's wait queue and return
    - after a keyed run (success or failure) drain the key: release it and
      run whatever was waiting, on this same worker, until the queue is empty

    Nothing raised inside the pipeline escapes on_message; every failure is
    reported through the handler's handle_error hook and the task status.

    Draining on the calling worker means a hot key's whole backlog runs on
    one worker. There is no separate poller for wait queues.
    """

    def __init__(
        self,
        registry: TaskRegistry,
        coordinator: KeyCoordinator,
        default_handler: Optional[TaskHandler] = None,
    ):
        self.registry = registry
        self.coordinator = coordinator
        self.default_handler = default_handler

    # ------------------------------------------------------------------
    # ENTRY POINT
    # ------------------------------------------------------------------

    def on_message(self, raw: Raw) -> ConsumeResult:
        """Handle one broker delivery. Never raises."""
        try:
            task = self.registry.decode(raw)
        except TaskDecodeError as e:
            self._report_error(None, raw, e)
            return ConsumeResult(Outcome.REJECTED, error=e)

        logger.debug(f"Consumer: decoded task {task.task_id} ({task.task_type})")

        if not task.has_key:
            return self._run(task, raw)

        key = task.key
        if not self.coordinator.try_acquire(key):
            try:
                self.coordinator.enqueue(key, raw)
            except CoordinationUnavailable as e:
                # Could not acquire and could not park: do not run unguarded
                _mark_failed(task)
                self._report_error(task, raw, e)
                return ConsumeResult(Outcome.FAILED, task=task, error=e)

            logger.info(f"Consumer: task {task.task_id} waiting for key {key}")
            return ConsumeResult(Outcome.DEFERRED, task=task)

        result = self._run(task, raw)
        result.drained = self._drain(key)
        return result

    # ------------------------------------------------------------------
    # EXECUTION
    # ------------------------------------------------------------------

    def _run(self, task: TaskEnvelope, raw: Raw) -> ConsumeResult:
        handler = self._handler_for(task)
        start = time.perf_counter()

        try:
            if handler is None:
                raise LookupError(f"No handler registered for task type '{task.task_type}'")

            task.mark(TaskStatus.PROCESSING)
            handler.before_process(task)
            handler.process_task(task)
            handler.after_process(task)
            task.mark(TaskStatus.COMPLETED)
        except Exception as e:
            elapsed_ms = (time.perf_counter() - start) * 1000
            _mark_failed(task)

            error = TaskExecutionFailed(task.task_id, e)
            error.__cause__ = e
            self._report_error(task, raw, error, handler)
            return ConsumeResult(Outcome.FAILED, task=task, error=error, elapsed_ms=elapsed_ms)

        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"Consumer: task {task.task_id} completed | type={task.task_type} "
            f"key={task.key} | elapsed={elapsed_ms:.1f}ms"
        )
        return ConsumeResult(Outcome.COMPLETED, task=task, elapsed_ms=elapsed_ms)

    def _drain(self, key: str) -> int:
        """
        Release key and run queued envelopes until the queue is empty.

        Iterative on purpose: a long backlog must not grow the call stack.
        """
        drained = 0

        while True:
            raw = self.coordinator.release(key)
            if raw is None:
                return drained

            drained += 1
            try:
                task = self.registry.decode(raw)
            except TaskDecodeError as e:
                self._report_error(None, raw, e)
                continue

            logger.info(f"Consumer: draining task {task.task_id} for key {key}")
            self._run(task, raw)

    # ------------------------------------------------------------------
    # HELPERS
    # ------------------------------------------------------------------

    def _handler_for(self, task: TaskEnvelope) -> Optional[TaskHandler]:
        return self.registry.handler_for(task.task_type) or self.default_handler

    def _report_error(
        self,
        task: Optional[TaskEnvelope],
        raw: Optional[Raw],
        error: Exception,
        handler: Optional[TaskHandler] = None,
    ) -> None:
        if handler is None:
            handler = self._handler_for(task) if task else self.default_handler

        try:
            if handler is not None:
                handler.handle_error(task, raw, error)
            else:
                log_task_error(task, raw, error)
        except Exception as hook_error:
            logger.error(
                f"Consumer: error hook raised while handling {type(error).__name__}: {hook_error}",
                exc_info=True,
            )


def _mark_failed(task: TaskEnvelope) -> None:
    if task.status in (TaskStatus.CREATED, TaskStatus.PROCESSING):
        task.mark(TaskStatus.FAILED)
