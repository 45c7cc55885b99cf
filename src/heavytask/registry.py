import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set, Union

from .errors import MalformedEnvelope, UnknownTaskType
from .models import TaskEnvelope
from .worker.executor import TaskHandler

logger = logging.getLogger(__name__)

Decoder = Callable[[Dict[str, Any]], TaskEnvelope]

TYPE_FIELD = "task_type"


@dataclass(frozen=True)
class TaskKind:
    """A registered task type: how to decode it and who runs it."""

    task_type: str
    decoder: Decoder
    handler: Optional[TaskHandler] = None


class TaskRegistry:
    """
    Maps a task_type discriminator to its decoder and handler.

    Design rules:
    - Built at start-up and passed to the consumer, never a module global
    - New task kinds are added by registering, not by editing the consumer
    - Reads are lock-free; register/unregister swap in a new table under a lock
    """

    def __init__(self):
        self._kinds: Dict[str, TaskKind] = {}
        self._write_lock = threading.Lock()

    # ------------------------------------------------------------------
    # REGISTRATION
    # ------------------------------------------------------------------

    def register(
        self,
        task_type: str,
        decoder: Decoder,
        handler: Optional[TaskHandler] = None,
    ) -> None:
        """
        Install or overwrite the entry for task_type.

        Overwrites are allowed but logged, a silent overwrite usually means
        two modules picked the same type name.
        """
        if not task_type:
            raise ValueError("task_type must be a non-empty string")

        with self._write_lock:
            kinds = dict(self._kinds)
            if task_type in kinds:
                logger.warning(
                    f"Registry: overwriting decoder for task type '{task_type}'"
                )
            kinds[task_type] = TaskKind(task_type, decoder, handler)
            self._kinds = kinds

        logger.debug(f"Registry: registered task type '{task_type}'")

    def unregister(self, task_type: str) -> bool:
        with self._write_lock:
            if task_type not in self._kinds:
                return False
            kinds = dict(self._kinds)
            del kinds[task_type]
            self._kinds = kinds
        logger.info(f"Registry: unregistered task type '{task_type}'")
        return True

    # ------------------------------------------------------------------
    # LOOKUP
    # ------------------------------------------------------------------

    def is_registered(self, task_type: str) -> bool:
        return task_type in self._kinds

    def list_registered_types(self) -> Set[str]:
        return set(self._kinds)

    def handler_for(self, task_type: str) -> Optional[TaskHandler]:
        kind = self._kinds.get(task_type)
        return kind.handler if kind else None

    # ------------------------------------------------------------------
    # DECODE
    # ------------------------------------------------------------------

    def decode(self, raw: Union[bytes, str]) -> TaskEnvelope:
        """
        Decode a raw message into a task.

        Only the discriminator is read here; the registered decoder owns
        the rest of the object.

        Raises:
            MalformedEnvelope: not a JSON object, or task_type missing/unreadable
            UnknownTaskType: no decoder registered for task_type
        """
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            data = json.loads(raw)
        except (UnicodeDecodeError, ValueError) as e:
            raise MalformedEnvelope(f"Envelope is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise MalformedEnvelope("Envelope must be a JSON object")

        task_type = data.get(TYPE_FIELD)
        if not isinstance(task_type, str) or not task_type:
            raise MalformedEnvelope(f"Envelope is missing '{TYPE_FIELD}'")

        kind = self._kinds.get(task_type)
        if kind is None:
            raise UnknownTaskType(task_type)

        try:
            return kind.decoder(data)
        except Exception as e:
            raise MalformedEnvelope(
                f"Decoder for '{task_type}' rejected envelope: {e}"
            ) from e
