import logging
import time
import signal
from typing import Optional

from heavytask.task_queue.broker import Delivery, RedisTaskBroker
from .consumer import TaskConsumer

logger = logging.getLogger(__name__)


class Worker:
    """
    Redis-list broker worker.

    Responsibilities:
    - Poll the broker for deliveries
    - Hand each delivery body to the consumer pipeline
    - Ack every delivery the pipeline returns from
    - Gracefully handle shutdown signals
    """

    def __init__(
        self,
        broker: RedisTaskBroker,
        consumer: TaskConsumer,
        poll_interval: float = 0.1,
        install_signal_handlers: bool = True,
    ):
        """
        Initialize the Worker.

        Args:
            broker (RedisTaskBroker): The broker to poll.
            consumer (TaskConsumer): The pipeline that runs each delivery.
            poll_interval (float): How long each dequeue waits for a delivery.
            install_signal_handlers (bool): Hook SIGINT/SIGTERM. Only
                possible from the main thread.
        """
        self.broker = broker
        self.consumer = consumer
        self.poll_interval = poll_interval
        self.processed = 0
        self._running = False
        self._shutdown_requested = False

        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        logger.info(f"Signal {signum} received. Stopping worker gracefully...")
        self.stop()

    def start(self, timeout: Optional[float] = None, max_messages: Optional[int] = None) -> None:
        """
        Start the Worker loop.

        Args:
            timeout (Optional[float]): Max duration to run the worker (seconds). None = infinite.
            max_messages (Optional[int]): Stop after this many deliveries. None = no limit.
        """
        self._running = True
        self._shutdown_requested = False
        start_time = time.time()
        logger.info("Worker started. Polling broker...")

        while self._running:
            if timeout and (time.time() - start_time > timeout):
                logger.info("Worker timeout reached. Stopping.")
                break

            if max_messages is not None and self.processed >= max_messages:
                break

            if self._shutdown_requested:
                break

            try:
                delivery = self.broker.dequeue(timeout=self.poll_interval)

                if delivery:
                    self._process_delivery(delivery)

            except Exception as e:
                # Broker unreachable or similar; back off and keep going
                logger.error(f"Unexpected error in worker loop: {e}", exc_info=True)
                time.sleep(1)

        logger.info("Worker stopped.")
        self._running = False

    def stop(self) -> None:
        """
        Request a graceful stop for the worker loop.
        """
        logger.info("Stopping worker...")
        self._shutdown_requested = True
        self._running = False

    def _process_delivery(self, delivery: Delivery) -> None:
        logger.info(f"Starting delivery {delivery.id} (attempt {delivery.attempts + 1})")

        result = self.consumer.on_message(delivery.body)
        self.broker.ack(delivery)
        self.processed += 1

        logger.info(f"Delivery {delivery.id} {result.outcome.value}")
