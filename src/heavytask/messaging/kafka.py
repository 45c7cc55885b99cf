import logging
import time
from typing import List, Optional

from confluent_kafka import Consumer, KafkaError, Producer

from heavytask.config import Settings
from heavytask.models import TaskEnvelope
from heavytask.worker.consumer import TaskConsumer

logger = logging.getLogger(__name__)


def build_producer(settings: Settings) -> Producer:
    return Producer(settings.kafka_producer_config())


def build_consumer(settings: Settings) -> Consumer:
    return Consumer(settings.kafka_consumer_config())


class KafkaTaskProducer:
    """
    Publishes envelopes to Kafka.

    The envelope key is the message key, so every task for one key lands
    on one partition and is delivered in submission order. Keyless tasks
    are spread by the default partitioner.
    """

    def __init__(self, producer: Producer, topic: str):
        self.producer = producer
        self.topic = topic

    def submit(self, envelope: TaskEnvelope) -> None:
        key = envelope.key if envelope.has_key else None
        self.producer.produce(
            self.topic,
            key=key,
            value=envelope.to_bytes(),
            on_delivery=self._on_delivery,
        )
        # Serve delivery callbacks from earlier produce calls
        self.producer.poll(0)
        logger.debug(f"Kafka: queued task {envelope.task_id} for topic {self.topic} key={key}")

    def flush(self, timeout: float = 10.0) -> int:
        """Wait for outstanding messages. Returns how many are still undelivered."""
        remaining = self.producer.flush(timeout)
        if remaining:
            logger.warning(f"Kafka: {remaining} messages still undelivered after flush")
        return remaining

    @staticmethod
    def _on_delivery(err, msg) -> None:
        if err is not None:
            logger.error(f"Kafka: delivery failed for key={msg.key()} topic={msg.topic()}: {err}")
            return
        logger.info(
            f"Kafka: delivered key={msg.key()} to topic={msg.topic()} "
            f"partition={msg.partition()} offset={msg.offset()}"
        )


class KafkaTaskListener:
    """
    Kafka poll loop feeding the consumer pipeline.

    Offsets are committed after on_message returns for every message,
    including rejected and failed ones: the pipeline has consumed it, and
    redelivery policy is a broker-side concern.
    """

    def __init__(
        self,
        consumer: Consumer,
        task_consumer: TaskConsumer,
        topics: List[str],
        poll_timeout: float = 1.0,
    ):
        self.consumer = consumer
        self.task_consumer = task_consumer
        self.topics = topics
        self.poll_timeout = poll_timeout
        self.processed = 0
        self._running = False

    def run(self, timeout: Optional[float] = None, max_messages: Optional[int] = None) -> None:
        self.consumer.subscribe(self.topics)
        self._running = True
        start_time = time.time()
        logger.info(f"Kafka listener subscribed to {self.topics}")

        try:
            while self._running:
                if timeout and (time.time() - start_time > timeout):
                    logger.info("Kafka listener timeout reached. Stopping.")
                    break
                if max_messages is not None and self.processed >= max_messages:
                    break

                msg = self.consumer.poll(self.poll_timeout)
                if msg is None:
                    continue
                if msg.error():
                    if msg.error().code() == KafkaError._PARTITION_EOF:
                        continue
                    logger.error(f"Kafka error: {msg.error()}")
                    continue

                result = self.task_consumer.on_message(msg.value())
                self.consumer.commit(message=msg, asynchronous=False)
                self.processed += 1
                logger.debug(
                    f"Kafka: offset {msg.offset()} on partition {msg.partition()} "
                    f"{result.outcome.value}"
                )
        finally:
            self._running = False
            self.consumer.close()
            logger.info("Kafka listener stopped.")

    def stop(self) -> None:
        self._running = False
