#!/usr/bin/env python3
# cli.py
# heavytask operator CLI
#
# Typer + Rich front-end over the key coordinator, the brokers and the worker

import json
import logging
from typing import Optional

import typer
from redis import Redis
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from heavytask.config import Settings, get_settings
from heavytask.errors import CoordinationUnavailable, TaskDecodeError
from heavytask.models import TaskEnvelope
from heavytask.registry import TaskRegistry
from heavytask.task_queue.broker import RedisTaskBroker
from heavytask.task_queue.coordinator import KeyCoordinator
from heavytask.tasks import register_builtin_tasks
from heavytask.worker.consumer import TaskConsumer
from heavytask.worker.worker import Worker

app = typer.Typer(
    help="heavytask: per-key sequential task processing",
    add_completion=False,
)

console = Console()


# -----------------------------
# Wiring
# -----------------------------

def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
        force=True,
    )


def get_redis(settings: Settings) -> Redis:
    return Redis.from_url(settings.redis_url)


def build_registry(redis_client: Redis) -> TaskRegistry:
    return register_builtin_tasks(TaskRegistry(), redis_client)


def build_coordinator(settings: Settings, redis_client: Redis) -> KeyCoordinator:
    return KeyCoordinator(redis_client, ttl_seconds=settings.occupation_ttl_seconds)


# -----------------------------
# UI helpers
# -----------------------------

def header():
    console.print(
        Panel.fit(
            "[bold cyan]HEAVYTASK[/bold cyan]\n"
            "[white]Per-key sequential task processing[/white]",
            border_style="cyan",
        )
    )


def success(msg: str):
    console.print(f"[green]✔ {msg}[/green]")


def info(msg: str):
    console.print(f"[dim]• {msg}[/dim]")


def error(msg: str):
    console.print(f"[bold red]✖ {msg}[/bold red]")


# -----------------------------
# Diagnostics
# -----------------------------

@app.command()
def status(key: str = typer.Argument(..., help="Partition key, e.g. a user id")):
    """
    Show occupancy and queue depth for one key.
    """
    settings = get_settings()
    coordinator = build_coordinator(settings, get_redis(settings))

    occupied = coordinator.is_occupied(key)
    table = Table(title=f"Key {key}", show_header=False)
    table.add_row("Occupied", "Yes" if occupied else "No")
    table.add_row("Owner", coordinator.occupied_by(key) or "-")
    table.add_row("Queued", str(coordinator.queue_size(key)))
    console.print(table)


@app.command()
def occupied():
    """
    List every key currently checked out by a consumer.
    """
    settings = get_settings()
    coordinator = build_coordinator(settings, get_redis(settings))

    keys = sorted(coordinator.list_occupied_keys())
    if not keys:
        info("No occupied keys")
        return

    table = Table(title="Occupied keys")
    table.add_column("Key")
    table.add_column("Owner")
    table.add_column("Queued", justify="right")
    for key in keys:
        table.add_row(key, coordinator.occupied_by(key) or "-", str(coordinator.queue_size(key)))
    console.print(table)


@app.command("force-release")
def force_release(
    key: str = typer.Argument(..., help="Key to free"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """
    Free a stuck key and DROP its queued tasks.
    """
    settings = get_settings()
    coordinator = build_coordinator(settings, get_redis(settings))

    queued = coordinator.queue_size(key)
    if not yes and not typer.confirm(f"Release {key} and drop {queued} queued tasks?"):
        raise typer.Abort()

    try:
        coordinator.force_release(key)
    except CoordinationUnavailable as e:
        error(str(e))
        raise typer.Exit(code=1)

    success(f"Released {key} ({queued} queued tasks dropped)")


@app.command()
def types():
    """
    List registered task types.
    """
    settings = get_settings()
    registry = build_registry(get_redis(settings))
    for task_type in sorted(registry.list_registered_types()):
        console.print(task_type)


# -----------------------------
# Producing
# -----------------------------

@app.command()
def submit(
    task_type: str = typer.Argument(..., help="Registered task type"),
    key: Optional[str] = typer.Option(None, "--key", "-k", help="Partition key"),
    payload: str = typer.Option("{}", "--payload", "-p", help="Payload as JSON object"),
    priority: int = typer.Option(0, "--priority", help="Informational priority"),
    transport: str = typer.Option("redis", "--transport", "-t", help="redis | kafka"),
):
    """
    Validate and publish one task.
    """
    settings = get_settings()
    redis_client = get_redis(settings)
    registry = build_registry(redis_client)

    try:
        payload_obj = json.loads(payload)
    except ValueError as e:
        error(f"Payload is not valid JSON: {e}")
        raise typer.Exit(code=1)

    envelope = TaskEnvelope(task_type=task_type, key=key, payload=payload_obj, priority=priority)

    # Reject what no consumer could decode before it reaches the broker
    try:
        envelope = registry.decode(envelope.to_json())
    except TaskDecodeError as e:
        error(str(e))
        raise typer.Exit(code=1)

    if transport == "redis":
        delivery_id = RedisTaskBroker(redis_client).submit(envelope)
        info(f"Delivery {delivery_id}")
    elif transport == "kafka":
        from heavytask.messaging.kafka import KafkaTaskProducer, build_producer

        producer = KafkaTaskProducer(build_producer(settings), settings.kafka_topic)
        producer.submit(envelope)
        if producer.flush():
            error("Kafka did not confirm delivery")
            raise typer.Exit(code=1)
    else:
        error(f"Unknown transport '{transport}'")
        raise typer.Exit(code=2)

    success(f"Submitted {envelope.task_type} task {envelope.task_id} (key={envelope.key})")


# -----------------------------
# Consuming
# -----------------------------

@app.command()
def worker(
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Stop after N seconds"),
    max_messages: Optional[int] = typer.Option(None, "--max-messages", help="Stop after N deliveries"),
):
    """
    Run a worker on the Redis-list broker.
    """
    settings = get_settings()
    configure_logging(settings.log_level)
    header()

    redis_client = get_redis(settings)
    broker = RedisTaskBroker(redis_client)
    consumer = TaskConsumer(build_registry(redis_client), build_coordinator(settings, redis_client))

    requeued = broker.requeue_stale(settings.stale_timeout_seconds)
    if requeued:
        info(f"Requeued {requeued} stale deliveries")

    Worker(broker, consumer, poll_interval=settings.poll_interval).start(
        timeout=timeout, max_messages=max_messages
    )

    stats = broker.stats()
    success(f"Worker finished. Pending: {stats['pending']} | Failed: {stats['failed']}")


@app.command("kafka-worker")
def kafka_worker(
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Stop after N seconds"),
):
    """
    Run a worker subscribed to the Kafka task topic.
    """
    from heavytask.messaging.kafka import KafkaTaskListener, build_consumer

    settings = get_settings()
    configure_logging(settings.log_level)
    header()

    redis_client = get_redis(settings)
    consumer = TaskConsumer(build_registry(redis_client), build_coordinator(settings, redis_client))
    listener = KafkaTaskListener(build_consumer(settings), consumer, [settings.kafka_topic])
    listener.run(timeout=timeout)


def main():
    app()


if __name__ == "__main__":
    main()
