"""
Runtime configuration for heavytask.

Values come from HEAVYTASK_* environment variables or a local .env file.
Tests build Settings(...) directly instead of touching the environment.
"""

from functools import lru_cache
from typing import Any, Dict

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """heavytask settings"""

    model_config = SettingsConfigDict(
        env_prefix="HEAVYTASK_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Redis
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL for the coordinator and the list broker",
    )
    occupation_ttl_seconds: float = Field(
        default=300,
        description="Lifetime of a key's occupancy without a release",
    )

    # Kafka
    kafka_bootstrap_servers: str = Field(default="localhost:9092")
    kafka_topic: str = Field(default="user-tasks")
    kafka_group_id: str = Field(default="heavytask-workers")

    # Worker
    poll_interval: float = Field(default=0.1, description="Idle sleep between polls")
    stale_timeout_seconds: float = Field(
        default=600,
        description="Age after which an unacked list-broker delivery is requeued",
    )

    log_level: str = Field(default="INFO")

    @field_validator("occupation_ttl_seconds", "poll_interval", "stale_timeout_seconds")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("log_level")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.upper()

    def kafka_producer_config(self) -> Dict[str, Any]:
        return {
            "bootstrap.servers": self.kafka_bootstrap_servers,
            "enable.idempotence": True,
            "acks": "all",
        }

    def kafka_consumer_config(self) -> Dict[str, Any]:
        return {
            "bootstrap.servers": self.kafka_bootstrap_servers,
            "group.id": self.kafka_group_id,
            "auto.offset.reset": "earliest",
            "enable.auto.commit": False,
        }


@lru_cache()
def get_settings() -> Settings:
    return Settings()
