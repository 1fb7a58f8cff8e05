"""
Configuration management using pydantic-settings.

Every entry point builds one Settings at startup and passes it down;
nothing reads the environment at import time.
"""
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ANALYTICS_QUEUE = "analytics_queue"
AUDIT_LOGS_QUEUE = "audit_logs_queue"


class KafkaSettings(BaseSettings):
    """Broker connection settings."""

    model_config = SettingsConfigDict(env_prefix="KAFKA_")

    bootstrap_servers: str = Field(default="localhost:9092", description="Kafka bootstrap servers")
    consumer_group: str = Field(default="event-pipeline", description="Consumer group prefix, suffixed per queue")
    partitions: int = Field(default=3, ge=1, description="Partitions per declared queue")
    replication_factor: int = Field(default=1, ge=1, description="Replicas per declared queue")
    prefetch: int = Field(default=16, ge=1, description="Deliveries buffered ahead of the processor")
    request_timeout_ms: int = Field(default=30000, description="Producer request timeout")


class DynamoDBSettings(BaseSettings):
    """Analytical store settings."""

    model_config = SettingsConfigDict(env_prefix="DYNAMODB_", populate_by_name=True)

    analytics_table: str = Field(default="analytics_events")
    audit_logs_table: str = Field(default="audit_logs")
    region_name: str = Field(default="us-east-1", validation_alias="AWS_REGION")
    aws_profile: Optional[str] = Field(default=None, validation_alias="AWS_PROFILE")
    endpoint_url: Optional[str] = Field(
        default=None, description="Override for DynamoDB Local or LocalStack"
    )


class ProducerSettings(BaseSettings):
    """Ingest API behavior."""

    model_config = SettingsConfigDict(env_prefix="PRODUCER_")

    drain_timeout_seconds: float = Field(
        default=10.0, ge=0, description="Wait for background publishes at shutdown"
    )


class ConsumerSettings(BaseSettings):
    """Processor behavior."""

    model_config = SettingsConfigDict(env_prefix="CONSUMER_")

    queues: List[str] = Field(default=[ANALYTICS_QUEUE, AUDIT_LOGS_QUEUE])
    insert_timeout_seconds: float = Field(default=5.0, gt=0)
    shutdown_grace_seconds: float = Field(default=10.0, ge=0)
    max_deliveries: int = Field(
        default=0, ge=0, description="Dead-letter after this many deliveries (0 disables)"
    )
    requeue_backoff_seconds: float = Field(
        default=0.0, ge=0, description="Upper bound of the jittered sleep before a requeue"
    )
    metrics_port: int = Field(default=9100, description="Prometheus port (0 disables)")


class Settings(BaseSettings):
    """Top-level settings assembled from the groups above."""

    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")
    kafka: KafkaSettings = Field(default_factory=KafkaSettings)
    dynamodb: DynamoDBSettings = Field(default_factory=DynamoDBSettings)
    producer: ProducerSettings = Field(default_factory=ProducerSettings)
    consumer: ConsumerSettings = Field(default_factory=ConsumerSettings)


def load_settings(env_file: Optional[str] = ".env") -> Settings:
    """Load settings from the environment, after applying an optional .env file."""
    if env_file:
        load_dotenv(env_file)
    return Settings()
