"""Service configuration.

Settings are read from environment variables, then a local .env file, then
the defaults below. Use get_settings() to share one cached instance.
"""

from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProjectKeyEntry(BaseModel):
    """A project key registered for a tenant."""

    tenant_id: str
    platform: str = "web"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    SERVICE_NAME: str = "event-collector"
    SERVICE_VERSION: str = "0.3.0"
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str | None = None

    # Warehouse
    WAREHOUSE_PATH: str = "data/analytics.duckdb"
    WAREHOUSE_REQUEST_TIMEOUT_S: float = Field(default=30.0, gt=0)
    TENANT_STORE_PREFIX: str = "tenant_"
    EVENTS_TABLE: str = "events"

    # Transport
    TRANSPORT_BACKEND: Literal["kafka", "memory"] = "kafka"
    EVENTS_TOPIC: str = "events"
    EVENTS_TOPIC_PARTITIONS: int = Field(default=3, ge=1)
    EVENTS_TOPIC_REPLICATION: int = Field(default=1, ge=1)
    KAFKA_BROKERS: str = "localhost:9092"
    KAFKA_CLIENT_ID: str = "event-collector"
    KAFKA_CONSUMER_GROUP: str | None = None
    KAFKA_SECURITY_PROTOCOL: str = "PLAINTEXT"
    KAFKA_SASL_MECHANISM: str = "PLAIN"
    KAFKA_SASL_USERNAME: str | None = None
    KAFKA_SASL_PASSWORD: str | None = None
    KAFKA_CONNECTION_TIMEOUT_MS: int = Field(default=3000, ge=100)
    KAFKA_REQUEST_TIMEOUT_MS: int = Field(default=15000, ge=1000)
    KAFKA_INITIAL_RETRY_MS: int = Field(default=100, ge=0)
    KAFKA_RETRIES: int = Field(default=8, ge=0)
    KAFKA_POLL_TIMEOUT_MS: int = Field(default=500, ge=10)

    # Ingestion
    STRICT_EVENT_NAMES: bool = False
    MAX_BATCH_SIZE: int = Field(default=1000, ge=1)
    FAILURE_POLICY: Literal["log", "dead_letter"] = "log"
    DEAD_LETTER_TOPIC: str = "events.dlq"
    PROJECT_KEYS: dict[str, ProjectKeyEntry] = Field(default_factory=dict)

    @field_validator("LOG_LEVEL")
    @classmethod
    def log_level_upper(cls, v: str) -> str:
        return v.strip().upper()

    @property
    def consumer_group(self) -> str:
        return self.KAFKA_CONSUMER_GROUP or f"{self.KAFKA_CLIENT_ID}-consumer-group"

    @property
    def kafka_brokers(self) -> list[str]:
        return [b.strip() for b in self.KAFKA_BROKERS.split(",") if b.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
