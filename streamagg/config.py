"""
Configuration settings for the streaming aggregation engine.

Uses Pydantic Settings to load environment variables for the watched source
directory, checkpoint location, schema variant selection, and logging.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from streamagg.domain.schema import SchemaVariant


class Settings(BaseSettings):
    # Source
    schema_variant: SchemaVariant = Field(SchemaVariant.V1, alias="STREAM_SCHEMA_VARIANT")
    watch_dir: Path = Field(Path("data/incoming"), alias="STREAM_WATCH_DIR")
    file_pattern: str = Field("*.csv", alias="STREAM_FILE_PATTERN")
    poll_interval_seconds: float = Field(5.0, gt=0, alias="STREAM_POLL_INTERVAL")
    file_read_timeout_seconds: float = Field(10.0, gt=0, alias="STREAM_FILE_READ_TIMEOUT")
    max_file_retries: int = Field(3, ge=1, alias="STREAM_MAX_FILE_RETRIES")

    # Checkpointing
    checkpoint_dir: Path = Field(Path("data/checkpoint"), alias="STREAM_CHECKPOINT_DIR")
    checkpoint_retain: int = Field(3, ge=1, alias="STREAM_CHECKPOINT_RETAIN")
    max_checkpoint_failures: int = Field(3, ge=1, alias="STREAM_MAX_CHECKPOINT_FAILURES")

    # Execution / output
    query_workers: int = Field(4, ge=1, alias="STREAM_QUERY_WORKERS")
    sink: str = Field("console", pattern="^(console|json|memory)$", alias="STREAM_SINK")
    output_dir: Path = Field(Path("data/output"), alias="STREAM_OUTPUT_DIR")

    # Application
    app_env: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    json_logs: bool = Field(False, alias="JSON_LOGS")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("schema_variant", mode="before")
    @classmethod
    def parse_variant(cls, value: object) -> SchemaVariant:
        return SchemaVariant.parse(value)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return Settings()


__all__ = ["Settings", "get_settings"]
