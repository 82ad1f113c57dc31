"""Configuration settings using Pydantic Settings.

Usage:
    from tickstat.config import SamplerSettings

    # Load from environment variables (TICKSTAT_*)
    settings = SamplerSettings()

    # Or override with explicit values
    settings = SamplerSettings(interval_ms=500)
"""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_INTERVAL_MS = 100

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class SamplerSettings(BaseSettings):
    """Configuration for the sampler and its readers.

    Attributes:
        interval_ms: Time between tick starts, in milliseconds.
        history_capacity: Number of points kept per history buffer.
        exclude_loopback: Leave the loopback interface out of network results.
        default_link_speed: Bytes/s treated as 100% for interfaces that
            report no link speed.
        disk_transfer_full_scale: Bytes/s treated as 100% in disk transfer
            histories.
        network_full_scale: Bytes/s treated as 100% in the system-wide
            network history.
        read_memory_topology: Ask dmidecode for memory module details once.
        log_level: Level used by ``configure_logging``.
        log_file: File the console viewer logs to; no logging when unset.

    Environment Variables:
        TICKSTAT_INTERVAL_MS
        TICKSTAT_HISTORY_CAPACITY
        TICKSTAT_EXCLUDE_LOOPBACK
        TICKSTAT_DEFAULT_LINK_SPEED
        TICKSTAT_DISK_TRANSFER_FULL_SCALE
        TICKSTAT_NETWORK_FULL_SCALE
        TICKSTAT_READ_MEMORY_TOPOLOGY
        TICKSTAT_LOG_LEVEL
        TICKSTAT_LOG_FILE
    """

    model_config = SettingsConfigDict(
        env_prefix="TICKSTAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    interval_ms: int = Field(default=1000, ge=MIN_INTERVAL_MS)
    history_capacity: int = Field(default=60, ge=1)
    exclude_loopback: bool = True
    default_link_speed: int = Field(default=125_000_000, gt=0)
    disk_transfer_full_scale: int = Field(default=100_000_000, gt=0)
    network_full_scale: int = Field(default=10_000_000, gt=0)
    read_memory_topology: bool = True
    log_level: LogLevel = "WARNING"
    log_file: str | None = None

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: object) -> object:
        return value.upper() if isinstance(value, str) else value


def configure_logging(
    level: str | int = "WARNING",
    handler: logging.Handler | None = None,
) -> logging.Logger:
    """
    Attach a handler to the ``tickstat`` logger.

    Args:
        level: Logging level name or number.
        handler: Handler to use. Defaults to a stderr stream handler.

    Returns:
        The configured package logger.
    """
    logger = logging.getLogger("tickstat")
    if handler is None:
        handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
    logger.addHandler(handler)
    logger.setLevel(level.upper() if isinstance(level, str) else level)
    return logger
