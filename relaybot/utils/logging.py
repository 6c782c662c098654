"""Logging setup shared by the service, the tool providers and the scripts."""

import logging
import os
import sys

from pydantic import BaseModel, Field

# Libraries that log every HTTP request or protocol frame at INFO
QUIET_LOGGERS = ("anthropic", "httpx", "httpcore", "mcp", "uvicorn.access")


class LogConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"
    quiet_loggers: tuple[str, ...] = Field(default=QUIET_LOGGERS)
    quiet_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> "LogConfig":
        return cls(
            level=os.getenv("LOG_LEVEL", "INFO"),
            format=os.getenv("LOG_FORMAT", cls.model_fields["format"].default),
        )


def setup_logging(config: LogConfig | None = None) -> None:
    """Configure the root logger to write to stdout and quiet chatty libraries."""
    config = config or LogConfig.from_env()

    logging.basicConfig(
        level=getattr(logging, config.level.upper()),
        format=config.format,
        datefmt=config.date_format,
        stream=sys.stdout,
        force=True,
    )

    for name in config.quiet_loggers:
        logging.getLogger(name).setLevel(config.quiet_level.upper())


def get_logger(name: str, level: str | None = None) -> logging.Logger:
    """Get a module logger.

    Args:
        name: Module name (typically __name__)
        level: Explicit level, overrides LOG_LEVEL
    """
    logger = logging.getLogger(name)
    logger.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())
    return logger
