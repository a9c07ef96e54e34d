"""Logging setup for mini-copilotgw.

Components never log through a module global; they take a logger in their
constructor and fall back to ``component_logger``.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any, Dict, Optional

from .config import LoggingConfig

PACKAGE_LOGGER = "copilotgw"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _handler(config: LoggingConfig) -> Dict[str, Any]:
    if config.file:
        return {
            "class": "logging.handlers.WatchedFileHandler",
            "filename": config.file,
            "encoding": "utf-8",
            "formatter": "gateway",
        }
    return {"class": "logging.StreamHandler", "formatter": "gateway"}


def configure_logging(config: LoggingConfig) -> None:
    """Route the gateway and uvicorn loggers through one handler.

    uvicorn is started with ``log_config=None`` so this is the only place
    handlers get installed.
    """
    level = getattr(logging, config.level.upper(), logging.INFO)

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"gateway": {"format": LOG_FORMAT}},
            "handlers": {"gateway": _handler(config)},
            "loggers": {
                PACKAGE_LOGGER: {"level": level},
                "uvicorn.error": {"level": level},
                "uvicorn.access": {"level": logging.INFO if config.access_log else logging.WARNING},
                # the ollama client logs every HTTP request at INFO
                "httpx": {"level": logging.WARNING},
            },
            "root": {"handlers": ["gateway"], "level": level},
        }
    )


def component_logger(name: str, logger: Optional[logging.Logger] = None) -> logging.Logger:
    """Return the injected logger or ``copilotgw.<name>``."""
    if logger is not None:
        return logger
    return logging.getLogger(f"{PACKAGE_LOGGER}.{name}")


def redact_prompt(prompt: Optional[str], enabled: bool) -> Optional[str]:
    """Replace prompt text by its length unless redaction is disabled."""
    if not enabled or prompt is None:
        return prompt
    return f"<redacted {len(prompt)} chars>"


__all__ = ["LOG_FORMAT", "PACKAGE_LOGGER", "component_logger", "configure_logging", "redact_prompt"]
