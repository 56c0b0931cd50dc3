from __future__ import annotations

import logging
import sys
from typing import IO, Any, cast

import structlog

from automaker_sdk.core.config import AutomakerConfig

REDACTED = "***"
_SECRET_KEYS = ("api_key", "apikey", "token", "secret", "password", "authorization")


def redact_secrets(
    _logger: Any, _method: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Mask credential-looking values so provider keys never reach log sinks."""
    for key, value in event_dict.items():
        if value and any(marker in key.lower() for marker in _SECRET_KEYS):
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(
    level: str = "INFO", json: bool = True, *, stream: IO[str] | None = None
) -> None:
    """Route structlog through stdlib ``logging`` with one structured handler.

    Args:
        level: Standard logging level string, e.g. "DEBUG", "INFO".
        json: Render entries as JSON; ``False`` selects the console renderer.
        stream: Output stream (stdout by default).
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
    ]
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=shared
        + [
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=shared,
        )
    )
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)


def configure_from_config(config: AutomakerConfig, *, stream: IO[str] | None = None) -> None:
    configure_logging(config.log_level, config.log_json, stream=stream)


def get_logger(name: str, **context: Any) -> structlog.BoundLogger:
    """Named structlog logger, optionally pre-bound with *context* (``feature_id=...``)."""
    logger = cast(structlog.BoundLogger, structlog.get_logger(name))
    return logger.bind(**context) if context else logger
