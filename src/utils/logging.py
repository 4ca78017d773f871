"""Gateway logging config

## Setup

Logging is configured when this module is imported. It uses structlog for structured logging. Logs are
pretty-printed in the local env (GATEWAY_ENVIRONMENT='local') and JSON-formatted everywhere else.

```
from src.utils.logging import get_logger

logger = get_logger(__name__)
logger.info("Installation stored", tenant_id="ctx-1", provider="slack")
```

## Log context

Use add_log_context() or the LogContext context manager to bind values (tenant_id, provider,
event_id) to every log line emitted within the current async context:

```
from src.utils.logging import LogContext, get_logger

with LogContext(tenant_id="ctx-1", event_id="Ev123"):
    logger.info("Routing event")  # includes tenant_id and event_id
```

## Secrets

Credential material must never reach log output. The redact_secrets processor masks any event key
that names a token, secret, code or encrypted blob, as a last line of defence for call sites that
pass such values by mistake.

### Standard logging integration

Python's standard `logging` module is routed through structlog, so library code using
`logging.getLogger()` (uvicorn, httpx, slack_sdk, apscheduler) is formatted the same way.
"""

from __future__ import annotations

import logging
import os
from collections.abc import MutableMapping
from typing import Any

import structlog
import structlog.contextvars

from src.utils.config import get_gateway_environment
from src.utils.newrelic_logging import newrelic_error_processor

REDACTED = "[redacted]"
SECRET_KEY_MARKERS = (
    "token",
    "secret",
    "password",
    "encrypted",
    "authorization",
    "code",
)


def redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key in list(event_dict.keys()):
        lowered = key.lower()
        if lowered in ("event", "message", "status_code", "error_code"):
            continue
        if any(marker in lowered for marker in SECRET_KEY_MARKERS):
            event_dict[key] = REDACTED
    return event_dict


def _get_log_renderer() -> structlog.types.Processor:
    """Console renderer locally, JSON elsewhere. LOG_RENDERER=console|json overrides."""
    log_renderer = os.getenv("LOG_RENDERER", "").lower()
    if log_renderer == "console":
        use_console = True
    elif log_renderer == "json":
        use_console = False
    else:
        use_console = get_gateway_environment() == "local"

    if use_console:
        return structlog.dev.ConsoleRenderer(
            colors=True,
            pad_event=0,
            force_colors=False,
            repr_native_str=False,
            exception_formatter=structlog.dev.plain_traceback,
            sort_keys=True,
            event_key="message",
        )
    return structlog.processors.JSONRenderer()


def configure_logging() -> None:
    """Configure structlog and the stdlib root logger for the current environment."""
    common_processors: list[structlog.types.Processor] = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.contextvars.merge_contextvars,
        redact_secrets,
        structlog.processors.EventRenamer("message"),  # New Relic expects 'message'
        newrelic_error_processor,
        structlog.stdlib.filter_by_level,  # Must come after add_log_level
    ]

    structlog.configure(
        processors=common_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # stdlib loggers filter their own levels, so filter_by_level is left out of the foreign chain
    foreign_processors = [p for p in common_processors if p != structlog.stdlib.filter_by_level]
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=_get_log_renderer(),
            foreign_pre_chain=foreign_processors,
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(stream_handler)

    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    numeric_log_level = getattr(logging, log_level, logging.INFO)
    root_logger.setLevel(numeric_log_level)

    if numeric_log_level <= logging.DEBUG:
        for logger_name in ["uvicorn", "uvicorn.access", "uvicorn.error"]:
            uvicorn_logger = logging.getLogger(logger_name)
            if uvicorn_logger.level > numeric_log_level:
                uvicorn_logger.setLevel(numeric_log_level)

    # slack_sdk logs full request URLs at DEBUG, which can carry tokens
    logging.getLogger("slack_sdk").setLevel(max(numeric_log_level, logging.INFO))


configure_logging()


def add_log_context(**kwargs: Any) -> None:
    """Add values to the logging context of the current async context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def remove_log_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_log_context() -> None:
    """Clear all values from the logging context.

    Useful for ensuring a clean context at the start of a new request.
    """
    structlog.contextvars.clear_contextvars()


LogContext = structlog.contextvars.bound_contextvars


def get_logger(name: str, **kwargs: Any) -> structlog.BoundLogger:
    """Get a logger instance. Wrapper around structlog.get_logger for convenience.

    Args:
        name: Logger name (usually __name__ from the calling module)
    """
    return structlog.get_logger(name, **kwargs)


def get_uvicorn_log_config() -> dict[str, Any]:
    """Uvicorn logging configuration that renders access and error logs like application logs."""
    handler = {
        "handlers": ["default"],
        "level": "INFO",
        "propagate": False,
    }
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processor": _get_log_renderer(),
                "foreign_pre_chain": [
                    structlog.stdlib.add_log_level,
                    structlog.stdlib.add_logger_name,
                    structlog.processors.TimeStamper(fmt="iso"),
                    structlog.processors.EventRenamer("message"),
                ],
            },
        },
        "handlers": {
            "default": {
                "formatter": "default",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "": dict(handler),
            "uvicorn": dict(handler),
            "uvicorn.access": dict(handler),
            "uvicorn.error": dict(handler),
        },
    }
