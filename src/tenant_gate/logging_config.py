"""Structured logging configuration.

JSON output for production, colored console elsewhere. Call
configure_logging() once at startup (the FastAPI lifespan does).
Request-scoped fields such as ``tenant_id`` come from structlog
contextvars bound by the auth stage.
"""

import logging
import re
import sys

import structlog

SENSITIVE_KEYS: frozenset[str] = frozenset(
    {"authorization", "token", "secret", "jwt_secret", "password", "credential"}
)
REDACTED = "***REDACTED***"

# Bearer credentials can leak inside free-form values (error strings, headers).
_BEARER_VALUE = re.compile(r"Bearer\s+[A-Za-z0-9._~+/=-]+")

QUIET_LOGGERS: tuple[str, ...] = ("uvicorn.access", "sqlalchemy.engine", "redis")


def _redact_credentials(
    logger: logging.Logger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """Mask sensitive keys and scrub bearer tokens from string values."""
    for key, value in event_dict.items():
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = REDACTED
        elif isinstance(value, str) and "Bearer" in value:
            event_dict[key] = _BEARER_VALUE.sub(f"Bearer {REDACTED}", value)
    return event_dict


def _renderer(environment: str) -> list[structlog.types.Processor]:
    if environment == "production":
        return [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    return [structlog.dev.ConsoleRenderer(colors=True)]


def configure_logging(
    environment: str = "development",
    log_level: str = "INFO",
) -> None:
    """Configure structlog processor chain and stdlib root logger.

    Args:
        environment: 'production' for JSON output, anything else
            for colored console output.
        log_level: Python log level name (DEBUG, INFO, WARNING, etc.).
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        _redact_credentials,
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *_renderer(environment),
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level.upper())

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
