"""structlog setup for the subscription engine.

Every entry, ours or from uvicorn/SQLAlchemy through the stdlib bridge, goes
through one processor chain: context vars, level, logger name, correlation id,
security-audit tag, timestamp. Production renders JSON lines, debug renders
colored console output.

Security-relevant entries (forged webhook signatures, rejected service tokens,
manual activations) are written through ``get_security_logger()`` and carry
``audit="security"`` so they can be routed to a separate sink.
"""

import logging
import logging.config

import structlog
from asgi_correlation_id.context import correlation_id

SECURITY_LOGGER_NAME = "subscription_engine.security"

# Third-party loggers that are noisy at INFO
_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine")


def add_correlation_id(logger, method, event_dict):
    """Inject correlation_id from asgi-correlation-id context into every log entry."""
    cid = correlation_id.get(None)
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def tag_security_events(logger, method, event_dict):
    """Mark entries of the security logger as audit records."""
    if event_dict.get("logger") == SECURITY_LOGGER_NAME:
        event_dict.setdefault("audit", "security")
    return event_dict


def get_security_logger():
    """Logger for security-audit entries."""
    return structlog.get_logger(SECURITY_LOGGER_NAME)


def shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_correlation_id,
        tag_security_events,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]


def _stdlib_config(log_level: str, renderer, processors: list) -> dict:
    loggers = {name: {"level": "WARNING"} for name in _QUIET_LOGGERS}
    # Audit entries survive a root level above INFO
    loggers[SECURITY_LOGGER_NAME] = {"level": "INFO"}
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structlog": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    renderer,
                ],
                "foreign_pre_chain": processors,
            },
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "structlog",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["default"], "level": log_level},
        "loggers": loggers,
    }


def configure_structlog(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Configure structlog and route stdlib logging through the same chain.

    Call before other package imports: structlog caches the processor chain
    on first use.

    Args:
        log_level: Root log level ("DEBUG", "INFO", "WARNING", "ERROR")
        json_logs: JSON lines (production) or ConsoleRenderer (debug)
    """
    processors = shared_processors()
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    logging.config.dictConfig(_stdlib_config(log_level, renderer, processors))

    structlog.configure(
        processors=processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
