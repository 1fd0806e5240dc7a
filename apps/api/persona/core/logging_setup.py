"""structlog bootstrap for the API process.

structlog and stdlib loggers (uvicorn, httpx, openai) share one processor
chain: console rendering for local environments, one JSON object per line
everywhere else.
"""

import logging
import logging.config

import structlog

_LOCAL_ENVIRONMENTS = frozenset({"", "local", "dev", "development", "test"})
_QUIET_LOGGERS = {"httpx": "WARNING", "httpcore": "WARNING", "openai": "WARNING"}

_configured = False


def _renderer(environment: str):
    if environment.lower() in _LOCAL_ENVIRONMENTS:
        return structlog.dev.ConsoleRenderer(colors=True, pad_event=40)
    return structlog.processors.JSONRenderer()


def configure_logging(log_level: str, environment: str = "local") -> None:
    """Configure structlog once per process; later calls are ignored."""
    global _configured
    if _configured:
        return

    pre_chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    structlog.configure(
        processors=[
            *pre_chain,
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structlog": {
                    "()": structlog.stdlib.ProcessorFormatter,
                    "foreign_pre_chain": pre_chain,
                    "processors": [
                        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                        _renderer(environment),
                    ],
                }
            },
            "handlers": {
                "stdout": {
                    "class": "logging.StreamHandler",
                    "formatter": "structlog",
                    "stream": "ext://sys.stdout",
                }
            },
            "root": {"handlers": ["stdout"], "level": log_level.upper()},
            "loggers": {name: {"level": level} for name, level in _QUIET_LOGGERS.items()},
        }
    )
    _configured = True
