import logging
import sys
from decimal import Decimal
from typing import Literal

import structlog
from structlog.typing import EventDict, WrappedLogger


SENSITIVE_KEYS = frozenset({"signature", "gateway_signature", "key_secret", "webhook_secret", "authorization"})


def redact_secrets(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    for key in SENSITIVE_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def stringify_amounts(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Render Decimal amounts as exact strings; the JSON renderer would otherwise fail on them."""
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            event_dict[key] = str(value)
    return event_dict


def configure_logging(
    level: str = "INFO",
    log_format: Literal["json", "console"] = "json",
) -> None:
    timestamper = structlog.processors.TimeStamper(fmt="iso")

    shared_processors: list[structlog.typing.Processor] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.contextvars.merge_contextvars,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        redact_secrets,
        stringify_amounts,
        timestamper,
    ]

    if log_format == "json":
        renderer: structlog.typing.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

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
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper()))

    # Noisy at INFO.
    for logger_name in ["sqlalchemy", "aiokafka", "asyncio", "uvicorn.access"]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def bind_actor(actor_id: str, actor_role: str) -> None:
    """Attach the calling actor to every log line emitted in this context."""
    structlog.contextvars.bind_contextvars(actor_id=actor_id, actor_role=actor_role)


def clear_actor() -> None:
    structlog.contextvars.unbind_contextvars("actor_id", "actor_role")
