"""
Structured logging for the Installment Negotiation Service.

Every record is one JSON object. Besides structlog's `event`, `level`,
`logger` and `timestamp`, records carry whatever is bound for the current
request:
- request_id: taken from X-Request-ID or generated by the middleware
- actor_id: the customer, reviewer or supplier acting (once the route knows it)

Engine records add `installment_request_id` and, for offers, `offer_id`.
Status changes are always logged through `log_transition` so they can be
filtered on a single event name, `installment_status_changed`.
"""
import logging
import sys
import time
import uuid
from typing import Any, Optional

import structlog

from installments.config import settings


def configure_logging(level: Optional[str] = None) -> None:
    """Route structlog through stdlib logging and render JSON to stdout."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=(level or settings.log_level).upper(),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(default=str),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def set_request_context(request_id: str, actor_id: Optional[str] = None) -> None:
    """Bind request-scoped fields; later calls add to what is already bound."""
    structlog.contextvars.bind_contextvars(request_id=request_id)
    if actor_id:
        structlog.contextvars.bind_contextvars(actor_id=actor_id)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


def generate_request_id() -> str:
    return str(uuid.uuid4())


class TimedOperation:
    """
    Times a block and logs its outcome.

    Emits `<event>_started` at debug level, then `<event>_completed` (info)
    or `<event>_failed` (warning, with the error's `code` when it has one).
    Exceptions are never suppressed.
    """

    def __init__(
        self,
        event: str,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
        **fields: Any,
    ):
        self.event = event
        self.logger = logger or get_logger()
        self.fields = fields
        self.duration_ms: float = 0
        self._started: float = 0

    def __enter__(self) -> "TimedOperation":
        self._started = time.perf_counter()
        self.logger.debug(f"{self.event}_started", **self.fields)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.duration_ms = round((time.perf_counter() - self._started) * 1000, 2)

        if exc_type is None:
            self.logger.info(f"{self.event}_completed", duration_ms=self.duration_ms, **self.fields)
            return False

        self.logger.warning(
            f"{self.event}_failed",
            duration_ms=self.duration_ms,
            error=str(exc_val),
            error_code=getattr(exc_val, "code", exc_type.__name__),
            **self.fields,
        )
        return False


def log_transition(
    logger: structlog.stdlib.BoundLogger,
    installment_request_id: str,
    from_status: Any,
    to_status: Any,
    event: Any,
    **extra_fields: Any,
) -> None:
    """Log a request status change; enum members are logged by value."""
    logger.info(
        "installment_status_changed",
        installment_request_id=installment_request_id,
        from_status=getattr(from_status, "value", from_status),
        to_status=getattr(to_status, "value", to_status),
        transition=getattr(event, "value", event),
        **extra_fields,
    )
