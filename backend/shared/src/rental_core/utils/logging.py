"""Logging setup shared by the API and the scheduled Lambdas.

Every record carries the request's correlation ID, taken from the
``X-Correlation-ID`` header by the API middleware or from the Lambda
request ID in the scheduled jobs. Payment and webhook helpers log one
line per operation in ``headline | key=value`` form and attach the same
fields as ``extra`` for CloudWatch Insights queries.

Usage:
    from rental_core.utils.logging import get_logger, log_payment_operation

    logger = get_logger(__name__)
    log_payment_operation(logger, "release_deposit_hold", booking_id="BK-123")
"""

import logging
import uuid
from contextvars import ContextVar
from typing import Any

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)

NO_CORRELATION_ID = "-"
LOG_FORMAT = "[%(correlation_id)s] %(levelname)s %(name)s %(message)s"


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current context and return it."""
    cid = correlation_id or str(uuid.uuid4())
    _correlation_id.set(cid)
    return cid


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def clear_correlation_id() -> None:
    _correlation_id.set(None)


class CorrelationIdFilter(logging.Filter):
    """Stamps ``correlation_id`` on each record so LOG_FORMAT can use it."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or NO_CORRELATION_ID
        return True


def _has_correlation_filter(target: logging.Logger | logging.Handler) -> bool:
    return any(isinstance(f, CorrelationIdFilter) for f in target.filters)


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not _has_correlation_filter(logger):
        logger.addFilter(CorrelationIdFilter())
    return logger


def configure_logging(level: int = logging.INFO) -> None:
    """Apply LOG_FORMAT to the root logger's handlers.

    The Lambda runtime installs its own root handler; it is reused rather
    than adding a second one, which would print every line twice.
    """
    root = logging.getLogger()
    root.setLevel(level)
    if not root.handlers:
        root.addHandler(logging.StreamHandler())
    for handler in root.handlers:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        if not _has_correlation_filter(handler):
            handler.addFilter(CorrelationIdFilter())


def _log_fields(logger: logging.Logger, level: int, headline: str, fields: dict[str, Any]) -> None:
    present = {key: value for key, value in fields.items() if value is not None}
    parts = [headline, *(f"{key}={value}" for key, value in present.items())]
    logger.log(level, " | ".join(parts), extra=present)


def log_payment_operation(
    logger: logging.Logger,
    operation: str,
    *,
    booking_id: str | None = None,
    payment_intent_id: str | None = None,
    amount_cents: int | None = None,
    status: str | None = None,
    error: str | None = None,
    **extra: Any,
) -> None:
    """Log one payment or deposit operation; ERROR when ``error`` is set.

    Args:
        logger: Logger to write to
        operation: e.g. "create_payment_intent", "release_deposit_hold"
        booking_id: Booking the operation touched
        payment_intent_id: Stripe PaymentIntent involved
        amount_cents: Amount charged, held or refunded
        status: Resulting payment or deposit status
        error: Failure message
        **extra: Further fields, logged as-is
    """
    _log_fields(
        logger,
        logging.ERROR if error else logging.INFO,
        f"Payment operation: {operation}",
        {
            "booking_id": booking_id,
            "payment_intent_id": payment_intent_id,
            "amount_cents": amount_cents,
            "status": status,
            "error": error,
            **extra,
        },
    )


_WEBHOOK_LEVELS = {"error": logging.ERROR, "duplicate": logging.WARNING, "skipped": logging.WARNING}


def log_webhook_event(
    logger: logging.Logger,
    event_type: str,
    event_id: str,
    *,
    booking_id: str | None = None,
    result: str | None = None,
    error: str | None = None,
    **extra: Any,
) -> None:
    """Log a Stripe event at the stage given by ``result``.

    ``result`` is one of received, success, duplicate, skipped or error;
    duplicates and skips log at WARNING, errors at ERROR.
    """
    _log_fields(
        logger,
        _WEBHOOK_LEVELS.get(result or "", logging.INFO),
        f"Webhook event: {event_type} ({event_id})",
        {
            "event_type": event_type,
            "event_id": event_id,
            "result": result,
            "booking": booking_id,
            "error": error,
            **extra,
        },
    )
