"""Scheduled Jobs Lambda - EventBridge cron entry points.

Two handlers share this package:
1. process_deposit_jobs: runs pending deposit release/withhold jobs
2. dispatch_notifications: sends pending outbox emails (SES) and SMS (SNS)

Both are safe to run concurrently with themselves: jobs and notifications
are claimed or updated with conditional writes.
"""

import logging
import os
from typing import Any

from rental_core.services.deposit_jobs import DepositJobProcessor
from rental_core.services.notifications import NotificationDispatcher
from rental_core.utils.logging import configure_logging, set_correlation_id

logger = logging.getLogger()
logger.setLevel(logging.INFO)
configure_logging(logging.INFO)

DEFAULT_JOB_BATCH = 10
DEFAULT_NOTIFICATION_BATCH = 25


def _batch_size(event: dict[str, Any], env_var: str, default: int) -> int:
    """Batch size from the event, then the environment, then ``default``."""
    value = (event or {}).get("limit") or os.environ.get(env_var)
    return int(value) if value else default


def _request_id(context: Any) -> str | None:
    return getattr(context, "aws_request_id", None)


def process_deposit_jobs(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """Run one batch of deposit jobs.

    Returns:
        The run summary (camelCase keys), which EventBridge ignores but
        makes manual invocations readable.
    """
    set_correlation_id(_request_id(context))
    limit = _batch_size(event, "DEPOSIT_JOB_BATCH_SIZE", DEFAULT_JOB_BATCH)
    summary = DepositJobProcessor().process_pending(limit=limit)
    logger.info(
        "Deposit jobs processed=%d succeeded=%d failed=%d recovered=%d",
        summary.processed,
        summary.succeeded,
        summary.failed,
        summary.recovered,
    )
    return summary.model_dump(by_alias=True, mode="json")


def dispatch_notifications(event: dict[str, Any], context: Any) -> dict[str, int]:
    """Send one batch of pending notifications."""
    set_correlation_id(_request_id(context))
    limit = _batch_size(event, "NOTIFICATION_BATCH_SIZE", DEFAULT_NOTIFICATION_BATCH)
    return NotificationDispatcher().dispatch_pending(limit=limit)
