"""Deferred deposit release/withhold jobs.

Staff queue a job against a booking; a scheduled run (or the staff endpoint)
settles the booking's deposit payment row, writes the ledger and notifies
the customer. Jobs are processed one at a time, oldest first.
"""

import datetime as dt
from decimal import Decimal
from typing import Any

from boto3.dynamodb.conditions import Key

from rental_core.models.booking import Booking
from rental_core.models.deposit import DepositJob, DepositLedgerEntry, JobRunSummary
from rental_core.models.enums import (
    DepositJobStatus,
    DepositJobType,
    LedgerAction,
    NotificationTemplate,
)
from rental_core.models.notification import NotificationRequest
from rental_core.utils.logging import get_logger

from .audit_log import AuditLogService
from .bookings import BookingRepository, utc_now
from .notifications import NotificationOutbox

logger = get_logger(__name__)

DEPOSIT_JOBS_TABLE = "deposit-jobs"
STATUS_INDEX = "status-index"

# A job left in processing this long is assumed to belong to a dead run
STALE_AFTER = dt.timedelta(minutes=15)

NO_DEPOSIT_PAYMENT = "No deposit payment found"


class DepositJobProcessor:
    """Runs pending deposit jobs."""

    def __init__(
        self,
        repository: BookingRepository | None = None,
        audit_log: AuditLogService | None = None,
        outbox: NotificationOutbox | None = None,
        stale_after: dt.timedelta = STALE_AFTER,
    ) -> None:
        self._repo = repository or BookingRepository()
        self._db = self._repo.db
        self._audit = audit_log or AuditLogService(self._db)
        self._outbox = outbox or NotificationOutbox(self._db)
        self._stale_after = stale_after

    def enqueue(
        self,
        booking_id: str,
        job_type: DepositJobType,
        amount: Decimal = Decimal("0"),
        reason: str | None = None,
        created_by: str = "system",
    ) -> DepositJob:
        job = DepositJob(
            booking_id=booking_id,
            job_type=job_type,
            amount=amount,
            reason=reason,
            created_by=created_by,
        )
        self._db.put_item(DEPOSIT_JOBS_TABLE, job.to_item())
        logger.info("Queued %s job %s for booking %s", job.job_type, job.job_id, booking_id)
        return job

    def get_job(self, job_id: str) -> DepositJob | None:
        item = self._db.get_item(DEPOSIT_JOBS_TABLE, {"job_id": job_id}, consistent_read=True)
        return DepositJob.model_validate(item) if item else None

    # === Run ===

    def process_pending(self, limit: int = 10) -> JobRunSummary:
        """Recover stale jobs, then process up to ``limit`` pending jobs."""
        summary = JobRunSummary(recovered=self.recover_stale_jobs())

        for job in self.fetch_pending(limit):
            job = self._claim(job)
            if job is None:
                continue
            summary.processed += 1
            try:
                outcome = self._process(job)
            except Exception as e:
                status = self._record_failure(job, str(e))
                summary.failed += 1
                summary.results.append(
                    {"jobId": job.job_id, "status": status.value, "error": str(e)}
                )
                continue
            summary.succeeded += 1
            summary.results.append({"jobId": job.job_id, "status": "completed", **outcome})

        logger.info(
            "Deposit job run: processed=%d succeeded=%d failed=%d recovered=%d",
            summary.processed,
            summary.succeeded,
            summary.failed,
            summary.recovered,
        )
        return summary

    def fetch_pending(self, limit: int) -> list[DepositJob]:
        """Pending jobs with attempts left, oldest first."""
        items = self._db.query(
            DEPOSIT_JOBS_TABLE,
            Key("status").eq(DepositJobStatus.PENDING.value),
            index_name=STATUS_INDEX,
        )
        jobs = [DepositJob.model_validate(item) for item in items]
        return [job for job in jobs if job.attempts < job.max_attempts][:limit]

    def recover_stale_jobs(self) -> int:
        """Return stuck ``processing`` jobs to the queue. Returns the count."""
        cutoff = (utc_now() - self._stale_after).isoformat()
        items = self._db.query(
            DEPOSIT_JOBS_TABLE,
            Key("status").eq(DepositJobStatus.PROCESSING.value),
            index_name=STATUS_INDEX,
        )
        recovered = 0
        for item in items:
            job = DepositJob.model_validate(item)
            if job.processing_started_at and job.processing_started_at > cutoff:
                continue
            exhausted = job.attempts >= job.max_attempts
            status = DepositJobStatus.FAILED if exhausted else DepositJobStatus.PENDING
            updated = self._db.update_item(
                DEPOSIT_JOBS_TABLE,
                {"job_id": job.job_id},
                "SET #status = :status, last_error = :error",
                expression_attribute_values={
                    ":status": status.value,
                    ":processing": DepositJobStatus.PROCESSING.value,
                    ":error": "Processing timed out",
                },
                expression_attribute_names={"#status": "status"},
                condition_expression="#status = :processing",
            )
            if updated is not None:
                logger.warning("Recovered stale deposit job %s as %s", job.job_id, status.value)
                recovered += 1
        return recovered

    def _claim(self, job: DepositJob) -> DepositJob | None:
        """Mark a job processing. None if another run took it first."""
        attrs = self._db.update_item(
            DEPOSIT_JOBS_TABLE,
            {"job_id": job.job_id},
            "SET #status = :processing, attempts = attempts + :one, processing_started_at = :now",
            expression_attribute_values={
                ":processing": DepositJobStatus.PROCESSING.value,
                ":pending": DepositJobStatus.PENDING.value,
                ":one": 1,
                ":now": utc_now().isoformat(),
            },
            expression_attribute_names={"#status": "status"},
            condition_expression="#status = :pending",
        )
        if attrs is None:
            logger.info("Deposit job %s already claimed", job.job_id)
            return None
        return DepositJob.model_validate(attrs)

    def _process(self, job: DepositJob) -> dict[str, Any]:
        booking = self._repo.get_booking(job.booking_id)
        if booking is None:
            raise LookupError(f"Booking {job.booking_id} not found")

        payment = self._repo.find_completed_deposit_payment(job.booking_id)
        if payment is None:
            self._complete(job, last_error=NO_DEPOSIT_PAYMENT)
            logger.warning("Deposit job %s: %s", job.job_id, NO_DEPOSIT_PAYMENT)
            return {"released": "0.00", "withheld": "0.00", "note": NO_DEPOSIT_PAYMENT}

        paid = Decimal(str(payment["amount"]))
        release, withhold = self._split(job, paid)

        # The deposit row stays completed until every effect below is written
        if release > 0:
            self._ledger(job, booking, LedgerAction.RELEASE, release, payment["payment_id"])
        if withhold > 0:
            self._ledger(job, booking, LedgerAction.DEDUCT, withhold, payment["payment_id"])

        template = (
            NotificationTemplate.DEPOSIT_RELEASED
            if release > 0
            else NotificationTemplate.DEPOSIT_WITHHELD
        )
        self._outbox.enqueue(
            NotificationRequest(
                booking_id=booking.booking_id,
                template_type=template,
                dedupe_suffix=job.job_id,
            )
        )
        self._audit.record(
            f"deposit_{job.job_type}",
            booking.booking_id,
            user_id=job.created_by,
            new_data={
                "job_id": job.job_id,
                "payment_id": payment["payment_id"],
                "released": str(release),
                "withheld": str(withhold),
            },
        )
        if release > 0 or withhold > 0:
            self._repo.mark_payment_refunded(payment["payment_id"])
        self._complete(job)
        return {"released": str(release), "withheld": str(withhold)}

    @staticmethod
    def _split(job: DepositJob, paid: Decimal) -> tuple[Decimal, Decimal]:
        """(release, withhold) amounts in dollars for a job."""
        if job.job_type == DepositJobType.RELEASE.value:
            return job.amount, Decimal("0")
        if job.job_type == DepositJobType.WITHHOLD.value:
            return Decimal("0"), job.amount
        withhold = min(job.amount, paid)
        return paid - withhold, withhold

    def _ledger(
        self,
        job: DepositJob,
        booking: Booking,
        action: LedgerAction,
        amount: Decimal,
        payment_id: str,
    ) -> None:
        self._repo.append_ledger(
            DepositLedgerEntry(
                entry_id=f"DL-{job.job_id}-{action.value}",
                booking_id=booking.booking_id,
                action=action,
                amount=amount,
                reason=job.reason or f"Deposit {job.job_type} job",
                created_by=job.created_by,
                payment_id=payment_id,
            )
        )

    def _complete(self, job: DepositJob, last_error: str | None = None) -> None:
        values: dict[str, Any] = {
            ":completed": DepositJobStatus.COMPLETED.value,
            ":now": utc_now().isoformat(),
        }
        expression = "SET #status = :completed, processed_at = :now"
        if last_error:
            expression += ", last_error = :error"
            values[":error"] = last_error
        self._db.update_item(
            DEPOSIT_JOBS_TABLE,
            {"job_id": job.job_id},
            expression,
            expression_attribute_values=values,
            expression_attribute_names={"#status": "status"},
        )

    def _record_failure(self, job: DepositJob, error: str) -> DepositJobStatus:
        exhausted = job.attempts >= job.max_attempts
        status = DepositJobStatus.FAILED if exhausted else DepositJobStatus.PENDING
        self._db.update_item(
            DEPOSIT_JOBS_TABLE,
            {"job_id": job.job_id},
            "SET #status = :status, last_error = :error",
            expression_attribute_values={":status": status.value, ":error": error[:500]},
            expression_attribute_names={"#status": "status"},
        )
        logger.error(
            "Deposit job %s failed (attempt %d/%d): %s",
            job.job_id,
            job.attempts,
            job.max_attempts,
            error,
        )
        return status
