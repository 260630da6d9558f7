"""Staff-only maintenance endpoints."""

from fastapi import APIRouter, Depends

from rental_core.models.deposit import JobRunSummary
from rental_core.services.deposit_jobs import DepositJobProcessor

from rental_api.dependencies import get_deposit_job_processor
from rental_api.models.deposits import ProcessDepositJobsRequest
from rental_api.security import CurrentUser, require_staff

router = APIRouter(tags=["admin"])


@router.post(
    "/admin/deposit-jobs/process",
    summary="Run pending deposit jobs now",
    response_model=JobRunSummary,
    responses={403: {"description": "Staff role required"}},
)
def process_deposit_jobs(
    body: ProcessDepositJobsRequest | None = None,
    user: CurrentUser = Depends(require_staff),
    processor: DepositJobProcessor = Depends(get_deposit_job_processor),
) -> JobRunSummary:
    body = body or ProcessDepositJobsRequest()
    return processor.process_pending(limit=body.limit)
