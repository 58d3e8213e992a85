"""
Matching API Endpoints

Entry points for ingestion pipelines and the operator board:
- POST /matching/dispatch - Dispatch a matching event
- GET /matching/queues/{queue_name}/stats - Queue depth per status
- GET /matching/queues/{queue_name}/failed - Failed jobs
- POST /matching/jobs/{job_id}/retry - Re-queue a failed job
- POST /matching/suggestions/{suggestion_id}/confirm - Confirm a suggestion
- POST /matching/suggestions/{suggestion_id}/decline - Decline a suggestion
- POST /matching/manual-match - Link a document and a transaction by hand
- POST /matching/bulk-confirm - Confirm matched and suggested transactions
- GET /matching/stats - Match status counts for a team
- POST /matching/documents/{document_id}/flag - Flag a document
- POST /matching/documents/{document_id}/exclude - Exclude a document
"""

import logging
from datetime import date
from typing import List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field, model_validator

from jobs.errors import (
    PayloadValidationError,
    QueueNotRegisteredError,
    ReviewError,
    SuggestionNotFoundError,
)
from reconciliation.dispatcher import DocumentsIngested, SweepRequested, TransactionsArrived

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/matching", tags=["Matching"])


def get_runtime(request: Request):
    """Dependency returning the process runtime built at startup."""
    return request.app.state.runtime


# ==================== Request/Response Models ====================

class DispatchRequest(BaseModel):
    """Matching event raised by an ingestion pipeline or an operator."""
    event: Literal["transactions_arrived", "documents_ingested", "sweep"]
    team_id: UUID
    transaction_ids: List[UUID] = Field(default_factory=list)
    document_ids: List[UUID] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_ids(self) -> "DispatchRequest":
        if self.event == "transactions_arrived" and not self.transaction_ids:
            raise ValueError("transactions_arrived needs transaction_ids")
        if self.event == "documents_ingested" and not self.document_ids:
            raise ValueError("documents_ingested needs document_ids")
        return self


class DispatchResponse(BaseModel):
    job_ids: List[str]
    count: int


class ReviewRequest(BaseModel):
    team_id: UUID
    actor: str = Field(default="operator", description="Who performed the review")


class ManualMatchRequest(ReviewRequest):
    document_id: UUID
    transaction_id: UUID
    note: Optional[str] = Field(default=None, max_length=1000)


class BulkConfirmRequest(ReviewRequest):
    """Limit the confirmation to some transactions or a date range; empty means all."""
    transaction_ids: List[UUID] = Field(default_factory=list, max_length=500)
    start: Optional[date] = None
    end: Optional[date] = None


# ==================== Endpoints ====================

@router.post("/dispatch", response_model=DispatchResponse, summary="Dispatch a matching event")
async def dispatch_event(request: DispatchRequest, runtime=Depends(get_runtime)):
    """
    Enqueue the matching jobs for an ingestion event or a sweep.
    """
    team_id = str(request.team_id)
    if request.event == "transactions_arrived":
        event = TransactionsArrived(team_id, tuple(str(i) for i in request.transaction_ids))
    elif request.event == "documents_ingested":
        event = DocumentsIngested(team_id, tuple(str(i) for i in request.document_ids))
    else:
        event = SweepRequested(team_id)

    try:
        job_ids = await runtime.dispatcher.dispatch(event)
    except PayloadValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return DispatchResponse(job_ids=job_ids, count=len(job_ids))


@router.get("/queues/{queue_name}/stats", summary="Queue depth")
async def get_queue_stats(queue_name: str, runtime=Depends(get_runtime)):
    try:
        return await runtime.queue.get_queue_stats(queue_name)
    except QueueNotRegisteredError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/queues/{queue_name}/failed", summary="Failed jobs")
async def get_failed_jobs(
    queue_name: str,
    limit: int = Query(default=50, ge=1, le=500),
    runtime=Depends(get_runtime)
):
    """
    Jobs that failed for good, newest first, with attempt counts and the last error.
    """
    try:
        jobs = await runtime.queue.get_failed_jobs(queue_name, limit)
    except QueueNotRegisteredError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"queue": queue_name, "jobs": jobs, "count": len(jobs)}


@router.post("/jobs/{job_id}/retry", summary="Retry a failed job")
async def retry_failed_job(job_id: str, runtime=Depends(get_runtime)):
    retried = await runtime.queue.retry_failed_job(job_id)
    if not retried:
        raise HTTPException(status_code=404, detail=f"No failed job {job_id}")
    return {"job_id": job_id, "status": "waiting"}


@router.post("/suggestions/{suggestion_id}/confirm", summary="Confirm a suggestion")
async def confirm_suggestion(suggestion_id: str, request: ReviewRequest, runtime=Depends(get_runtime)):
    try:
        outcome = await runtime.service.confirm_suggestion(str(request.team_id), suggestion_id, request.actor)
    except SuggestionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ReviewError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return outcome.to_dict()


@router.post("/suggestions/{suggestion_id}/decline", summary="Decline a suggestion")
async def decline_suggestion(suggestion_id: str, request: ReviewRequest, runtime=Depends(get_runtime)):
    try:
        await runtime.service.decline_suggestion(str(request.team_id), suggestion_id, request.actor)
    except SuggestionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ReviewError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"suggestion_id": suggestion_id, "status": "declined"}


@router.post("/documents/{document_id}/flag", summary="Flag a document")
async def flag_document(document_id: str, request: ReviewRequest, runtime=Depends(get_runtime)):
    """
    Take a document out of automatic matching for follow-up.
    """
    try:
        await runtime.service.flag_document(str(request.team_id), document_id, request.actor)
    except PayloadValidationError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ReviewError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"document_id": document_id, "status": "flagged"}


@router.post("/documents/{document_id}/exclude", summary="Exclude a document")
async def exclude_document(document_id: str, request: ReviewRequest, runtime=Depends(get_runtime)):
    try:
        await runtime.service.exclude_document(str(request.team_id), document_id, request.actor)
    except PayloadValidationError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ReviewError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"document_id": document_id, "status": "excluded"}


@router.post("/manual-match", summary="Link a document and a transaction")
async def manual_match(request: ManualMatchRequest, runtime=Depends(get_runtime)):
    """
    Link a pair picked by a reviewer, with or without a suggestion for it.
    """
    try:
        outcome = await runtime.service.manual_match(
            str(request.team_id),
            str(request.document_id),
            str(request.transaction_id),
            request.actor,
            note=request.note,
        )
    except PayloadValidationError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ReviewError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return outcome.to_dict()


@router.post("/bulk-confirm", summary="Confirm matched and suggested transactions")
async def bulk_confirm(request: BulkConfirmRequest, runtime=Depends(get_runtime)):
    if request.start and request.end and request.start > request.end:
        raise HTTPException(status_code=422, detail="start must not be after end")
    return await runtime.service.bulk_confirm(
        str(request.team_id),
        request.actor,
        transaction_ids=[str(i) for i in request.transaction_ids],
        start=request.start,
        end=request.end,
    )


@router.get("/stats", summary="Match status counts")
async def get_match_stats(
    team_id: UUID,
    start: Optional[date] = None,
    end: Optional[date] = None,
    runtime=Depends(get_runtime)
):
    return await runtime.service.get_match_stats(str(team_id), start=start, end=end)
