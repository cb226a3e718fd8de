"""
Unsubscribe queue API endpoints.
Provides enqueueing, status, job detail, cancellation and start/stop.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from jobs.queue import UnsubscribeQueue
from jobs.store import JobNotFoundError, JobStateError
from routers.deps import get_queue, get_user_id
from schemas import (
    EnqueueRequest,
    EnqueueResponse,
    JobResponse,
    QueueControlResponse,
    QueueStats,
    QueueStatusResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()

RECENT_JOBS_LIMIT = 20


# ============================================================================
# Queue Endpoints
# ============================================================================


@router.post("/enqueue", response_model=EnqueueResponse)
async def enqueue_emails(
    request: EnqueueRequest,
    user_id: str = Depends(get_user_id),
    queue: UnsubscribeQueue = Depends(get_queue),
):
    """
    Enqueue unsubscribe jobs for the given emails.

    Emails that already have a pending or processing job are not enqueued
    twice; their existing job is returned.

    Raises:
        HTTPException: 404 if an email does not exist for this user
    """
    owned = await queue.store.owned_email_ids(user_id, request.email_ids)
    missing = [email_id for email_id in request.email_ids if email_id not in owned]
    if missing:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Email not found: {', '.join(missing)}",
        )

    try:
        jobs = await queue.enqueue_batch(request.email_ids, user_id, request.priority)
    except Exception as e:
        logger.error(f"Failed to enqueue jobs: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to enqueue jobs: {str(e)}",
        )

    logger.info(f"Enqueued {len(jobs)} unsubscribe job(s) for user {user_id}")

    return EnqueueResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        message=f"Enqueued {len(jobs)} email(s) for unsubscribe",
    )


@router.get("/status", response_model=QueueStatusResponse)
async def get_queue_status(
    user_id: str = Depends(get_user_id),
    queue: UnsubscribeQueue = Depends(get_queue),
):
    """Queue statistics plus the user's most recent jobs."""
    stats = await queue.get_stats()
    jobs = await queue.get_user_jobs(user_id, limit=RECENT_JOBS_LIMIT)

    return QueueStatusResponse(
        stats=QueueStats(**stats),
        jobs=[JobResponse.model_validate(job) for job in jobs],
    )


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    user_id: str = Depends(get_user_id),
    queue: UnsubscribeQueue = Depends(get_queue),
):
    """
    Get detailed job information.

    Raises:
        HTTPException: 404 if not found, 403 if the job belongs to another user
    """
    job = await queue.get_job(job_id)

    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

    if job.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")

    return JobResponse.model_validate(job)


@router.post("/jobs/{job_id}/cancel", response_model=QueueControlResponse)
async def cancel_job(
    job_id: str,
    user_id: str = Depends(get_user_id),
    queue: UnsubscribeQueue = Depends(get_queue),
):
    """
    Cancel a pending or needs-confirmation job.

    Raises:
        HTTPException: 404 if not found, 403 for another user's job,
            409 if the job is processing or already finished
    """
    job = await queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    if job.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")

    try:
        await queue.cancel_job(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    except JobStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return QueueControlResponse(success=True, message="Job cancelled")


@router.post("/start", response_model=QueueControlResponse)
async def start_queue(queue: UnsubscribeQueue = Depends(get_queue)):
    """Start the poll loop (no-op if already running)."""
    queue.start()
    return QueueControlResponse(success=True, message="Queue started")


@router.post("/stop", response_model=QueueControlResponse)
async def stop_queue(queue: UnsubscribeQueue = Depends(get_queue)):
    """Stop polling; jobs already in flight finish."""
    queue.stop()
    return QueueControlResponse(success=True, message="Queue stopped")
