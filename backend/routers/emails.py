"""
Email API endpoints.
Loads Gmail messages into the pipeline and manages their unsubscribe badge.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from gmail_client import GmailAPIError, GmailAuthError
from jobs.queue import UnsubscribeQueue
from models import Email, UnsubscribeStatus
from routers.deps import get_mail_provider_factory, get_queue, get_user_id
from schemas import EmailResponse, IngestRequest, IngestResponse, UnsubscribeStatusUpdate
from services.ingestion import EmailIngestor

logger = logging.getLogger(__name__)

router = APIRouter()


async def _owned_email(email_id: str, user_id: str, queue: UnsubscribeQueue) -> Email:
    email = await queue.store.get_email(email_id)
    if email is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Email not found")
    if email.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return email


@router.post("/ingest", response_model=IngestResponse)
async def ingest_emails(
    request: IngestRequest,
    user_id: str = Depends(get_user_id),
    queue: UnsubscribeQueue = Depends(get_queue),
    provider_for=Depends(get_mail_provider_factory),
):
    """
    Fetch Gmail messages and store them with their unsubscribe link.

    Messages already loaded for this user are returned as stored.

    Raises:
        HTTPException: 400 if no Gmail account is connected,
            401 if Gmail rejects the stored credentials,
            502 for other Gmail API errors
    """
    provider = await provider_for(user_id)
    if provider is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No Gmail account connected",
        )

    ingestor = EmailIngestor(queue.store)
    emails = []

    try:
        for gmail_id in request.gmail_ids:
            emails.append(await ingestor.ingest(provider, user_id, gmail_id))
    except GmailAuthError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    except GmailAPIError as e:
        logger.error(f"Failed to load emails for {user_id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return IngestResponse(
        emails=[EmailResponse.model_validate(email) for email in emails],
        message=f"Loaded {len(emails)} email(s)",
    )


@router.get("/{email_id}", response_model=EmailResponse)
async def get_email(
    email_id: str,
    user_id: str = Depends(get_user_id),
    queue: UnsubscribeQueue = Depends(get_queue),
):
    email = await _owned_email(email_id, user_id, queue)
    return EmailResponse.model_validate(email)


@router.patch("/{email_id}/unsubscribe-status", response_model=EmailResponse)
async def update_unsubscribe_status(
    email_id: str,
    request: UnsubscribeStatusUpdate,
    user_id: str = Depends(get_user_id),
    queue: UnsubscribeQueue = Depends(get_queue),
):
    """
    Record the user's verdict on an unsubscribe attempt.

    Raises:
        HTTPException: 404 if not found, 403 for another user's email
    """
    email = await _owned_email(email_id, user_id, queue)

    updated = await queue.store.set_unsubscribe_status(
        email.id, UnsubscribeStatus(request.status)
    )
    logger.info(f"User marked email {email.subject!r} as {request.status}")

    return EmailResponse.model_validate(updated)
