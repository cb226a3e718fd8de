"""
Shared request dependencies.
"""

from fastapi import Depends, Header, HTTPException, Request, status

from gmail_client import gmail_provider_factory
from jobs.queue import UnsubscribeQueue

DEFAULT_USER_ID = "default_user"


def get_queue(request: Request) -> UnsubscribeQueue:
    """The application's queue, built by the lifespan handler."""
    queue = getattr(request.app.state, "queue", None)
    if queue is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Unsubscribe queue is not initialized",
        )
    return queue


def get_user_id(x_user_id: str = Header(DEFAULT_USER_ID)) -> str:
    return x_user_id or DEFAULT_USER_ID


def get_mail_provider_factory(queue: UnsubscribeQueue = Depends(get_queue)):
    """Per-user Gmail client lookup over the queue's database."""
    return gmail_provider_factory(queue.store.session_factory)
