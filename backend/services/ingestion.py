"""
Email ingestion for the unsubscribe pipeline.

Fetches a message from the mail provider, decodes its body, extracts the
unsubscribe link (header first, then body) and stores the email so it can
be enqueued.
"""

import base64
import binascii
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from gmail_client import GmailClient
from jobs.store import JobStore
from models import Email
from unsubscribe.links import find_unsubscribe_url

logger = logging.getLogger(__name__)


class MessageSource(Protocol):
    async def get_message(self, message_id: str, format: str = "metadata") -> Dict[str, Any]: ...

    async def archive_message(self, message_id: str) -> None: ...


# ============================================================================
# Body Decoding
# ============================================================================


def _decode_part_data(data: Optional[str]) -> Optional[str]:
    if not data:
        return None
    try:
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError) as e:
        logger.warning(f"Could not decode message body part: {e}")
        return None


def extract_email_body(payload: Optional[Dict[str, Any]]) -> Optional[str]:
    """
    Decode the most useful body of a Gmail ``full`` message payload.

    Order: the payload's own body, an HTML part, a plain-text part, then
    nested multipart sections.
    """
    if not payload:
        return None

    body = _decode_part_data(payload.get("body", {}).get("data"))
    if body:
        return body

    parts = payload.get("parts") or []

    for mime_type in ("text/html", "text/plain"):
        for part in parts:
            if part.get("mimeType") == mime_type:
                body = _decode_part_data(part.get("body", {}).get("data"))
                if body:
                    return body

    for part in parts:
        if part.get("parts"):
            body = extract_email_body(part)
            if body:
                return body

    return None


def _received_at(message: Dict[str, Any]) -> Optional[datetime]:
    internal_date = message.get("internalDate")
    if not internal_date:
        return None
    return datetime.utcfromtimestamp(int(internal_date) / 1000)


# ============================================================================
# Ingestor
# ============================================================================


class EmailIngestor:
    """Stores provider messages as Email rows ready to be enqueued."""

    def __init__(self, store: JobStore):
        self.store = store

    async def ingest(self, provider: MessageSource, user_id: str, gmail_id: str) -> Email:
        """
        Fetch and store one message.

        Args:
            provider: Mail provider for the user
            user_id: Owner of the mailbox
            gmail_id: Provider message id

        Returns:
            The stored email (the existing row if it was already ingested)
        """
        message = await provider.get_message(gmail_id, format="full")
        payload = message.get("payload", {})
        headers = payload.get("headers", [])

        unsubscribe = GmailClient.parse_list_unsubscribe_header(headers)
        body = extract_email_body(payload)

        email = Email(
            user_id=user_id,
            gmail_id=gmail_id,
            subject=GmailClient.header_value(headers, "Subject"),
            sender=GmailClient.header_value(headers, "From"),
            list_unsubscribe=unsubscribe["header"],
            list_unsubscribe_post=unsubscribe["post_header"],
            body_html=body,
            unsubscribe_url=find_unsubscribe_url(unsubscribe["header"], body),
            received_at=_received_at(message),
        )

        stored = await self.store.save_email(email)
        logger.info(
            f"Ingested message {gmail_id} for {user_id} "
            f"(unsubscribe url: {'yes' if stored.unsubscribe_url else 'no'})"
        )
        return stored

    async def archive(self, provider: MessageSource, email: Email) -> None:
        """Remove the message from the inbox and record it."""
        await provider.archive_message(email.gmail_id)
        await self.store.mark_archived(email.id)


async def backfill_unsubscribe_links(store: JobStore, batch_size: int = 500) -> Dict[str, int]:
    """
    Fill in unsubscribe URLs for stored emails that have none.

    Pages through every candidate in ``batch_size`` chunks, so emails with
    no recoverable link never hide the ones after them.

    Returns:
        Counts of emails checked and updated
    """
    checked = 0
    updated = 0
    last: Optional[Email] = None

    while True:
        emails = await store.list_emails_missing_url(limit=batch_size, after=last)
        if not emails:
            break

        for email in emails:
            url = find_unsubscribe_url(email.list_unsubscribe, email.body_html)
            if url:
                await store.set_unsubscribe_url(email.id, url)
                updated += 1
                logger.info(f"Backfilled unsubscribe URL for email {email.id}")

        checked += len(emails)
        last = emails[-1]
        if len(emails) < batch_size:
            break

    logger.info(f"Backfill complete: {updated}/{checked} emails updated")
    return {"checked": checked, "updated": updated}
