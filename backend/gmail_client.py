"""
Gmail API client used as the mail provider of the unsubscribe pipeline.

This module provides:
- Credential loading and automatic token refresh
- Retry logic with exponential backoff for rate limiting
- Message and header retrieval
- Label changes (archive)
- List-Unsubscribe header parsing

Gmail API Quotas:
- 250 quota units per user per second
- get(): 5 units, modify(): 5 units
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from config import settings
from models import GmailCredentials
from unsubscribe.links import extract_from_header, is_one_click
from utils.encryption import encrypt_token, decrypt_token

logger = logging.getLogger(__name__)

TOKEN_URI = "https://oauth2.googleapis.com/token"


# ============================================================================
# Custom Exceptions
# ============================================================================


class GmailAPIError(Exception):
    """Base exception for Gmail API errors."""
    pass


class GmailAuthError(GmailAPIError):
    """Raised when authentication fails or credentials are invalid."""
    pass


class GmailRateLimitError(GmailAPIError):
    """Raised when Gmail API rate limit is exceeded."""
    pass


class GmailQuotaExceededError(GmailAPIError):
    """Raised when Gmail API quota is exceeded."""
    pass


def _translate_http_error(e: HttpError, action: str, message_id: Optional[str] = None) -> GmailAPIError:
    status = e.resp.status
    if status == 429:
        return GmailRateLimitError("Gmail API rate limit exceeded")
    if status == 403:
        if "rateLimitExceeded" in str(e.content):
            return GmailRateLimitError("Gmail API quota exceeded")
        if "quotaExceeded" in str(e.content):
            return GmailQuotaExceededError("Gmail API daily quota exceeded")
        return GmailAuthError(f"Permission denied: {e}")
    if status == 404 and message_id:
        return GmailAPIError(f"Message not found: {message_id}")
    return GmailAPIError(f"Failed to {action}: {e}")


_rate_limited = retry(
    retry=retry_if_exception_type((GmailRateLimitError, GmailQuotaExceededError)),
    wait=wait_exponential(multiplier=1, min=2, max=60),
    stop=stop_after_attempt(5),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


# ============================================================================
# Gmail Client
# ============================================================================


class GmailClient:
    """
    Gmail API client for one user.

    Attributes:
        session_factory: Used to load and update stored credentials
        user_id: Owner of the mailbox
        credentials: Optional pre-loaded GmailCredentials
    """

    SCOPES = [
        "https://www.googleapis.com/auth/gmail.modify",
    ]

    def __init__(
        self,
        session_factory: async_sessionmaker,
        user_id: str = "default_user",
        credentials: Optional[GmailCredentials] = None,
        service: Any = None,
    ):
        self.session_factory = session_factory
        self.user_id = user_id
        self.credentials = credentials
        self._service = service

    async def get_service(self):
        """
        Get or create the authenticated Gmail API service.

        Refreshes an expired access token and stores the new one.

        Raises:
            GmailAuthError: If credentials are missing or invalid
        """
        if self._service is not None:
            return self._service

        async with self.session_factory() as session:
            if self.credentials is None:
                result = await session.execute(
                    select(GmailCredentials).where(GmailCredentials.user_id == self.user_id)
                )
                self.credentials = result.scalar_one_or_none()
            else:
                self.credentials = await session.merge(self.credentials)

            if self.credentials is None:
                raise GmailAuthError(f"No Gmail credentials found for user: {self.user_id}")

            try:
                access_token = decrypt_token(self.credentials.access_token)
                refresh_token = decrypt_token(self.credentials.refresh_token)
            except Exception as e:
                raise GmailAuthError(f"Failed to decrypt credentials: {e}")

            creds = Credentials(
                token=access_token,
                refresh_token=refresh_token,
                token_uri=TOKEN_URI,
                client_id=settings.GOOGLE_CLIENT_ID,
                client_secret=settings.GOOGLE_CLIENT_SECRET,
                scopes=json.loads(self.credentials.scopes),
            )
            creds.expiry = self.credentials.token_expiry

            if creds.expired and creds.refresh_token:
                try:
                    await asyncio.to_thread(creds.refresh, Request())
                except Exception as e:
                    raise GmailAuthError(f"Failed to refresh credentials: {e}")

                self.credentials.access_token = encrypt_token(creds.token)
                self.credentials.token_expiry = creds.expiry
                self.credentials.updated_at = datetime.utcnow()
                await session.commit()
                logger.info(f"Refreshed Gmail credentials for user: {self.user_id}")

        self._service = await asyncio.to_thread(build, "gmail", "v1", credentials=creds)
        return self._service

    @_rate_limited
    async def get_message(self, message_id: str, format: str = "metadata") -> Dict[str, Any]:
        """
        Get a single message by ID.

        Args:
            message_id: Gmail message ID
            format: "minimal", "metadata", "full" or "raw"

        Raises:
            GmailRateLimitError: If rate limit is exceeded (after retries)
            GmailAPIError: For other API errors
        """
        service = await self.get_service()

        try:
            return await asyncio.to_thread(
                service.users()
                .messages()
                .get(userId="me", id=message_id, format=format)
                .execute
            )
        except HttpError as e:
            raise _translate_http_error(e, "get message", message_id)

    async def get_header(self, message_id: str, name: str) -> Optional[str]:
        """
        Read one header of a message, case-insensitively.

        Example:
            >>> await client.get_header("abc123", "List-Unsubscribe-Post")
            'List-Unsubscribe=One-Click'
        """
        message = await self.get_message(message_id, format="metadata")
        headers = message.get("payload", {}).get("headers", [])
        return self.header_value(headers, name)

    @_rate_limited
    async def modify_labels(
        self,
        message_id: str,
        add: Optional[List[str]] = None,
        remove: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        service = await self.get_service()
        body = {"addLabelIds": add or [], "removeLabelIds": remove or []}

        try:
            return await asyncio.to_thread(
                service.users()
                .messages()
                .modify(userId="me", id=message_id, body=body)
                .execute
            )
        except HttpError as e:
            raise _translate_http_error(e, "modify labels", message_id)

    async def archive_message(self, message_id: str) -> None:
        """Archive a message by removing the INBOX label."""
        await self.modify_labels(message_id, remove=["INBOX"])
        logger.info(f"Archived message {message_id}")

    # ========================================================================
    # Helper Methods
    # ========================================================================

    @staticmethod
    def header_value(headers: List[Dict[str, str]], name: str) -> Optional[str]:
        wanted = name.lower()
        for header in headers:
            if header.get("name", "").lower() == wanted:
                return header.get("value")
        return None

    @staticmethod
    def parse_list_unsubscribe_header(headers: List[Dict[str, str]]) -> Dict[str, Any]:
        """
        Parse List-Unsubscribe and List-Unsubscribe-Post from message headers.

        Returns:
            Dictionary with:
                - 'header': raw List-Unsubscribe value (None if absent)
                - 'post_header': raw List-Unsubscribe-Post value (None if absent)
                - 'url': preferred unsubscribe target, http(s) before mailto
                - 'one_click': True if RFC 8058 one-click is advertised

        Example:
            >>> headers = [
            ...     {"name": "List-Unsubscribe", "value": "<mailto:u@ex.com>, <https://ex.com/u>"},
            ...     {"name": "List-Unsubscribe-Post", "value": "List-Unsubscribe=One-Click"}
            ... ]
            >>> GmailClient.parse_list_unsubscribe_header(headers)["url"]
            'https://ex.com/u'
        """
        header = GmailClient.header_value(headers, "List-Unsubscribe")
        post_header = GmailClient.header_value(headers, "List-Unsubscribe-Post")

        return {
            "header": header,
            "post_header": post_header,
            "url": extract_from_header(header),
            "one_click": bool(header) and is_one_click(post_header),
        }


# ============================================================================
# Provider Factory
# ============================================================================


def gmail_provider_factory(session_factory: async_sessionmaker):
    """
    Build the per-user mail provider lookup used by the executor.

    The returned coroutine yields a GmailClient, or None when the user has
    not connected a mailbox.
    """

    async def provider_for(user_id: str) -> Optional[GmailClient]:
        async with session_factory() as session:
            result = await session.execute(
                select(GmailCredentials).where(GmailCredentials.user_id == user_id)
            )
            credentials = result.scalar_one_or_none()

        if credentials is None:
            return None
        return GmailClient(session_factory, user_id=user_id, credentials=credentials)

    return provider_for
