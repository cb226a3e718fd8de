"""
Tiered unsubscribe executor.

Tier 1 (one-click POST) and Tier 2 (simple GET) run here. Tier 3 (browser
automation) is dispatched by the queue to a separate pool when
``needs_escalation`` says the plain tiers were not enough.
"""

import logging
import re
from typing import Any, Awaitable, Callable, Optional, Protocol

import httpx
from bs4 import BeautifulSoup

from unsubscribe.links import is_one_click
from unsubscribe.results import (
    NoActionResult,
    OneClickResult,
    SimpleHttpResult,
    UnsubscribeResult,
)

logger = logging.getLogger(__name__)


BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)

RESPONSE_PREVIEW_CHARS = 500

CONFIRM_BUTTON_PATTERN = re.compile(r"confirm|yes|unsubscribe|proceed", re.IGNORECASE)
CONFIRM_TEXT_PATTERN = re.compile(r"confirm.{0,200}?unsubscri", re.IGNORECASE | re.DOTALL)
UNSUBSCRIBE_TEXT_PATTERN = re.compile(r"unsubscri", re.IGNORECASE)


class MailProvider(Protocol):
    """Mail operations the executor relies on."""

    async def get_header(self, message_id: str, name: str) -> Optional[str]: ...


MailProviderFactory = Callable[[str], Awaitable[Optional[MailProvider]]]


# ============================================================================
# Confirmation Page Detection
# ============================================================================


def _has_action(soup: BeautifulSoup) -> bool:
    if soup.find(["form", "button"]):
        return True
    return any(
        CONFIRM_BUTTON_PATTERN.search(link.get_text(" ", strip=True))
        for link in soup.find_all("a")
    )


def detect_confirmation_page(html: str) -> bool:
    """
    Check whether a landing page still wants a user action.

    True when the page has a confirm-style button or submit input, or a
    form together with unsubscribe text. Text asking to confirm the
    unsubscribe only counts when the page also offers something to act on,
    since success pages often read "we confirm you have been unsubscribed".
    """
    if not html:
        return False

    soup = BeautifulSoup(html, "html.parser")

    for button in soup.find_all("button"):
        if CONFIRM_BUTTON_PATTERN.search(button.get_text(" ", strip=True)):
            return True

    for field_ in soup.find_all("input"):
        if (field_.get("type") or "").lower() != "submit":
            continue
        if "confirm" in (field_.get("value") or "").lower():
            return True

    text = soup.get_text(" ")
    if CONFIRM_TEXT_PATTERN.search(text) and _has_action(soup):
        return True

    if soup.find("form") and UNSUBSCRIBE_TEXT_PATTERN.search(text):
        return True

    return False


# ============================================================================
# Executor
# ============================================================================


class UnsubscribeExecutor:
    """
    Runs the HTTP tiers for a single email.

    Attributes:
        mail_provider_factory: Returns the user's mail provider, or None when
            the user has no usable credentials (one-click is then skipped)
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests use MockTransport)
    """

    def __init__(
        self,
        mail_provider_factory: Optional[MailProviderFactory] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.mail_provider_factory = mail_provider_factory
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            follow_redirects=True,
            max_redirects=5,
            timeout=self.timeout,
            transport=self.transport,
        )

    async def execute(self, email: Any, user_id: str) -> UnsubscribeResult:
        """
        Unsubscribe from one email.

        Args:
            email: Email record (needs ``unsubscribe_url`` and ``gmail_id``)
            user_id: Owner of the email

        Returns:
            Normalized result of the highest tier that handled the email
        """
        url = (email.unsubscribe_url or "").strip()

        if not url:
            return NoActionResult(
                status="no_url",
                message="No unsubscribe link found for this email",
            )

        if url.lower().startswith("mailto:"):
            return NoActionResult(
                status="needs_confirmation",
                message="Email-based unsubscribe requires manual action",
                url=url,
            )

        logger.info(f"Starting unsubscribe for email {email.id}: {url}")

        one_click = await self.try_one_click(email, url, user_id)
        if one_click is not None:
            return one_click

        return await self.try_simple_http(url)

    async def try_one_click(self, email: Any, url: str, user_id: str) -> Optional[OneClickResult]:
        """
        Tier 1: RFC 8058 one-click POST.

        Returns None whenever the tier does not apply or does not succeed, so
        the caller falls through to the GET tier.
        """
        try:
            if self.mail_provider_factory is None:
                return None

            provider = await self.mail_provider_factory(user_id)
            if provider is None:
                logger.info("No mail account found, skipping one-click check")
                return None

            post_header = await provider.get_header(email.gmail_id, "List-Unsubscribe-Post")
            if not is_one_click(post_header):
                logger.info("No List-Unsubscribe-Post header, skipping one-click")
                return None

            logger.info("Found List-Unsubscribe-Post header, attempting one-click")

            async with self._client() as client:
                response = await client.post(
                    url,
                    data={"List-Unsubscribe": "One-Click"},
                    headers={"User-Agent": BROWSER_USER_AGENT},
                )

            logger.info(f"One-click response: {response.status_code}")

            if 200 <= response.status_code < 400:
                return OneClickResult(
                    message="Successfully unsubscribed using one-click method",
                    url=url,
                    response_status=response.status_code,
                )

            logger.info("One-click failed, will try simple HTTP")
            return None

        except Exception as e:
            logger.warning(f"One-click error for {url}: {e}")
            return None

    async def try_simple_http(self, url: str) -> SimpleHttpResult:
        """
        Tier 2: plain GET with redirects followed.

        A 2xx page without a confirmation step is reported as success; most
        single-link unsubscribes complete on GET.
        """
        logger.info("Attempting simple HTTP GET")

        try:
            async with self._client() as client:
                response = await client.get(url, headers={"User-Agent": BROWSER_USER_AGENT})
                html = response.text

        except httpx.HTTPError as e:
            logger.error(f"Simple HTTP request failed for {url}: {e}")
            return SimpleHttpResult(
                status="failure",
                message="Failed to access unsubscribe link",
                url=url,
                error=str(e) or e.__class__.__name__,
            )

        final_url = str(response.url)
        logger.info(f"Simple HTTP response: {response.status_code} ({final_url})")

        if not response.is_success:
            return SimpleHttpResult(
                status="failure",
                message=f"Failed with HTTP {response.status_code}",
                url=final_url,
                response_status=response.status_code,
                error=response.reason_phrase or None,
            )

        if detect_confirmation_page(html):
            logger.info("Page requires confirmation")
            return SimpleHttpResult(
                status="needs_confirmation",
                message="Unsubscribe page requires manual confirmation",
                url=final_url,
                response_status=response.status_code,
            )

        return SimpleHttpResult(
            status="success",
            message="Unsubscribe link visited successfully (manual verification recommended)",
            url=final_url,
            response_status=response.status_code,
            response_preview=html[:RESPONSE_PREVIEW_CHARS],
        )


def needs_escalation(result: UnsubscribeResult) -> bool:
    """A GET that landed on a confirmation page is handed to the browser tier."""
    return (
        result.method == "simple-http"
        and result.status == "needs_confirmation"
        and bool(result.url)
        and result.url.lower().startswith(("http://", "https://"))
    )
