"""
Unsubscribe link extraction.

Finds a candidate unsubscribe URL in the List-Unsubscribe header or, failing
that, in the HTML body. The header is always consulted first since it is the
most standardized signal.
"""

import html
import logging
import re
from typing import Optional

from bs4 import BeautifulSoup, NavigableString

logger = logging.getLogger(__name__)


UNSUBSCRIBE_PATTERN = re.compile(r"unsubscribe|un-subscribe|unsub", re.IGNORECASE)
FOLLOWING_TEXT_PATTERN = re.compile(r"^\s*(?:to\s+)?(?:unsubscribe|un-subscribe|unsub)", re.IGNORECASE)

HEADER_HTTP_PATTERN = re.compile(r"<(https?://[^>]+)>", re.IGNORECASE)
HEADER_MAILTO_PATTERN = re.compile(r"<(mailto:[^>]+)>", re.IGNORECASE)
BARE_URL_PATTERN = re.compile(r"(https?://[^\s<>\"']+)", re.IGNORECASE)

TRAILING_PUNCTUATION = ".,;!?"


def clean_url(url: str) -> str:
    """
    Normalize a URL captured from markup.

    Decodes HTML entities, strips trailing punctuation and surrounding
    whitespace.

    Example:
        >>> clean_url("https://ex.com/u?a=1&amp;b=2.")
        'https://ex.com/u?a=1&b=2'
    """
    cleaned = html.unescape(url).strip()
    return cleaned.rstrip(TRAILING_PUNCTUATION).strip()


def extract_from_header(header_value: Optional[str]) -> Optional[str]:
    """
    Extract an unsubscribe URL from a List-Unsubscribe header value.

    The header holds one or more ``<...>`` tokens. HTTP(S) tokens are
    preferred over mailto tokens.

    Example:
        >>> extract_from_header("<https://ex.com/u>, <mailto:x@y.com>")
        'https://ex.com/u'
    """
    if not header_value:
        return None

    http_match = HEADER_HTTP_PATTERN.search(header_value)
    if http_match:
        return http_match.group(1).strip()

    mailto_match = HEADER_MAILTO_PATTERN.search(header_value)
    if mailto_match:
        return mailto_match.group(1).strip()

    return None


def is_one_click(post_header: Optional[str]) -> bool:
    """True when a List-Unsubscribe-Post value advertises RFC 8058 one-click."""
    return bool(post_header) and "one-click" in post_header.lower()


def _text_before(anchor) -> str:
    sibling = anchor.previous_sibling
    if isinstance(sibling, NavigableString):
        return str(sibling)
    return ""


def _text_after(anchor) -> str:
    sibling = anchor.next_sibling
    if isinstance(sibling, NavigableString):
        return str(sibling)
    return ""


def extract_from_body(html_body: Optional[str]) -> Optional[str]:
    """
    Extract an unsubscribe URL from an HTML email body.

    Search order:
    1. Anchors whose href or visible text mentions unsubscribing
    2. Anchors directly preceded or followed by unsubscribe text
       ("Unsubscribe: <a>", "<a>Click here</a> to unsubscribe")
    3. Bare URLs outside of anchors that mention unsubscribing

    Args:
        html_body: Raw HTML body

    Returns:
        Cleaned URL, or None if nothing matched
    """
    if not html_body:
        return None

    soup = BeautifulSoup(html_body, "html.parser")
    anchors = soup.find_all("a", href=True)

    for anchor in anchors:
        href = anchor["href"]
        text = anchor.get_text(" ", strip=True)
        if UNSUBSCRIBE_PATTERN.search(href) or UNSUBSCRIBE_PATTERN.search(text):
            logger.debug(f"Unsubscribe link found in anchor: {href[:80]}")
            return clean_url(href)

    for anchor in anchors:
        if UNSUBSCRIBE_PATTERN.search(_text_before(anchor)):
            return clean_url(anchor["href"])
        if FOLLOWING_TEXT_PATTERN.search(_text_after(anchor)):
            return clean_url(anchor["href"])

    for anchor in soup.find_all("a"):
        anchor.decompose()

    for match in BARE_URL_PATTERN.finditer(str(soup)):
        url = match.group(1)
        if UNSUBSCRIBE_PATTERN.search(url):
            logger.debug(f"Unsubscribe link found as bare URL: {url[:80]}")
            return clean_url(url)

    return None


def find_unsubscribe_url(
    list_unsubscribe_header: Optional[str],
    html_body: Optional[str],
) -> Optional[str]:
    """Header first, then body."""
    return extract_from_header(list_unsubscribe_header) or extract_from_body(html_body)
