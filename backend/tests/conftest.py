"""
Pytest configuration and fixtures for Inbox Unsubscriber tests.
Provides a per-test SQLite database, the job store, and fakes for the mail
provider, the AI analyzer and the browser page.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from db import Base
from jobs.notifier import InMemoryNotificationBus, Notifier
from jobs.store import JobStore
from models import Email
from unsubscribe.analyzer import PageAnalysis, VisualVerification
from unsubscribe.results import UnsubscribeResult


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def session_factory(tmp_path) -> async_sessionmaker:
    """
    Session factory over a fresh file-backed SQLite database.

    A file (rather than :memory:) lets concurrent sessions use separate
    connections, as they do in production.
    """
    import models  # noqa: F401

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def store(session_factory) -> JobStore:
    return JobStore(session_factory)


@pytest.fixture
def make_email(store: JobStore) -> Callable:
    """
    Factory that stores an email.

    Example:
        >>> email = await make_email(unsubscribe_url="https://ex.com/u")
    """
    counter = {"n": 0}

    async def _make(user_id: str = "test_user", **fields) -> Email:
        counter["n"] += 1
        fields.setdefault("gmail_id", f"msg-{counter['n']}")
        fields.setdefault("subject", f"Newsletter #{counter['n']}")
        fields.setdefault("sender", "news@example.com")
        return await store.save_email(Email(user_id=user_id, **fields))

    return _make


# ============================================================================
# Notification Fixtures
# ============================================================================


@pytest.fixture
def bus() -> InMemoryNotificationBus:
    return InMemoryNotificationBus()


@pytest.fixture
def notifier(bus: InMemoryNotificationBus) -> Notifier:
    return Notifier(bus, timeout=1.0)


# ============================================================================
# Mail Provider Fakes
# ============================================================================


class FakeMailProvider:
    """Mail provider returning canned headers per message id."""

    def __init__(self, headers: Optional[Dict[str, Dict[str, str]]] = None):
        self.headers = headers or {}
        self.archived: List[str] = []
        self.messages: Dict[str, Dict[str, Any]] = {}

    async def get_header(self, message_id: str, name: str) -> Optional[str]:
        return self.headers.get(message_id, {}).get(name)

    async def get_message(self, message_id: str, format: str = "metadata") -> Dict[str, Any]:
        return self.messages[message_id]

    async def archive_message(self, message_id: str) -> None:
        self.archived.append(message_id)


@pytest.fixture
def fake_provider() -> FakeMailProvider:
    return FakeMailProvider()


@pytest.fixture
def mock_gmail_service():
    """
    Mock googleapiclient service object.

    ``users().messages().get(...).execute`` and ``modify`` are MagicMocks the
    test can configure.
    """
    service = MagicMock()
    messages = service.users.return_value.messages.return_value
    messages.get.return_value.execute.return_value = {
        "id": "msg123",
        "payload": {
            "headers": [
                {"name": "List-Unsubscribe", "value": "<https://ex.com/u>"},
                {"name": "List-Unsubscribe-Post", "value": "List-Unsubscribe=One-Click"},
            ]
        },
    }
    messages.modify.return_value.execute.return_value = {"id": "msg123", "labelIds": []}
    return service


# ============================================================================
# Executor Fakes
# ============================================================================


class ScriptedExecutor:
    """
    Executor stand-in returning a scripted result per email.

    Tracks how many executions overlap so concurrency bounds can be checked.
    """

    def __init__(self, results: Optional[Dict[str, UnsubscribeResult]] = None, delay: float = 0.0):
        self.results = results or {}
        self.default: Optional[UnsubscribeResult] = None
        self.delay = delay
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.raise_for: Dict[str, Exception] = {}

    async def execute(self, email, user_id: str) -> UnsubscribeResult:
        self.calls.append(email.id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if email.id in self.raise_for:
                raise self.raise_for[email.id]
            return self.results.get(email.id, self.default)
        finally:
            self.in_flight -= 1


@pytest.fixture
def scripted_executor() -> ScriptedExecutor:
    return ScriptedExecutor()


# ============================================================================
# Browser Fakes
# ============================================================================


class FakePage:
    """In-memory BrowserPage recording every call."""

    def __init__(self, html: str = "<html><body><button>Unsubscribe</button></body></html>",
                 url: str = "https://ex.com/unsub"):
        self.html = html
        self.url = url
        self.calls: List[tuple] = []
        self.failing_selectors: set = set()
        self.fuzzy_ok = True
        self.goto_error: Optional[Exception] = None

    async def goto(self, url: str) -> None:
        self.calls.append(("goto", url))
        if self.goto_error:
            raise self.goto_error
        self.url = url

    async def content(self) -> str:
        return self.html

    async def current_url(self) -> str:
        return self.url

    async def click(self, selector: str) -> None:
        self.calls.append(("click", selector))
        if selector in self.failing_selectors:
            raise RuntimeError(f"No element matches {selector}")

    async def fuzzy_click(self, text: str) -> bool:
        self.calls.append(("fuzzy_click", text))
        return self.fuzzy_ok

    async def fill(self, selector: str, value: str) -> None:
        self.calls.append(("fill", selector, value))

    async def wait_for_idle(self) -> None:
        self.calls.append(("wait_for_idle",))

    async def screenshot(self) -> bytes:
        self.calls.append(("screenshot",))
        return b"\x89PNG fake"

    async def pause(self, seconds: float) -> None:
        self.calls.append(("pause", seconds))


class FakeAnalyzer:
    """Analyzer returning scripted analyses (the last one repeats)."""

    def __init__(self, analyses: List[PageAnalysis], verification: Optional[VisualVerification] = None):
        self.analyses = list(analyses)
        self.verification = verification or VisualVerification(True, "Unsubscribed banner", 0.9)
        self.analyze_calls = 0
        self.verify_calls = 0

    def is_available(self) -> bool:
        return True

    async def analyze_text(self, html: str, url: str, previous_actions=None) -> PageAnalysis:
        self.analyze_calls += 1
        if len(self.analyses) > 1:
            return self.analyses.pop(0)
        return self.analyses[0]

    async def verify_screenshot(self, screenshot_base64: str, url: str, context: str = "") -> VisualVerification:
        self.verify_calls += 1
        return self.verification


@pytest.fixture
def fake_page() -> FakePage:
    return FakePage()


def page_factory_for(page: FakePage, events: Optional[List[str]] = None):
    """Page factory yielding ``page`` and recording open/close."""
    events = events if events is not None else []

    @asynccontextmanager
    async def factory():
        events.append("open")
        try:
            yield page
        finally:
            events.append("close")

    return factory


# ============================================================================
# OpenAI Client Fakes
# ============================================================================


def openai_client_returning(*contents: str) -> MagicMock:
    """
    Mock AsyncOpenAI client whose completions return ``contents`` in order.
    """
    client = MagicMock()
    responses = []
    for content in contents:
        response = MagicMock()
        response.choices = [MagicMock()]
        response.choices[0].message.content = content
        responses.append(response)
    client.chat.completions.create = AsyncMock(side_effect=responses)
    return client
