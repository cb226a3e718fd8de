"""
Tests for the tiered HTTP executor.
HTTP is served by httpx.MockTransport; the mail provider is a fake.
"""

from types import SimpleNamespace
from typing import List

import httpx
import pytest

from conftest import FakeMailProvider
from unsubscribe.executor import UnsubscribeExecutor, detect_confirmation_page, needs_escalation
from unsubscribe.results import NoActionResult, SimpleHttpResult


def _email(url, gmail_id="msg-1"):
    return SimpleNamespace(id="email-1", gmail_id=gmail_id, unsubscribe_url=url)


def _executor(handler, provider=None) -> UnsubscribeExecutor:
    async def provider_for(user_id):
        return provider

    return UnsubscribeExecutor(
        mail_provider_factory=provider_for,
        timeout=5.0,
        transport=httpx.MockTransport(handler),
    )


ONE_CLICK_HEADERS = {"msg-1": {"List-Unsubscribe-Post": "List-Unsubscribe=One-Click"}}


# ============================================================================
# Terminal Inputs
# ============================================================================


class TestTerminalInputs:
    """URLs that never reach the network."""

    @pytest.mark.asyncio
    async def test_no_url_makes_no_request(self):
        requests: List[httpx.Request] = []
        executor = _executor(lambda r: requests.append(r) or httpx.Response(200))

        result = await executor.execute(_email(None), "test_user")

        assert isinstance(result, NoActionResult)
        assert result.status == "no_url"
        assert requests == []

    @pytest.mark.asyncio
    async def test_mailto_needs_confirmation(self):
        requests: List[httpx.Request] = []
        executor = _executor(lambda r: requests.append(r) or httpx.Response(200))

        result = await executor.execute(_email("mailto:unsub@ex.com"), "test_user")

        assert result.status == "needs_confirmation"
        assert result.method == "none"
        assert result.url == "mailto:unsub@ex.com"
        assert requests == []
        assert not needs_escalation(result)


# ============================================================================
# Tier 1: One-Click
# ============================================================================


class TestOneClick:
    """RFC 8058 POST tier."""

    @pytest.mark.asyncio
    async def test_one_click_success(self):
        requests: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, text="ok")

        executor = _executor(handler, FakeMailProvider(ONE_CLICK_HEADERS))

        result = await executor.execute(_email("https://ex.com/u"), "test_user")

        assert result.method == "one-click"
        assert result.status == "success"
        assert result.response_status == 200
        assert len(requests) == 1
        assert requests[0].method == "POST"
        assert requests[0].content == b"List-Unsubscribe=One-Click"

    @pytest.mark.asyncio
    async def test_one_click_rejection_falls_through_to_get(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(500)
            return httpx.Response(200, text="<p>You have been removed.</p>")

        executor = _executor(handler, FakeMailProvider(ONE_CLICK_HEADERS))

        result = await executor.execute(_email("https://ex.com/u"), "test_user")

        assert result.method == "simple-http"
        assert result.status == "success"

    @pytest.mark.asyncio
    async def test_one_click_network_error_falls_through(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, text="done")

        executor = _executor(handler, FakeMailProvider(ONE_CLICK_HEADERS))

        result = await executor.execute(_email("https://ex.com/u"), "test_user")

        assert result.method == "simple-http"
        assert result.status == "success"

    @pytest.mark.asyncio
    async def test_no_post_header_skips_one_click(self):
        methods: List[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            methods.append(request.method)
            return httpx.Response(200, text="done")

        executor = _executor(handler, FakeMailProvider())

        result = await executor.execute(_email("https://ex.com/u"), "test_user")

        assert methods == ["GET"]
        assert result.method == "simple-http"

    @pytest.mark.asyncio
    async def test_no_mail_account_skips_one_click(self):
        methods: List[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            methods.append(request.method)
            return httpx.Response(200, text="done")

        executor = _executor(handler, provider=None)

        await executor.execute(_email("https://ex.com/u"), "test_user")

        assert methods == ["GET"]


# ============================================================================
# Tier 2: Simple GET
# ============================================================================


class TestSimpleHttp:
    """Plain GET tier."""

    @pytest.mark.asyncio
    async def test_non_2xx_is_failure(self):
        executor = _executor(lambda r: httpx.Response(404, text="not found"))

        result = await executor.execute(_email("https://ex.com/u"), "test_user")

        assert isinstance(result, SimpleHttpResult)
        assert result.status == "failure"
        assert result.response_status == 404
        assert result.outcome == "failure"

    @pytest.mark.asyncio
    async def test_confirmation_page(self):
        page = '<form action="/confirm"><p>Unsubscribe from all emails?</p><button>Yes</button></form>'
        executor = _executor(lambda r: httpx.Response(200, text=page))

        result = await executor.execute(_email("https://ex.com/u"), "test_user")

        assert result.status == "needs_confirmation"
        assert result.url == "https://ex.com/u"
        assert needs_escalation(result)

    @pytest.mark.asyncio
    async def test_redirect_followed(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/u":
                return httpx.Response(302, headers={"Location": "https://ex.com/done"})
            return httpx.Response(200, text="<p>You are unsubscribed.</p>")

        executor = _executor(handler)

        result = await executor.execute(_email("https://ex.com/u"), "test_user")

        assert result.status == "success"
        assert result.url == "https://ex.com/done"
        assert result.response_preview == "<p>You are unsubscribed.</p>"

    @pytest.mark.asyncio
    async def test_network_error_is_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        executor = _executor(handler)

        result = await executor.execute(_email("https://ex.com/u"), "test_user")

        assert result.status == "failure"
        assert result.method == "simple-http"
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_browser_like_user_agent(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["ua"] = request.headers["User-Agent"]
            return httpx.Response(200, text="ok")

        await _executor(handler).execute(_email("https://ex.com/u"), "test_user")

        assert seen["ua"].startswith("Mozilla/5.0")


# ============================================================================
# Confirmation Heuristic
# ============================================================================


class TestDetectConfirmationPage:
    """Tests for the confirmation-page heuristic."""

    def test_confirm_submit_input(self):
        assert detect_confirmation_page('<input type="submit" value="Confirm unsubscribe">')

    def test_form_with_unsubscribe_text(self):
        assert detect_confirmation_page("<form><p>Unsubscribe me</p><input type='email'></form>")

    def test_confirm_text_with_link(self):
        assert detect_confirmation_page(
            "<p>Please confirm that you want to unsubscribe.</p><a href='/yes'>Yes, unsubscribe me</a>"
        )

    def test_confirmed_success_page(self):
        assert not detect_confirmation_page("<h1>Thanks</h1><p>We confirm you have been unsubscribed.</p>")
        assert not detect_confirmation_page("<p>Please confirm that you want to unsubscribe.</p>")

    def test_plain_success_page(self):
        assert not detect_confirmation_page("<h1>Done</h1><p>You will no longer receive these emails.</p>")

    def test_empty(self):
        assert not detect_confirmation_page("")
