"""
Tier 3: AI-driven browser automation for multi-step unsubscribe flows.

The navigate/analyze/act loop is an explicit state machine so the step bound
and every exit path can be tested with a fake page and a fake analyzer. The
real browser is Playwright (chromium), scoped to one session per run and
always torn down.
"""

import asyncio
import base64
import logging
import re
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncContextManager, AsyncIterator, Callable, List, Optional, Protocol

from unsubscribe.analyzer import EMAIL_SENTINEL, PageAnalysis, PageAnalyzer
from unsubscribe.results import BrowserResult

logger = logging.getLogger(__name__)


DEFAULT_MAX_STEPS = 10
DEFAULT_STEP_TIMEOUT = 30.0
DEFAULT_CONFIDENCE_THRESHOLD = 0.7

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)

QUOTED_TEXT_PATTERN = re.compile(r"[\"']([^\"']+)[\"']")


class AutomationError(Exception):
    """Raised when the analyzer asks for an action that cannot be performed."""
    pass


# ============================================================================
# Page Abstraction
# ============================================================================


class BrowserPage(Protocol):
    """The subset of browser operations the automation loop needs."""

    async def goto(self, url: str) -> None: ...

    async def content(self) -> str: ...

    async def current_url(self) -> str: ...

    async def click(self, selector: str) -> None: ...

    async def fuzzy_click(self, text: str) -> bool: ...

    async def fill(self, selector: str, value: str) -> None: ...

    async def wait_for_idle(self) -> None: ...

    async def screenshot(self) -> bytes: ...

    async def pause(self, seconds: float) -> None: ...


class PlaywrightPage:
    """BrowserPage backed by a Playwright page."""

    # Fallback patterns tried when an exact selector fails
    FUZZY_SELECTORS = (
        'button:has-text("{text}")',
        'a:has-text("{text}")',
        'input[type="submit"][value*="{text}" i]',
        'button:text-is("{text}")',
        'a:text-is("{text}")',
        '[role="button"]:has-text("{text}")',
    )

    def __init__(self, page, step_timeout: float = DEFAULT_STEP_TIMEOUT):
        self._page = page
        self._timeout_ms = int(step_timeout * 1000)

    async def goto(self, url: str) -> None:
        await self._page.goto(url, wait_until="networkidle", timeout=self._timeout_ms)

    async def content(self) -> str:
        return await self._page.content()

    async def current_url(self) -> str:
        return self._page.url

    async def click(self, selector: str) -> None:
        await self._page.click(selector, timeout=10000)

    async def fuzzy_click(self, text: str) -> bool:
        escaped = text.replace('"', '\\"')
        for pattern in self.FUZZY_SELECTORS:
            try:
                element = await self._page.query_selector(pattern.format(text=escaped))
                if element:
                    await element.click()
                    return True
            except Exception as e:
                logger.debug(f"Fuzzy selector {pattern} failed: {e}")
                continue
        return False

    async def fill(self, selector: str, value: str) -> None:
        await self._page.fill(selector, value, timeout=10000)

    async def wait_for_idle(self) -> None:
        await self._page.wait_for_load_state("networkidle", timeout=self._timeout_ms)

    async def screenshot(self) -> bytes:
        return await self._page.screenshot(full_page=True)

    async def pause(self, seconds: float) -> None:
        await self._page.wait_for_timeout(int(seconds * 1000))


@asynccontextmanager
async def playwright_page(step_timeout: float = DEFAULT_STEP_TIMEOUT) -> AsyncIterator[PlaywrightPage]:
    """
    Launch an isolated headless chromium session for one run.

    The context, browser and driver are closed on every exit path.
    """
    from playwright.async_api import async_playwright

    async with async_playwright() as playwright:
        browser = await playwright.chromium.launch(
            headless=True,
            args=["--no-sandbox", "--disable-dev-shm-usage", "--disable-gpu"],
        )
        try:
            context = await browser.new_context(
                viewport={"width": 1280, "height": 720},
                user_agent=USER_AGENT,
            )
            try:
                page = await context.new_page()
                yield PlaywrightPage(page, step_timeout=step_timeout)
            finally:
                await context.close()
        finally:
            await browser.close()


PageFactory = Callable[[], AsyncContextManager[BrowserPage]]


# ============================================================================
# Automation State Machine
# ============================================================================


class AutomationState(Enum):
    NAVIGATING = "navigating"
    AWAITING_ANALYSIS = "awaiting_analysis"
    ACTING = "acting"
    VERIFYING = "verifying"
    DONE = "done"


class BrowserAutomation:
    """
    One analyze/act run against a single page.

    Each AWAITING_ANALYSIS visit consumes one step; reaching ``max_steps``
    without a verdict ends as needs_manual.
    """

    def __init__(
        self,
        page: BrowserPage,
        analyzer: PageAnalyzer,
        email_address: Optional[str] = None,
        max_steps: int = DEFAULT_MAX_STEPS,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        step_delay: float = 1.0,
    ):
        self.page = page
        self.analyzer = analyzer
        self.email_address = email_address
        self.max_steps = max_steps
        self.confidence_threshold = confidence_threshold
        self.step_delay = step_delay

        self.state = AutomationState.NAVIGATING
        self.steps: List[str] = []
        self.ai_reasoning: List[str] = []
        self.step_count = 0
        self.result: Optional[BrowserResult] = None
        self._analysis: Optional[PageAnalysis] = None

    async def run(self, url: str) -> BrowserResult:
        """Drive the page until a verdict is reached."""
        logger.info(f"Starting browser automation for {url}")
        self._target_url = url

        try:
            while self.state is not AutomationState.DONE:
                if self.state is AutomationState.NAVIGATING:
                    await self._navigate(url)
                elif self.state is AutomationState.AWAITING_ANALYSIS:
                    await self._analyze()
                elif self.state is AutomationState.ACTING:
                    await self._act()
                elif self.state is AutomationState.VERIFYING:
                    await self._verify()
        except Exception as e:
            logger.error(f"Browser automation failed for {url}: {e}", exc_info=True)
            screenshot = await self._safe_screenshot()
            self._finish(
                "failure",
                f"Automation failed: {e}",
                url=None,
                screenshot=screenshot,
                error=str(e),
            )

        return self.result

    # ------------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------------

    async def _navigate(self, url: str) -> None:
        self.steps.append(f"Navigate to {url}")
        await self.page.goto(url)
        self.state = AutomationState.AWAITING_ANALYSIS

    async def _analyze(self) -> None:
        if self.step_count >= self.max_steps:
            screenshot = await self._safe_screenshot()
            self.steps.append(f"Reached maximum steps ({self.max_steps})")
            self._finish(
                "needs_manual",
                f"Automation incomplete after {self.max_steps} steps - manual verification needed",
                url=await self.page.current_url(),
                screenshot=screenshot,
            )
            return

        self.step_count += 1
        html = await self.page.content()
        url = await self.page.current_url()

        analysis = await self.analyzer.analyze_text(html, url, list(self.steps))
        self.ai_reasoning.append(f"{analysis.action}: {analysis.reasoning}")
        self._analysis = analysis

        if analysis.action == "success":
            self.state = AutomationState.VERIFYING
        elif analysis.action == "needs_manual":
            screenshot = await self._safe_screenshot()
            self.steps.append(f"Manual intervention required: {analysis.reasoning}")
            self._finish("needs_manual", analysis.reasoning, url=url, screenshot=screenshot)
        elif analysis.action == "error":
            self.steps.append(f"AI error: {analysis.reasoning}")
            self._finish("failure", analysis.reasoning, url=url, error=analysis.reasoning)
        else:
            self.state = AutomationState.ACTING

    async def _act(self) -> None:
        analysis = self._analysis

        if analysis.action == "click":
            if not analysis.selector:
                raise AutomationError("AI provided click action but no selector")
            try:
                await self.page.click(analysis.selector)
                self.steps.append(f"Click: {analysis.selector}")
            except Exception as e:
                logger.info(f"Exact selector {analysis.selector} failed ({e}), trying fuzzy match")
                text_match = QUOTED_TEXT_PATTERN.search(analysis.reasoning or "")
                if not text_match or not await self.page.fuzzy_click(text_match.group(1)):
                    raise AutomationError(f"Failed to click element: {analysis.selector}")
                self.steps.append(f"Click (fuzzy): {analysis.selector}")
            await self.page.wait_for_idle()

        elif analysis.action == "fill":
            if not analysis.selector or not analysis.value:
                raise AutomationError("AI provided fill action but missing selector or value")
            value = analysis.value
            if value == EMAIL_SENTINEL:
                value = self.email_address or ""
            self.steps.append(f"Fill: {analysis.selector} = {value}")
            await self.page.fill(analysis.selector, value)

        elif analysis.action == "submit":
            if not analysis.selector:
                raise AutomationError("AI provided submit action but no selector")
            self.steps.append(f"Submit: {analysis.selector}")
            await self.page.click(analysis.selector)
            await self.page.wait_for_idle()

        if self.step_delay:
            await self.page.pause(self.step_delay)
        self.state = AutomationState.AWAITING_ANALYSIS

    async def _verify(self) -> None:
        url = await self.page.current_url()
        screenshot = await self.page.screenshot()
        screenshot_b64 = base64.b64encode(screenshot).decode()

        verification = await self.analyzer.verify_screenshot(
            screenshot_b64, url, "Verify unsubscribe completion"
        )
        self.ai_reasoning.append(f"Visual verification: {verification.reasoning}")

        if verification.is_success and verification.confidence > self.confidence_threshold:
            self.steps.append("Unsubscribe confirmed successful")
            self._finish(
                "success",
                f"Successfully unsubscribed using AI automation ({len(self.steps)} steps)",
                url=url,
                screenshot=screenshot_b64,
            )
        else:
            self.steps.append(f"AI detected success but low confidence ({verification.confidence})")
            self._finish(
                "needs_manual",
                "Automation completed but needs manual verification. "
                f"AI confidence: {round(verification.confidence * 100)}%",
                url=url,
                screenshot=screenshot_b64,
            )

    # ------------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------------

    async def _safe_screenshot(self) -> Optional[str]:
        try:
            return base64.b64encode(await self.page.screenshot()).decode()
        except Exception as e:
            logger.warning(f"Failed to capture screenshot: {e}")
            return None

    def _finish(
        self,
        status: str,
        message: str,
        url: Optional[str],
        screenshot: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        self.result = BrowserResult(
            status=status,
            message=message,
            url=url or self._target_url,
            screenshot_base64=screenshot,
            steps=list(self.steps),
            ai_reasoning=list(self.ai_reasoning),
            error=error,
        )
        self.state = AutomationState.DONE


# ============================================================================
# Browser Pool
# ============================================================================


class BrowserPool:
    """
    Bounded pool for browser runs.

    Browser sessions are heavy, so they are limited separately from the
    queue's job slots.
    """

    def __init__(
        self,
        analyzer: PageAnalyzer,
        concurrency: int = 1,
        page_factory: Optional[PageFactory] = None,
        max_steps: int = DEFAULT_MAX_STEPS,
        step_timeout: float = DEFAULT_STEP_TIMEOUT,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        step_delay: float = 1.0,
    ):
        self.analyzer = analyzer
        self.concurrency = concurrency
        self.max_steps = max_steps
        self.confidence_threshold = confidence_threshold
        self.step_delay = step_delay
        self._page_factory = page_factory or (lambda: playwright_page(step_timeout))
        self._semaphore = asyncio.Semaphore(concurrency)
        self._active = 0

    @classmethod
    def from_settings(cls, analyzer: PageAnalyzer, settings) -> "BrowserPool":
        return cls(
            analyzer,
            concurrency=settings.BROWSER_CONCURRENCY,
            max_steps=settings.BROWSER_MAX_STEPS,
            step_timeout=settings.BROWSER_STEP_TIMEOUT,
            confidence_threshold=settings.VERIFICATION_CONFIDENCE_THRESHOLD,
        )

    @property
    def active(self) -> int:
        return self._active

    async def unsubscribe(self, url: str, email_address: Optional[str] = None) -> BrowserResult:
        """Run one automation in its own browser session."""
        async with self._semaphore:
            self._active += 1
            try:
                return await self._run(url, email_address)
            finally:
                self._active -= 1

    async def _run(self, url: str, email_address: Optional[str]) -> BrowserResult:
        try:
            async with self._page_factory() as page:
                automation = BrowserAutomation(
                    page,
                    self.analyzer,
                    email_address=email_address,
                    max_steps=self.max_steps,
                    confidence_threshold=self.confidence_threshold,
                    step_delay=self.step_delay,
                )
                return await automation.run(url)
        except Exception as e:
            # Launch or teardown failure; the run itself never raises
            logger.error(f"Browser session failed for {url}: {e}", exc_info=True)
            return BrowserResult(
                status="failure",
                message=f"Automation failed: {e}",
                url=url,
                error=str(e),
            )
