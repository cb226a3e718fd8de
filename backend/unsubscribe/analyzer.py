"""
AI page analyzer for browser-driven unsubscribe flows.

Two passes:
- Text analysis of a simplified page to pick the next action (cheap)
- Screenshot verification to confirm a claimed success (vision)

The analyzer never raises. Provider failures and unparseable answers degrade
to an ``error`` action or a failed verification with zero confidence.
"""

import json
import logging
from dataclasses import dataclass
from typing import List, Optional

from bs4 import BeautifulSoup, Comment
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

logger = logging.getLogger(__name__)


VALID_ACTIONS = ("click", "fill", "submit", "success", "needs_manual", "error")

# Placeholder the model uses for "the user's email address"
EMAIL_SENTINEL = "(email)"

BODY_TEXT_LIMIT = 2000


@dataclass
class PageAnalysis:
    """Next step decided by the text pass."""
    action: str
    reasoning: str
    confidence: float = 0.0
    selector: Optional[str] = None
    value: Optional[str] = None
    next_step: Optional[str] = None


@dataclass
class VisualVerification:
    """Result of the screenshot pass."""
    is_success: bool
    reasoning: str
    confidence: float = 0.0


# ============================================================================
# Response Parsing
# ============================================================================


def extract_json(text: str) -> str:
    """
    Extract the outermost JSON object from a model response.

    Tolerates markdown code fences and commentary before or after the
    object. Braces inside strings are ignored.

    Raises:
        ValueError: If no balanced object is present
    """
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned[3:]
        if cleaned.lower().startswith("json"):
            cleaned = cleaned[4:]

    start = cleaned.find("{")
    if start == -1:
        raise ValueError("No JSON object found in response")

    depth = 0
    in_string = False
    escaped = False

    for index in range(start, len(cleaned)):
        char = cleaned[index]

        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue

        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return cleaned[start:index + 1]

    raise ValueError("Could not find matching closing brace for JSON object")


def _as_confidence(value) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return 0.0


# ============================================================================
# Page Simplification
# ============================================================================


def simplify_html(html: str, text_limit: int = BODY_TEXT_LIMIT) -> str:
    """
    Reduce page markup to what matters for picking an action.

    Keeps button labels, links (text and href), inputs (type and
    placeholder), form presence, and the first ``text_limit`` characters
    of visible text.
    """
    soup = BeautifulSoup(html or "", "html.parser")

    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()

    important: List[str] = []

    for button in soup.find_all("button"):
        important.append(f"Button: {button.get_text(' ', strip=True)}")

    for link in soup.find_all("a", href=True):
        important.append(f"Link: {link.get_text(' ', strip=True)} -> {link['href']}")

    for field_ in soup.find_all("input"):
        input_type = field_.get("type", "text")
        placeholder = field_.get("placeholder", "")
        line = f'Input: type="{input_type}" placeholder="{placeholder}"'
        if field_.get("name"):
            line += f' name="{field_["name"]}"'
        if input_type in ("submit", "button") and field_.get("value"):
            line += f' value="{field_["value"]}"'
        important.append(line)

    for _ in soup.find_all("form"):
        important.append("Form present")

    body_text = " ".join(soup.get_text(" ").split())[:text_limit]

    return "Text content:\n{}\n\nInteractive elements:\n{}".format(
        body_text, "\n".join(important)
    )


# ============================================================================
# Analyzer
# ============================================================================


class PageAnalyzer:
    """
    OpenAI-backed analyzer for unsubscribe pages.

    The client is optional: without an API key every call degrades to an
    error verdict so the browser tier fails fast instead of looping.
    """

    TEXT_PROMPT = '''You are analyzing an unsubscribe page to determine the next action to take.

URL: {url}
Previous actions: {previous}

Page (simplified):
{page}

Your task:
1. Determine what action is needed to unsubscribe (click button, fill form, etc.)
2. Provide the CSS selector for the element to interact with
3. Assess if unsubscribe is complete or needs more steps

Respond with JSON:
{{
    "action": "click" | "fill" | "submit" | "success" | "needs_manual" | "error",
    "reasoning": "what you see and why this action",
    "selector": "CSS selector for the element",
    "value": "value to fill (fill only)",
    "confidence": 0.0-1.0,
    "nextStep": "what will happen after this action"
}}

Examples:
- An "Unsubscribe" button -> action "click", selector "button:has-text('Unsubscribe')"
- An "Email:" field -> action "fill", selector "input[type='email']", value "(email)"
- "You have been unsubscribed" -> action "success"
- Login or CAPTCHA required -> action "needs_manual"'''

    VISION_PROMPT = '''You are analyzing a screenshot of an unsubscribe page.

URL: {url}
Context: {context}

Determine:
1. Is the unsubscribe process complete? Look for messages like "You've been unsubscribed" or "Subscription updated".
2. Are there any error messages?
3. Does the page still show unsubscribe buttons or forms?

Respond with JSON:
{{
    "isSuccess": true or false,
    "reasoning": "what you see in the screenshot",
    "confidence": 0.0-1.0
}}'''

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        vision_model: str = "gpt-4o-mini",
        client=None,
    ):
        """
        Initialize the analyzer.

        Args:
            api_key: OpenAI API key; when None the analyzer is disabled
            model: Model used for the text pass
            vision_model: Model used for screenshot verification
            client: Pre-built AsyncOpenAI-compatible client (tests)
        """
        self.model = model
        self.vision_model = vision_model
        self.client = client

        if self.client is None and api_key:
            from openai import AsyncOpenAI
            self.client = AsyncOpenAI(api_key=api_key)
        elif self.client is None:
            logger.warning("OPENAI_API_KEY not configured. Page analysis disabled.")

    @classmethod
    def from_settings(cls, settings) -> "PageAnalyzer":
        return cls(
            api_key=settings.OPENAI_API_KEY,
            model=settings.OPENAI_MODEL,
            vision_model=settings.OPENAI_VISION_MODEL,
        )

    def is_available(self) -> bool:
        """Check if the analyzer can reach a model."""
        return self.client is not None

    async def _complete(self, model: str, content, max_tokens: int) -> str:
        """Single chat completion returning the text of the first choice."""
        from openai import APIConnectionError, RateLimitError

        @retry(
            retry=retry_if_exception_type((RateLimitError, APIConnectionError)),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            stop=stop_after_attempt(3),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async def call() -> str:
            response = await self.client.chat.completions.create(
                model=model,
                messages=[{"role": "user", "content": content}],
                temperature=0.2,
                max_tokens=max_tokens,
            )
            return response.choices[0].message.content or ""

        return await call()

    async def analyze_text(
        self,
        html: str,
        url: str,
        previous_actions: Optional[List[str]] = None,
    ) -> PageAnalysis:
        """
        Decide the next action for the current page.

        Args:
            html: Current page markup
            url: Current page URL
            previous_actions: Log of actions already taken

        Returns:
            PageAnalysis; action is "error" if the model could not be used
        """
        if not self.is_available():
            return PageAnalysis(action="error", reasoning="AI analysis not available")

        prompt = self.TEXT_PROMPT.format(
            url=url,
            previous=" -> ".join(previous_actions or []) or "None",
            page=simplify_html(html),
        )

        try:
            text = await self._complete(self.model, prompt, max_tokens=1024)
            data = json.loads(extract_json(text))

            action = str(data.get("action", "")).strip()
            if action not in VALID_ACTIONS:
                raise ValueError(f"Unknown action: {action!r}")

            analysis = PageAnalysis(
                action=action,
                reasoning=str(data.get("reasoning", "")),
                confidence=_as_confidence(data.get("confidence")),
                selector=data.get("selector") or None,
                value=data.get("value") or None,
                next_step=data.get("nextStep") or None,
            )
            logger.info(f"AI text analysis {url} -> {analysis.action} ({analysis.confidence})")
            return analysis

        except Exception as e:
            logger.error(f"AI text analysis failed for {url}: {e}")
            return PageAnalysis(action="error", reasoning=f"AI analysis failed: {e}")

    async def verify_screenshot(
        self,
        screenshot_base64: str,
        url: str,
        context: str = "Verify if unsubscribe was successful",
    ) -> VisualVerification:
        """
        Confirm a claimed success from a PNG screenshot.

        Only used to verify; never drives navigation.
        """
        if not self.is_available():
            return VisualVerification(
                is_success=False,
                reasoning="AI vision not available",
                confidence=0.0,
            )

        content = [
            {
                "type": "image_url",
                "image_url": {"url": f"data:image/png;base64,{screenshot_base64}"},
            },
            {"type": "text", "text": self.VISION_PROMPT.format(url=url, context=context)},
        ]

        try:
            text = await self._complete(self.vision_model, content, max_tokens=512)
            data = json.loads(extract_json(text))

            verification = VisualVerification(
                is_success=data.get("isSuccess") is True,
                reasoning=str(data.get("reasoning", "")),
                confidence=_as_confidence(data.get("confidence")),
            )
            logger.info(
                f"AI vision {url} -> "
                f"{'success' if verification.is_success else 'not complete'} ({verification.confidence})"
            )
            return verification

        except Exception as e:
            logger.error(f"AI vision analysis failed for {url}: {e}")
            return VisualVerification(
                is_success=False,
                reasoning=f"AI vision analysis failed: {e}",
                confidence=0.0,
            )
