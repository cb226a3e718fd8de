"""
Unsubscribe tiers.

Link extraction, the HTTP executor (tiers 1-2), the AI page analyzer and the
browser automation pool (tier 3).
"""

from unsubscribe.links import (
    clean_url,
    extract_from_header,
    extract_from_body,
    find_unsubscribe_url,
    is_one_click,
)

from unsubscribe.results import (
    OneClickResult,
    SimpleHttpResult,
    BrowserResult,
    NoActionResult,
    UnsubscribeResult,
    parse_result,
)

from unsubscribe.analyzer import (
    PageAnalysis,
    VisualVerification,
    PageAnalyzer,
    extract_json,
    simplify_html,
)

from unsubscribe.executor import (
    UnsubscribeExecutor,
    detect_confirmation_page,
    needs_escalation,
)

from unsubscribe.browser import (
    AutomationState,
    BrowserAutomation,
    BrowserPool,
)

__all__ = [
    # Links
    "clean_url",
    "extract_from_header",
    "extract_from_body",
    "find_unsubscribe_url",
    "is_one_click",
    # Results
    "OneClickResult",
    "SimpleHttpResult",
    "BrowserResult",
    "NoActionResult",
    "UnsubscribeResult",
    "parse_result",
    # Analyzer
    "PageAnalysis",
    "VisualVerification",
    "PageAnalyzer",
    "extract_json",
    "simplify_html",
    # Executor
    "UnsubscribeExecutor",
    "detect_confirmation_page",
    "needs_escalation",
    # Browser
    "AutomationState",
    "BrowserAutomation",
    "BrowserPool",
]
