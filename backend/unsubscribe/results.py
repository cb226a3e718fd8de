"""
Outcome payloads produced by the unsubscribe tiers.

Each tier returns its own model; together they form a tagged union keyed by
``method`` so a stored job result can be parsed back into the right shape.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class _ResultBase(BaseModel):
    message: str
    url: Optional[str] = None

    @property
    def outcome(self) -> str:
        """Status normalized for the queue (needs_manual maps to needs_confirmation)."""
        if self.status == "needs_manual":
            return "needs_confirmation"
        return self.status

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class OneClickResult(_ResultBase):
    """RFC 8058 one-click POST accepted by the sender."""
    method: Literal["one-click"] = "one-click"
    status: Literal["success"] = "success"
    response_status: int


class SimpleHttpResult(_ResultBase):
    """Plain GET of the unsubscribe link."""
    method: Literal["simple-http"] = "simple-http"
    status: Literal["success", "failure", "needs_confirmation"]
    response_status: Optional[int] = None
    response_preview: Optional[str] = None
    error: Optional[str] = None


class BrowserResult(_ResultBase):
    """AI-driven browser automation trace."""
    method: Literal["browser"] = "browser"
    status: Literal["success", "needs_manual", "failure"]
    screenshot_base64: Optional[str] = None
    steps: List[str] = Field(default_factory=list)
    ai_reasoning: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class NoActionResult(_ResultBase):
    """Nothing could be attempted automatically."""
    method: Literal["none"] = "none"
    status: Literal["no_url", "needs_confirmation", "failure"]
    error: Optional[str] = None


UnsubscribeResult = Annotated[
    Union[OneClickResult, SimpleHttpResult, BrowserResult, NoActionResult],
    Field(discriminator="method"),
]

result_adapter: TypeAdapter = TypeAdapter(UnsubscribeResult)


def parse_result(payload: Optional[Dict[str, Any]]):
    """Parse a stored job result payload back into its result model."""
    if not payload:
        return None
    return result_adapter.validate_python(payload)
