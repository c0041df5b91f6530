"""
Template Models — what a template produces and what running it returns.

A template is an async function `(input: str) -> TemplateDirective`.
The directive says which chat request to dispatch and which side effects
to apply around it:

  - request:        the chat payload, forwarded untouched to the dispatcher
  - next_template:  run this template next, fed the chat output
  - reset:          clear these categories of context before dispatching
  - active_tools:   narrow the enabled tools to exactly these while dispatching

Running a template yields a TemplateResult. Chained runs nest: each result
carries the result of the template it chained into.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


# ──────────────────────────────────────────────────────────────
#  Reset Kinds
# ──────────────────────────────────────────────────────────────

class ResetKind(str, Enum):
    """Categories of agent context a directive can clear."""
    CHAT = "chat"                 # current conversation messages
    HISTORY = "history"           # archived earlier exchanges
    MEMORY = "memory"             # remembered facts
    SETTINGS = "settings"         # enabled tools back to defaults


# ──────────────────────────────────────────────────────────────
#  Chat Request (opaque to the executor)
# ──────────────────────────────────────────────────────────────

class ChatRequest(BaseModel):
    """The chat invocation(s) a directive asks for."""
    model: str = ""                               # empty = configured default
    inputs: list[str]                             # sent in order, one exchange each
    system_prompt: str = ""
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None

    @field_validator("inputs", mode="before")
    @classmethod
    def _coerce_inputs(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("inputs")
    @classmethod
    def _require_inputs(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("a chat request needs at least one input")
        return value


# ──────────────────────────────────────────────────────────────
#  Template Directive
# ──────────────────────────────────────────────────────────────

class TemplateDirective(BaseModel):
    """
    The structured output of a template function.

    Example:
        TemplateDirective(
            request=ChatRequest(inputs=[f"Summarize:\\n{text}"]),
            next_template="translate",
            reset={"chat"},
            active_tools=["web_search"],
        )
    """
    request: ChatRequest
    next_template: Optional[str] = None
    reset: set[ResetKind] = Field(default_factory=set)
    active_tools: Optional[list[str]] = None

    @field_validator("reset", mode="before")
    @classmethod
    def _coerce_reset(cls, value: Any) -> Any:
        if value is None:
            return set()
        if isinstance(value, (str, ResetKind)):
            return {value}
        return value

    @field_validator("active_tools")
    @classmethod
    def _clean_tools(cls, value: Optional[list[str]]) -> Optional[list[str]]:
        if value is None:
            return None
        cleaned: list[str] = []
        for name in value:
            name = name.strip()
            if not name:
                raise ValueError("tool names must be non-empty")
            if name not in cleaned:
                cleaned.append(name)
        return cleaned


# ──────────────────────────────────────────────────────────────
#  Template Result
# ──────────────────────────────────────────────────────────────

class TemplateResult(BaseModel):
    """Outcome of running one template, plus whatever it chained into."""
    ok: bool
    output: Optional[str] = None
    response: Any = None
    error: Optional[str] = None
    next_template_result: Optional[TemplateResult] = None

    @classmethod
    def from_error(cls, error: BaseException) -> TemplateResult:
        return cls(ok=False, error=str(error) or type(error).__name__)

    def chain(self) -> list[TemplateResult]:
        """Flatten the nested results, outermost first."""
        results = []
        current: Optional[TemplateResult] = self
        while current is not None:
            results.append(current)
            current = current.next_template_result
        return results

    @property
    def final_output(self) -> Optional[str]:
        return self.chain()[-1].output

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly form; the raw response is reduced to a dict when it can be."""
        data: dict[str, Any] = {"ok": self.ok}
        if self.output is not None:
            data["output"] = self.output
        if self.response is not None:
            response = self.response
            if isinstance(response, BaseModel):
                response = response.model_dump(mode="json")
            data["response"] = response
        if self.error is not None:
            data["error"] = self.error
        if self.next_template_result is not None:
            data["next_template_result"] = self.next_template_result.to_dict()
        return data


TemplateResult.model_rebuild()
