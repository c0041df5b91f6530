"""Test doubles shared across test modules."""
from typing import Any

from context.environment import AgentEnvironment
from templates.models import ChatRequest, TemplateDirective


class FakeDispatcher:
    """
    Stands in for ChatEngine.dispatch.

    Replies with "<prefix>:<last input>" and records the enabled tools and
    conversation length seen at dispatch time.
    """

    def __init__(self, prefix: str = "out"):
        self.prefix = prefix
        self.calls: list[dict[str, Any]] = []
        self.fail_with: Exception = None

    async def __call__(self, request: ChatRequest, env: AgentEnvironment):
        self.calls.append({
            "request": request,
            "enabled_tools": env.get_enabled_tools(),
            "messages": len(env.messages),
        })
        if self.fail_with is not None:
            raise self.fail_with
        output = f"{self.prefix}:{request.inputs[-1]}"
        return output, {"text": output, "usage": {"input_tokens": 3, "output_tokens": 5}}


def make_template(inputs_prefix: str = "", **directive_fields):
    """Build an async template that echoes its input into the request."""
    seen: list[str] = []

    async def template(input: str) -> TemplateDirective:
        seen.append(input)
        return TemplateDirective(
            request=ChatRequest(inputs=[f"{inputs_prefix}{input}"]),
            **directive_fields,
        )

    template.seen = seen
    return template
