"""
Built-in templates, referenced from config/settings.yaml.

summarize → translate is a two-step chain; critique resets the chat and
runs with no tools enabled.
"""
from __future__ import annotations

from templates.models import ChatRequest, TemplateDirective


async def summarize(input: str) -> TemplateDirective:
    return TemplateDirective(
        request=ChatRequest(
            system_prompt="You write short, faithful summaries.",
            inputs=[f"Summarize the following text in a few sentences:\n\n{input}"],
        ),
        next_template="translate",
    )


async def translate(input: str) -> TemplateDirective:
    return TemplateDirective(
        request=ChatRequest(
            inputs=[f"Translate the following text into French:\n\n{input}"],
        ),
    )


async def critique(input: str) -> TemplateDirective:
    return TemplateDirective(
        request=ChatRequest(
            system_prompt="You are a careful reviewer.",
            inputs=[
                f"List the weaknesses of the following text:\n\n{input}",
                "Now suggest one concrete improvement for each weakness.",
            ],
        ),
        reset={"chat"},
        active_tools=[],
    )
