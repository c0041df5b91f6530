"""
Template errors.

Everything the template engine raises derives from TemplateError so
adapters can catch the whole family in one place. Errors raised by a
template function itself are NOT wrapped — they propagate as-is.
"""
from __future__ import annotations

from typing import Iterable


class TemplateError(Exception):
    """Base exception for template registry and execution failures."""

    def __init__(self, message: str, template_name: str = "", retryable: bool = False):
        self.template_name = template_name
        self.retryable = retryable
        super().__init__(message)


class MissingTemplateName(TemplateError):
    def __init__(self):
        super().__init__("Template name is required")


class TemplateNotFound(TemplateError):
    def __init__(self, template_name: str):
        super().__init__(f"Template not found: {template_name}", template_name)


class InvalidTemplate(TemplateError):
    """Raised at registration time when the value is not callable."""

    def __init__(self, template_name: str, value: object):
        super().__init__(
            f"Template '{template_name}' must be callable, got {type(value).__name__}",
            template_name,
        )


class CircularTemplateReference(TemplateError):
    def __init__(self, template_name: str, visited: Iterable[str] = ()):
        self.visited = list(visited)
        super().__init__(
            f"Circular template reference detected: {template_name} "
            f"has already been run in this chain.",
            template_name,
        )


class TemplateChainTooDeep(TemplateError):
    def __init__(self, template_name: str, max_depth: int):
        self.max_depth = max_depth
        super().__init__(
            f"Template chain exceeded {max_depth} templates at: {template_name}",
            template_name,
        )


class UnknownTools(TemplateError):
    """A directive (or caller) asked for tools the environment does not offer."""

    def __init__(self, tools: Iterable[str], template_name: str = ""):
        self.tools = list(tools)
        super().__init__(
            f"Template requested unknown tools: {', '.join(self.tools)}",
            template_name,
        )


class DispatchFailure(TemplateError):
    """The chat backend failed or stopped for an unexpected reason."""

    def __init__(self, message: str, template_name: str = "", retryable: bool = False):
        super().__init__(message, template_name, retryable=retryable)
