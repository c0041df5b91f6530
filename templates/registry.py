"""
Template Registry — Named template functions.

A template is any callable `(input: str) -> TemplateDirective` (usually
async). The registry only stores them by name; it never runs them.

Registration sources:
  1. Direct register() calls from integration code
  2. Bulk load_all() from config (see templates.loader)
"""
from __future__ import annotations

import structlog
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from templates.errors import InvalidTemplate
from templates.models import TemplateDirective

logger = structlog.get_logger()

TemplateFunction = Callable[[str], Union[Awaitable[TemplateDirective], TemplateDirective]]


class TemplateRegistry:
    """
    Central registry of template functions, keyed by name.

    Read-mostly: lookups are safe while templates run; register/unregister
    are expected to happen outside in-flight executions.
    """

    def __init__(self, templates: Optional[Mapping[str, Any]] = None):
        self._templates: dict[str, TemplateFunction] = {}
        if templates:
            self.load_all(templates)

    # ── Registration ──────────────────────────────────

    def register(self, name: str, template: TemplateFunction):
        """Register a template, replacing any existing one with the same name."""
        if not name:
            raise InvalidTemplate(name, template)
        if not callable(template):
            raise InvalidTemplate(name, template)

        replaced = name in self._templates
        self._templates[name] = template
        logger.info("template_registered", name=name, replaced=replaced)

    def unregister(self, name: str) -> bool:
        removed = self._templates.pop(name, None) is not None
        if removed:
            logger.info("template_unregistered", name=name)
        return removed

    def load_all(self, templates: Optional[Mapping[str, Any]]) -> list[str]:
        """
        Register every entry of a name → function mapping.

        Best-effort: an entry that fails to register is logged and skipped,
        the rest still load. Returns the names that were registered.
        """
        if not templates:
            return []

        loaded = []
        for name, template in templates.items():
            try:
                self.register(name, template)
            except InvalidTemplate as e:
                logger.error("template_register_failed", name=name, error=str(e))
                continue
            loaded.append(name)

        logger.info("templates_loaded", count=len(loaded), skipped=len(templates) - len(loaded))
        return loaded

    # ── Lookup ────────────────────────────────────────

    def lookup(self, name: str) -> Optional[TemplateFunction]:
        return self._templates.get(name)

    def list_names(self) -> list[str]:
        return list(self._templates)

    @property
    def count(self) -> int:
        return len(self._templates)

    def __contains__(self, name: object) -> bool:
        return name in self._templates

    def __len__(self) -> int:
        return len(self._templates)
