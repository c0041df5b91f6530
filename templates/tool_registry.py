"""
Tool Registry — Catalog of tools an agent environment may enable.

A template directive can narrow the enabled tools to a subset; the
catalog is what that subset is validated against. Every tool has:
  - A name and description (for the LLM to understand purpose)
  - A JSON schema for input parameters
  - An optional async handler

Tools come from three sources:
  1. Built-in template tools (template/list, template/run)
  2. Tool entries from config
  3. Custom tools registered by integration code
"""
from __future__ import annotations

import structlog
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from pydantic import BaseModel

logger = structlog.get_logger()


class ToolCategory(str, Enum):
    """Rough grouping, surfaced in tool descriptions."""
    DATA_FETCH = "data_fetch"          # Read external data
    DATA_WRITE = "data_write"          # Write/update data
    ANALYSIS = "analysis"              # Analyze/classify/score
    TEMPLATE = "template"              # List/run prompt templates
    INTERNAL = "internal"


class ToolSchema(BaseModel):
    """Describes one tool."""
    name: str                                             # Unique identifier
    description: str = ""                                 # What the tool does (for LLM)
    category: ToolCategory = ToolCategory.INTERNAL
    input_schema: dict[str, Any] = {}                     # JSON Schema for parameters
    is_builtin: bool = False
    enabled: bool = True                                  # False = hidden from the catalog


class ToolRegistry:
    """
    Central catalog of tools.

    Used by:
    - AgentEnvironment: to validate enabled-tool changes
    - TemplateExecutor: to reject directives naming unknown tools
    - ChatEngine: to describe the enabled tools to the model
    """

    def __init__(self):
        self._tools: dict[str, ToolSchema] = {}
        self._handlers: dict[str, Callable] = {}        # name → async callable

    # ── Registration ──────────────────────────────────

    def register(self, schema: ToolSchema, handler: Callable = None):
        """Register a tool with optional handler."""
        self._tools[schema.name] = schema
        if handler:
            self._handlers[schema.name] = handler
        logger.info("tool_registered",
                     name=schema.name,
                     category=schema.category.value,
                     builtin=schema.is_builtin)

    def register_builtin(
        self,
        name: str,
        description: str,
        handler: Callable,
        input_schema: dict = None,
        category: ToolCategory = ToolCategory.INTERNAL,
    ):
        """Convenience: register a built-in async function as a tool."""
        schema = ToolSchema(
            name=name,
            description=description,
            category=category,
            input_schema=input_schema or {},
            is_builtin=True,
        )
        self.register(schema, handler)

    def register_from_config(self, config: list[dict[str, Any]]):
        """Load plain tool entries (name, description, category) from YAML config."""
        for raw in config or []:
            self.register(ToolSchema(**raw))
        logger.info("tools_loaded", count=len(config or []))

    # ── Lookup ────────────────────────────────────────

    def get(self, name: str) -> Optional[ToolSchema]:
        return self._tools.get(name)

    def get_handler(self, name: str) -> Optional[Callable]:
        return self._handlers.get(name)

    def list_all(self) -> list[ToolSchema]:
        return [t for t in self._tools.values() if t.enabled]

    def names(self) -> list[str]:
        return [t.name for t in self.list_all()]

    def describe_for_llm(self, names: Iterable[str] = None, max_tools: int = 20) -> str:
        """
        Build a human-readable description of tools for inclusion in
        LLM prompts. Limited to `names` when given.
        """
        tools = self.list_all()
        if names is not None:
            wanted = set(names)
            tools = [t for t in tools if t.name in wanted]
        tools = tools[:max_tools]
        if not tools:
            return "No tools available."

        lines = ["Available tools:"]
        for t in tools:
            params = ""
            props = t.input_schema.get("properties", {})
            if props:
                param_strs = [f"{k}: {v.get('type','any')}" for k, v in props.items()]
                params = f" ({', '.join(param_strs)})"
            lines.append(f"  • {t.name}{params}")
            if t.description:
                lines.append(f"    {t.description}")
        return "\n".join(lines)

    @property
    def count(self) -> int:
        return len(self._tools)

    # ── Validation ────────────────────────────────────

    def unknown_tools(self, names: Iterable[str]) -> list[str]:
        """Return the names that are not in the catalog (or are disabled)."""
        return [n for n in names if n not in self._tools or not self._tools[n].enabled]


def create_default_tool_registry() -> ToolRegistry:
    """Create a registry pre-loaded with the built-in template tools."""
    from templates.tools import list_templates, run_template

    registry = ToolRegistry()

    registry.register_builtin(
        name="template/list",
        description="Lists all available templates. Returns an array of template names "
                    "that can be used with the template/run tool.",
        handler=list_templates,
        input_schema={"type": "object", "properties": {}},
        category=ToolCategory.TEMPLATE,
    )

    registry.register_builtin(
        name="template/run",
        description="Run a template with the given input. Templates are predefined prompt "
                    "patterns that generate AI requests.",
        handler=run_template,
        input_schema={
            "type": "object",
            "properties": {
                "template_name": {"type": "string", "description": "The name of the template to run."},
                "input": {"type": "string", "description": "The input to pass to the template."},
            },
            "required": ["template_name", "input"],
        },
        category=ToolCategory.TEMPLATE,
    )

    return registry
