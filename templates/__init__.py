"""
Prompt Template System.

Templates are named functions that turn an input string into a chat
directive. The executor runs a template, applies the directive's side
effects (context reset, tool narrowing), dispatches the chat, and follows
`next_template` links with the chat output as the next input.

  - Registry (name → template function, best-effort bulk load)
  - Executor (recursive run with cycle detection + scoped tool restore)
  - Tool catalog (what an environment may enable)
  - Loader (template references from config)
"""
from templates.models import (
    ResetKind, ChatRequest, TemplateDirective, TemplateResult,
)
from templates.errors import (
    TemplateError, MissingTemplateName, TemplateNotFound, InvalidTemplate,
    CircularTemplateReference, TemplateChainTooDeep, UnknownTools, DispatchFailure,
)
from templates.registry import TemplateRegistry, TemplateFunction
from templates.executor import TemplateExecutor
from templates.tool_registry import ToolRegistry, ToolSchema, ToolCategory
from templates.loader import resolve_reference, resolve_templates
