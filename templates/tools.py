"""
Template tools — handlers behind the `template/list` and `template/run` tools.

Handlers take the executor first, then the tool arguments, and return
plain dicts suitable for a tool-call reply. `call_tool` is the entry the
chat engine uses when the model asks for a tool.
"""
from __future__ import annotations

import structlog
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from templates.executor import TemplateExecutor

logger = structlog.get_logger()


async def list_templates(executor: TemplateExecutor, **_: Any) -> dict[str, Any]:
    """Lists all available templates."""
    return {"ok": True, "templates": executor.registry.list_names()}


async def run_template(
    executor: TemplateExecutor,
    template_name: str = "",
    input: str = "",
    **_: Any,
) -> dict[str, Any]:
    """
    Run a template with the given input.

    Tool calls arrive while a chain is dispatching, so the caller already
    holds env.lock; the run continues that chain. Template errors
    propagate to the tool caller.
    """
    env = executor.env
    if env is None:
        raise ValueError("No agent environment configured")
    env.notice(f"[template/run] Running template: {template_name}")
    if not template_name:
        raise ValueError("Template name is required")
    if not input:
        raise ValueError("Input is required")

    result = await executor.run_template(template_name, input, env=env)

    logger.info("template_tool_run", template=template_name, chain=len(result.chain()))
    return result.to_dict()


async def call_tool(executor: TemplateExecutor, name: str, arguments: dict[str, Any] = None) -> dict[str, Any]:
    """
    Invoke a catalog tool on behalf of the model.

    Only tools enabled in the executor's environment may run. Failures are
    returned as {"ok": False, "error": ...} so the model sees them as the
    tool's reply.
    """
    env = executor.env
    handler = env.tool_registry.get_handler(name) if env is not None else None
    if handler is None or name not in env.get_enabled_tools():
        logger.warning("tool_call_rejected", tool=name)
        return {"ok": False, "error": f"Tool not available: {name}"}

    try:
        return await handler(executor, **(arguments or {}))
    except Exception as e:
        logger.warning("tool_call_failed", tool=name, error=str(e), error_type=type(e).__name__)
        return {"ok": False, "error": str(e)}
