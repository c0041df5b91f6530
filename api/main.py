"""
FastAPI Application — HTTP surface for the template runner.

Provides:
- Template listing and info
- Template runs (POST /api/v1/templates/{name}/run)
- Tool catalog and environment state for diagnostics
- Chat commands (POST /api/v1/commands, e.g. "/template list")

Each run holds the environment lock, so one environment never hosts two
chains at once. Template errors map to HTTP status codes; see
TEMPLATE_ERROR_STATUS.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from functools import partial
from typing import Any

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from commands.router import CommandRouter
from config.settings import Settings, get_settings
from context.environment import create_environment
from core.engine import ChatEngine
from templates.errors import (
    CircularTemplateReference, DispatchFailure, MissingTemplateName,
    TemplateChainTooDeep, TemplateError, TemplateNotFound, UnknownTools,
)
from templates.executor import TemplateExecutor
from templates.loader import resolve_templates
from templates.registry import TemplateRegistry
from templates.tool_registry import create_default_tool_registry
from templates.tools import call_tool

logger = structlog.get_logger()

TEMPLATE_ERROR_STATUS: dict[type, int] = {
    MissingTemplateName: 400,
    TemplateNotFound: 404,
    CircularTemplateReference: 400,
    TemplateChainTooDeep: 400,
    UnknownTools: 400,
    DispatchFailure: 502,
}


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

def build_executor(settings: Settings = None) -> TemplateExecutor:
    """Wire registry, tool catalog, environment and chat engine from settings."""
    settings = settings or get_settings()

    tool_registry = create_default_tool_registry()
    tool_registry.register_from_config(settings.tools)

    template_registry = TemplateRegistry()
    template_registry.load_all(resolve_templates(settings.templates))

    engine = ChatEngine(settings=settings)
    executor = TemplateExecutor(
        registry=template_registry,
        dispatch=engine.dispatch,
        env=create_environment(tool_registry, settings),
        max_chain_depth=settings.engine.max_chain_depth,
    )
    engine.set_tool_caller(partial(call_tool, executor))
    return executor


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class RunTemplateRequest(BaseModel):
    input: str = ""


class CommandRequest(BaseModel):
    text: str


def _status_for(error: TemplateError) -> int:
    for cls in type(error).__mro__:
        if cls in TEMPLATE_ERROR_STATUS:
            return TEMPLATE_ERROR_STATUS[cls]
    return 500


def create_app(executor: TemplateExecutor = None) -> FastAPI:
    app = FastAPI(
        title="Template Runner API",
        description="Run named prompt templates and their chains",
        version="1.0.0",
    )
    app.state.executor = executor or build_executor()
    app.state.commands = CommandRouter(app.state.executor)

    @app.exception_handler(TemplateError)
    async def template_error_handler(request: Request, exc: TemplateError):
        status = _status_for(exc)
        logger.warning("template_request_failed",
                        path=request.url.path,
                        status=status,
                        error=str(exc),
                        error_type=type(exc).__name__)
        return JSONResponse(
            status_code=status,
            content={
                "ok": False,
                "error": str(exc),
                "error_type": type(exc).__name__,
                "template": exc.template_name,
                "retryable": exc.retryable,
            },
        )

    # ══════════════════════════════════════════════════════════
    #  HEALTH & DIAGNOSTICS
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        executor: TemplateExecutor = request.app.state.executor
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "templates": executor.registry.count,
        }

    @app.get("/api/v1/tools")
    async def list_tools(request: Request):
        env = request.app.state.executor.env
        return {
            "available": env.available_tools,
            "enabled": env.get_enabled_tools(),
        }

    @app.get("/api/v1/environment")
    async def environment_state(request: Request):
        return request.app.state.executor.env.snapshot()

    # ══════════════════════════════════════════════════════════
    #  TEMPLATES
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/templates")
    async def list_templates(request: Request):
        return {"ok": True, "templates": request.app.state.executor.registry.list_names()}

    @app.get("/api/v1/templates/{template_name}")
    async def template_info(template_name: str, request: Request):
        executor: TemplateExecutor = request.app.state.executor
        if executor.registry.lookup(template_name) is None:
            raise HTTPException(404, f"Template not found: {template_name}")
        return {
            "name": template_name,
            "usage": f"/template run {template_name} <input>",
        }

    @app.post("/api/v1/templates/{template_name}/run")
    async def run_template(template_name: str, req: RunTemplateRequest, request: Request) -> dict[str, Any]:
        executor: TemplateExecutor = request.app.state.executor
        env = executor.env
        async with env.lock:
            env.drain_notices()
            try:
                result = await executor.run_template(template_name, req.input, env=env)
            finally:
                notices = env.drain_notices()

        payload = result.to_dict()
        payload["notices"] = notices
        return payload

    # ══════════════════════════════════════════════════════════
    #  CHAT COMMANDS
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/commands")
    async def list_commands(request: Request):
        return {"commands": request.app.state.commands.commands()}

    @app.post("/api/v1/commands")
    async def run_command(req: CommandRequest, request: Request):
        """Run a chat command such as "/template run summarize <text>"."""
        router: CommandRouter = request.app.state.commands
        router.env.drain_notices()
        if not await router.handle(req.text):
            raise HTTPException(400, "Not a command; commands start with '/'")
        return {"ok": True, "notices": router.env.drain_notices()}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
