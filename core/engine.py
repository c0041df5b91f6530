"""
Chat Engine — LLM dispatch for template runs.

Implements the dispatch primitive the template executor calls:

    output_text, response = await engine.dispatch(request, env)

Handles:
- Provider selection (Anthropic or OpenAI) from settings
- Sending each request input in order against the environment's conversation
- Describing the environment's enabled tools in the system prompt
- Offering enabled tools that have handlers to the model, and running the
  calls it makes through the tool caller
- Rejecting replies that did not finish normally
"""
from __future__ import annotations

import json
import re
import structlog
from typing import Any, Awaitable, Callable

from pydantic import BaseModel

from config.settings import Settings, get_settings
from context.environment import AgentEnvironment
from templates.errors import DispatchFailure
from templates.models import ChatRequest

logger = structlog.get_logger()

# Stop reasons that mean the model finished on its own
NORMAL_STOPS = {"end_turn", "stop_sequence", "stop"}

# Stop reasons that mean the model is waiting on tool results
TOOL_STOPS = {"tool_use", "tool_calls"}

# async fn(catalog tool name, arguments) → JSON-friendly result
ToolCaller = Callable[[str, dict[str, Any]], Awaitable[Any]]


class ToolCall(BaseModel):
    """One tool invocation requested by the model."""
    id: str
    name: str                         # catalog name, e.g. "template/run"
    arguments: dict[str, Any] = {}


class ChatTurn(BaseModel):
    """One input → reply exchange within a dispatch."""
    input: str
    text: str
    finish_reason: str = ""
    usage: dict[str, int] = {}
    tool_calls: list[ToolCall] = []


class ChatResponse(BaseModel):
    """The full response of one dispatch (all inputs of a request)."""
    text: str = ""
    model: str = ""
    provider: str = ""
    finish_reason: str = ""
    usage: dict[str, int] = {}
    turns: list[ChatTurn] = []

    def analytics(self) -> str:
        if not self.usage:
            return "Unknown token usage"
        parts = [f"{k}: {v}" for k, v in self.usage.items()]
        return f"Token usage - {', '.join(parts)}"


def api_tool_name(name: str) -> str:
    """Provider-safe tool name ("template/run" → "template__run")."""
    return re.sub(r"[^A-Za-z0-9_-]", "_", name.replace("/", "__"))


class ChatEngine:
    """
    Sends template chat requests to Claude or OpenAI.

    The client is created lazily; pass one in to reuse an existing client.
    Without a tool caller no tools are offered to the model.
    """

    def __init__(self, settings: Settings = None, client: Any = None, tool_caller: ToolCaller = None):
        self._settings = settings or get_settings()
        self._client = client
        self._tool_caller = tool_caller
        self._provider = getattr(self._settings.llm, "provider", "anthropic")

    @property
    def is_openai(self) -> bool:
        return self._provider == "openai"

    def set_tool_caller(self, tool_caller: ToolCaller):
        self._tool_caller = tool_caller

    async def _get_client(self):
        if self._client is None:
            try:
                if self.is_openai:
                    from openai import AsyncOpenAI
                    self._client = AsyncOpenAI(
                        api_key=self._settings.llm.api_key
                    )
                else:
                    import anthropic
                    self._client = anthropic.AsyncAnthropic(
                        api_key=self._settings.llm.api_key
                    )
                logger.info("llm_client_initialized", provider=self._provider,
                            model=self._settings.llm.model)
            except Exception as e:
                logger.error("llm_client_init_failed", provider=self._provider, error=str(e))
                self._client = None
        return self._client

    # ── Dispatch ──────────────────────────────────────

    async def dispatch(self, request: ChatRequest, env: AgentEnvironment) -> tuple[str, ChatResponse]:
        """
        Send every input of the request, in order, as user turns.

        Each reply is appended to the environment's conversation so later
        inputs (and later templates) see it. Tool exchanges stay inside the
        turn; only the final reply text is kept. Returns the last reply's
        text and the full response.
        """
        client = await self._get_client()
        if not client:
            raise DispatchFailure(f"No {self._provider} client available")

        model = request.model or self._settings.llm.model
        system = self._build_system_prompt(request, env)
        response = ChatResponse(model=model, provider=self._provider)

        for item in request.inputs:
            env.add_message("user", item)
            turn = await self._run_turn(client, model, system, env, request)
            turn.input = item
            env.add_message("assistant", turn.text)

            response.turns.append(turn)
            for key, value in turn.usage.items():
                response.usage[key] = response.usage.get(key, 0) + value

            if turn.finish_reason not in NORMAL_STOPS:
                raise DispatchFailure(
                    f"AI Chat did not stop as expected, Reason: {turn.finish_reason}",
                    retryable=turn.finish_reason in ("max_tokens", "length"),
                )

        last = response.turns[-1]
        response.text = last.text
        response.finish_reason = last.finish_reason
        return response.text, response

    async def _run_turn(
        self,
        client: Any,
        model: str,
        system: str,
        env: AgentEnvironment,
        request: ChatRequest,
    ) -> ChatTurn:
        """Call the model for one input, answering its tool calls until it stops."""
        tools, catalog_names = self._tool_definitions(env)
        messages = list(env.messages)
        usage: dict[str, int] = {}
        calls: list[ToolCall] = []
        max_rounds = self._settings.engine.max_tool_rounds

        for round_no in range(max_rounds + 1):
            turn, assistant_message = await self._call_llm(client, model, system, messages, request, tools)
            for key, value in turn.usage.items():
                usage[key] = usage.get(key, 0) + value

            if turn.finish_reason not in TOOL_STOPS or not turn.tool_calls:
                turn.usage = usage
                turn.tool_calls = calls
                return turn

            if round_no == max_rounds:
                raise DispatchFailure(f"Tool call limit reached ({max_rounds} rounds)")

            for call in turn.tool_calls:
                call.name = catalog_names.get(call.name, call.name)
            results = [await self._call_tool(call) for call in turn.tool_calls]
            calls.extend(turn.tool_calls)

            messages.append(assistant_message)
            messages.extend(self._tool_result_messages(turn.tool_calls, results))

        raise DispatchFailure("Tool call limit reached")

    async def _call_tool(self, call: ToolCall) -> Any:
        logger.info("llm_tool_call", tool=call.name, call_id=call.id)
        if self._tool_caller is None:
            return {"ok": False, "error": f"Tool not available: {call.name}"}
        return await self._tool_caller(call.name, call.arguments)

    async def _call_llm(
        self,
        client: Any,
        model: str,
        system: str,
        messages: list[dict[str, Any]],
        request: ChatRequest,
        tools: list[dict[str, Any]] = (),
    ) -> tuple[ChatTurn, dict[str, Any]]:
        """
        Unified LLM call that handles both Anthropic and OpenAI APIs.

        Returns the turn and the assistant message to echo back when the
        model asked for tools.
        """
        max_tokens = request.max_tokens or self._settings.llm.max_tokens
        temperature = request.temperature if request.temperature is not None else self._settings.llm.temperature

        try:
            if self.is_openai:
                # OpenAI: system prompt is a message in the messages list
                oai_messages = [{"role": "system", "content": system}] + list(messages)
                kwargs: dict[str, Any] = dict(
                    model=model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    messages=oai_messages,
                )
                if tools:
                    kwargs["tools"] = list(tools)
                response = await client.chat.completions.create(**kwargs)
                choice = response.choices[0]
                message = choice.message
                raw_calls = getattr(message, "tool_calls", None) or []
                usage = getattr(response, "usage", None)
                turn = ChatTurn(
                    input="",
                    text=message.content or "",
                    finish_reason=choice.finish_reason or "",
                    usage={
                        "input_tokens": getattr(usage, "prompt_tokens", 0) or 0,
                        "output_tokens": getattr(usage, "completion_tokens", 0) or 0,
                    } if usage else {},
                    tool_calls=[
                        ToolCall(id=tc.id, name=tc.function.name,
                                 arguments=_parse_arguments(tc.function.arguments))
                        for tc in raw_calls
                    ],
                )
                assistant_message = {
                    "role": "assistant",
                    "content": message.content,
                    "tool_calls": [
                        {"id": tc.id, "type": "function",
                         "function": {"name": tc.function.name, "arguments": tc.function.arguments}}
                        for tc in raw_calls
                    ],
                }
                return turn, assistant_message
            else:
                # Anthropic: system prompt is a separate parameter
                kwargs = dict(
                    model=model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    system=system,
                    messages=list(messages),
                )
                if tools:
                    kwargs["tools"] = list(tools)
                response = await client.messages.create(**kwargs)
                blocks = list(response.content)
                text = "".join(
                    getattr(block, "text", "") for block in blocks
                    if getattr(block, "type", "text") == "text"
                )
                tool_blocks = [b for b in blocks if getattr(b, "type", "") == "tool_use"]
                usage = getattr(response, "usage", None)
                turn = ChatTurn(
                    input="",
                    text=text,
                    finish_reason=response.stop_reason or "",
                    usage={
                        "input_tokens": getattr(usage, "input_tokens", 0) or 0,
                        "output_tokens": getattr(usage, "output_tokens", 0) or 0,
                    } if usage else {},
                    tool_calls=[
                        ToolCall(id=b.id, name=b.name, arguments=dict(b.input or {}))
                        for b in tool_blocks
                    ],
                )
                content: list[dict[str, Any]] = []
                for block in blocks:
                    if getattr(block, "type", "text") == "text":
                        content.append({"type": "text", "text": block.text})
                    elif block.type == "tool_use":
                        content.append({"type": "tool_use", "id": block.id,
                                        "name": block.name, "input": dict(block.input or {})})
                return turn, {"role": "assistant", "content": content}
        except DispatchFailure:
            raise
        except Exception as e:
            logger.error("llm_dispatch_failed", provider=self._provider, model=model, error=str(e))
            raise DispatchFailure(f"Chat dispatch failed: {e}") from e

    def _tool_result_messages(self, calls: list[ToolCall], results: list[Any]) -> list[dict[str, Any]]:
        if self.is_openai:
            return [
                {"role": "tool", "tool_call_id": call.id, "content": json.dumps(result, default=str)}
                for call, result in zip(calls, results)
            ]
        return [{
            "role": "user",
            "content": [
                {"type": "tool_result", "tool_use_id": call.id, "content": json.dumps(result, default=str)}
                for call, result in zip(calls, results)
            ],
        }]

    # ── Prompt Construction ───────────────────────────

    def _build_system_prompt(self, request: ChatRequest, env: AgentEnvironment) -> str:
        tools = env.tool_registry.describe_for_llm(env.get_enabled_tools())
        if request.system_prompt:
            return f"{request.system_prompt}\n\n{tools}"
        return tools

    def _tool_definitions(self, env: AgentEnvironment) -> tuple[list[dict[str, Any]], dict[str, str]]:
        """
        Provider tool definitions for the enabled tools that have handlers,
        plus a map from the provider-safe name back to the catalog name.
        """
        if self._tool_caller is None:
            return [], {}

        definitions: list[dict[str, Any]] = []
        catalog_names: dict[str, str] = {}
        for name in env.get_enabled_tools():
            schema = env.tool_registry.get(name)
            if schema is None or env.tool_registry.get_handler(name) is None:
                continue
            api_name = api_tool_name(name)
            catalog_names[api_name] = name
            parameters = schema.input_schema or {"type": "object", "properties": {}}
            if self.is_openai:
                definitions.append({
                    "type": "function",
                    "function": {"name": api_name, "description": schema.description,
                                 "parameters": parameters},
                })
            else:
                definitions.append({
                    "name": api_name,
                    "description": schema.description,
                    "input_schema": parameters,
                })
        return definitions, catalog_names


def _parse_arguments(raw: str) -> dict[str, Any]:
    """Decode OpenAI's JSON-encoded tool arguments."""
    try:
        parsed = json.loads(raw or "{}")
    except json.JSONDecodeError as e:
        logger.warning("llm_tool_arguments_invalid", error=str(e))
        return {}
    return parsed if isinstance(parsed, dict) else {}
