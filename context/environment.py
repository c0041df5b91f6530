"""
Agent Environment — the shared, mutable state a template run acts on.

One environment per logical agent/session. It owns:
  - the enabled tool set (validated against a ToolRegistry)
  - the conversation (current chat messages + archived history)
  - remembered facts
  - the notice log (human-readable progress lines)

The template executor only sees it through the small protocols below, so
any host agent that offers the same four operations can stand in for it.

Concurrency: the executor does not serialize runs. Callers hold `lock`
while a chain runs so one environment never hosts two chains at once.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Any, Iterable, Protocol, runtime_checkable

from templates.errors import UnknownTools
from templates.models import ResetKind
from templates.tool_registry import ToolRegistry

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Protocols the executor depends on
# ──────────────────────────────────────────────────────────────

@runtime_checkable
class ToolContext(Protocol):
    def get_enabled_tools(self) -> list[str]: ...

    def set_enabled_tools(self, names: Iterable[str]) -> None: ...

    def restore_enabled_tools(self, names: Iterable[str]) -> None: ...

    def unknown_tools(self, names: Iterable[str]) -> list[str]: ...


@runtime_checkable
class ResetTarget(Protocol):
    def reset(self, kinds: Iterable[ResetKind]) -> None: ...


@runtime_checkable
class NoticeSink(Protocol):
    def notice(self, message: str) -> None: ...


# ──────────────────────────────────────────────────────────────
#  Agent Environment
# ──────────────────────────────────────────────────────────────

class AgentEnvironment:
    """
    Default environment implementation.

    Usage:
        env = AgentEnvironment(tool_registry, default_tools=["web_search"])
        async with env.lock:
            result = await executor.run_template("summarize", text, env=env)
    """

    def __init__(
        self,
        tool_registry: ToolRegistry = None,
        default_tools: Iterable[str] = (),
        name: str = "default",
    ):
        self.name = name
        self.tool_registry = tool_registry or ToolRegistry()
        self._default_tools = list(default_tools)
        unknown = self.tool_registry.unknown_tools(self._default_tools)
        if unknown:
            raise UnknownTools(unknown)

        self._enabled_tools: list[str] = list(self._default_tools)
        self.messages: list[dict[str, str]] = []         # current conversation
        self.history: list[list[dict[str, str]]] = []    # archived conversations
        self.memories: dict[str, Any] = {}
        self.notices: list[str] = []
        self.lock = asyncio.Lock()

    # ── Tools ─────────────────────────────────────────

    @property
    def available_tools(self) -> list[str]:
        return self.tool_registry.names()

    def get_enabled_tools(self) -> list[str]:
        return list(self._enabled_tools)

    def set_enabled_tools(self, names: Iterable[str]) -> None:
        names = list(dict.fromkeys(names))
        unknown = self.tool_registry.unknown_tools(names)
        if unknown:
            raise UnknownTools(unknown)
        self._enabled_tools = names
        logger.debug("enabled_tools_set", environment=self.name, tools=names)

    def restore_enabled_tools(self, names: Iterable[str]) -> None:
        """Put back a set saved from get_enabled_tools, without re-validating it."""
        self._enabled_tools = list(names)
        logger.debug("enabled_tools_restored", environment=self.name, tools=self._enabled_tools)

    def unknown_tools(self, names: Iterable[str]) -> list[str]:
        return self.tool_registry.unknown_tools(names)

    # ── Conversation ──────────────────────────────────

    def add_message(self, role: str, content: str):
        self.messages.append({"role": role, "content": content})

    def remember(self, key: str, value: Any):
        self.memories[key] = value

    # ── Reset ─────────────────────────────────────────

    def reset(self, kinds: Iterable[ResetKind]) -> None:
        kinds = {ResetKind(k) for k in kinds}
        if ResetKind.CHAT in kinds and self.messages:
            self.history.append(self.messages)
            self.messages = []
        if ResetKind.HISTORY in kinds:
            self.history = []
        if ResetKind.MEMORY in kinds:
            self.memories = {}
        if ResetKind.SETTINGS in kinds:
            self._enabled_tools = list(self._default_tools)
        logger.info("environment_reset",
                     environment=self.name,
                     kinds=sorted(k.value for k in kinds))

    # ── Notices ───────────────────────────────────────

    def notice(self, message: str) -> None:
        self.notices.append(message)
        logger.info("agent_notice", environment=self.name, message=message)

    def drain_notices(self) -> list[str]:
        """Return and clear the notices collected so far."""
        notices, self.notices = self.notices, []
        return notices

    def snapshot(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "enabled_tools": self.get_enabled_tools(),
            "messages": len(self.messages),
            "history": len(self.history),
            "memories": sorted(self.memories),
            "at": datetime.now(timezone.utc).isoformat(),
        }


def create_environment(tool_registry: ToolRegistry, settings=None, name: str = "default") -> AgentEnvironment:
    """Build an environment from settings (default tools)."""
    from config.settings import get_settings

    settings = settings or get_settings()
    return AgentEnvironment(
        tool_registry=tool_registry,
        default_tools=settings.engine.default_tools,
        name=name,
    )
