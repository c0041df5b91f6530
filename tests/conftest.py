"""Shared test fixtures for the template runner."""
import pytest

from context.environment import AgentEnvironment
from templates.executor import TemplateExecutor
from templates.registry import TemplateRegistry
from templates.tool_registry import ToolSchema, create_default_tool_registry

from helpers import FakeDispatcher


@pytest.fixture
def tool_registry():
    registry = create_default_tool_registry()
    for name in ("x", "y", "z", "web_search"):
        registry.register(ToolSchema(name=name, description=f"{name} tool"))
    return registry


@pytest.fixture
def env(tool_registry) -> AgentEnvironment:
    return AgentEnvironment(tool_registry, default_tools=["x"], name="test")


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def template_registry() -> TemplateRegistry:
    return TemplateRegistry()


@pytest.fixture
def executor(template_registry, dispatcher, env) -> TemplateExecutor:
    return TemplateExecutor(
        registry=template_registry,
        dispatch=dispatcher,
        env=env,
        max_chain_depth=8,
    )
