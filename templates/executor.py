"""
Template Executor — Runs named templates, following their chains.

Architecture:
  caller → TemplateExecutor.run_template(name, input, env)
    → registry.lookup(name)
    → template(input) → TemplateDirective
    → [env.reset(kinds)]               before dispatch, if asked
    → [narrow env tools]               restored when this frame exits
    → dispatch(request, env) → (output, response)
    → [run_template(next, output)]     if the directive chains
    → TemplateResult (nested for chains)

Errors propagate to the caller; nothing is converted into an ok=False
result here. Whatever tools a frame narrowed are restored on every exit
path before the error leaves the frame.

The executor keeps no per-run state: the visited names travel down the
recursion, so one executor can serve many environments concurrently.
One environment must only host one chain at a time (see env.lock).

A run started from inside a dispatch (the model calling the template/run
tool) continues the chain of the frame that is dispatching: it inherits
that frame's visited names, so max_chain_depth bounds it too.
"""
from __future__ import annotations

import inspect
import structlog
from contextlib import contextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterator, Optional, Sequence

from templates.errors import (
    CircularTemplateReference, MissingTemplateName, TemplateChainTooDeep,
    TemplateNotFound, UnknownTools,
)
from templates.models import ChatRequest, TemplateDirective, TemplateResult
from templates.registry import TemplateRegistry

if TYPE_CHECKING:
    from context.environment import AgentEnvironment

logger = structlog.get_logger()

DEFAULT_MAX_CHAIN_DEPTH = 16

Dispatcher = Callable[[ChatRequest, "AgentEnvironment"], Awaitable[tuple[str, Any]]]

# Names of the chain whose frame is currently dispatching, this frame included
_dispatching_chain: ContextVar[tuple[str, ...]] = ContextVar("dispatching_chain", default=())


class TemplateExecutor:
    """
    Executes templates from a TemplateRegistry against an agent environment.

    Dependencies are injected via the constructor so the executor can be
    driven by the real chat engine or a test double.
    """

    def __init__(
        self,
        registry: TemplateRegistry,
        dispatch: Dispatcher,
        env: AgentEnvironment = None,
        max_chain_depth: int = DEFAULT_MAX_CHAIN_DEPTH,
    ):
        """
        Args:
            registry:        where template functions are looked up
            dispatch:        async fn(request, env) → (output_text, response)
            env:             environment used when run_template gets none
            max_chain_depth: most templates one chain may run
        """
        self.registry = registry
        self._dispatch = dispatch
        self.env = env
        self.max_chain_depth = max_chain_depth

    # ══════════════════════════════════════════════════════════
    #  MAIN ENTRY POINT
    # ══════════════════════════════════════════════════════════

    async def run_template(
        self,
        template_name: str,
        input: str,
        env: AgentEnvironment = None,
        visited: Optional[Sequence[str]] = None,
    ) -> TemplateResult:
        """
        Run a template and whatever it chains into.

        Args:
            template_name: registered template name
            input:         text handed to the template function
            env:           environment to act on (defaults to self.env)
            visited:       names already run earlier in this chain; when
                           omitted, the chain of the dispatch in progress
                           (empty at top level)

        Raises:
            MissingTemplateName, TemplateNotFound, TemplateChainTooDeep,
            CircularTemplateReference, UnknownTools, DispatchFailure, or
            whatever the template function itself raises.
        """
        env = env or self.env
        if env is None:
            raise ValueError("No agent environment given and no default configured")
        if visited is None:
            visited = _dispatching_chain.get()

        if not template_name:
            raise MissingTemplateName()

        template = self.registry.lookup(template_name)
        if template is None:
            raise TemplateNotFound(template_name)

        if len(visited) >= self.max_chain_depth:
            raise TemplateChainTooDeep(template_name, self.max_chain_depth)

        logger.info("template_run_started",
                     template=template_name,
                     depth=len(visited),
                     chain=list(visited))

        directive = await self._produce_directive(template_name, template, input)

        if directive.active_tools is not None:
            unknown = env.unknown_tools(directive.active_tools)
            if unknown:
                raise UnknownTools(unknown, template_name)

        if directive.reset:
            kinds = sorted(k.value for k in directive.reset)
            env.notice(f"Resetting {','.join(kinds)} context for template: {template_name}")
            env.reset(directive.reset)

        with self._narrowed_tools(env, directive.active_tools, template_name):
            token = _dispatching_chain.set((*visited, template_name))
            try:
                output, response = await self._dispatch(directive.request, env)
            finally:
                _dispatching_chain.reset(token)
            self._report_usage(env, template_name, response)

            result = TemplateResult(ok=True, output=output, response=response)

            if directive.next_template:
                next_name = directive.next_template
                if next_name in visited:
                    logger.warning("template_circular_reference",
                                   template=template_name,
                                   next_template=next_name,
                                   chain=list(visited))
                    raise CircularTemplateReference(next_name, visited)

                env.notice(f"Running next template: {next_name}")
                result.next_template_result = await self.run_template(
                    next_name, output, env=env, visited=(*visited, template_name),
                )

        logger.info("template_run_completed",
                     template=template_name,
                     depth=len(visited),
                     chained=result.next_template_result is not None)
        return result

    # ══════════════════════════════════════════════════════════
    #  STEPS
    # ══════════════════════════════════════════════════════════

    async def _produce_directive(self, template_name: str, template: Callable, input: str) -> TemplateDirective:
        """Call the template function; its own errors pass through untouched."""
        produced = template(input)
        if inspect.isawaitable(produced):
            produced = await produced

        if isinstance(produced, TemplateDirective):
            return produced
        if isinstance(produced, dict):
            return TemplateDirective.model_validate(produced)
        raise TypeError(
            f"Template '{template_name}' returned {type(produced).__name__}, "
            f"expected a TemplateDirective"
        )

    @contextmanager
    def _narrowed_tools(
        self,
        env: AgentEnvironment,
        tools: Optional[list[str]],
        template_name: str,
    ) -> Iterator[None]:
        """
        Enable exactly `tools` for the body of the block, then put back
        whatever was enabled before. A None `tools` leaves the set alone.

        The saved set is put back as-is, even if the catalog changed
        while the block ran.
        """
        if tools is None:
            yield
            return

        original_tools = env.get_enabled_tools()
        env.set_enabled_tools(tools)
        env.notice(f"Set active tools for template: {', '.join(tools)}")
        logger.debug("template_tools_narrowed",
                     template=template_name,
                     original=original_tools,
                     active=tools)
        try:
            yield
        finally:
            env.restore_enabled_tools(original_tools)
            env.notice(f"Restored original tools: {', '.join(original_tools) or 'none'}")
            logger.debug("template_tools_restored",
                         template=template_name,
                         tools=original_tools)

    @staticmethod
    def _report_usage(env: AgentEnvironment, template_name: str, response: Any):
        analytics = getattr(response, "analytics", None)
        summary = analytics() if callable(analytics) else "Unknown token usage"
        env.notice(f"[Template Complete] {summary}")
        logger.info("template_input_complete",
                     template=template_name,
                     usage=getattr(response, "usage", None))
