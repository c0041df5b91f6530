"""Tests for the template execution engine."""
import asyncio

import pytest

from context.environment import AgentEnvironment
from templates.errors import (
    CircularTemplateReference, DispatchFailure, MissingTemplateName,
    TemplateChainTooDeep, TemplateNotFound, UnknownTools,
)
from templates.executor import TemplateExecutor
from templates.models import ChatRequest, ResetKind, TemplateDirective
from templates.registry import TemplateRegistry

from helpers import make_template


# ══════════════════════════════════════════════════════
#  VALIDATION
# ══════════════════════════════════════════════════════

class TestValidation:

    @pytest.mark.asyncio
    async def test_not_found_dispatches_nothing(self, executor, dispatcher):
        with pytest.raises(TemplateNotFound) as exc:
            await executor.run_template("nonexistent", "x")
        assert exc.value.template_name == "nonexistent"
        assert dispatcher.calls == []

    @pytest.mark.asyncio
    async def test_missing_name(self, executor, dispatcher):
        with pytest.raises(MissingTemplateName):
            await executor.run_template("", "x")
        assert dispatcher.calls == []

    @pytest.mark.asyncio
    async def test_requires_an_environment(self, template_registry, dispatcher):
        executor = TemplateExecutor(template_registry, dispatcher)
        template_registry.register("a", make_template())
        with pytest.raises(ValueError):
            await executor.run_template("a", "x")


# ══════════════════════════════════════════════════════
#  SINGLE RUN
# ══════════════════════════════════════════════════════

class TestSingleRun:

    @pytest.mark.asyncio
    async def test_result_carries_output_and_response(self, executor, template_registry, dispatcher):
        template_registry.register("a", make_template())
        result = await executor.run_template("a", "hi")
        assert result.ok
        assert result.output == "out:hi"
        assert result.response["text"] == "out:hi"
        assert result.error is None
        assert result.next_template_result is None
        assert len(dispatcher.calls) == 1

    @pytest.mark.asyncio
    async def test_request_forwarded_verbatim(self, executor, template_registry, dispatcher):
        request = ChatRequest(model="m-1", inputs=["one", "two"], system_prompt="sys")

        async def tpl(input):
            return TemplateDirective(request=request)

        template_registry.register("a", tpl)
        await executor.run_template("a", "hi")
        assert dispatcher.calls[0]["request"] is request

    @pytest.mark.asyncio
    async def test_dict_directive_accepted(self, executor, template_registry):
        async def tpl(input):
            return {"request": {"inputs": [input]}}

        template_registry.register("a", tpl)
        result = await executor.run_template("a", "hi")
        assert result.output == "out:hi"

    @pytest.mark.asyncio
    async def test_sync_template_function(self, executor, template_registry):
        template_registry.register(
            "a", lambda text: TemplateDirective(request=ChatRequest(inputs=[text])),
        )
        result = await executor.run_template("a", "sync")
        assert result.output == "out:sync"

    @pytest.mark.asyncio
    async def test_bad_return_type(self, executor, template_registry, dispatcher):
        async def tpl(input):
            return "just a string"

        template_registry.register("a", tpl)
        with pytest.raises(TypeError):
            await executor.run_template("a", "hi")
        assert dispatcher.calls == []

    @pytest.mark.asyncio
    async def test_template_errors_propagate_unwrapped(self, executor, template_registry, dispatcher):
        boom = KeyError("missing field")

        async def tpl(input):
            raise boom

        template_registry.register("a", tpl)
        with pytest.raises(KeyError) as exc:
            await executor.run_template("a", "hi")
        assert exc.value is boom
        assert dispatcher.calls == []

    @pytest.mark.asyncio
    async def test_usage_notice(self, executor, template_registry, env):
        template_registry.register("a", make_template())
        await executor.run_template("a", "hi")
        assert any(n.startswith("[Template Complete]") for n in env.notices)


# ══════════════════════════════════════════════════════
#  CHAINING
# ══════════════════════════════════════════════════════

class TestChaining:

    @pytest.mark.asyncio
    async def test_next_template_gets_chat_output(self, executor, template_registry, dispatcher, env):
        a = make_template(next_template="B")
        b = make_template()
        template_registry.register("A", a)
        template_registry.register("B", b)

        result = await executor.run_template("A", "hi")

        assert result.ok
        assert result.next_template_result.ok
        assert a.seen == ["hi"]
        assert b.seen == ["out:hi"]
        assert result.final_output == "out:out:hi"
        assert "Running next template: B" in env.notices
        assert len(dispatcher.calls) == 2

    @pytest.mark.asyncio
    async def test_self_reference_rejected_on_second_entry(self, executor, template_registry, dispatcher):
        x = make_template(next_template="X")
        template_registry.register("X", x)

        with pytest.raises(CircularTemplateReference) as exc:
            await executor.run_template("X", "hi")

        assert exc.value.template_name == "X"
        assert exc.value.visited == ["X"]
        assert len(x.seen) == 2
        assert len(dispatcher.calls) == 2

    @pytest.mark.asyncio
    async def test_a_b_a_rejected(self, executor, template_registry, dispatcher):
        template_registry.register("A", make_template(next_template="B"))
        template_registry.register("B", make_template(next_template="A"))

        with pytest.raises(CircularTemplateReference) as exc:
            await executor.run_template("A", "hi")

        assert exc.value.template_name == "A"
        assert len(dispatcher.calls) == 2

    @pytest.mark.asyncio
    async def test_fresh_top_level_runs_are_independent(self, executor, template_registry):
        template_registry.register("A", make_template(next_template="B"))
        template_registry.register("B", make_template())

        first = await executor.run_template("A", "one")
        second = await executor.run_template("A", "two")
        assert first.ok and second.ok

    @pytest.mark.asyncio
    async def test_missing_next_template(self, executor, template_registry):
        template_registry.register("A", make_template(next_template="ghost"))
        with pytest.raises(TemplateNotFound):
            await executor.run_template("A", "hi")

    @pytest.mark.asyncio
    async def test_chain_depth_bounded(self, template_registry, dispatcher, env):
        executor = TemplateExecutor(template_registry, dispatcher, env=env, max_chain_depth=2)
        template_registry.register("a", make_template(next_template="b"))
        template_registry.register("b", make_template(next_template="c"))
        template_registry.register("c", make_template())

        with pytest.raises(TemplateChainTooDeep) as exc:
            await executor.run_template("a", "hi")
        assert exc.value.template_name == "c"
        assert len(dispatcher.calls) == 2

    @pytest.mark.asyncio
    async def test_run_started_during_dispatch_continues_chain(self, template_registry, env):
        calls: list[str] = []
        nested: dict = {}

        async def tool_calling_dispatch(request, env):
            if not calls:
                calls.append("outer")
                with pytest.raises(CircularTemplateReference) as exc:
                    await executor.run_template("inner", "from tool", env=env)
                nested["visited"] = exc.value.visited
            else:
                calls.append("inner")
            return "done", {}

        executor = TemplateExecutor(template_registry, tool_calling_dispatch, env=env)
        template_registry.register("outer", make_template())
        template_registry.register("inner", make_template(next_template="outer"))

        result = await executor.run_template("outer", "hi")

        assert result.ok
        assert calls == ["outer", "inner"]
        assert nested["visited"] == ["outer"]

    @pytest.mark.asyncio
    async def test_chain_depth_covers_runs_started_during_dispatch(self, template_registry, env):
        async def recursive_dispatch(request, env):
            await executor.run_template("a", "again", env=env)
            return "done", {}

        executor = TemplateExecutor(template_registry, recursive_dispatch, env=env, max_chain_depth=3)
        template_registry.register("a", make_template(active_tools=["y"]))

        with pytest.raises(TemplateChainTooDeep):
            await executor.run_template("a", "hi")
        assert env.get_enabled_tools() == ["x"]


# ══════════════════════════════════════════════════════
#  CONTEXT RESET
# ══════════════════════════════════════════════════════

class TestReset:

    @pytest.mark.asyncio
    async def test_reset_happens_before_dispatch(self, executor, template_registry, dispatcher, env):
        env.add_message("user", "old question")
        env.add_message("assistant", "old answer")
        template_registry.register("a", make_template(reset=["chat"]))

        await executor.run_template("a", "hi")

        assert dispatcher.calls[0]["messages"] == 0
        assert env.history == [[
            {"role": "user", "content": "old question"},
            {"role": "assistant", "content": "old answer"},
        ]]
        assert "Resetting chat context for template: a" in env.notices

    @pytest.mark.asyncio
    async def test_no_reset_when_not_requested(self, executor, template_registry, dispatcher, env):
        env.add_message("user", "keep me")
        template_registry.register("a", make_template())
        await executor.run_template("a", "hi")
        assert dispatcher.calls[0]["messages"] == 1
        assert not any(n.startswith("Resetting") for n in env.notices)

    @pytest.mark.asyncio
    async def test_memory_reset(self, executor, template_registry, env):
        env.remember("name", "Ada")
        template_registry.register("a", make_template(reset={ResetKind.MEMORY}))
        await executor.run_template("a", "hi")
        assert env.memories == {}


# ══════════════════════════════════════════════════════
#  TOOL NARROWING
# ══════════════════════════════════════════════════════

class TestToolNarrowing:

    @pytest.mark.asyncio
    async def test_restored_after_success(self, executor, template_registry, dispatcher, env):
        template_registry.register("a", make_template(active_tools=["y", "z"]))

        result = await executor.run_template("a", "hi")

        assert result.ok
        assert dispatcher.calls[0]["enabled_tools"] == ["y", "z"]
        assert env.get_enabled_tools() == ["x"]
        assert "Set active tools for template: y, z" in env.notices
        assert env.notices[-1] == "Restored original tools: x"

    @pytest.mark.asyncio
    async def test_restored_after_dispatch_failure(self, executor, template_registry, dispatcher, env):
        dispatcher.fail_with = DispatchFailure("backend down")
        template_registry.register("a", make_template(active_tools=["y", "z"]))

        with pytest.raises(DispatchFailure):
            await executor.run_template("a", "hi")

        assert env.get_enabled_tools() == ["x"]
        assert "Restored original tools: x" in env.notices

    @pytest.mark.asyncio
    async def test_restored_when_chain_fails(self, executor, template_registry, env):
        template_registry.register("a", make_template(active_tools=["y"], next_template="ghost"))

        with pytest.raises(TemplateNotFound):
            await executor.run_template("a", "hi")

        assert env.get_enabled_tools() == ["x"]

    @pytest.mark.asyncio
    async def test_restored_on_circular_reference(self, executor, template_registry, env):
        template_registry.register("X", make_template(active_tools=["z"], next_template="X"))
        with pytest.raises(CircularTemplateReference):
            await executor.run_template("X", "hi")
        assert env.get_enabled_tools() == ["x"]

    @pytest.mark.asyncio
    async def test_nested_frames_restore_independently(self, executor, template_registry, dispatcher, env):
        template_registry.register("A", make_template(active_tools=["y"], next_template="B"))
        template_registry.register("B", make_template(active_tools=["z"]))

        await executor.run_template("A", "hi")

        assert dispatcher.calls[0]["enabled_tools"] == ["y"]
        assert dispatcher.calls[1]["enabled_tools"] == ["z"]
        restores = [n for n in env.notices if n.startswith("Restored original tools")]
        assert restores == ["Restored original tools: y", "Restored original tools: x"]
        assert env.get_enabled_tools() == ["x"]

    @pytest.mark.asyncio
    async def test_empty_tool_set(self, executor, template_registry, dispatcher, env):
        env.set_enabled_tools([])
        template_registry.register("a", make_template(active_tools=["y"]))
        await executor.run_template("a", "hi")
        assert env.get_enabled_tools() == []
        assert env.notices[-1] == "Restored original tools: none"

    @pytest.mark.asyncio
    async def test_unknown_tools_rejected_before_change(self, executor, template_registry, dispatcher, env):
        template_registry.register("a", make_template(active_tools=["y", "teleport"]))

        with pytest.raises(UnknownTools) as exc:
            await executor.run_template("a", "hi")

        assert exc.value.tools == ["teleport"]
        assert dispatcher.calls == []
        assert env.get_enabled_tools() == ["x"]
        assert not any(n.startswith("Restored") for n in env.notices)

    @pytest.mark.asyncio
    async def test_unknown_tools_rejected_before_reset(self, executor, template_registry, dispatcher, env):
        env.add_message("user", "keep me")
        env.remember("topic", "fox")
        template_registry.register("a", make_template(
            reset=["chat", "memory"], active_tools=["teleport"],
        ))

        with pytest.raises(UnknownTools):
            await executor.run_template("a", "hi")

        assert env.messages == [{"role": "user", "content": "keep me"}]
        assert env.history == []
        assert env.memories == {"topic": "fox"}
        assert not any(n.startswith("Resetting") for n in env.notices)
        assert dispatcher.calls == []

    @pytest.mark.asyncio
    async def test_restore_survives_catalog_change(self, executor, template_registry, tool_registry, env):
        async def disabling_dispatch(request, env):
            tool_registry.get("x").enabled = False
            raise DispatchFailure("backend down")

        executor._dispatch = disabling_dispatch
        template_registry.register("a", make_template(active_tools=["y"]))

        with pytest.raises(DispatchFailure):
            await executor.run_template("a", "hi")

        assert env.get_enabled_tools() == ["x"]
        assert env.notices[-1] == "Restored original tools: x"

    @pytest.mark.asyncio
    async def test_tools_untouched_without_directive(self, executor, template_registry, dispatcher, env):
        template_registry.register("a", make_template())
        await executor.run_template("a", "hi")
        assert dispatcher.calls[0]["enabled_tools"] == ["x"]
        assert not any(n.startswith("Set active tools") for n in env.notices)


# ══════════════════════════════════════════════════════
#  CONCURRENCY
# ══════════════════════════════════════════════════════

class TestConcurrency:

    @pytest.mark.asyncio
    async def test_independent_environments_do_not_interfere(self, tool_registry):
        seen: dict[str, list[str]] = {}

        async def slow_dispatch(request, env):
            seen.setdefault(env.name, []).append(",".join(env.get_enabled_tools()))
            await asyncio.sleep(0.01)
            seen[env.name].append(",".join(env.get_enabled_tools()))
            return "done", {}

        registry = TemplateRegistry({
            "narrow_y": make_template(active_tools=["y"]),
            "narrow_z": make_template(active_tools=["z", "web_search"]),
        })
        executor = TemplateExecutor(registry, slow_dispatch)

        env_one = AgentEnvironment(tool_registry, default_tools=["x"], name="one")
        env_two = AgentEnvironment(tool_registry, default_tools=["web_search"], name="two")

        await asyncio.gather(
            executor.run_template("narrow_y", "a", env=env_one),
            executor.run_template("narrow_z", "b", env=env_two),
        )

        assert seen["one"] == ["y", "y"]
        assert seen["two"] == ["z,web_search", "z,web_search"]
        assert env_one.get_enabled_tools() == ["x"]
        assert env_two.get_enabled_tools() == ["web_search"]

    @pytest.mark.asyncio
    async def test_cancellation_still_restores(self, tool_registry):
        started = asyncio.Event()

        async def hanging_dispatch(request, env):
            started.set()
            await asyncio.sleep(10)
            return "never", {}

        registry = TemplateRegistry({"a": make_template(active_tools=["y"])})
        env = AgentEnvironment(tool_registry, default_tools=["x"])
        executor = TemplateExecutor(registry, hanging_dispatch, env=env)

        task = asyncio.create_task(executor.run_template("a", "hi"))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert env.get_enabled_tools() == ["x"]
