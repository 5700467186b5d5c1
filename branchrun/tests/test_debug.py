"""Tests for step-by-step debugging of a paused engine."""

import pytest

from branchrun.core.exceptions import EngineStateError
from branchrun.workflow.scope import UNSET, PersistentStore


def record(name):
    return f"p('order', (p('order') or []) + ['{name}'])"


@pytest.mark.integration
class TestRunOneStep:
    @pytest.mark.asyncio
    async def test_pauses_once_per_step_plus_once_at_the_end(self, builder, make_runner):
        store = PersistentStore()
        branch = builder.branch(
            builder.step("A", code=record("A"), is_debug=True),
            builder.step("B", code=record("B")),
            builder.step("C", code=record("C")),
            after_every_branch=[builder.hook(record("after"))],
        )
        runner = make_runner(persistent=store)

        assert await runner.run() is False
        assert store.get("order") is UNSET

        calls = 0
        while True:
            finished = await runner.run_one_step()
            calls += 1
            assert runner.is_paused
            if finished:
                break

        assert calls == len(branch.steps) + 1
        assert store.get("order") == ["A", "B", "C", "after"]
        assert branch.is_passed

        # finishing again does not rerun the after-branch hooks
        assert await runner.run_one_step() is True
        assert store.get("order") == ["A", "B", "C", "after"]

        assert await runner.run() is True
        assert not runner.is_paused

    @pytest.mark.asyncio
    async def test_requires_a_current_branch(self, runner):
        with pytest.raises(EngineStateError):
            await runner.run_one_step()


@pytest.mark.integration
class TestSkipOneStep:
    @pytest.mark.asyncio
    async def test_marks_step_skipped(self, builder, make_runner):
        store = PersistentStore()
        a = builder.step("A", code=record("A"), is_debug=True)
        b = builder.step("B", code=record("B"))
        branch = builder.branch(a, b)
        runner = make_runner(persistent=store)

        await runner.run()
        assert await runner.skip_one_step() is False

        assert a.is_skipped
        assert runner.is_paused
        assert runner.curr_step is b

        assert await runner.run() is True
        assert store.get("order") == ["B"]
        assert branch.is_passed


@pytest.mark.integration
class TestLastStep:
    @pytest.mark.asyncio
    async def test_run_last_step_reruns_previous(self, builder, make_runner):
        store = PersistentStore()
        a = builder.step("A", code="p('count', (p('count') or 0) + 1)")
        b = builder.step("B", is_debug=True)
        builder.branch(a, b)
        runner = make_runner(persistent=store)

        await runner.run()
        assert runner.get_last_step() is a

        await runner.run_last_step()

        assert store.get("count") == 2
        assert runner.is_paused
        assert runner.curr_step is b


@pytest.mark.integration
class TestInjectStep:
    @pytest.mark.asyncio
    async def test_uses_current_scope_without_moving_cursor(self, builder, tree, make_runner):
        store = PersistentStore()
        a = builder.step("{x}='1'", sets=[("x", "'1'", False)])
        b = builder.step("B", is_debug=True)
        builder.branch(a, b)
        runner = make_runner(persistent=store)

        await runner.run()
        node = tree.new_step_node("Peek", code_block="p('seen', g('x'))")
        injected = await runner.inject_step(node)

        assert injected.steps[0].is_passed
        assert store.get("seen") == "1"
        assert runner.curr_step is b
        assert runner.is_paused
        assert not b.is_complete()

    @pytest.mark.asyncio
    async def test_injected_function_call_leaves_local_frame_intact(self, builder, runner):
        decl = builder.function("Five", code="return 5")
        a = builder.step("{{x}}='1'", sets=[("x", "'1'", True)])
        b = builder.step("B", is_debug=True)
        builder.branch(a, b)

        await runner.run()
        assert runner.scope.depth == 0

        injected = await runner.inject_step(builder.call("{{y}} = Five", decl, sets=[("y", "", True)]))

        assert injected.steps[0].is_passed
        assert runner.scope.depth == 0
        assert runner.get_local("x") == "1"
        assert runner.get_local("y") == 5
        assert runner.curr_step is b

    @pytest.mark.asyncio
    async def test_injected_failure_is_recorded(self, builder, tree, runner):
        builder.branch(builder.step("A", is_debug=True))
        await runner.run()

        injected = await runner.inject_step(tree.new_step_node("Break", code_block="raise Exception('nope')"))

        assert injected.steps[0].is_failed
        assert injected.steps[0].error.message == "nope"
        assert runner.is_paused

    @pytest.mark.asyncio
    async def test_function_declaration_rejected(self, builder, runner):
        decl = builder.function("Log in as {user}", code="return 1")
        with pytest.raises(EngineStateError):
            await runner.inject_step(decl)
