"""Tests for driving whole branches: run, pause, resume and stop."""

import asyncio

import pytest

from branchrun.app.config import get_settings
from branchrun.core.constants import ELAPSED_PAUSED, StepDataMode
from branchrun.core.exceptions import EngineStateError
from branchrun.workflow.branch_runner import BranchRunner
from branchrun.workflow.scope import UNSET, PersistentStore


def record(name):
    return f"p('order', (p('order') or []) + ['{name}'])"


@pytest.mark.integration
class TestRun:
    @pytest.mark.asyncio
    async def test_variables_flow_between_steps(self, builder, make_runner):
        store = PersistentStore()
        builder.branch(
            builder.step("Open page"),
            builder.step("Set x", code="g('x', 'foo')"),
            builder.step("Read x", code="p('observed', x)"),
        )
        runner = make_runner(persistent=store)

        completed = await runner.run()

        branch = builder.tree.branches[0]
        assert completed is True
        assert store.get("observed") == "foo"
        assert branch.is_passed
        assert not branch.is_running
        assert branch.elapsed >= 0

    @pytest.mark.asyncio
    async def test_no_branches(self, runner):
        assert await runner.run() is True

    @pytest.mark.asyncio
    async def test_branches_run_in_turn_with_fresh_globals(self, builder, make_runner):
        store = PersistentStore()
        builder.branch(builder.step("First", code="g('x', 1)\np('first', g('seed'))"))
        builder.branch(builder.step("Second", code="p('second', g('x'))"))
        runner = make_runner(persistent=store, global_init={"seed": "s"})

        await runner.run()

        assert all(b.is_passed for b in builder.tree.branches)
        assert store.get("first") == "s"
        assert store.get("second") is None

    @pytest.mark.asyncio
    async def test_failing_step_fails_branch(self, builder, runner):
        a = builder.step("A", code="raise Exception('oops')")
        b = builder.step("B", code="g('ran', True)")
        branch = builder.branch(a, b)

        completed = await runner.run()

        assert completed is True
        assert a.is_failed
        assert a.as_expected is False
        assert branch.is_failed
        assert not b.is_complete()
        assert not runner.is_paused

    @pytest.mark.asyncio
    async def test_continue_runs_next_step(self, builder, make_runner):
        store = PersistentStore()
        a = builder.step("A", code="raise ExecutionFailure('soft', continue_=True)")
        b = builder.step("B", code="p('b_ran', True)")
        branch = builder.branch(a, b)
        runner = make_runner(persistent=store)

        await runner.run()

        assert store.get("b_ran") is True
        assert b.is_passed
        assert branch.is_failed

    @pytest.mark.asyncio
    async def test_pause_on_fail_then_resume(self, builder, make_runner):
        runner = make_runner(pause_on_fail=True)
        a = builder.step("A", code="raise Exception('oops')")
        branch = builder.branch(a)

        assert await runner.run() is False
        assert runner.is_paused
        assert a.is_failed
        assert not branch.is_complete()
        assert branch.elapsed == ELAPSED_PAUSED
        assert branch.was_paused()

        assert await runner.run() is True
        assert not runner.is_paused
        assert branch.is_failed
        assert branch.elapsed >= 0

    @pytest.mark.asyncio
    async def test_pause_on_fail_continues_with_remaining_steps(self, builder, make_runner):
        store = PersistentStore()
        runner = make_runner(persistent=store, pause_on_fail=True)
        a = builder.step("A", code="raise Exception('oops')")
        b = builder.step("B", code="p('b_ran', True)")
        branch = builder.branch(a, b)

        await runner.run()
        assert store.get("b_ran") is UNSET

        await runner.run()
        assert store.get("b_ran") is True
        assert branch.is_failed

    @pytest.mark.asyncio
    async def test_debug_step_pauses_before_running(self, builder, make_runner):
        store = PersistentStore()
        a = builder.step("A", code=record("A"))
        b = builder.step("B", code=record("B"), is_debug=True)
        c = builder.step("C", code=record("C"))
        branch = builder.branch(a, b, c)
        runner = make_runner(persistent=store)

        assert await runner.run() is False
        assert store.get("order") == ["A"]
        assert runner.curr_step is b

        assert await runner.run() is True
        assert store.get("order") == ["A", "B", "C"]
        assert branch.is_passed

    @pytest.mark.asyncio
    async def test_skip_modifier(self, builder, make_runner):
        store = PersistentStore()
        a = builder.step("A", code=record("A"), is_skip=True)
        b = builder.step("B", code=record("B"))
        branch = builder.branch(a, b)
        runner = make_runner(persistent=store)

        await runner.run()

        assert a.is_skipped
        assert store.get("order") == ["B"]
        assert branch.is_passed


@pytest.mark.integration
class TestBranchHooks:
    @pytest.mark.asyncio
    async def test_branch_hooks_wrap_steps(self, builder, make_runner):
        store = PersistentStore()
        builder.branch(
            builder.step("A", code=record("A")),
            builder.step("B", code="g('x', 1)\n" + record("B")),
            before_every_branch=[builder.hook(record("before"))],
            after_every_branch=[builder.hook(record("after") + "\np('x_at_end', g('x'))")],
        )
        runner = make_runner(persistent=store)

        await runner.run()

        assert store.get("order") == ["before", "A", "B", "after"]
        assert store.get("x_at_end") == 1
        assert runner.get_global("x") is UNSET

    @pytest.mark.asyncio
    async def test_failing_before_branch_hook_skips_steps(self, builder, make_runner):
        store = PersistentStore()
        a = builder.step("A", code=record("A"))
        branch = builder.branch(
            a,
            before_every_branch=[builder.hook("raise Exception('no setup')"), builder.hook(record("before 2"))],
            after_every_branch=[builder.hook(record("after"))],
        )
        runner = make_runner(persistent=store)

        await runner.run()

        assert store.get("order") == ["after"]
        assert branch.is_failed
        assert branch.error.message == "no setup"
        assert not a.is_complete()

    @pytest.mark.asyncio
    async def test_local_frames_balance_across_nested_calls(self, builder, make_runner):
        store = PersistentStore()
        outer = builder.function("Outer")
        inner = builder.function("Inner", code="return 5")
        top = builder.step("{{a}}='top'", sets=[("a", "'top'", True)], is_debug=True)
        call_outer = builder.call("Outer", outer)
        call_inner = builder.call("Inner", inner, level=1)
        back = builder.step("Back", code="p('seen', l('a'))")
        branch = builder.branch(top, call_outer, call_inner, back)
        runner = make_runner(persistent=store)

        await runner.run()
        depths = []
        for _ in branch.steps:
            await runner.run_one_step()
            depths.append(runner.scope.depth)

        # Outer opens a frame for its body, Inner opens one for its code block
        assert depths == [0, 0, 2, 0]
        assert runner.get_local("a") == "top"
        assert store.get("seen") == "top"
        assert branch.is_passed


@pytest.mark.integration
class TestStop:
    @pytest.mark.asyncio
    async def test_stop_during_code_block_discards_step(self, builder, runner):
        a = builder.step("A", code="log('a ran')")
        b = builder.step("B", code="log('started')\nawait sleep(0.5)\ng('late', True)\nlog('finished')")
        c = builder.step("C")
        branch = builder.branch(a, b, c)

        task = asyncio.create_task(runner.run())
        await asyncio.sleep(0.1)
        runner.stop()
        completed = await task

        assert completed is False
        assert a.is_passed
        assert a.log == [{"text": "a ran"}]
        assert not b.is_complete()
        assert b.elapsed is None
        assert b.log == []
        assert b.error is None
        assert not c.is_complete()
        assert not branch.is_complete()
        assert not branch.is_running
        assert branch.elapsed is not None
        assert branch.elapsed != ELAPSED_PAUSED

    @pytest.mark.asyncio
    async def test_stopped_engine_cannot_run(self, builder, runner):
        builder.branch(builder.step("A"))
        runner.stop()
        runner.stop()
        with pytest.raises(EngineStateError):
            await runner.run()


@pytest.mark.integration
class TestEngineOptions:
    @pytest.mark.asyncio
    async def test_step_data_mode_none(self, builder, make_runner):
        a = builder.step("A", code="log('noisy')")
        builder.branch(a)
        runner = make_runner(step_data_mode="none")

        await runner.run()

        assert builder.tree.branches[0].is_passed
        assert a.log == []
        assert a.elapsed is None

    @pytest.mark.asyncio
    async def test_persistent_shared_between_engines(self, builder, tree, make_runner):
        store = PersistentStore()
        builder.branch(builder.step("Write", code="p('token', 'abc')"))
        builder.branch(builder.step("Read", code="p('copy', p('token'))"))
        first = make_runner(persistent=store)
        second = make_runner(persistent=store)

        # each engine claims one branch at a time from the shared tree
        await asyncio.gather(first.run(), second.run())

        assert store.get("token") == "abc"
        assert all(b.is_passed for b in tree.branches)

    @pytest.mark.asyncio
    async def test_defaults_come_from_settings(self, builder, tree, monkeypatch):
        monkeypatch.setenv("PAUSE_ON_FAIL", "true")
        monkeypatch.setenv("STEP_DATA_MODE", "fail")
        get_settings.cache_clear()
        try:
            runner = BranchRunner(tree)
        finally:
            get_settings.cache_clear()
        a = builder.step("A", code="raise Exception('oops')")
        branch = builder.branch(a)

        assert runner.options.pause_on_fail is True
        assert runner.step_data_mode == StepDataMode.FAIL
        assert await runner.run() is False
        assert runner.is_paused
        assert not branch.is_complete()
