"""Branch runner — drives branches from a step tree to completion, a pause, or a stop.

One BranchRunner is one execution engine: it owns a variable scope and the
pause/stop state, claims branches from the tree one at a time and runs their
hooks and steps in order. Several runners can share a PersistentStore.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional, Union

import structlog

from branchrun.app.config import EngineOptions
from branchrun.core.constants import ELAPSED_PAUSED, StepDataMode
from branchrun.core.exceptions import EngineStateError
from branchrun.core.logging_config import branch_log_context
from branchrun.workflow.branch import Branch
from branchrun.workflow.debug import DebugController
from branchrun.workflow.scope import PersistentStore, VariableScope
from branchrun.workflow.state import EngineState
from branchrun.workflow.step import Step, StepNode
from branchrun.workflow.step_executor import StepExecutor
from branchrun.workflow.tree import StepTree

logger = structlog.get_logger(__name__)


def _elapsed_ms(started: Optional[datetime], ended: datetime) -> Optional[float]:
    if started is None:
        return None
    return (ended - started).total_seconds() * 1000


class BranchRunner:
    """Runs the branches of a step tree, one after another."""

    def __init__(
        self,
        tree: StepTree,
        persistent: Optional[PersistentStore] = None,
        options: Optional[EngineOptions] = None,
    ):
        self.tree = tree
        self.options = options or EngineOptions.from_settings()
        self.scope = VariableScope(persistent)
        self.state = EngineState()
        self.executor = StepExecutor(tree, self.scope, self.state, self.options)
        self.debugger = DebugController(self)

    # ─── State ────────────────────────────────────────────────

    @property
    def is_paused(self) -> bool:
        return self.state.is_paused

    @property
    def is_stopped(self) -> bool:
        return self.state.is_stopped

    @property
    def curr_branch(self) -> Optional[Branch]:
        return self.state.curr_branch

    @property
    def curr_step(self) -> Optional[Step]:
        return self.state.curr_step

    @property
    def steps_ran(self) -> Branch:
        return self.state.steps_ran

    def set_pause(self, is_paused: bool) -> None:
        self.state.set_pause(is_paused)

    # ─── Running ──────────────────────────────────────────────

    async def run(self) -> bool:
        """Run branches until the tree has none left, or until a pause or stop.

        Called while paused, resumes the current branch where it left off
        (running a debug-marked step it paused on).

        Returns:
            True if every claimed branch ran to completion, False if the run
            ended in a pause or stop

        Raises:
            EngineStateError: If the engine was stopped
        """
        if self.state.is_stopped:
            raise EngineStateError("Cannot run an engine that was stopped")

        resuming = False
        override_debug = False
        if self.state.is_paused:
            self.state.set_pause(False)
            resuming = True
            override_debug = True
        else:
            self.state.start_branch(self.tree.next_branch())

        while self.state.curr_branch is not None:
            branch = self.state.curr_branch

            if resuming and self.state.after_branch_done:
                # paused after the branch already finished
                self.state.start_branch(self.tree.next_branch())
                resuming = False
                continue

            with branch_log_context(branch.hash):
                finished = await self._run_branch(branch, resuming, override_debug)
            if not finished:
                return False

            resuming = False
            override_debug = False
            self.state.start_branch(self.tree.next_branch())

        return True

    async def _run_branch(self, branch: Branch, resuming: bool, override_debug: bool) -> bool:
        """Run one branch from its start, or from the cursor when resuming.

        Returns:
            False if the run ended in a pause or stop
        """
        if not resuming:
            branch.time_started = datetime.now(timezone.utc)
            self.scope.reset(self.options.global_init)
            logger.info("Branch started", steps=len(branch.steps))

            for hook in branch.before_every_branch:
                await self.executor.run_hook_step(hook, None, branch)
                if self._check_for_stopped():
                    return False
                if branch.is_failed:
                    break

        if not branch.is_complete():
            self.to_next_ready_step()
            while self.state.curr_step is not None:
                await self.executor.run_step(self.state.curr_step, branch, override_debug)
                override_debug = False
                await self._breather()
                if self._check_for_paused() or self._check_for_stopped():
                    return False
                self.to_next_ready_step()

        await self.run_after_every_branch()
        return not self.state.is_stopped

    async def run_after_every_branch(self) -> None:
        """Run the current branch's after-every-branch hooks and close the branch out.

        A branch left open (its last step failed while pausing on failure)
        gets its outcome from its steps here.
        """
        branch = self.state.curr_branch
        if branch is None:
            return

        for hook in branch.after_every_branch:
            await self.executor.run_hook_step(hook, None, branch)
            if self._check_for_stopped():
                return

        if not branch.is_complete():
            branch.derive_outcome_from_steps(self.step_data_mode)

        branch.time_ended = datetime.now(timezone.utc)
        branch.elapsed = _elapsed_ms(branch.time_started, branch.time_ended)
        branch.is_running = False
        self.state.after_branch_done = True
        self.scope.reset(self.options.global_init)

        logger.info(
            "Branch finished",
            status=branch.status.value,
            elapsed_ms=branch.elapsed,
            hash=branch.hash,
        )

    async def run_step(self, step: Step, branch: Optional[Branch] = None, override_debug: bool = False) -> None:
        await self.executor.run_step(step, branch, override_debug)

    async def run_hook_step(
        self,
        hook: Step,
        step_to_get_error: Optional[Step] = None,
        branch_to_get_error: Optional[Branch] = None,
    ) -> bool:
        return await self.executor.run_hook_step(hook, step_to_get_error, branch_to_get_error)

    def stop(self) -> None:
        """Stop the run at its next suspension point. A stopped engine cannot be run again."""
        self.state.is_stopped = True
        if self.state.curr_branch is not None:
            self.state.curr_branch.stop()
        logger.info("Engine stopped")

    async def _breather(self) -> None:
        # yield to other tasks between steps
        await asyncio.sleep(self.options.breather_seconds)

    def _check_for_paused(self) -> bool:
        if not self.state.is_paused:
            return False
        if self.state.curr_branch is not None:
            self.state.curr_branch.elapsed = ELAPSED_PAUSED
        logger.info("Engine paused")
        return True

    def _check_for_stopped(self) -> bool:
        if not self.state.is_stopped:
            return False
        branch = self.state.curr_branch
        if branch is not None:
            branch.time_ended = datetime.now(timezone.utc)
            branch.elapsed = _elapsed_ms(branch.time_started, branch.time_ended)
        return True

    @property
    def step_data_mode(self) -> StepDataMode:
        return StepDataMode(self.options.step_data_mode)

    # ─── Cursor ───────────────────────────────────────────────

    def get_next_ready_step(self) -> Optional[Step]:
        """The step the next run should execute, without moving the cursor."""
        branch = self.state.curr_branch
        if branch is None:
            return None
        curr = self.state.curr_step
        if curr is None or curr.is_complete():
            return self.tree.next_step(branch, False, self.step_data_mode)
        return curr

    def to_next_ready_step(self) -> Optional[Step]:
        """Move the cursor onto the next step that hasn't run yet."""
        branch = self.state.curr_branch
        if branch is None:
            self.state.curr_step = None
            return None
        next_ready = self.get_next_ready_step()
        if next_ready is None or next_ready is not self.state.curr_step:
            self.state.curr_step = self.tree.next_step(branch, True, self.step_data_mode)
        return self.state.curr_step

    # ─── Debugging ────────────────────────────────────────────

    async def run_one_step(self) -> bool:
        return await self.debugger.run_one_step()

    async def skip_one_step(self) -> bool:
        return await self.debugger.skip_one_step()

    async def run_last_step(self) -> None:
        await self.debugger.run_last_step()

    def get_last_step(self) -> Optional[Step]:
        return self.debugger.get_last_step()

    async def inject_step(self, step: Union[Step, StepNode]) -> Branch:
        return await self.debugger.inject_step(step)

    # ─── Variables ────────────────────────────────────────────

    def get_persistent(self, name: str) -> Any:
        return self.scope.get_persistent(name)

    def set_persistent(self, name: str, value: Any) -> Any:
        return self.scope.set_persistent(name, value)

    def get_global(self, name: str) -> Any:
        return self.scope.get_global(name)

    def set_global(self, name: str, value: Any) -> Any:
        return self.scope.set_global(name, value)

    def get_local(self, name: str) -> Any:
        return self.scope.get_local_effective(name)

    def set_local(self, name: str, value: Any) -> Any:
        return self.scope.set_local(name, value)
