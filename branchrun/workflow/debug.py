"""Interactive debugging on top of a paused branch runner.

Lets a REPL step through the current branch one step at a time, skip steps,
re-run the previous step, or run an ad-hoc step against the current scope.
Every operation leaves the engine paused.
"""

from typing import TYPE_CHECKING, Optional, Union

import structlog

from branchrun.core.constants import StepState
from branchrun.core.exceptions import EngineStateError
from branchrun.workflow.branch import Branch
from branchrun.workflow.step import Step, StepNode

if TYPE_CHECKING:
    from branchrun.workflow.branch_runner import BranchRunner

logger = structlog.get_logger(__name__)


class DebugController:
    """Step-by-step control of a BranchRunner."""

    def __init__(self, runner: "BranchRunner"):
        self.runner = runner

    @property
    def state(self):
        return self.runner.state

    def _current_branch(self) -> Branch:
        branch = self.state.curr_branch
        if branch is None:
            raise EngineStateError("No branch is being run")
        return branch

    async def run_one_step(self) -> bool:
        """Run the next step and pause again.

        When no steps are left, runs the after-every-branch hooks instead.

        Returns:
            True if the branch is finished
        """
        branch = self._current_branch()
        step = self.runner.to_next_ready_step()

        if step is not None:
            await self.runner.executor.run_step(step, branch, override_debug=True)
            if self.state.is_stopped:
                return False
            self.runner.to_next_ready_step()
            self.state.set_pause(True)
            return False

        await self._finish_branch()
        return True

    async def skip_one_step(self) -> bool:
        """Mark the next step skipped without running it, then pause again.

        Returns:
            True if the branch is finished
        """
        branch = self._current_branch()
        step = self.runner.to_next_ready_step()

        if step is not None:
            self.runner.tree.mark_step(StepState.SKIP, step, branch, step_data_mode=self.runner.step_data_mode)
            logger.info("Step skipped", step_id=step.id)
            self.state.curr_step = self.runner.tree.next_step(branch, True, self.runner.step_data_mode)
            self.state.set_pause(True)
            return False

        await self._finish_branch()
        return True

    def get_last_step(self) -> Optional[Step]:
        """The step before the cursor in the current branch, None at the start."""
        branch = self.state.curr_branch
        if branch is None:
            return None
        curr = self.runner.get_next_ready_step()
        if curr is None:
            # every step has run
            return branch.steps[-1] if branch.steps else None
        for i, step in enumerate(branch.steps):
            if step is curr:
                return branch.steps[i - 1] if i > 0 else None
        return None

    async def run_last_step(self) -> None:
        """Re-run the previous step and pause again."""
        step = self.get_last_step()
        if step is not None:
            await self.runner.executor.run_step(step, self.state.curr_branch, override_debug=True)
        self.state.set_pause(True)

    async def inject_step(self, step: Union[Step, StepNode]) -> Branch:
        """Run an ad-hoc step with the current scope, without moving the cursor.

        Args:
            step: The step, or a step definition to make one from

        Returns:
            Branch of the single injected step, holding its outcome

        Raises:
            EngineStateError: If step is a function declaration
        """
        if isinstance(step, StepNode):
            node = step
            self.runner.tree.add_node(node)
            step = Step(id=node.id)
        else:
            node = self.runner.tree.get_node(step)

        if node.is_function_declaration:
            raise EngineStateError("A function declaration cannot be run as a step")

        scope = self.runner.scope
        depth = scope.depth
        branch = Branch([step])
        await self.runner.executor.run_step(step, branch, override_debug=True)

        # close the frame an injected function call opened
        while scope.depth > depth:
            scope.pop_local()

        self.state.set_pause(True)
        logger.info("Step injected", step=node.text, passed=step.is_passed)
        return branch

    async def _finish_branch(self) -> None:
        if not self.state.after_branch_done:
            await self.runner.run_after_every_branch()
        self.state.set_pause(True)
