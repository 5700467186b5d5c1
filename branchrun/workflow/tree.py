"""In-memory step tree.

Holds the step definitions and the already-generated branches, and hands
branches and steps out to execution engines. Parsing test files and
generating branches are done elsewhere; nodes and branches are added here
directly.
"""

import itertools
from typing import Any, Optional

import structlog

from branchrun.core.constants import StepDataMode, StepState
from branchrun.workflow.branch import Branch, ErrorLike, serialize_error
from branchrun.workflow.step import Step, StepNode

logger = structlog.get_logger(__name__)


class StepTree:
    """Step definitions plus the branches to run."""

    def __init__(self):
        self.step_node_index: dict[int, StepNode] = {}
        self.branches: list[Branch] = []
        self._ids = itertools.count(1)

    # ─── Building ─────────────────────────────────────────────

    def new_step_node(self, text: str = "", **fields: Any) -> StepNode:
        node = StepNode(id=next(self._ids), text=text, **fields)
        self.step_node_index[node.id] = node
        return node

    def add_node(self, node: StepNode) -> StepNode:
        self.step_node_index[node.id] = node
        return node

    def add_branch(self, branch: Branch) -> Branch:
        if branch.hash is None:
            branch.compute_hash(self.step_node_index)
        self.branches.append(branch)
        return branch

    # ─── Lookups ──────────────────────────────────────────────

    def get_node(self, step: Step) -> StepNode:
        return self.step_node_index[step.id]

    def get_declaration(self, step: Step) -> Optional[StepNode]:
        if step.fid is None:
            return None
        return self.step_node_index.get(step.fid)

    def has_code_block(self, step: Step) -> bool:
        """True if the step or the function it calls carries a code block."""
        if self.get_node(step).has_code_block():
            return True
        decl = self.get_declaration(step)
        return decl is not None and decl.has_code_block()

    def get_code_block(self, step: Step) -> str:
        node = self.get_node(step)
        if node.has_code_block():
            return node.code_block
        decl = self.get_declaration(step)
        if decl is not None and decl.has_code_block():
            return decl.code_block
        return ""

    def get_modifier(self, step: Step, name: str) -> bool:
        """True if the step or the function it calls has the given modifier flag."""
        decl = self.get_declaration(step)
        return bool(getattr(self.get_node(step), name, False) or (decl is not None and getattr(decl, name, False)))

    def find_similar_branches(self, branch: Branch, num: int) -> list[Branch]:
        """Other branches whose first num steps equal the given branch's."""
        return [
            b for b in self.branches
            if b is not branch and branch.equals(b, self.step_node_index, num)
        ]

    # ─── Scheduling ───────────────────────────────────────────

    def next_branch(self) -> Optional[Branch]:
        """Claim the first branch that isn't running or complete.

        Branches sharing a non-parallel id with a running branch are held back.
        """
        running_ids = {
            npid
            for b in self.branches
            if b.is_running
            for npid in b.non_parallel_ids
        }
        for branch in self.branches:
            if branch.is_running_or_complete():
                continue
            if running_ids.intersection(branch.non_parallel_ids):
                continue
            branch.is_running = True
            return branch
        return None

    def next_step(
        self,
        branch: Branch,
        advance: bool = False,
        step_data_mode: StepDataMode = StepDataMode.ALL,
    ) -> Optional[Step]:
        """The step after the running one (or the first step), None when the branch is done.

        With advance set, moves the running flag onto the returned step. This
        is the only place Step.is_running is changed during a run. Branches
        finished here keep step data according to step_data_mode.
        """
        if branch.is_complete():
            if advance:
                for step in branch.steps:
                    step.is_running = False
            return None

        running_step = None
        next_step = None
        for i, step in enumerate(branch.steps):
            if step.is_running:
                running_step = step
                if i + 1 < len(branch.steps):
                    next_step = branch.steps[i + 1]
                break

        if running_step is None and branch.steps:
            next_step = branch.steps[0]

        if advance:
            if running_step is not None:
                running_step.is_running = False
            if next_step is not None:
                next_step.is_running = True

        # .s ends the branch here
        if next_step is not None and self.get_modifier(next_step, "is_skip_below"):
            if advance:
                next_step.is_running = False
                branch.derive_outcome_from_steps(step_data_mode)
            return None

        # -s steps are marked skipped and passed over
        if advance and next_step is not None and (self.get_node(next_step).is_skip or next_step.is_skipped):
            branch.mark_step(StepState.SKIP, next_step, None, False, step_data_mode)
            return self.next_step(branch, advance, step_data_mode)

        return next_step

    # ─── Outcomes ─────────────────────────────────────────────

    def mark_step(
        self,
        state: StepState,
        step: Step,
        branch: Branch,
        error: Optional[ErrorLike] = None,
        finalize_branch: bool = False,
        as_expected: Optional[bool] = None,
        defer_finalize: bool = False,
        step_data_mode: StepDataMode = StepDataMode.ALL,
    ) -> None:
        branch.mark_step(
            state, step, error, finalize_branch, step_data_mode, as_expected, defer_finalize
        )
        logger.debug(
            "Step marked",
            step_id=step.id,
            state=StepState(state).value,
            as_expected=as_expected,
            branch_complete=branch.is_complete(),
        )

    def mark_hook_step(self, state: StepState, step: Step, error: Optional[ErrorLike] = None) -> None:
        """Mark a step with a hook's outcome without finishing its branch."""
        state = StepState(state)
        step.is_passed = state == StepState.PASS
        step.is_failed = state == StepState.FAIL
        step.is_skipped = False
        if state == StepState.FAIL:
            step.as_expected = False
        if error is not None:
            step.error = serialize_error(error)
