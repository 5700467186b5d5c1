"""Mutable state of one execution engine, shared by its runner, step executor and debugger."""

from dataclasses import dataclass, field
from typing import Optional

import structlog

from branchrun.workflow.branch import Branch
from branchrun.workflow.step import Step

logger = structlog.get_logger(__name__)


@dataclass
class EngineState:
    """Pause/stop flags and the branch/step cursor.

    Flags are only read at suspension points (after a hook, a step or a code
    block), so a pause or stop never lands mid-step.
    """

    is_paused: bool = False
    is_stopped: bool = False
    curr_branch: Optional[Branch] = None
    curr_step: Optional[Step] = None
    steps_ran: Branch = field(default_factory=Branch)  # steps executed in the current branch
    after_branch_done: bool = False  # after-every-branch hooks already ran for curr_branch

    def set_pause(self, is_paused: bool) -> None:
        if is_paused != self.is_paused:
            logger.debug("Pause state changed", is_paused=is_paused)
        self.is_paused = is_paused

    def start_branch(self, branch: Optional[Branch]) -> None:
        self.curr_branch = branch
        self.curr_step = None
        self.steps_ran = Branch()
        self.after_branch_done = False
