"""Branch — one concrete, ordered path of steps executed as a unit.

A branch holds its step sequence, the hook lists that wrap it, aggregate
modifier flags, scheduling metadata for the scheduler and run-time
bookkeeping (status, error, log, timing, content hash).
"""

import copy
import hashlib
import re
from datetime import datetime
from typing import Any, Optional, Union

from branchrun.core.constants import (
    ELAPSED_PAUSED,
    FREQUENCIES,
    NON_IDENTITY_MODIFIERS,
    BranchStatus,
    HookKind,
    StepDataMode,
    StepState,
)
from branchrun.core.exceptions import SerializedError
from branchrun.core.utils import add_whitespace_to_end, canonicalize, get_indents
from branchrun.workflow.step import Step, StepNode

StepNodeIndex = dict[int, StepNode]
ErrorLike = Union[BaseException, SerializedError]


def _canonical_step_text(node: StepNode) -> str:
    """Step text with whitespace collapsed and identity-bearing modifiers appended."""
    text = re.sub(r"\s+", " ", node.text)
    for modifier in node.modifiers:
        if modifier not in NON_IDENTITY_MODIFIERS:
            text += " " + modifier
    return text


class Branch:
    """An ordered sequence of steps plus the hooks that run around them."""

    def __init__(self, steps: Optional[list[Step]] = None):
        self.steps: list[Step] = list(steps or [])

        self.before_every_branch: list[Step] = []
        self.after_every_branch: list[Step] = []
        self.before_every_step: list[Step] = []
        self.after_every_step: list[Step] = []

        # Scheduling metadata, interpreted by the scheduler only
        self.non_parallel_ids: list[Any] = []
        self.frequency: Optional[str] = None
        self.groups: list[str] = []

        # Aggregate modifiers
        self.is_skip_branch = False
        self.is_only = False
        self.is_debug = False

        # Status
        self.passed_last_time = False
        self.is_passed = False
        self.is_failed = False
        self.is_skipped = False
        self.is_running = False

        self.error: Optional[SerializedError] = None
        self.log: list[dict[str, str]] = []

        self.elapsed: Optional[float] = None  # ms, ELAPSED_PAUSED if ended by a pause
        self.time_started: Optional[datetime] = None
        self.time_ended: Optional[datetime] = None

        self.hash: Optional[str] = None

    def __repr__(self) -> str:
        return f"<Branch steps={len(self.steps)} status={self.status.value}>"

    # ─── Building ─────────────────────────────────────────────

    def append(self, step: Step, step_node_index: StepNodeIndex) -> None:
        """Add step to the end and fold its modifiers into the branch."""
        self.steps.append(step)
        self.merge_modifiers(step, step_node_index)

    def prepend(self, step: Step, step_node_index: StepNodeIndex) -> None:
        """Add step to the front and fold its modifiers into the branch."""
        self.steps.insert(0, step)
        self.merge_modifiers(step, step_node_index, to_front=True)

    def merge_modifiers(self, step: Step, step_node_index: StepNodeIndex, to_front: bool = False) -> None:
        node = step_node_index[step.id]
        decl = step_node_index.get(step.fid) if step.fid is not None else None
        nodes = [n for n in (node, decl) if n is not None]

        if any(n.is_skip_branch for n in nodes):
            self.is_skip_branch = True
        if any(n.is_only for n in nodes):
            self.is_only = True
        if any(n.is_debug for n in nodes):
            self.is_debug = True

        for group in [g for n in nodes for g in n.groups]:
            if group in FREQUENCIES:
                # a step added to the front never overrides a frequency set further down
                if not to_front or not self.frequency:
                    self.frequency = group
            elif group not in self.groups:
                self.groups.append(group)

    def merge_append(self, other: "Branch") -> "Branch":
        """Attach other to the end of this branch.

        Hooks from other (e.g. a reusable package) are kept at the boundary
        closest to global scope: its before-hooks go first and its
        after-hooks go last.
        """
        self.steps = self.steps + other.steps

        if other.non_parallel_ids:
            self.non_parallel_ids = self.non_parallel_ids + other.non_parallel_ids
        if other.frequency:
            self.frequency = other.frequency
        if other.groups:
            self.groups = self.groups + other.groups

        self.is_skip_branch = self.is_skip_branch or other.is_skip_branch
        self.is_only = self.is_only or other.is_only
        self.is_debug = self.is_debug or other.is_debug

        self.copy_hooks(other, HookKind.BEFORE_EVERY_BRANCH, to_beginning=True)
        self.copy_hooks(other, HookKind.AFTER_EVERY_BRANCH, to_beginning=False)
        self.copy_hooks(other, HookKind.BEFORE_EVERY_STEP, to_beginning=True)
        self.copy_hooks(other, HookKind.AFTER_EVERY_STEP, to_beginning=False)
        return self

    def copy_hooks(self, other: "Branch", kind: HookKind, to_beginning: bool) -> None:
        mine = self.hooks(kind)
        theirs = other.hooks(kind)
        merged = theirs + mine if to_beginning else mine + theirs
        setattr(self, HookKind(kind).value, merged)

    def hooks(self, kind: HookKind) -> list[Step]:
        return list(getattr(self, HookKind(kind).value))

    def clone(self) -> "Branch":
        return copy.deepcopy(self)

    # ─── Identity ─────────────────────────────────────────────

    def equals(self, other: "Branch", step_node_index: StepNodeIndex, num: Optional[int] = None) -> bool:
        """True if the first num steps (all if omitted) match, ignoring hooks."""
        this_len = len(self.steps)
        other_len = len(other.steps)
        if num is not None:
            this_len = min(this_len, num)
            other_len = min(other_len, num)
        if this_len != other_len:
            return False

        for mine, theirs in zip(self.steps[:this_len], other.steps[:other_len]):
            node_a = step_node_index[mine.id]
            node_b = step_node_index[theirs.id]
            if _canonical_step_text(node_a) != _canonical_step_text(node_b):
                return False
            if node_a.has_code_block():
                if node_a.code_block != node_b.code_block:
                    return False
            elif mine.fid != theirs.fid:
                return False
        return True

    def compute_hash(self, step_node_index: StepNodeIndex) -> str:
        """Fingerprint of canonical step text, modifiers and code, in step order."""
        combined = ""
        for step in self.steps:
            node = step_node_index[step.id]
            code_block = ""
            if node.has_code_block():
                code_block = node.code_block
            elif step.fid is not None:
                decl = step_node_index[step.fid]
                if decl.has_code_block():
                    code_block = decl.code_block

            modifiers = sorted(
                m for m in node.modifiers
                if m not in NON_IDENTITY_MODIFIERS and not m.startswith("#")
            )
            combined += canonicalize(node.text)
            if modifiers:
                combined += " " + " ".join(modifiers)
            combined += code_block + "\n"

        self.hash = hashlib.md5(combined.encode("utf-8")).hexdigest()
        return self.hash

    def equals_hash(self, value: str) -> bool:
        return value == self.hash

    # ─── Status ───────────────────────────────────────────────

    @property
    def status(self) -> BranchStatus:
        if self.is_passed or self.passed_last_time:
            return BranchStatus.PASSED
        if self.is_failed:
            return BranchStatus.FAILED
        if self.is_skipped:
            return BranchStatus.SKIPPED
        if self.is_running:
            return BranchStatus.RUNNING
        return BranchStatus.NOT_STARTED

    def is_complete(self) -> bool:
        return self.is_passed or self.is_failed or self.is_skipped or self.passed_last_time

    def is_running_or_complete(self) -> bool:
        return self.is_running or self.is_complete()

    def was_paused(self) -> bool:
        return self.elapsed == ELAPSED_PAUSED

    def stop(self) -> None:
        """Clear running flags on this branch and all its steps."""
        for step in self.steps:
            step.is_running = False
        self.is_running = False

    def mark_branch(
        self,
        state: StepState,
        error: Optional[ErrorLike] = None,
        step_data_mode: StepDataMode = StepDataMode.ALL,
    ) -> None:
        """Set exactly one of passed/failed/skipped, optionally recording an error."""
        state = StepState(state)
        self.is_passed = state == StepState.PASS
        self.is_failed = state == StepState.FAIL
        self.is_skipped = state == StepState.SKIP

        if error is not None:
            self.error = serialize_error(error)

        step_data_mode = StepDataMode(step_data_mode)
        if step_data_mode == StepDataMode.NONE or (
            step_data_mode == StepDataMode.FAIL and state != StepState.FAIL
        ):
            self._clear_data_of_steps()

    def finalize(self, passed: bool, error: Optional[ErrorLike] = None) -> None:
        self.mark_branch(StepState.PASS if passed else StepState.FAIL, error)

    def derive_outcome_from_steps(self, step_data_mode: StepDataMode = StepDataMode.ALL) -> None:
        """Fail if any step failed, otherwise pass."""
        for step in self.steps:
            if step.is_failed:
                self.mark_branch(StepState.FAIL, None, step_data_mode)
                return
        self.mark_branch(StepState.PASS, None, step_data_mode)

    def mark_step(
        self,
        state: StepState,
        step: Step,
        error: Optional[ErrorLike] = None,
        finish_branch_now: bool = False,
        step_data_mode: StepDataMode = StepDataMode.ALL,
        as_expected: Optional[bool] = None,
        defer_finalize: bool = False,
    ) -> None:
        """Record a step outcome; finish the branch if asked or if step is the last one.

        defer_finalize keeps the branch open even on its last step, so a later
        resume can finish it.
        """
        state = StepState(state)
        step.is_passed = state == StepState.PASS
        step.is_failed = state == StepState.FAIL
        step.is_skipped = state == StepState.SKIP
        if as_expected is not None:
            step.as_expected = as_expected

        if error is not None:
            step.error = serialize_error(error)

        is_last = bool(self.steps) and self.steps[-1] is step
        if not defer_finalize and (finish_branch_now or is_last):
            self.derive_outcome_from_steps(step_data_mode)

    def _clear_data_of_steps(self) -> None:
        for step in self.steps:
            keep_passed = step.is_passed and not self.is_passed
            step.log = []
            step.error = None
            step.elapsed = None
            step.time_started = None
            step.time_ended = None
            step.as_expected = None
            step.is_passed = keep_passed

    def append_to_log(self, item: Any) -> None:
        if isinstance(item, str):
            item = {"text": item}
        self.log.append(item)

    # ─── Output ───────────────────────────────────────────────

    def output(self, step_node_index: StepNodeIndex, spaces: int = 3) -> str:
        """Text rendering, one step per line with its location."""
        begin = " " * spaces
        lines = []
        for step in self.steps:
            node = step_node_index[step.id]
            text = add_whitespace_to_end(f"{get_indents(step.level, 2)}{node.text}", 50)
            lines.append(f"{begin}{text}   {step.loc_string(step_node_index)}\n")
        return "".join(lines)

    def to_dict(self) -> dict:
        """Report form of this branch."""
        data: dict[str, Any] = {"steps": [s.to_dict() for s in self.steps]}
        if self.is_passed or self.passed_last_time:
            data["is_passed"] = True
        for key in ("is_failed", "is_skipped", "is_running"):
            if getattr(self, key):
                data[key] = True
        if self.error is not None:
            data["error"] = self.error.to_dict()
        if self.log:
            data["log"] = list(self.log)
        if self.elapsed is not None:
            data["elapsed"] = self.elapsed
        if self.hash:
            data["hash"] = self.hash
        return data


def serialize_error(error: ErrorLike) -> SerializedError:
    if isinstance(error, SerializedError):
        return error
    return SerializedError.from_exception(error)
