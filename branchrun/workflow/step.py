"""Step definitions and step run records.

A StepNode is the immutable definition of a step as it appears in a test
file. A Step is one occurrence of a StepNode inside a branch; it carries the
nesting level and, once run, its outcome.
"""

import copy
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from branchrun.core.exceptions import SerializedError


@dataclass
class VarBeingSet:
    """One {var}=value or {{var}}=value assignment attached to a step."""

    name: str
    value: str = ""
    is_local: bool = False


@dataclass
class StepNode:
    """Immutable definition of a step."""

    id: int
    text: str = ""
    filename: Optional[str] = None
    line_number: Optional[int] = None
    modifiers: list[str] = field(default_factory=list)
    code_block: Optional[str] = None
    vars_being_set: list[VarBeingSet] = field(default_factory=list)
    groups: list[str] = field(default_factory=list)

    is_function_call: bool = False
    is_function_declaration: bool = False
    is_hook: bool = False
    is_packaged: bool = False
    is_async: bool = True  # code block may await

    is_debug: bool = False  # ~ pause before this step
    is_expected_fail: bool = False  # #
    is_skip: bool = False  # -s
    is_skip_below: bool = False  # .s
    is_skip_branch: bool = False  # $s
    is_only: bool = False  # $

    def has_code_block(self) -> bool:
        return self.code_block is not None


@dataclass(eq=False)
class Step:
    """A step inside a branch, with its run-time outcome."""

    id: int
    fid: Optional[int] = None  # function declaration this step calls
    level: int = 0  # function-call nesting depth within the branch

    is_running: bool = False
    is_passed: bool = False
    is_failed: bool = False
    is_skipped: bool = False
    as_expected: Optional[bool] = None

    error: Optional[SerializedError] = None
    log: list[dict[str, str]] = field(default_factory=list)

    elapsed: Optional[float] = None  # ms
    time_started: Optional[datetime] = None
    time_ended: Optional[datetime] = None

    def clone(self) -> "Step":
        return copy.deepcopy(self)

    def is_complete(self) -> bool:
        return self.is_passed or self.is_failed or self.is_skipped

    def reset_outcome(self) -> None:
        self.is_passed = False
        self.is_failed = False
        self.is_skipped = False
        self.as_expected = None
        self.error = None

    def discard_run(self) -> None:
        """Forget everything recorded by an interrupted run of this step."""
        self.reset_outcome()
        self.log = []
        self.elapsed = None
        self.time_started = None
        self.time_ended = None

    def append_to_log(self, item: Any) -> None:
        if isinstance(item, str):
            item = {"text": item}
        self.log.append(item)

    def loc_string(self, step_node_index: dict[int, StepNode]) -> str:
        """Location as "file:line --> declaration_file:line"."""
        node = step_node_index[self.id]
        loc = f"{os.path.basename(node.filename)}:{node.line_number}" if node.filename else ""
        decl = step_node_index.get(self.fid) if self.fid is not None else None
        if decl is not None:
            decl_file = os.path.basename(decl.filename) if decl.filename else ""
            loc += f"{' ' if loc else ''}--> {decl_file}:{decl.line_number}"
        return loc

    def to_dict(self) -> dict:
        """Report form, omitting unset fields."""
        data: dict[str, Any] = {"id": self.id, "fid": self.fid, "level": self.level}
        for key in ("is_passed", "is_failed", "is_skipped", "is_running"):
            if getattr(self, key):
                data[key] = True
        if self.as_expected is not None:
            data["as_expected"] = self.as_expected
        if self.error is not None:
            data["error"] = self.error.to_dict()
        if self.log:
            data["log"] = list(self.log)
        if self.elapsed is not None:
            data["elapsed"] = self.elapsed
        return data
