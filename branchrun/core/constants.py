"""Constants, patterns and enums for the branch execution engine."""

import re
from enum import Enum


class StepState(str, Enum):
    """Outcome a step or branch can be marked with."""

    PASS = "pass"
    FAIL = "fail"
    SKIP = "skip"


class BranchStatus(str, Enum):
    """Lifecycle status of a branch."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class VarTier(str, Enum):
    """Variable scope tiers."""

    PERSISTENT = "persistent"
    GLOBAL = "global"
    LOCAL = "local"


class StepDataMode(str, Enum):
    """How much per-step data a finalized branch keeps."""

    ALL = "all"
    FAIL = "fail"
    NONE = "none"


class HookKind(str, Enum):
    """Hook lists attached to a branch."""

    BEFORE_EVERY_BRANCH = "before_every_branch"
    AFTER_EVERY_BRANCH = "after_every_branch"
    BEFORE_EVERY_STEP = "before_every_step"
    AFTER_EVERY_STEP = "after_every_step"


# ─── Patterns ─────────────────────────────────────────────────

# 'string', "string" and [string], with backslash escapes
SINGLE_QUOTE_STR = r"'(?:[^\\']|\\.)*'"
DOUBLE_QUOTE_STR = r'"(?:[^\\"]|\\.)*"'
BRACKET_STR = r"\[(?:[^\\\]]|\\.)*\]"

STRING_LITERAL = re.compile(f"{SINGLE_QUOTE_STR}|{DOUBLE_QUOTE_STR}|{BRACKET_STR}")
STRING_LITERAL_WHOLE = re.compile(f"^(?:{STRING_LITERAL.pattern})$")

# {var} or {{var}}
VAR = re.compile(r"\{\{[^{}\\]+\}\}|\{[^{}\\]+\}")
VAR_WHOLE = re.compile(f"^(?:{VAR.pattern})$")

# Arguments at a function call site
FUNCTION_INPUT = re.compile(f"{STRING_LITERAL.pattern}|{VAR.pattern}")

# Names a code block may see as plain identifiers
IDENTIFIER_WHOLE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

FREQUENCIES = ("high", "med", "low")

# Modifiers that do not take part in a step's canonical identity
NON_IDENTITY_MODIFIERS = ("~", "$", "$s")

# Sentinel elapsed value for a branch whose run ended in a pause
ELAPSED_PAUSED = -1

SPACES_PER_INDENT = 4
