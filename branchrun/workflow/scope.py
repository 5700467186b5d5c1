"""Three-tier variable scope: persistent, global and local.

Persistent variables live for the whole run and are shared by every engine.
Global variables are reset at the start of every branch. Local variables
belong to one level of function-call nesting; entering a deeper level pushes
the current local frame onto a stack and leaving it pops the frame back.

Keys are looked up in canonical form (trimmed, lower-cased, whitespace
collapsed). The casing a variable was last set with is remembered so code
blocks can see it under its original name.
"""

import threading
from typing import Any, Iterator, Optional

import structlog

from branchrun.core.constants import VarTier
from branchrun.core.utils import canonicalize, keep_case_canonicalize

logger = structlog.get_logger(__name__)


class _Unset:
    """Marker for a variable that has no value in a tier."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNSET"


UNSET = _Unset()


class VariableTable:
    """Case-insensitive variable storage that remembers original casing."""

    def __init__(self, initial: Optional[dict[str, Any]] = None):
        self._values: dict[str, Any] = {}
        self._names: dict[str, str] = {}
        for name, value in (initial or {}).items():
            self.set(name, value)

    def get(self, name: str, default: Any = UNSET) -> Any:
        return self._values.get(canonicalize(name), default)

    def set(self, name: str, value: Any) -> Any:
        key = canonicalize(name)
        self._values[key] = value
        self._names[key] = keep_case_canonicalize(name)
        return value

    def has(self, name: str) -> bool:
        return canonicalize(name) in self._values

    def items(self) -> Iterator[tuple[str, Any]]:
        """Yield (original-cased name, value) pairs."""
        for key, value in list(self._values.items()):
            yield self._names[key], value

    def copy(self) -> "VariableTable":
        table = VariableTable()
        table._values = dict(self._values)
        table._names = dict(self._names)
        return table

    def update(self, other: "VariableTable") -> None:
        for name, value in other.items():
            self.set(name, value)

    def clear(self) -> None:
        self._values.clear()
        self._names.clear()

    def to_dict(self) -> dict[str, Any]:
        return dict(self.items())

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, name: str) -> bool:
        return self.has(name)


class PersistentStore(VariableTable):
    """Persistent tier shared by every engine in a run.

    Engines may run on different event loops or threads, so every access is
    serialized with a lock.
    """

    def __init__(self, initial: Optional[dict[str, Any]] = None):
        self._lock = threading.RLock()
        super().__init__(initial)

    def get(self, name: str, default: Any = UNSET) -> Any:
        with self._lock:
            return super().get(name, default)

    def set(self, name: str, value: Any) -> Any:
        with self._lock:
            return super().set(name, value)

    def has(self, name: str) -> bool:
        with self._lock:
            return super().has(name)

    def items(self) -> Iterator[tuple[str, Any]]:
        with self._lock:
            snapshot = list(super().items())
        return iter(snapshot)

    def clear(self) -> None:
        with self._lock:
            super().clear()


class VariableScope:
    """Variable state of one execution engine."""

    def __init__(self, persistent: Optional[PersistentStore] = None):
        self.persistent = persistent if persistent is not None else PersistentStore()
        self.global_vars = VariableTable()
        self.local = VariableTable()
        self.local_stack: list[VariableTable] = []
        self.locals_passed_into_func = VariableTable()

    # ─── Tier access ──────────────────────────────────────────

    def get(self, tier: VarTier, name: str) -> Any:
        """Value of name in the given tier, UNSET if absent.

        The local tier reads only the current frame; use
        get_local_effective() to include function parameters.
        """
        return self._table(tier).get(name)

    def set(self, tier: VarTier, name: str, value: Any) -> Any:
        return self._table(tier).set(name, value)

    def _table(self, tier: VarTier) -> VariableTable:
        tier = VarTier(tier)
        if tier == VarTier.PERSISTENT:
            return self.persistent
        if tier == VarTier.GLOBAL:
            return self.global_vars
        return self.local

    def get_persistent(self, name: str) -> Any:
        return self.persistent.get(name)

    def set_persistent(self, name: str, value: Any) -> Any:
        return self.persistent.set(name, value)

    def get_global(self, name: str) -> Any:
        return self.global_vars.get(name)

    def set_global(self, name: str, value: Any) -> Any:
        return self.global_vars.set(name, value)

    def get_local_effective(self, name: str) -> Any:
        """Local value, preferring parameters passed into the current function call."""
        if self.locals_passed_into_func.has(name):
            return self.locals_passed_into_func.get(name)
        return self.local.get(name)

    get_local = get_local_effective

    def set_local(self, name: str, value: Any) -> Any:
        return self.local.set(name, value)

    def set_local_passed_in(self, name: str, value: Any) -> Any:
        return self.locals_passed_into_func.set(name, value)

    def set_local_on_stack(self, name: str, value: Any) -> Any:
        """Set a local in the frame just below the current one.

        Used when a function call's return value is assigned to a local of
        the caller while the callee's frame is on top.
        """
        if not self.local_stack:
            logger.warning("Local stack empty, setting on current frame", variable=name)
            return self.local.set(name, value)
        return self.local_stack[-1].set(name, value)

    # ─── Frames ───────────────────────────────────────────────

    def push_local(self) -> None:
        """Save the current local frame and start a fresh one seeded with passed-in parameters."""
        self.local_stack.append(self.local)
        self.local = self.locals_passed_into_func.copy()
        self.locals_passed_into_func = VariableTable()

    def pop_local(self) -> None:
        """Restore the local frame saved by the matching push_local()."""
        if not self.local_stack:
            logger.warning("Local stack underflow, starting a fresh local frame")
            self.local = VariableTable()
            return
        self.local = self.local_stack.pop()

    def clear_passed_in(self) -> None:
        self.locals_passed_into_func = VariableTable()

    @property
    def depth(self) -> int:
        return len(self.local_stack)

    def reset(self, global_init: Optional[dict[str, Any]] = None) -> None:
        """Reset global and local state for a new branch. Persistent is untouched."""
        self.global_vars = VariableTable(global_init)
        self.local = VariableTable()
        self.local_stack = []
        self.locals_passed_into_func = VariableTable()

    # ─── Code block exposure ──────────────────────────────────

    def visible_variables(self) -> dict[str, Any]:
        """Every bound variable by original-cased name.

        Local (including passed-in parameters) wins over global, which wins
        over persistent.
        """
        merged: dict[str, tuple[str, Any]] = {}
        for table in (self.persistent, self.global_vars, self.local, self.locals_passed_into_func):
            for name, value in table.items():
                merged[canonicalize(name)] = (name, value)
        return {name: value for name, value in merged.values()}
