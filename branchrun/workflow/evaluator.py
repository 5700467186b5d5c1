"""Code block evaluation.

Code blocks are Python function bodies. Each one is compiled into a function
named after the step it belongs to and run against a namespace holding the
variable accessors, a few helpers, and every bound variable whose name is a
usable identifier. Blocks run either synchronously or as coroutines (so they
can ``await``).

Failures are re-raised as ExecutionFailure whose line number points into the
test file: the block's own line numbers are shifted by the line the block
starts on.
"""

import ast
import builtins
import keyword
import re
import traceback
from typing import Any, Callable, Optional

import structlog

from branchrun.core.constants import IDENTIFIER_WHOLE
from branchrun.core.exceptions import ExecutionFailure

logger = structlog.get_logger(__name__)

_RESERVED = frozenset(k.lower() for k in keyword.kwlist + getattr(keyword, "softkwlist", []))

_CODE_BLOCK_FILENAME = "<code block>"


def is_exposable_name(name: str) -> bool:
    """True if a variable can be bound as a plain identifier inside a code block."""
    return bool(IDENTIFIER_WHOLE.match(name)) and name.lower() not in _RESERVED


def code_block_function_name(display_name: Optional[str]) -> str:
    """Function name a code block is compiled under, e.g. CodeBlock_for_Log_in."""
    if not display_name:
        return "CodeBlock"
    safe = re.sub(r"[^A-Za-z0-9_]", "", re.sub(r"\s+", "_", display_name))
    return f"CodeBlock_for_{safe}" if safe else "CodeBlock"


class CodeEvaluator:
    """Compiles and runs code blocks against a bound variable environment."""

    def __init__(self, accessors: Optional[dict[str, Callable[..., Any]]] = None):
        # helpers every block can call: get_global, set_local, log, ...
        self.accessors: dict[str, Any] = dict(accessors or {})

    def build_namespace(
        self,
        variables: Optional[dict[str, Any]] = None,
        extra: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Globals for a code block: accessors, then variables, then per-call extras."""
        namespace: dict[str, Any] = {"__builtins__": builtins}
        namespace.update(self.accessors)
        for name, value in (variables or {}).items():
            if is_exposable_name(name):
                namespace[name] = value
        namespace.update(extra or {})
        namespace["ExecutionFailure"] = ExecutionFailure
        return namespace

    def compile_block(
        self,
        code: str,
        display_name: Optional[str] = None,
        line_number: int = 1,
        is_sync: bool = False,
    ):
        """Compile code into a module defining one (async) function.

        Returns (code object, function name).
        """
        func_name = code_block_function_name(display_name)
        offset = max(line_number or 1, 1) - 1

        try:
            body = ast.parse(code or "", filename=_CODE_BLOCK_FILENAME)
        except SyntaxError as e:
            raise ExecutionFailure(
                f"SyntaxError: {e.msg}",
                line_number=(e.lineno or 1) + offset,
            ) from e

        header = "def" if is_sync else "async def"
        module = ast.parse(f"{header} {func_name}():\n    pass\n")
        module.body[0].body = body.body or [ast.Pass()]
        ast.fix_missing_locations(module)
        ast.increment_lineno(module, offset)

        try:
            compiled = compile(module, _CODE_BLOCK_FILENAME, "exec")
        except SyntaxError as e:
            raise ExecutionFailure(f"SyntaxError: {e.msg}", line_number=e.lineno) from e
        return compiled, func_name

    def evaluate_sync(
        self,
        code: str,
        display_name: Optional[str] = None,
        filename: Optional[str] = None,
        line_number: int = 1,
        variables: Optional[dict[str, Any]] = None,
        extra: Optional[dict[str, Any]] = None,
    ) -> Any:
        """Run a code block to completion without suspending."""
        function = self._load(code, display_name, filename, line_number, variables, extra, is_sync=True)
        try:
            return function()
        except Exception as e:
            failure = self._surface(e, filename)
            if failure is e:
                raise
            raise failure from e

    async def evaluate_async(
        self,
        code: str,
        display_name: Optional[str] = None,
        filename: Optional[str] = None,
        line_number: int = 1,
        variables: Optional[dict[str, Any]] = None,
        extra: Optional[dict[str, Any]] = None,
    ) -> Any:
        """Run a code block as a coroutine; the block may await."""
        function = self._load(code, display_name, filename, line_number, variables, extra, is_sync=False)
        try:
            return await function()
        except Exception as e:
            failure = self._surface(e, filename)
            if failure is e:
                raise
            raise failure from e

    def _load(self, code, display_name, filename, line_number, variables, extra, is_sync):
        try:
            compiled, func_name = self.compile_block(code, display_name, line_number, is_sync)
        except ExecutionFailure as e:
            e.filename = filename
            raise
        namespace = self.build_namespace(variables, extra)
        exec(compiled, namespace)
        return namespace[func_name]

    def _surface(self, error: Exception, filename: Optional[str]) -> ExecutionFailure:
        """Failure carrying the test-file line the error was raised from."""
        line_number = None
        for frame in traceback.extract_tb(error.__traceback__):
            if frame.filename == _CODE_BLOCK_FILENAME:
                line_number = frame.lineno

        if isinstance(error, ExecutionFailure):
            failure = error
        else:
            message = str(error) or type(error).__name__
            failure = ExecutionFailure(message, continue_=bool(getattr(error, "continue_", False)))

        if line_number is not None:
            failure.line_number = line_number
        if failure.filename is None:
            failure.filename = filename

        logger.debug(
            "Code block raised",
            error_type=type(error).__name__,
            filename=failure.filename,
            line_number=failure.line_number,
        )
        return failure
