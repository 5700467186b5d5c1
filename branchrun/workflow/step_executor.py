"""Step executor — runs one step, with its hooks, against a variable scope.

Running a step means:

- Run the branch's before-every-step hooks
- Move the local-scope stack to the step's nesting level
- Bind function-call parameters, or apply direct {var}='value' assignments
- Evaluate the step's code block (or the code block of the function it calls)
- Classify the outcome (expected-fail, continue, pause-on-fail)
- Run the branch's after-every-step hooks

Errors never propagate out of run_step(); they are attributed to a file and
line and recorded on the step.
"""

import asyncio
import os
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from branchrun.app.config import EngineOptions
from branchrun.core.constants import FUNCTION_INPUT, STRING_LITERAL_WHOLE, VAR, VAR_WHOLE, StepDataMode, StepState
from branchrun.core.exceptions import (
    CircularVariableReference,
    ExecutionFailure,
    HookFailure,
    VariableTypeError,
    VariableUnresolved,
)
from branchrun.core.utils import canonicalize, is_primitive, log_value, strip_brackets, strip_quotes, unescape
from branchrun.workflow.branch import Branch
from branchrun.workflow.evaluator import CodeEvaluator
from branchrun.workflow.scope import UNSET, VariableScope
from branchrun.workflow.state import EngineState
from branchrun.workflow.step import Step, StepNode, VarBeingSet
from branchrun.workflow.tree import StepTree

logger = structlog.get_logger(__name__)


def _elapsed_ms(started: datetime, ended: datetime) -> float:
    return (ended - started).total_seconds() * 1000


def _as_text(value: Any) -> str:
    """Render an interpolated value the way it reads in step text."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _or_none(value: Any) -> Any:
    return None if value is UNSET else value


class StepExecutor:
    """Executes single steps and hooks for one engine."""

    def __init__(
        self,
        tree: StepTree,
        scope: VariableScope,
        state: EngineState,
        options: Optional[EngineOptions] = None,
    ):
        self.tree = tree
        self.scope = scope
        self.state = state
        self.options = options or EngineOptions.from_settings()
        self.evaluator = CodeEvaluator(self.accessors())

    @property
    def step_data_mode(self) -> StepDataMode:
        return StepDataMode(self.options.step_data_mode)

    # ─── Steps ────────────────────────────────────────────────

    async def run_step(self, step: Step, branch: Optional[Branch] = None, override_debug: bool = False) -> None:
        """Run one step, recording its outcome on step (and branch).

        Args:
            step: Step to run
            branch: Branch the step belongs to, defaults to a branch of just this step
            override_debug: Run the step even if it carries the debug modifier
        """
        if step.is_skipped:
            return

        node = self.tree.get_node(step)

        if self.tree.get_modifier(step, "is_debug") and not override_debug:
            self.state.set_pause(True)
            return

        if branch is None:
            branch = Branch([step])

        if self.options.console_output:
            logger.info("Step started", step=node.text, location=step.loc_string(self.tree.step_node_index))

        self.state.steps_ran.steps.append(step)
        step.reset_outcome()

        # Before-every-step hooks
        hook_failed = False
        for hook in branch.before_every_step:
            passed = await self.run_hook_step(hook, step, branch)
            if self.state.is_stopped:
                step.discard_run()
                return
            if not passed:
                hook_failed = True
                break

        if not hook_failed:
            completed = await self._run_body(step, node, branch)
            if not completed:
                return

        # After-every-step hooks
        for hook in branch.after_every_step:
            await self.run_hook_step(hook, step, branch)
            if self.state.is_stopped:
                return

        if self.options.console_output:
            logger.info(
                "Step finished",
                step=node.text,
                passed=step.is_passed,
                as_expected=step.as_expected,
                elapsed_ms=step.elapsed,
            )

        if self.options.pause_on_fail and (step.is_failed or step.as_expected is False):
            self.state.set_pause(True)

    async def _run_body(self, step: Step, node: StepNode, branch: Branch) -> bool:
        """Run the step itself and mark its outcome. False if a stop discarded the run."""
        step.time_started = datetime.now(timezone.utc)
        error: Optional[ExecutionFailure] = None
        in_code_block = False

        self._adjust_local_stack(step, branch)
        self.scope.clear_passed_in()

        try:
            if node.is_function_call:
                self._bind_parameters(step, node, branch)
            elif node.vars_being_set and not self.tree.has_code_block(step):
                for var in node.vars_being_set:
                    value = self.replace_vars(strip_quotes(var.value), step, branch)
                    self._set_var_being_set(var, value)
                    self.append_to_log(f"Setting {self._var_label(var)} to {log_value(value)}", step)

            if self.tree.has_code_block(step):
                if node.is_function_call:
                    self.scope.push_local()

                code_node = self._code_block_node(step)
                in_code_block = True
                value = await self.eval_code_block(
                    self.tree.get_code_block(step),
                    code_node.text,
                    code_node.filename,
                    self._line_offset(step),
                    step,
                    is_sync=not code_node.is_async,
                )
                in_code_block = False

                self.scope.set_global("prev", value)

                if len(node.vars_being_set) == 1:
                    var = node.vars_being_set[0]
                    if var.is_local and node.is_function_call:
                        self.scope.set_local_on_stack(var.name, value)
                    else:
                        self._set_var_being_set(var, value)
                    self.append_to_log(f"Setting {self._var_label(var)} to {log_value(value)}", step)
        except Exception as e:
            if not self.state.is_stopped:
                error = self.fill_error_from_step(e, step, in_code_block)
                if self.options.output_errors:
                    logger.warning(
                        "Step failed",
                        step=node.text,
                        error=error.message,
                        filename=error.filename,
                        line_number=error.line_number,
                    )

        if self.state.is_stopped:
            step.discard_run()
            return False

        step.time_ended = datetime.now(timezone.utc)
        step.elapsed = _elapsed_ms(step.time_started, step.time_ended)

        if self.tree.get_modifier(step, "is_expected_fail"):
            if error is not None:
                state, as_expected = StepState.PASS, True
            else:
                state, as_expected = StepState.FAIL, False
                error = ExecutionFailure(
                    "This step passed, but it was expected to fail (#)",
                    filename=node.filename,
                    line_number=node.line_number,
                )
        elif error is not None:
            state, as_expected = StepState.FAIL, False
        else:
            state, as_expected = StepState.PASS, True

        failed = state == StepState.FAIL
        pause_on_fail = self.options.pause_on_fail
        finalize_now = failed and not pause_on_fail and not (error is not None and error.continue_)
        defer_finalize = pause_on_fail and (failed or not as_expected)

        self.tree.mark_step(
            state, step, branch, error, finalize_now, as_expected, defer_finalize, self.step_data_mode
        )
        return True

    def _adjust_local_stack(self, step: Step, branch: Branch) -> None:
        """Push or pop local frames to match the change in nesting level from the previous step."""
        index = next((i for i, s in enumerate(branch.steps) if s is step), -1)
        if index < 1:
            return
        prev = branch.steps[index - 1]
        prev_node = self.tree.get_node(prev)
        # a function call with a code block pushed its own frame when it ran
        prev_pushed = prev_node.is_function_call and self.tree.has_code_block(prev)

        if step.level > prev.level:
            if not prev_pushed:
                self.scope.push_local()
        elif step.level < prev.level:
            for _ in range(prev.level - step.level):
                self.scope.pop_local()
            if prev_pushed:
                self.scope.pop_local()
        elif prev_pushed:
            self.scope.pop_local()

    def _bind_parameters(self, step: Step, node: StepNode, branch: Branch) -> None:
        """Bind call-site arguments to the {param}/{{param}} placeholders of the declaration."""
        decl = self.tree.get_declaration(step)
        if decl is None:
            raise ExecutionFailure(f"No function declaration found for `{node.text}`")

        params = VAR.findall(decl.text)
        if not params:
            return

        inputs = FUNCTION_INPUT.findall(node.text)
        if node.vars_being_set:
            # the first match is the {var} the return value is assigned to
            inputs = inputs[1:]

        for i, param in enumerate(params):
            if i >= len(inputs):
                raise ExecutionFailure(f"Function call is missing a value for {param}")
            arg = inputs[i].strip()
            name = strip_brackets(param)

            if STRING_LITERAL_WHOLE.match(arg):
                value = self.replace_vars(strip_quotes(arg), step, branch)
            elif VAR_WHOLE.match(arg):
                value = self.find_var_value(strip_brackets(arg), arg.startswith("{{"), step, branch)
            else:
                value = arg

            if param.startswith("{{"):
                self.scope.set_local_passed_in(name, value)
            else:
                self.scope.set_global(name, value)
            self.append_to_log(f"Function parameter {param} is {log_value(value)}", step)

    def _set_var_being_set(self, var: VarBeingSet, value: Any) -> None:
        if var.is_local:
            self.scope.set_local(var.name, value)
        else:
            self.scope.set_global(var.name, value)

    @staticmethod
    def _var_label(var: VarBeingSet) -> str:
        return f"{{{{{var.name}}}}}" if var.is_local else f"{{{var.name}}}"

    def _code_block_node(self, step: Step) -> StepNode:
        """The node whose code block runs for this step: itself, or the function it calls."""
        node = self.tree.get_node(step)
        if node.has_code_block():
            return node
        return self.tree.get_declaration(step) or node

    def _line_offset(self, step: Step) -> Optional[int]:
        """Line the step's code block starts on, in the file it was written in."""
        node = self.tree.get_node(step)
        decl = self.tree.get_declaration(step)
        if node.is_function_call and not node.is_hook and decl is not None:
            return decl.line_number
        return node.line_number

    # ─── Hooks ────────────────────────────────────────────────

    async def run_hook_step(
        self,
        hook: Step,
        step_to_get_error: Optional[Step] = None,
        branch_to_get_error: Optional[Branch] = None,
    ) -> bool:
        """Run a hook's code block.

        A failure is attributed to step_to_get_error if given (and then also
        fails branch_to_get_error), otherwise to branch_to_get_error. An
        error already recorded on the target is never overwritten.

        Returns:
            True if the hook passed (or the engine was stopped while it ran)
        """
        node = self.tree.get_node(hook)
        try:
            await self.eval_code_block(
                self.tree.get_code_block(hook),
                node.text,
                node.filename,
                node.line_number,
                step_to_get_error if step_to_get_error is not None else branch_to_get_error,
                is_sync=not node.is_async,
            )
        except Exception as e:
            if self.state.is_stopped:
                return True

            failure = self.fill_error_from_step(e, hook, in_code_block=True)
            error = HookFailure(
                failure.message,
                filename=failure.filename,
                line_number=failure.line_number,
                continue_=failure.continue_,
            )
            error.__cause__ = e

            if self.options.output_errors:
                logger.warning(
                    "Hook failed",
                    hook=node.text,
                    error=error.message,
                    filename=error.filename,
                    line_number=error.line_number,
                )

            if step_to_get_error is not None:
                self.tree.mark_hook_step(
                    StepState.FAIL,
                    step_to_get_error,
                    None if step_to_get_error.error is not None else error,
                )
                if branch_to_get_error is not None:
                    branch_to_get_error.mark_branch(StepState.FAIL, None, self.step_data_mode)
            elif branch_to_get_error is not None:
                branch_to_get_error.mark_branch(
                    StepState.FAIL,
                    None if branch_to_get_error.error is not None else error,
                    self.step_data_mode,
                )
            return False

        return True

    # ─── Variables ────────────────────────────────────────────

    def replace_vars(
        self,
        text: str,
        step: Optional[Step] = None,
        branch: Optional[Branch] = None,
        look_anywhere: bool = False,
        depth: int = 0,
    ) -> str:
        """Unescape text and substitute every {var} and {{var}} in it.

        Raises:
            VariableUnresolved: A variable is never set
            VariableTypeError: A variable is not a string, boolean or number
            CircularVariableReference: Variables refer to each other in a loop
        """
        if depth > self.options.max_var_depth:
            raise CircularVariableReference("Infinite loop detected amongst variable references")

        text = unescape(text)
        for match in VAR.findall(text):
            name = strip_brackets(match)
            value = self.find_var_value(name, match.startswith("{{"), step, branch, look_anywhere, depth)
            if not is_primitive(value):
                raise VariableTypeError(f"The variable {match} must be set to a string, boolean or number")
            text = text.replace(match, _as_text(value), 1)
        return text

    def find_var_value(
        self,
        name: str,
        is_local: bool,
        step: Optional[Step] = None,
        branch: Optional[Branch] = None,
        look_anywhere: bool = False,
        depth: int = 0,
    ) -> Any:
        """Current value of a variable, or the value a later step in the branch gives it.

        A name ending in ':' (e.g. {x:}) skips the current value and always
        looks ahead.
        """
        lookahead_only = name.endswith(":")
        label = f"{{{{{name}}}}}" if is_local else f"{{{name}}}"
        name = name.rstrip(":").strip()

        if not lookahead_only or look_anywhere:
            value = self.scope.get_local_effective(name) if is_local else self.scope.get_global(name)
            if value is not UNSET:
                return value

        step = step or self.state.curr_step
        if step is None:
            raise VariableUnresolved(f"The variable {label} is never set, but is needed for this step")
        if branch is None or not any(s is step for s in branch.steps):
            branch = self.state.curr_branch
        if branch is None or not any(s is step for s in branch.steps):
            branch = Branch([step])

        start = next(i for i, s in enumerate(branch.steps) if s is step)
        canonical = canonicalize(name)

        for later in branch.steps[start:]:
            if is_local and later.level < step.level:
                break
            later_node = self.tree.get_node(later)
            for var in later_node.vars_being_set:
                if canonicalize(var.name) != canonical or var.is_local != is_local:
                    continue

                if self.tree.has_code_block(later):
                    code_node = self._code_block_node(later)
                    try:
                        value = self.eval_code_block_sync(
                            self.tree.get_code_block(later),
                            code_node.text,
                            code_node.filename,
                            self._line_offset(later),
                            step,
                        )
                    except RecursionError as e:
                        raise CircularVariableReference(
                            "Infinite loop detected amongst variable references"
                        ) from e
                else:
                    value = strip_quotes(var.value)

                if isinstance(value, str):
                    try:
                        value = self.replace_vars(value, step, branch, True, depth + 1)
                    except RecursionError as e:
                        raise CircularVariableReference(
                            "Infinite loop detected amongst variable references"
                        ) from e

                self.append_to_log(
                    f"The value of variable {label} is being set by a later step at "
                    f"{later_node.filename}:{later_node.line_number}",
                    step,
                )
                logger.debug("Variable resolved by lookahead", variable=label, step_id=later.id)
                return value

        raise VariableUnresolved(f"The variable {label} is never set, but is needed for this step")

    # ─── Code blocks ──────────────────────────────────────────

    async def eval_code_block(
        self,
        code: str,
        display_name: Optional[str] = None,
        filename: Optional[str] = None,
        line_number: Optional[int] = None,
        log_here: Any = None,
        is_sync: bool = False,
    ) -> Any:
        """Evaluate a code block against the currently bound variables.

        Args:
            code: Python function body
            display_name: Text of the step, names the compiled function
            filename: File the block was written in
            line_number: Line the block starts on
            log_here: Step or branch that log() calls append to
            is_sync: Run without allowing await
        """
        if not code:
            return None
        variables = self.scope.visible_variables()
        extra = self._extras(filename, log_here)
        if is_sync:
            return self.evaluator.evaluate_sync(code, display_name, filename, line_number or 1, variables, extra)
        return await self.evaluator.evaluate_async(code, display_name, filename, line_number or 1, variables, extra)

    def eval_code_block_sync(
        self,
        code: str,
        display_name: Optional[str] = None,
        filename: Optional[str] = None,
        line_number: Optional[int] = None,
        log_here: Any = None,
    ) -> Any:
        """Same as eval_code_block(), for callers that cannot await (variable lookahead)."""
        if not code:
            return None
        variables = self.scope.visible_variables()
        extra = self._extras(filename, log_here)
        return self.evaluator.evaluate_sync(code, display_name, filename, line_number or 1, variables, extra)

    def accessors(self) -> dict[str, Any]:
        """Functions every code block can call to read and write variables."""
        scope = self.scope

        def get_persistent(name):
            return _or_none(scope.get_persistent(name))

        def get_global(name):
            return _or_none(scope.get_global(name))

        def get_local(name):
            return _or_none(scope.get_local_effective(name))

        def p(name, value=UNSET):
            return get_persistent(name) if value is UNSET else scope.set_persistent(name, value)

        def g(name, value=UNSET):
            return get_global(name) if value is UNSET else scope.set_global(name, value)

        def l(name, value=UNSET):  # noqa: E741
            return get_local(name) if value is UNSET else scope.set_local(name, value)

        def get_curr_step_node():
            if self.state.curr_step is None:
                return None
            return self.tree.get_node(self.state.curr_step)

        return {
            "get_persistent": get_persistent,
            "set_persistent": scope.set_persistent,
            "get_global": get_global,
            "set_global": scope.set_global,
            "get_local": get_local,
            "set_local": scope.set_local,
            "p": p,
            "g": g,
            "l": l,
            "get_curr_step_node": get_curr_step_node,
            "sleep": asyncio.sleep,
        }

    def _extras(self, filename: Optional[str], log_here: Any) -> dict[str, Any]:
        def log(text):
            self.append_to_log(str(text), log_here)

        def file_dir():
            return os.path.dirname(os.path.abspath(filename)) if filename else os.getcwd()

        return {"log": log, "file_dir": file_dir}

    # ─── Errors and logging ───────────────────────────────────

    def fill_error_from_step(self, error: BaseException, step: Step, in_code_block: bool = False) -> ExecutionFailure:
        """Attribute error to the file and line it belongs to.

        The step's own location by default. A failure inside the code block of
        a called function points at the function declaration, and a failure
        inside a code block points at the exact line within it.
        """
        if isinstance(error, ExecutionFailure):
            failure = error
        else:
            failure = ExecutionFailure(
                str(error) or type(error).__name__,
                continue_=bool(getattr(error, "continue_", False)),
            )
            failure.__cause__ = error

        code_line = failure.line_number if in_code_block else None
        node = self.tree.get_node(step)

        failure.filename = node.filename
        failure.line_number = node.line_number

        if in_code_block and node.is_function_call and not node.is_hook and not node.is_packaged:
            decl = self.tree.get_declaration(step)
            if decl is not None:
                failure.filename = decl.filename
                failure.line_number = decl.line_number

        if in_code_block and not node.is_packaged and code_line is not None:
            failure.line_number = code_line

        return failure

    def append_to_log(self, text: str, target: Any = None) -> None:
        """Append text to a step's or branch's log. Ignored once the engine is stopped."""
        if self.state.is_stopped or target is None:
            return
        target.append_to_log(text)
        if self.options.console_output:
            logger.info("Step log", text=text)
