"""Exceptions and the serialized error form used by the branch execution engine."""

import traceback
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class BranchRunError(Exception):
    """Base exception for the branch execution engine."""

    def __init__(self, message: str):
        """Initialize exception with message.

        Args:
            message: Exception message
        """
        self.message = message
        super().__init__(self.message)


class EngineStateError(BranchRunError):
    """Programmer error: the engine was asked to do something its state forbids."""


class ExecutionFailure(BranchRunError):
    """Failure raised while executing a step, hook or code block.

    Code blocks may raise it directly; ``continue_=True`` asks the engine not
    to end the branch on this failure.
    """

    def __init__(
        self,
        message: str,
        filename: Optional[str] = None,
        line_number: Optional[int] = None,
        continue_: bool = False,
    ):
        self.filename = filename
        self.line_number = line_number
        self.continue_ = continue_
        super().__init__(message)


class HookFailure(ExecutionFailure):
    """Failure raised inside a hook step."""


class VariableUnresolved(ExecutionFailure):
    """A referenced variable is never set in the branch."""


class VariableTypeError(ExecutionFailure):
    """A resolved variable is not a string, boolean or number."""


class CircularVariableReference(ExecutionFailure):
    """Variable interpolation recursed past the configured depth."""


class SerializedError(BaseModel):
    """Structured failure attached to a step or branch."""

    message: str = Field(description="Error message")
    stack: str = Field(default="", description="Formatted traceback text")
    filename: Optional[str] = Field(default=None, description="File the failure is attributed to")
    line_number: Optional[int] = Field(default=None, description="Line the failure is attributed to")
    continue_: bool = Field(default=False, alias="continue", description="Do not end the branch")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_exception(cls, error: BaseException) -> "SerializedError":
        """Build the serialized form of any raised exception."""
        if not isinstance(error, Exception):
            error = ExecutionFailure(
                f"A non-error was raised inside this step ({type(error).__name__}). "
                "Only Exception subclasses can be raised."
            )
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        return cls(
            message=str(message),
            stack=stack,
            filename=getattr(error, "filename", None),
            line_number=getattr(error, "line_number", None),
            continue_=bool(getattr(error, "continue_", False)),
        )

    def to_dict(self) -> dict:
        data = {
            "message": self.message,
            "stack": self.stack,
            "filename": self.filename,
            "line_number": self.line_number,
        }
        if self.continue_:
            data["continue"] = True
        return data
