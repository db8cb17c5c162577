"""Step results returned by the agent step runner."""

from typing import Any, Optional, Union

from pydantic import BaseModel, Field

from buildgate.models.enums import StepErrorKind, StepOutcome


class ToolCall(BaseModel):
    """The model asked for a tool to run in the sandbox."""

    name: str
    args: dict[str, Any] = Field(default_factory=dict)
    call_id: Optional[str] = None
    text: str = ""


class Continue(BaseModel):
    """The model produced partial output and needs another turn."""

    partial_output: str


class FinalOutput(BaseModel):
    title: str
    summary: str


class Done(BaseModel):
    """The model finished; the run can be finalized."""

    final_output: FinalOutput
    raw_text: str = ""


class StepError(BaseModel):
    """The step failed in a way that ends the job."""

    kind: StepErrorKind
    detail: str = ""


StepResult = Union[ToolCall, Continue, Done, StepError]


class ToolOutcome(BaseModel):
    """Result of executing one tool call against the sandbox."""

    output: str
    outcome: StepOutcome
