"""BuildGate data models."""

from buildgate.models.enums import (
    FailureReason,
    JobStatus,
    Plan,
    StepErrorKind,
    StepOutcome,
    ToolName,
)
from buildgate.models.job import Job, TriggerEvent
from buildgate.models.lease import SandboxLease
from buildgate.models.quota import QuotaDecision, QuotaRecord
from buildgate.models.request import GenerationRequest
from buildgate.models.result import JobResult
from buildgate.models.steps import (
    Continue,
    Done,
    FinalOutput,
    StepError,
    StepResult,
    ToolCall,
    ToolOutcome,
)
from buildgate.models.trace import StepTraceEntry, files_from_trace

__all__ = [
    "Continue",
    "Done",
    "FailureReason",
    "FinalOutput",
    "GenerationRequest",
    "Job",
    "JobResult",
    "JobStatus",
    "Plan",
    "QuotaDecision",
    "QuotaRecord",
    "SandboxLease",
    "StepError",
    "StepErrorKind",
    "StepOutcome",
    "StepResult",
    "StepTraceEntry",
    "ToolCall",
    "ToolName",
    "ToolOutcome",
    "TriggerEvent",
    "files_from_trace",
]
