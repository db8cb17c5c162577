"""BuildGate enumerations."""

from enum import Enum


class JobStatus(str, Enum):
    """Generation job lifecycle status."""

    PENDING = "pending"
    ADMITTED = "admitted"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @classmethod
    def terminal_states(cls) -> set["JobStatus"]:
        """Return terminal states."""
        return {cls.SUCCEEDED, cls.FAILED}

    def is_terminal(self) -> bool:
        """Check if status is terminal."""
        return self in self.terminal_states()


class Plan(str, Enum):
    """Pricing plan; only the quota allotment matters here."""

    FREE = "free"
    PRO = "pro"


class FailureReason(str, Enum):
    """Why a job ended in FAILED."""

    QUOTA_EXHAUSTED = "quota_exhausted"
    SANDBOX_UNAVAILABLE = "sandbox_unavailable"
    SANDBOX_QUOTA_EXCEEDED = "sandbox_quota_exceeded"
    UNKNOWN_TOOL = "unknown_tool"
    STEP_BUDGET_EXCEEDED = "step_budget_exceeded"
    MODEL_ERROR = "model_error"
    LEASE_EXPIRED = "lease_expired"
    JOB_TIMEOUT = "job_timeout"
    RECOVERY_TIMEOUT = "recovery_timeout"
    INTERNAL_ERROR = "internal_error"

    @property
    def user_message(self) -> str:
        """Human-readable message shown to the requester."""
        return _USER_MESSAGES.get(self, GENERIC_FAILURE_MESSAGE)


GENERIC_FAILURE_MESSAGE = "Something went wrong while generating your app. Please try again."

_USER_MESSAGES = {
    FailureReason.QUOTA_EXHAUSTED: (
        "You have used all of your generation credits for this period. "
        "Upgrade your plan or wait for your credits to renew."
    ),
    FailureReason.SANDBOX_UNAVAILABLE: (
        "We could not start a sandbox to run your app. Please try again in a few minutes."
    ),
}


class ToolName(str, Enum):
    """Tools the agent may invoke inside its sandbox."""

    READ_FILE = "read_file"
    WRITE_FILE = "write_file"
    RUN_TERMINAL_COMMAND = "run_terminal_command"
    LIST_FILES = "list_files"

    @classmethod
    def permitted(cls) -> set[str]:
        return {tool.value for tool in cls}


class StepOutcome(str, Enum):
    """Outcome recorded on a step trace entry."""

    OK = "ok"
    ERROR = "error"
    TIMEOUT = "timeout"
    CONTINUE = "continue"
    DONE = "done"


class StepErrorKind(str, Enum):
    """Fatal step-level errors reported by the step runner."""

    UNKNOWN_TOOL = "unknown_tool"
    STEP_BUDGET_EXCEEDED = "step_budget_exceeded"
    MODEL_ERROR = "model_error"

    def as_failure_reason(self) -> FailureReason:
        return FailureReason(self.value)
