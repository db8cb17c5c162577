"""Agent step runner - asks the model for the next action of a job."""

import json
import logging
import re
from typing import Any

from buildgate.config import settings
from buildgate.integrations.circuit_breaker import CircuitBreakerOpen
from buildgate.integrations.model_client import ModelClient, ModelError, ModelResponse
from buildgate.models import (
    Continue,
    Done,
    FinalOutput,
    SandboxLease,
    StepError,
    StepErrorKind,
    StepOutcome,
    StepResult,
    StepTraceEntry,
    ToolCall,
    ToolName,
)
from buildgate.observability.metrics import metrics

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """\
You are an expert full-stack engineer. You build small, working web applications \
inside a Linux sandbox from a single description written by the user.

Work in small steps using the tools provided. Call exactly one tool per turn and \
wait for its result. Write complete files, never fragments. Install dependencies \
and check your work with run_terminal_command. The app must listen on port \
{preview_port} so it can be previewed.

You have roughly {minutes_left} minutes of sandbox time left.

When the app is finished, stop calling tools and reply with a JSON object only:
{{"title": "<short app title>", "summary": "<what you built and how to use it>"}}
"""

TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": ToolName.READ_FILE.value,
        "description": "Read a UTF-8 text file from the sandbox.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path, relative to the project root"},
            },
            "required": ["path"],
        },
    },
    {
        "name": ToolName.WRITE_FILE.value,
        "description": "Create or overwrite a file in the sandbox with the given content.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path, relative to the project root"},
                "content": {"type": "string", "description": "Complete file content"},
            },
            "required": ["path", "content"],
        },
    },
    {
        "name": ToolName.RUN_TERMINAL_COMMAND.value,
        "description": (
            "Run a shell command in the project root and return its exit code, stdout and stderr. "
            "Use background processes (e.g. `npm run dev &`) for servers."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Shell command to run"},
            },
            "required": ["command"],
        },
    },
    {
        "name": ToolName.LIST_FILES.value,
        "description": "List the entries of a directory in the sandbox. Directories end with '/'.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory path, defaults to the project root"},
            },
        },
    },
]

CONTINUE_PROMPT = "Continue."
MAX_TITLE_CHARS = 120

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


class AgentStepRunner:
    """
    Produces the next step for a job from its goal and trace so far.

    Stateless: the whole conversation is rebuilt from the trace each call,
    so a recovered job continues exactly where its trace ends.
    """

    def __init__(
        self,
        model: ModelClient,
        max_steps: int | None = None,
        system_prompt: str = SYSTEM_PROMPT,
    ):
        self.model = model
        self.max_steps = max_steps or settings.max_agent_steps
        self.system_prompt = system_prompt

    async def run_step(
        self,
        lease: SandboxLease,
        trace: list[StepTraceEntry],
        goal: str,
    ) -> StepResult:
        """Return the next ToolCall, Continue, Done, or a StepError that ends the job."""
        if len(trace) >= self.max_steps:
            metrics.inc_counter("steps.budget_exceeded")
            return StepError(
                kind=StepErrorKind.STEP_BUDGET_EXCEEDED,
                detail=f"step budget of {self.max_steps} exhausted",
            )

        system = self.system_prompt.format(
            preview_port=settings.sandbox_preview_port,
            minutes_left=max(0, int(lease.remaining_seconds() // 60)),
        )
        try:
            response = await self.model.create_message(
                system=system,
                messages=build_messages(goal, trace),
                tools=TOOL_DEFINITIONS,
            )
        except (ModelError, CircuitBreakerOpen) as e:
            logger.warning(f"Model step failed for job {lease.job_id}: {e}")
            return StepError(kind=StepErrorKind.MODEL_ERROR, detail=str(e))

        return interpret_response(response)


def build_messages(goal: str, trace: list[StepTraceEntry]) -> list[dict[str, Any]]:
    """Rebuild the model conversation from the goal and executed steps."""
    messages: list[dict[str, Any]] = [{"role": "user", "content": goal}]
    for entry in trace:
        if entry.tool_invoked:
            call_id = entry.call_id or f"step_{entry.seq}"
            messages.append(
                {
                    "role": "assistant",
                    "content": [
                        {
                            "type": "tool_use",
                            "id": call_id,
                            "name": entry.tool_invoked,
                            "input": entry.input or {},
                        }
                    ],
                }
            )
            messages.append(
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": call_id,
                            "content": entry.output or "(no output)",
                            "is_error": entry.outcome != StepOutcome.OK,
                        }
                    ],
                }
            )
        elif entry.outcome in (StepOutcome.CONTINUE, StepOutcome.DONE):
            messages.append({"role": "assistant", "content": entry.output or "(no output)"})
            messages.append({"role": "user", "content": CONTINUE_PROMPT})
    return messages


def interpret_response(response: ModelResponse) -> StepResult:
    """Classify one assistant turn."""
    text = "".join(
        block.get("text", "") for block in response.content if block.get("type") == "text"
    ).strip()
    tool_blocks = [block for block in response.content if block.get("type") == "tool_use"]

    if tool_blocks:
        block = tool_blocks[0]
        name = block.get("name")
        if name not in ToolName.permitted():
            metrics.inc_counter("steps.unknown_tool")
            return StepError(
                kind=StepErrorKind.UNKNOWN_TOOL,
                detail=f"model requested unknown tool {name!r}",
            )
        args = block.get("input") or {}
        if not isinstance(args, dict):
            return StepError(
                kind=StepErrorKind.MODEL_ERROR,
                detail=f"tool input for {name} is not an object",
            )
        return ToolCall(name=name, args=args, call_id=block.get("id"), text=text)

    if response.stop_reason == "max_tokens":
        return Continue(partial_output=text)

    if not text:
        return StepError(kind=StepErrorKind.MODEL_ERROR, detail="model returned an empty turn")

    return Done(final_output=parse_final_output(text), raw_text=text)


def parse_final_output(text: str) -> FinalOutput:
    """
    Extract the title and summary from the model's closing turn.

    Prefers a JSON object; otherwise the first line is the title and the
    whole text is the summary.
    """
    candidate = _CODE_FENCE.sub("", text).strip()
    start, end = candidate.find("{"), candidate.rfind("}")
    if start != -1 and end > start:
        try:
            data = json.loads(candidate[start : end + 1])
        except ValueError:
            data = None
        if isinstance(data, dict) and isinstance(data.get("title"), str):
            summary = data.get("summary")
            return FinalOutput(
                title=data["title"].strip()[:MAX_TITLE_CHARS],
                summary=summary.strip() if isinstance(summary, str) else "",
            )

    first_line = next((line for line in text.splitlines() if line.strip()), "")
    title = first_line.strip().lstrip("#").strip()[:MAX_TITLE_CHARS]
    return FinalOutput(title=title, summary=text)
