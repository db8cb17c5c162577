"""Step trace model - the ordered record of an agent run."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel

from buildgate.models.enums import StepOutcome, ToolName


class StepTraceEntry(BaseModel):
    """One executed step. Entries are append-only and totally ordered by ``seq``."""

    seq: int
    tool_invoked: Optional[str] = None
    input: Optional[dict[str, Any]] = None
    output: Optional[str] = None
    outcome: StepOutcome
    call_id: Optional[str] = None
    created_at: datetime


def files_from_trace(entries: list[StepTraceEntry]) -> dict[str, str]:
    """Rebuild the generated file mapping from successful write_file steps (last write wins)."""
    files: dict[str, str] = {}
    for entry in entries:
        if entry.tool_invoked != ToolName.WRITE_FILE.value or entry.outcome != StepOutcome.OK:
            continue
        args = entry.input or {}
        path = args.get("path")
        if isinstance(path, str) and path:
            files[path] = str(args.get("content", ""))
    return files
