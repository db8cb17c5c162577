"""Sandbox tool executor - runs one agent tool call against a leased sandbox."""

import asyncio
import logging
from typing import Any

from buildgate.config import settings
from buildgate.engine.errors import LeaseExpired, SandboxOperationError
from buildgate.integrations.sandbox import SandboxProvider, SandboxProviderError
from buildgate.models import SandboxLease, StepOutcome, ToolCall, ToolName, ToolOutcome
from buildgate.observability.metrics import metrics

logger = logging.getLogger(__name__)


class SandboxToolExecutor:
    """
    Executes tool calls inside a sandbox.

    Each call is bounded by ``tool_call_timeout_seconds``. Tool failures
    (bad arguments, provider errors, non-zero exits, timeouts) are returned
    as outcomes for the agent to see; only a dead lease is raised.
    """

    def __init__(
        self,
        provider: SandboxProvider,
        timeout_seconds: float | None = None,
        max_output_chars: int | None = None,
    ):
        self.provider = provider
        self.timeout_seconds = timeout_seconds or settings.tool_call_timeout_seconds
        self.max_output_chars = max_output_chars or settings.tool_output_max_chars

    async def execute(self, lease: SandboxLease, call: ToolCall) -> ToolOutcome:
        """
        Run ``call`` in the lease's sandbox.

        Raises:
            LeaseExpired: lease is released or past its TTL; the sandbox is not touched
        """
        if not lease.is_alive():
            raise LeaseExpired(str(lease.lease_id), str(lease.job_id))

        try:
            with metrics.timer(f"tools.{call.name}_ms"):
                output = await asyncio.wait_for(
                    self._dispatch(lease.endpoint_ref, call),
                    timeout=self.timeout_seconds,
                )
            outcome = StepOutcome.OK
        except asyncio.TimeoutError:
            output = f"{call.name} timed out after {self.timeout_seconds:g}s"
            outcome = StepOutcome.TIMEOUT
        except _CommandFailed as e:
            output = e.output
            outcome = StepOutcome.ERROR
        except (SandboxOperationError, SandboxProviderError) as e:
            output = str(e)
            outcome = StepOutcome.ERROR

        metrics.inc_counter(f"tools.{outcome.value}")
        if outcome != StepOutcome.OK:
            logger.info(f"Tool {call.name} for job {lease.job_id} ended {outcome.value}")
        return ToolOutcome(output=self._truncate(output), outcome=outcome)

    async def restore_files(self, lease: SandboxLease, files: dict[str, str]) -> None:
        """Write previously generated files into a fresh sandbox (job recovery)."""
        if not lease.is_alive():
            raise LeaseExpired(str(lease.lease_id), str(lease.job_id))
        for path, content in files.items():
            try:
                await asyncio.wait_for(
                    self.provider.write_file(lease.endpoint_ref, path, content),
                    timeout=self.timeout_seconds,
                )
            except (asyncio.TimeoutError, SandboxProviderError) as e:
                raise SandboxOperationError("restore_files", f"{path}: {e}") from e
        logger.info(f"Restored {len(files)} files into lease {lease.lease_id}")

    async def _dispatch(self, ref: str, call: ToolCall) -> str:
        args = call.args
        if call.name == ToolName.READ_FILE:
            return await self.provider.read_file(ref, _require_str(call.name, args, "path"))

        if call.name == ToolName.WRITE_FILE:
            path = _require_str(call.name, args, "path")
            content = args.get("content")
            if not isinstance(content, str):
                raise SandboxOperationError(call.name, "'content' must be a string")
            await self.provider.write_file(ref, path, content)
            return f"Wrote {len(content)} characters to {path}"

        if call.name == ToolName.RUN_TERMINAL_COMMAND:
            command = _require_str(call.name, args, "command")
            result = await self.provider.run_command(ref, command, self.timeout_seconds)
            output = _format_command_output(result.exit_code, result.stdout, result.stderr)
            if result.exit_code != 0:
                raise _CommandFailed(output)
            return output

        if call.name == ToolName.LIST_FILES:
            path = args.get("path") or "."
            if not isinstance(path, str):
                raise SandboxOperationError(call.name, "'path' must be a string")
            entries = await self.provider.list_files(ref, path)
            return "\n".join(entries) if entries else "(empty directory)"

        raise SandboxOperationError(call.name, "tool is not available in this sandbox")

    def _truncate(self, output: str) -> str:
        if len(output) <= self.max_output_chars:
            return output
        dropped = len(output) - self.max_output_chars
        return f"{output[: self.max_output_chars]}\n... [truncated {dropped} characters]"


class _CommandFailed(Exception):
    def __init__(self, output: str):
        super().__init__(output)
        self.output = output


def _require_str(tool: str, args: dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value:
        raise SandboxOperationError(tool, f"missing required argument '{key}'")
    return value


def _format_command_output(exit_code: int, stdout: str, stderr: str) -> str:
    parts = [f"exit_code: {exit_code}"]
    if stdout:
        parts.append(f"stdout:\n{stdout}")
    if stderr:
        parts.append(f"stderr:\n{stderr}")
    return "\n".join(parts)
