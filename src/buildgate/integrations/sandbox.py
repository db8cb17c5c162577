"""Remote sandbox providers.

The lease manager and tool executor only see ``SandboxProvider``; the
production implementation talks to E2B.
"""

import asyncio
import logging
import posixpath
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx
from e2b import CommandExitException, RateLimitException, SandboxException, TimeoutException
from e2b_code_interpreter import AsyncSandbox

logger = logging.getLogger(__name__)


class SandboxProviderError(Exception):
    """The provider failed; usually transient."""


class SandboxCapacityError(SandboxProviderError):
    """The provider refuses to create more sandboxes for this account."""


@dataclass
class SandboxHandle:
    """Reference to a created sandbox."""

    ref: str
    preview_url: Optional[str] = None


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int


class SandboxProvider(ABC):
    """Abstract remote execution environment."""

    @abstractmethod
    async def create(self, ttl_seconds: int, metadata: dict[str, str] | None = None) -> SandboxHandle:
        """Create a sandbox that the provider tears down after ``ttl_seconds``."""

    @abstractmethod
    async def kill(self, ref: str) -> None:
        """Tear the sandbox down. Unknown or already-dead sandboxes are not an error."""

    @abstractmethod
    async def read_file(self, ref: str, path: str) -> str:
        pass

    @abstractmethod
    async def write_file(self, ref: str, path: str, content: str) -> None:
        pass

    @abstractmethod
    async def list_files(self, ref: str, path: str) -> list[str]:
        pass

    @abstractmethod
    async def run_command(self, ref: str, command: str, timeout_seconds: float) -> CommandResult:
        pass


class E2BSandboxProvider(SandboxProvider):
    """
    E2B-backed sandboxes.

    Live ``AsyncSandbox`` handles are cached per process; a sandbox created by
    another process (or before a restart) is reconnected by id on first use.
    """

    def __init__(
        self,
        api_key: str | None = None,
        template: str | None = None,
        preview_port: int = 3000,
        workdir: str = "/home/user",
    ):
        self.api_key = api_key
        self.template = template
        self.preview_port = preview_port
        self.workdir = workdir
        self._sandboxes: dict[str, AsyncSandbox] = {}
        self._lock = asyncio.Lock()

    async def create(self, ttl_seconds: int, metadata: dict[str, str] | None = None) -> SandboxHandle:
        kwargs = {"timeout": ttl_seconds, "metadata": metadata or {}, "api_key": self.api_key}
        if self.template:
            kwargs["template"] = self.template
        try:
            sandbox = await AsyncSandbox.create(**kwargs)
        except RateLimitException as e:
            raise SandboxCapacityError(str(e)) from e
        except (SandboxException, TimeoutException, httpx.HTTPError) as e:
            raise SandboxProviderError(str(e)) from e

        async with self._lock:
            self._sandboxes[sandbox.sandbox_id] = sandbox
        preview_url = f"https://{sandbox.get_host(self.preview_port)}"
        logger.info(f"E2B sandbox {sandbox.sandbox_id} created (ttl={ttl_seconds}s)")
        return SandboxHandle(ref=sandbox.sandbox_id, preview_url=preview_url)

    async def kill(self, ref: str) -> None:
        async with self._lock:
            sandbox = self._sandboxes.pop(ref, None)
        try:
            if sandbox is not None:
                await sandbox.kill()
            else:
                await AsyncSandbox.kill(ref, api_key=self.api_key)
        except (SandboxException, TimeoutException, httpx.HTTPError) as e:
            raise SandboxProviderError(str(e)) from e

    async def read_file(self, ref: str, path: str) -> str:
        sandbox = await self._get(ref)
        try:
            return await sandbox.files.read(self._resolve(path))
        except SandboxException as e:
            raise SandboxProviderError(str(e)) from e

    async def write_file(self, ref: str, path: str, content: str) -> None:
        sandbox = await self._get(ref)
        try:
            await sandbox.files.write(self._resolve(path), content)
        except SandboxException as e:
            raise SandboxProviderError(str(e)) from e

    async def list_files(self, ref: str, path: str) -> list[str]:
        sandbox = await self._get(ref)
        try:
            entries = await sandbox.files.list(self._resolve(path))
        except SandboxException as e:
            raise SandboxProviderError(str(e)) from e
        names = []
        for entry in entries:
            kind = getattr(entry.type, "value", entry.type)
            names.append(f"{entry.name}/" if kind == "dir" else entry.name)
        return sorted(names)

    async def run_command(self, ref: str, command: str, timeout_seconds: float) -> CommandResult:
        sandbox = await self._get(ref)
        try:
            result = await sandbox.commands.run(command, cwd=self.workdir, timeout=timeout_seconds)
        except CommandExitException as e:
            return CommandResult(stdout=e.stdout, stderr=e.stderr, exit_code=e.exit_code)
        except (SandboxException, TimeoutException) as e:
            raise SandboxProviderError(str(e)) from e
        return CommandResult(stdout=result.stdout, stderr=result.stderr, exit_code=result.exit_code)

    async def _get(self, ref: str) -> AsyncSandbox:
        async with self._lock:
            sandbox = self._sandboxes.get(ref)
            if sandbox is None:
                try:
                    sandbox = await AsyncSandbox.connect(ref, api_key=self.api_key)
                except (SandboxException, TimeoutException, httpx.HTTPError) as e:
                    raise SandboxProviderError(f"cannot reach sandbox {ref}: {e}") from e
                self._sandboxes[ref] = sandbox
            return sandbox

    def _resolve(self, path: str) -> str:
        if posixpath.isabs(path):
            return path
        return posixpath.normpath(posixpath.join(self.workdir, path))
