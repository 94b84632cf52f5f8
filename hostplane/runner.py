"""ProcessRunner — bounded shell command execution.

Install, build and custom commands all go through a runner. Exceeding
the wall-clock bound kills the child's whole process group and returns
a timed-out result; a non-zero exit is a normal result as well.
Managers receive the runner as a constructor argument so tests can hand
in a fake.

Usage:
    runner = ProcessRunner(use_sudo=False)
    result = await runner.run("npm install", cwd="/srv/app", timeout=300)
    if not result.success:
        print(result.exit_code, result.stderr)
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from typing import Optional

from pydantic import BaseModel

_logger = logging.getLogger(__name__)


class CommandResult(BaseModel):
    success: bool
    exit_code: Optional[int] = None
    output: str = ""
    stderr: str = ""
    timed_out: bool = False
    duration_ms: float = 0.0
    error: str = ""


class ProcessRunner:
    """Runs shell commands as child processes."""

    def __init__(self, use_sudo: bool = True, max_output_bytes: int = 1024 * 1024) -> None:
        self._use_sudo = use_sudo
        self._max_output = max_output_bytes

    def build_argv(self, command: str | list[str], user: str | None, shell: bool) -> list[str]:
        if shell:
            argv = ["bash", "-c", command if isinstance(command, str) else " ".join(command)]
        else:
            argv = list(command) if isinstance(command, list) else command.split()
        if user and self._use_sudo:
            argv = ["sudo", "-u", user, *argv]
        return argv

    def _decode(self, data: bytes | None) -> str:
        if not data:
            return ""
        if len(data) > self._max_output:
            data = data[-self._max_output:]
        return data.decode("utf-8", errors="replace")

    async def run(
        self,
        command: str | list[str],
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout: float = 300.0,
        user: str | None = None,
        shell: bool = True,
    ) -> CommandResult:
        argv = self.build_argv(command, user, shell)
        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env={**os.environ, **(env or {})},
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            _logger.warning("Could not spawn %s: %s", argv[0], e)
            return CommandResult(
                success=False,
                error=f"Failed to start command: {e}",
                duration_ms=(time.monotonic() - start) * 1000,
            )

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill_group(proc, argv)
            await proc.wait()
            _logger.warning("Command timed out after %ss: %s", timeout, command)
            return CommandResult(
                success=False,
                exit_code=proc.returncode,
                timed_out=True,
                error=f"Command timed out after {timeout:g}s",
                duration_ms=(time.monotonic() - start) * 1000,
            )

        elapsed = (time.monotonic() - start) * 1000
        result = CommandResult(
            success=proc.returncode == 0,
            exit_code=proc.returncode,
            output=self._decode(stdout),
            stderr=self._decode(stderr),
            duration_ms=elapsed,
        )
        if not result.success:
            result.error = f"Command exited with code {proc.returncode}"
        return result

    async def _kill_group(self, proc: asyncio.subprocess.Process, argv: list[str]) -> None:
        """SIGKILL the child's whole session so grandchildren die with it."""
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        except PermissionError:
            pass
        if argv[0] == "sudo":
            # Members running as another user are out of our reach
            await self.run_privileged(["kill", "-KILL", "--", f"-{proc.pid}"], timeout=10)

    async def run_privileged(self, argv: list[str], timeout: float = 60.0) -> CommandResult:
        """Run an argv as root (through sudo when enabled), without a shell."""
        cmd = ["sudo", *argv] if self._use_sudo else list(argv)
        return await self.run(cmd, timeout=timeout, shell=False)
