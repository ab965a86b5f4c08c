"""
Command runner.

Runs a job's shell command in a subprocess with a hard timeout and
captures its output. Never raises for a failing command: every outcome,
including timeouts and spawn errors, comes back as a CommandResult.

Output is captured into temporary files rather than pipes. A descendant
that escapes the command's process group (``setsid``, daemons) may keep
writing to them, but it can never keep the worker waiting.
"""

import asyncio
import contextlib
import logging
import os
import signal
import tempfile
import time
from typing import BinaryIO

from queuectl.types.job import CommandResult

logger = logging.getLogger(__name__)

# Captured output stored on results is truncated to this many characters
MAX_OUTPUT_CHARS = 4000

# Upper bound on bytes read back per stream, enough for MAX_OUTPUT_CHARS of UTF-8
_MAX_OUTPUT_BYTES = MAX_OUTPUT_CHARS * 4

# Seconds to wait for a killed process to be reaped
KILL_GRACE_SECONDS = 2.0


def _read_tail(capture: BinaryIO) -> str:
    size = os.fstat(capture.fileno()).st_size
    capture.seek(max(0, size - _MAX_OUTPUT_BYTES))
    data = capture.read()
    if not data:
        return ""
    return data.decode("utf-8", errors="replace")[-MAX_OUTPUT_CHARS:]


class CommandRunner:
    """Executes shell commands for workers."""

    def __init__(self, shell_executable: str | None = None):
        """
        Args:
            shell_executable: Shell to run commands with. Defaults to /bin/sh.
        """
        self.shell_executable = shell_executable

    async def run(self, command: str, timeout: float) -> CommandResult:
        """
        Run a command and wait for it to exit or time out.

        On timeout the command's whole process group is killed and whatever
        output it produced so far is kept on the result.

        Args:
            command: Shell command line.
            timeout: Seconds before the process is killed.

        Returns:
            CommandResult with exit status and captured output.
        """
        with tempfile.TemporaryFile() as out_file, tempfile.TemporaryFile() as err_file:
            return await self._run(command, timeout, out_file, err_file)

    async def _run(
        self,
        command: str,
        timeout: float,
        out_file: BinaryIO,
        err_file: BinaryIO,
    ) -> CommandResult:
        start_time = time.monotonic()

        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=out_file,
                stderr=err_file,
                executable=self.shell_executable,
                start_new_session=True,
            )
        except OSError as e:
            logger.warning(
                "Failed to start command",
                extra={"command": command, "error": str(e)}
            )
            return CommandResult(
                success=False,
                error=f"Failed to start command: {e}",
                duration_ms=(time.monotonic() - start_time) * 1000,
            )

        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill(process)
            return CommandResult(
                success=False,
                stdout=_read_tail(out_file),
                stderr=_read_tail(err_file),
                error=f"Command timed out after {timeout:g}s",
                exit_code=process.returncode,
                timed_out=True,
                duration_ms=(time.monotonic() - start_time) * 1000,
            )

        duration_ms = (time.monotonic() - start_time) * 1000
        out = _read_tail(out_file)
        err = _read_tail(err_file)

        if process.returncode == 0:
            return CommandResult(
                success=True,
                stdout=out,
                stderr=err,
                exit_code=0,
                duration_ms=duration_ms,
            )

        message = f"Command exited with code {process.returncode}"
        if err.strip():
            message = f"{message}: {err.strip()}"

        return CommandResult(
            success=False,
            stdout=out,
            stderr=err,
            error=message,
            exit_code=process.returncode,
            duration_ms=duration_ms,
        )

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        # the whole group, so backgrounded children die with the command
        with contextlib.suppress(ProcessLookupError):
            os.killpg(process.pid, signal.SIGKILL)

        try:
            await asyncio.wait_for(process.wait(), timeout=KILL_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.warning(
                "Killed command was not reaped in time",
                extra={"pid": process.pid}
            )
