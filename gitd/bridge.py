"""Bridge HTTP streams to the stdin/stdout of a git process.

DO NOT expose ``run_command`` to end users directly: the command and its
arguments must come from a fixed table, only the working directory is
derived from the request.
"""

import asyncio
import logging
import time
from typing import AsyncIterator, Awaitable, Callable, List

from gitd.metrics import (
    GIT_ACTIVE_COMMANDS,
    GIT_COMMAND_DURATION_SECONDS,
    GIT_COMMAND_FAILURES_TOTAL,
)
from gitd.utils import sanitize_path

logger = logging.getLogger("gitd.bridge")

DEFAULT_CHUNK_SIZE = 65536
# stderr lines kept for error reports
MAX_STDERR_LINES = 20


class GitCommandError(Exception):
    """Raised when a git process cannot be run to completion."""

    def __init__(self, command: str, message: str, returncode=None, stderr=""):
        """Initialize the error."""
        super().__init__(f"{command}: {message}")
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


async def run_command(
    cwd: str,
    command: str,
    args: List[str],
    body: AsyncIterator[bytes],
    write: Callable[[bytes], Awaitable[None]],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> int:
    """Run a command, feeding it the body and writing its output.

    The body is copied into the process stdin while stdout is copied to
    ``write``; both copies run concurrently so neither pipe can fill up and
    stall the other. If the coroutine is cancelled the process is killed.

    Args:
        cwd: Working directory of the process, sanitized again before use.
        command: Executable name, resolved through PATH.
        args: Command line arguments.
        body: Async iterator over the (decoded) request body, closed once
            the copy to stdin ends.
        write: Coroutine function receiving stdout chunks.
        chunk_size: Maximum size of a chunk read from stdout.

    Returns:
        The exit status of the process (always 0).

    Raises:
        GitCommandError: If the process cannot be spawned or exits non-zero.
    """
    cwd = sanitize_path(cwd)
    logger.debug(f"Running command {command} {args} in {cwd}")

    try:
        proc = await asyncio.create_subprocess_exec(
            command,
            *args,
            cwd=cwd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (OSError, ValueError) as e:
        logger.error(f"Failed to start {command} in {cwd}: {e}")
        GIT_COMMAND_FAILURES_TOTAL.labels(command=command, reason="spawn").inc()
        raise GitCommandError(command, f"failed to start: {e}") from e

    stderr_lines = []

    async def copy_body():
        try:
            async for chunk in body:
                if not chunk:
                    continue
                proc.stdin.write(chunk)
                await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            # the process stopped reading, its exit status tells why
            logger.warning(f"{command} closed its stdin early: {e}")
            GIT_COMMAND_FAILURES_TOTAL.labels(command=command, reason="pipe").inc()
        finally:
            if not proc.stdin.is_closing():
                proc.stdin.close()
            # stop an unfinished async generator so its cleanup runs now
            if hasattr(body, "aclose"):
                await body.aclose()

    async def copy_output():
        while True:
            chunk = await proc.stdout.read(chunk_size)
            if not chunk:
                break
            await write(chunk)

    async def collect_stderr():
        async for line in proc.stderr:
            line = line.decode("utf-8", errors="replace").rstrip()
            logger.debug(f"{command}: {line}")
            stderr_lines.append(line)
            if len(stderr_lines) > MAX_STDERR_LINES:
                stderr_lines.pop(0)

    start = time.monotonic()
    GIT_ACTIVE_COMMANDS.inc()
    tasks = [
        asyncio.ensure_future(copy_body()),
        asyncio.ensure_future(copy_output()),
        asyncio.ensure_future(collect_stderr()),
    ]
    try:
        await asyncio.gather(*tasks)
        returncode = await proc.wait()
    except (Exception, asyncio.CancelledError):
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if proc.returncode is None:
            logger.info(f"Killing {command} (pid {proc.pid})")
            proc.kill()
            await proc.wait()
        raise
    finally:
        GIT_ACTIVE_COMMANDS.dec()
        GIT_COMMAND_DURATION_SECONDS.labels(command=command).observe(
            time.monotonic() - start
        )

    if returncode != 0:
        stderr = "\n".join(stderr_lines)
        logger.error(f"{command} exited with status {returncode}: {stderr}")
        GIT_COMMAND_FAILURES_TOTAL.labels(command=command, reason="exit").inc()
        raise GitCommandError(
            command,
            f"exited with status {returncode}",
            returncode=returncode,
            stderr=stderr,
        )
    return returncode
