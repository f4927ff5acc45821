"""
Launching and monitoring of the process under test.

The launcher spawns the external run command, logs its output, and resolves
a ready future the first time a line of stdout matches the ready pattern. It
never decides when the process should stop: after readiness the caller runs
its workload and signals shutdown itself (see ``ProcessHandle.send_signal``).
"""

import asyncio
import os
import re
import signal
from typing import AsyncIterator, Callable, List, Optional, Sequence, Union

from .logging_utils import get_logger
from .error_handling import LaunchFailure, ProcessExitedBeforeReady, graceful_operation

logger = get_logger(__name__)

# Upper bound for a single line of output from the monitored process.
STREAM_LIMIT = 1024 * 1024
READ_CHUNK = 64 * 1024


class ProcessHandle:
    """
    A running monitored process.

    ``ready`` is a future that resolves to the first matching stdout line, or
    fails with ``ProcessExitedBeforeReady`` if the process exits first. The
    coverage snapshot only exists after the process has been signalled, so
    callers must signal shutdown before waiting for it.
    """

    def __init__(self, process: asyncio.subprocess.Process, command: str, args: Sequence[str],
                 ready_pattern: re.Pattern, pid_file: Optional[str] = None):
        self.process = process
        self.command = command
        self.args = list(args)
        self.ready_pattern = ready_pattern
        self.pid_file = pid_file
        self.pid_file_written = False
        self.ready: asyncio.Future = asyncio.get_running_loop().create_future()
        self._stopping = False
        self._tasks: List[asyncio.Task] = []

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    async def wait_ready(self, timeout: Optional[float] = None) -> str:
        """
        Wait until the ready pattern has matched.

        Args:
            timeout: Seconds to wait, None to wait for as long as the process runs

        Returns:
            str: The stdout line that matched

        Raises:
            ProcessExitedBeforeReady: If the process ended without matching
            asyncio.TimeoutError: If ``timeout`` elapsed first
        """
        return await asyncio.wait_for(asyncio.shield(self.ready), timeout)

    def send_signal(self, sig: int = signal.SIGINT) -> None:
        """Signal the process; after this no further output is matched."""
        self._stopping = True
        if self.process.returncode is None:
            logger.info("Signalling monitored process", pid=self.pid, signal=signal.Signals(sig).name)
            try:
                self.process.send_signal(sig)
            except ProcessLookupError:
                logger.debug("Monitored process already gone", pid=self.pid)

    def terminate(self) -> None:
        self.send_signal(signal.SIGTERM)

    async def wait(self) -> int:
        """Wait for the process to exit and its output to be drained."""
        returncode = await self.process.wait()
        if self._tasks:
            await asyncio.wait(self._tasks)
        return returncode

    async def close(self, timeout: float = 5.0) -> Optional[int]:
        """
        Make sure the process is gone, killing it if it outlives ``timeout``.

        Returns:
            Optional[int]: The process return code
        """
        if self.process.returncode is None:
            try:
                return await asyncio.wait_for(self.wait(), timeout)
            except asyncio.TimeoutError:
                logger.warning("Monitored process did not exit, killing it",
                               pid=self.pid, timeout_seconds=timeout)
                self._stopping = True
                self.process.kill()
        return await self.wait()


def _decode(line: bytes) -> str:
    return line.decode('utf-8', errors='replace').rstrip('\r\n')


async def _iter_lines(stream: asyncio.StreamReader, pid: int, stream_name: str,
                      limit: int = STREAM_LIMIT) -> AsyncIterator[str]:
    """
    Yield the decoded lines of ``stream`` until EOF.

    A line longer than ``limit`` bytes is yielded truncated to ``limit`` and
    the rest of it is dropped, so reading never stalls on oversized output.
    """
    buffer = bytearray()
    discarding = False

    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            break
        buffer.extend(chunk)

        while True:
            end = buffer.find(b'\n')
            if end < 0:
                break
            line = bytes(buffer[:end + 1])
            del buffer[:end + 1]
            if discarding:
                discarding = False
                continue
            yield _decode(line)

        if len(buffer) > limit:
            if not discarding:
                logger.warning("Output line exceeds limit, truncated",
                               pid=pid, stream=stream_name, limit_bytes=limit)
                yield _decode(bytes(buffer[:limit]))
                discarding = True
            buffer.clear()

    if buffer and not discarding:
        yield _decode(bytes(buffer))


async def _watch_stdout(handle: ProcessHandle, on_ready: Optional[Callable[[str], None]]) -> None:
    loop = asyncio.get_running_loop()

    try:
        async for text in _iter_lines(handle.process.stdout, handle.pid, 'stdout'):
            logger.info("Process output", pid=handle.pid, stream='stdout', line=text)

            if handle.ready.done() or handle._stopping:
                continue

            if handle.ready_pattern.search(text.strip()):
                logger.info("Ready pattern matched", pid=handle.pid, pattern=handle.ready_pattern.pattern)
                handle.ready.set_result(text)
                if on_ready is not None:
                    loop.call_soon(on_ready, text)

        await handle.process.wait()
    finally:
        # Whatever ended the reader, a caller waiting for readiness must not hang.
        if not handle.ready.done():
            returncode = handle.process.returncode
            logger.error("Process exited before becoming ready",
                         pid=handle.pid, command=handle.command, returncode=returncode)
            handle.ready.set_exception(
                ProcessExitedBeforeReady(handle.command, returncode, handle.ready_pattern.pattern)
            )


async def _forward_stderr(handle: ProcessHandle) -> None:
    async for text in _iter_lines(handle.process.stderr, handle.pid, 'stderr'):
        logger.info("Process output", pid=handle.pid, stream='stderr', line=text)


@graceful_operation("pid_file_write", critical=False)
def write_pid_file(pid: int, pid_file: str) -> Optional[bool]:
    """
    Record the pid so an out-of-band actor can stop the process.

    Failure is logged as a warning but never fatal; the function then
    returns None instead of True.
    """
    with open(pid_file, 'w', encoding='utf-8') as f:
        f.write(f"{pid}\n")

    logger.debug("Process id recorded", pid=pid, pid_file=pid_file)
    return True


async def launch(command: str,
                 args: Sequence[str],
                 ready_pattern: Union[str, re.Pattern],
                 on_ready: Optional[Callable[[str], None]] = None,
                 *,
                 env: Optional[dict] = None,
                 cwd: Optional[str] = None,
                 pid_file: Optional[str] = None) -> ProcessHandle:
    """
    Start the monitored process and begin watching its output.

    Returns as soon as the process is spawned. ``on_ready`` is scheduled on
    the event loop at most once, with the first stdout line whose trimmed
    text ``ready_pattern`` finds a match in.

    Args:
        command: Executable to run
        args: Arguments passed to the executable
        ready_pattern: Regular expression searched for in each stdout line
        on_ready: Continuation invoked when the process is ready
        env: Environment for the process (defaults to the current one)
        cwd: Working directory for the process
        pid_file: Where to record the process id, if anywhere

    Returns:
        ProcessHandle: Handle on the running process

    Raises:
        LaunchFailure: If the process could not be started
    """
    pattern = re.compile(ready_pattern) if isinstance(ready_pattern, str) else ready_pattern

    try:
        process = await asyncio.create_subprocess_exec(
            command, *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            cwd=cwd,
            limit=STREAM_LIMIT,
        )
    except OSError as e:
        logger.error("Failed to launch process", command=command, args=list(args),
                     error=str(e), error_type=type(e).__name__)
        raise LaunchFailure(command, args, e) from e

    handle = ProcessHandle(process, command, args, pattern, pid_file)
    logger.info("Process launched", pid=process.pid, command=command, args=list(args),
                cwd=cwd or os.getcwd(), ready_pattern=pattern.pattern)

    if pid_file:
        handle.pid_file_written = bool(write_pid_file(process.pid, pid_file))

    handle._tasks = [
        asyncio.ensure_future(_watch_stdout(handle, on_ready)),
        asyncio.ensure_future(_forward_stderr(handle)),
    ]
    return handle
