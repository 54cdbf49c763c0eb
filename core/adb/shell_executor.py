"""
ADB Hub - Shell Executor

Runs external executables as asyncio subprocesses. Knows nothing about adb:
it returns captured output plus exit code, or streams stdout lines for
long-running commands behind a cancellable handle.

Both pipes are drained while the child runs (communicate / concurrent readers),
so children producing more than a pipe buffer of output never block.
"""

import asyncio
import logging
import os
import shlex
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from utils.error_handler import ADBTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
READ_CHUNK_SIZE = 65536

# Common platform-tools install locations, prepended to the child's PATH
EXTRA_SEARCH_PATHS = [
    "/usr/local/bin",
    "/opt/homebrew/bin",
    "~/Library/Android/sdk/platform-tools",
    "~/Android/Sdk/platform-tools",
]


def build_environment(base: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Copy of the environment with the extra search paths added to PATH.

    The caller's environment (or os.environ) is never modified.
    """
    env = dict(os.environ if base is None else base)
    current = env.get("PATH", "")
    existing = current.split(os.pathsep) if current else []

    extras = []
    for path in EXTRA_SEARCH_PATHS:
        expanded = os.path.expanduser(path)
        if expanded not in existing and expanded not in extras:
            extras.append(expanded)

    env["PATH"] = os.pathsep.join(extras + existing)
    return env


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


@dataclass
class ShellResult:
    """Captured text output of a finished process"""
    output: str
    error_output: str
    exit_code: int

    @property
    def is_success(self) -> bool:
        return self.exit_code == 0

    @property
    def combined_output(self) -> str:
        if self.output and self.error_output:
            return f"{self.output}\n{self.error_output}"
        return self.output or self.error_output


@dataclass
class RawShellResult:
    """Captured binary stdout of a finished process"""
    data: bytes
    error_output: str
    exit_code: int

    @property
    def is_success(self) -> bool:
        return self.exit_code == 0


@dataclass
class StreamResult:
    """Terminal outcome of a streamed process"""
    output: str
    error_output: str
    exit_code: Optional[int]
    cancelled: bool = False

    @property
    def is_success(self) -> bool:
        return not self.cancelled and self.exit_code == 0

    @property
    def combined_output(self) -> str:
        if self.output and self.error_output:
            return f"{self.output}\n{self.error_output}"
        return self.output or self.error_output


async def _kill(process: asyncio.subprocess.Process) -> None:
    """Kill the process (if still running) and reap it"""
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    await process.wait()


class StreamingProcess:
    """
    Handle to a running process whose stdout is delivered line by line.

    Exactly one of completion, cancellation or timeout settles the handle;
    whichever comes first wins and later attempts are no-ops.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        command: str,
        on_line: Optional[Callable[[str], None]] = None,
        timeout: Optional[float] = None,
    ):
        self._process = process
        self._command = command
        self._on_line = on_line
        self._timeout = timeout
        self._stdout_lines: List[str] = []
        self._stderr_chunks: List[str] = []

        loop = asyncio.get_running_loop()
        self._result: asyncio.Future = loop.create_future()
        self._timer: Optional[asyncio.TimerHandle] = None
        if timeout is not None:
            self._timer = loop.call_later(timeout, self._on_timeout)
        self._pump_task = loop.create_task(self._pump())

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def done(self) -> bool:
        return self._result.done()

    def cancel(self) -> bool:
        """
        Terminate the process.

        Returns True if this call settled the handle as cancelled, False if the
        process had already finished or the handle was already settled.
        """
        if self._process.returncode is not None or self._result.done():
            return False
        logger.info(f"[ShellExecutor] Cancelling: {self._command}")
        settled = self._settle(self._snapshot(exit_code=None, cancelled=True))
        self._kill_nowait()
        return settled

    async def wait(self) -> StreamResult:
        """Wait for the handle to settle; raises ADBTimeoutError on timeout"""
        try:
            return await asyncio.shield(self._result)
        finally:
            if self._result.done():
                # Let the reader finish so the child is always reaped
                await asyncio.wait({self._pump_task})

    def _settle(self, outcome: StreamResult) -> bool:
        if self._result.done():
            return False
        self._disarm()
        self._result.set_result(outcome)
        return True

    def _fail(self, error: BaseException) -> bool:
        if self._result.done():
            return False
        self._disarm()
        self._result.set_exception(error)
        return True

    def _disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _snapshot(self, exit_code: Optional[int], cancelled: bool) -> StreamResult:
        return StreamResult(
            output="\n".join(self._stdout_lines),
            error_output="".join(self._stderr_chunks),
            exit_code=exit_code,
            cancelled=cancelled,
        )

    def _kill_nowait(self) -> None:
        if self._process.returncode is None:
            try:
                self._process.kill()
            except ProcessLookupError:
                pass

    def _on_timeout(self) -> None:
        self._timer = None
        if self._result.done():
            return
        logger.warning(f"[ShellExecutor] Timed out after {self._timeout}s: {self._command}")
        self._fail(ADBTimeoutError(self._command, self._timeout))
        self._kill_nowait()

    async def _drain_stderr(self) -> None:
        while True:
            chunk = await self._process.stderr.read(4096)
            if not chunk:
                break
            self._stderr_chunks.append(_decode(chunk))

    def _deliver(self, raw_line: bytes) -> None:
        line = _decode(raw_line).rstrip("\r")
        self._stdout_lines.append(line)
        if self._on_line is not None and not self._result.done():
            self._on_line(line)

    async def _pump(self) -> None:
        stderr_task = asyncio.create_task(self._drain_stderr())
        try:
            # Chunked reads: StreamReader line iteration caps a line at 64 KiB
            pending = b""
            while True:
                chunk = await self._process.stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                *complete, pending = (pending + chunk).split(b"\n")
                for raw_line in complete:
                    self._deliver(raw_line)
            if pending:
                self._deliver(pending)
            await stderr_task
            exit_code = await self._process.wait()
        except BaseException as e:
            stderr_task.cancel()
            await _kill(self._process)
            self._fail(e)
            if isinstance(e, asyncio.CancelledError):
                raise
            return

        # Killed by a signal counts as cancelled, not failed
        self._settle(self._snapshot(exit_code=exit_code, cancelled=exit_code < 0))


class ShellExecutor:
    """
    Subprocess runner with per-call timeout.

    Every call is independent; no state is shared between concurrent calls.
    """

    def __init__(self, default_timeout: float = DEFAULT_TIMEOUT):
        self.default_timeout = default_timeout

    async def _spawn(self, executable: str, args: Sequence[str]) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            executable,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=build_environment(),
        )

    async def _run(self, executable: str, args: Sequence[str], timeout: Optional[float]):
        timeout = self.default_timeout if timeout is None else timeout
        command = shlex.join([executable, *args])
        logger.debug(f"[ShellExecutor] Running: {command} (timeout={timeout}s)")

        process = await self._spawn(executable, args)
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await _kill(process)
            logger.warning(f"[ShellExecutor] Timed out after {timeout}s: {command}")
            raise ADBTimeoutError(command, timeout)
        except asyncio.CancelledError:
            await _kill(process)
            raise

        return stdout, stderr, process.returncode

    async def execute(
        self,
        executable: str,
        args: Sequence[str],
        timeout: Optional[float] = None,
    ) -> ShellResult:
        """
        Run a command to completion and capture its text output.

        Raises:
            ADBTimeoutError: the process exceeded `timeout` and was killed
            OSError: the executable could not be started
        """
        stdout, stderr, exit_code = await self._run(executable, args, timeout)
        return ShellResult(output=_decode(stdout), error_output=_decode(stderr), exit_code=exit_code)

    async def execute_raw(
        self,
        executable: str,
        args: Sequence[str],
        timeout: Optional[float] = None,
    ) -> RawShellResult:
        """Like execute(), but stdout is returned as bytes (e.g. PNG screenshots)"""
        stdout, stderr, exit_code = await self._run(executable, args, timeout)
        return RawShellResult(data=stdout, error_output=_decode(stderr), exit_code=exit_code)

    async def run_streaming(
        self,
        executable: str,
        args: Sequence[str],
        on_line: Optional[Callable[[str], None]] = None,
        timeout: Optional[float] = None,
    ) -> StreamingProcess:
        """
        Start a command and return a handle delivering stdout lines to `on_line`.

        The handle's wait() resolves to a StreamResult (cancelled=True when the
        process was cancelled or killed by a signal) or raises ADBTimeoutError.
        """
        timeout = self.default_timeout if timeout is None else timeout
        command = shlex.join([executable, *args])
        logger.debug(f"[ShellExecutor] Streaming: {command} (timeout={timeout}s)")
        process = await self._spawn(executable, args)
        return StreamingProcess(process, command, on_line=on_line, timeout=timeout)
