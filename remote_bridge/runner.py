import asyncio
import base64
import codecs
import logging
import os
import shlex
import signal
import subprocess
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

from remote_bridge.errors import (
    CommandFailedError,
    CommandTimeoutError,
    SpawnError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_IS_WINDOWS = sys.platform == "win32"
_READ_CHUNK = 4096
_KILL_GRACE_SECONDS = 5.0

POWERSHELL_TOOLS = ("powershell", "pwsh")
POSIX_SHELL_TOOLS = ("sh", "bash", "zsh")


@dataclass
class ExecutionResult:
    stdout: str
    stderr: str
    exit_code: int
    execution_time: int  # ms
    backgrounded: bool = False
    pid: int | None = None

    def to_dict(self) -> dict:
        payload = {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exitCode": self.exit_code,
            "executionTime": self.execution_time,
        }
        if self.backgrounded:
            payload["backgrounded"] = True
            payload["pid"] = self.pid
        return payload


def build_argv(tool: str, command: str, args: list[str] | None = None) -> list[str]:
    """Turn a ``tool`` + ``command`` request into a discrete argument vector.

    Shells receive the command as a single argument (PowerShell gets it
    base64-encoded as UTF-16LE so no quoting survives into its parser). Any
    other tool has its command split with POSIX shell-word rules; nothing is
    expanded. Extra ``args`` are appended verbatim.
    """
    extra = list(args or [])
    name = os.path.splitext(os.path.basename(tool))[0].lower()

    if name in POWERSHELL_TOOLS:
        if extra:
            raise ValidationError("Extra args are not supported for PowerShell; put them in command")
        encoded = base64.b64encode(command.encode("utf-16-le")).decode("ascii")
        return [
            tool,
            "-NoProfile",
            "-NonInteractive",
            "-ExecutionPolicy",
            "Bypass",
            "-EncodedCommand",
            encoded,
        ]
    if name in POSIX_SHELL_TOOLS:
        return [tool, "-c", command, *extra]
    if name == "cmd":
        return [tool, "/d", "/s", "/c", command, *extra]

    try:
        tokens = shlex.split(command)
    except ValueError as e:
        raise ValidationError(f"Could not parse command: {e}")
    return [tool, *tokens, *extra]


class ProcessRunner(ABC):
    """One external program invocation."""

    def __init__(self, argv: list[str], cwd: str | None):
        self._argv = argv
        self._cwd = cwd

    @abstractmethod
    async def start(self) -> None:
        """Create the OS process. Raises ``OSError`` when it cannot be started."""

    @property
    @abstractmethod
    def pid(self) -> int | None:
        """PID of the child process."""


class PipeRunner(ProcessRunner):
    """Foreground process with stdout/stderr captured into growing buffers."""

    def __init__(self, argv: list[str], cwd: str | None):
        super().__init__(argv, cwd)
        self._process: asyncio.subprocess.Process = None  # type: ignore[assignment]
        self._stdout: list[str] = []
        self._stderr: list[str] = []

    async def start(self) -> None:
        # Own process group so a timeout can take down grandchildren holding our pipes.
        if _IS_WINDOWS:
            kwargs = {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
        else:
            kwargs = {"start_new_session": True}
        self._process = await asyncio.create_subprocess_exec(
            *self._argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self._cwd,
            **kwargs,
        )

    async def read_output(self) -> None:
        async def read_stream(stream, buffer):
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while True:
                chunk = await stream.read(_READ_CHUNK)
                if not chunk:
                    break
                buffer.append(decoder.decode(chunk))
            buffer.append(decoder.decode(b"", final=True))

        await asyncio.gather(
            read_stream(self._process.stdout, self._stdout),
            read_stream(self._process.stderr, self._stderr),
        )

    async def communicate(self) -> int:
        """Drain both streams and wait for exit. Returns the exit code."""
        await asyncio.gather(self.read_output(), self._process.wait())
        return self._process.returncode

    def kill(self, force: bool = False) -> None:
        """Signal the whole process group.

        The group outlives its leader, so on POSIX the signal is sent even
        after the leader has exited; a grandchild may still hold our pipes.
        """
        try:
            if _IS_WINDOWS:
                if self._process.returncode is not None:
                    return
                if force:
                    self._process.kill()
                else:
                    self._process.terminate()
            else:
                # start_new_session makes the child a group leader: pgid == pid.
                os.killpg(self._process.pid, signal.SIGKILL if force else signal.SIGTERM)
        except ProcessLookupError:
            pass

    async def reap(self) -> None:
        """Wait for a signalled group, escalating to a forced kill, then close the pipes."""
        try:
            try:
                await asyncio.wait_for(self._process.wait(), timeout=_KILL_GRACE_SECONDS)
            except asyncio.TimeoutError:
                logger.warning("pid %s ignored SIGTERM, killing", self.pid)
                self.kill(force=True)
                try:
                    await asyncio.wait_for(self._process.wait(), timeout=_KILL_GRACE_SECONDS)
                except asyncio.TimeoutError:
                    logger.error("pid %s still holds its pipes after SIGKILL", self.pid)
        finally:
            self.close()

    def close(self) -> None:
        """Release the pipe transports."""
        transport = getattr(self._process, "_transport", None)
        if transport is not None:
            transport.close()

    @property
    def stdout(self) -> str:
        return "".join(self._stdout)

    @property
    def stderr(self) -> str:
        return "".join(self._stderr)

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None


class DetachedRunner(ProcessRunner):
    """Fire-and-forget process.

    Output goes to the null device and the child runs in its own session, so
    shutting the bridge down does not take it with it. The handle is dropped
    once the PID is known; nothing here waits on or signals the process again.
    """

    def __init__(self, argv: list[str], cwd: str | None):
        super().__init__(argv, cwd)
        self._pid: int | None = None

    async def start(self) -> None:
        if _IS_WINDOWS:
            kwargs = {
                "creationflags": subprocess.DETACHED_PROCESS
                | subprocess.CREATE_NEW_PROCESS_GROUP
            }
        else:
            kwargs = {"start_new_session": True}
        process = await asyncio.to_thread(
            subprocess.Popen,
            self._argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            cwd=self._cwd,
            close_fds=True,
            **kwargs,
        )
        self._pid = process.pid

    @property
    def pid(self) -> int | None:
        return self._pid


def create_runner(argv: list[str], cwd: str | None, background: bool) -> ProcessRunner:
    """Factory: detached runner for background mode, pipe runner otherwise."""
    if background:
        return DetachedRunner(argv, cwd)
    return PipeRunner(argv, cwd)


_reapers: set[asyncio.Task] = set()


def _reap_in_background(runner: PipeRunner) -> None:
    task = asyncio.get_running_loop().create_task(runner.reap())
    _reapers.add(task)
    task.add_done_callback(_reaper_done)


def _reaper_done(task: asyncio.Task) -> None:
    _reapers.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Reaping a timed-out process failed", exc_info=exc)


async def drain_reapers() -> None:
    """Wait for every pending kill escalation to finish."""
    if _reapers:
        await asyncio.gather(*list(_reapers), return_exceptions=True)


async def spawn(
    executable: str,
    args: list[str],
    timeout_ms: int,
    cwd: str | None = None,
    background: bool = False,
) -> ExecutionResult:
    """Run ``executable`` with ``args`` and settle exactly once.

    Foreground runs resolve on exit code 0 and raise ``CommandFailedError``
    for any other code, ``CommandTimeoutError`` once ``timeout_ms`` elapses
    (the process group is sent SIGTERM) and ``SpawnError`` if the process
    could not be created. Background runs return as soon as the process
    exists and are never timed out.
    """
    started = time.monotonic()

    def elapsed() -> int:
        return int((time.monotonic() - started) * 1000)

    runner = create_runner([executable, *args], cwd, background)
    try:
        await runner.start()
    except (OSError, ValueError) as e:
        raise SpawnError(str(e), execution_time=elapsed())

    if background:
        logger.info("Detached %s (pid %s)", executable, runner.pid)
        return ExecutionResult(
            stdout="",
            stderr="",
            exit_code=0,
            execution_time=elapsed(),
            backgrounded=True,
            pid=runner.pid,
        )

    try:
        exit_code = await asyncio.wait_for(runner.communicate(), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        runner.kill()
        _reap_in_background(runner)
        raise CommandTimeoutError(
            "Command timeout",
            stdout=runner.stdout,
            stderr=runner.stderr,
            execution_time=elapsed(),
        )
    except asyncio.CancelledError:
        runner.kill()
        _reap_in_background(runner)
        raise

    if exit_code != 0:
        raise CommandFailedError(
            f"Command failed with exit code {exit_code}",
            stdout=runner.stdout,
            stderr=runner.stderr,
            exit_code=exit_code,
            execution_time=elapsed(),
        )
    return ExecutionResult(
        stdout=runner.stdout,
        stderr=runner.stderr,
        exit_code=exit_code,
        execution_time=elapsed(),
    )
