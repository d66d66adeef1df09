import asyncio
import base64
import os
import signal
import sys
import time

import pytest

from remote_bridge import runner
from remote_bridge.errors import (
    CommandFailedError,
    CommandTimeoutError,
    SpawnError,
    ValidationError,
)
from remote_bridge.runner import ExecutionResult, build_argv, drain_reapers, spawn

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX utilities")


def _alive(pid):
    # A zombie has already died; it only waits for its parent (or init) to collect it.
    if os.path.isdir("/proc"):
        try:
            with open(f"/proc/{pid}/stat") as f:
                return f.read().rsplit(")", 1)[1].split()[0] != "Z"
        except FileNotFoundError:
            return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


def _gone(pid, within=2.0):
    deadline = time.monotonic() + within
    while _alive(pid):
        if time.monotonic() > deadline:
            return False
        time.sleep(0.05)
    return True


def test_build_argv_splits_plain_tools():
    assert build_argv("echo", "ping") == ["echo", "ping"]
    assert build_argv("git", 'commit -m "two words"', ["--quiet"]) == [
        "git",
        "commit",
        "-m",
        "two words",
        "--quiet",
    ]


def test_build_argv_does_not_expand_shell_syntax():
    assert build_argv("echo", "$HOME; rm -rf /") == ["echo", "$HOME;", "rm", "-rf", "/"]


def test_build_argv_passes_command_whole_to_posix_shells():
    assert build_argv("bash", "echo a && echo b") == ["bash", "-c", "echo a && echo b"]
    assert build_argv("/bin/sh", "ls | wc -l", ["name"]) == ["/bin/sh", "-c", "ls | wc -l", "name"]


def test_build_argv_encodes_powershell_command():
    argv = build_argv("powershell", 'Write-Output "hi"')
    assert argv[:6] == [
        "powershell",
        "-NoProfile",
        "-NonInteractive",
        "-ExecutionPolicy",
        "Bypass",
        "-EncodedCommand",
    ]
    assert base64.b64decode(argv[6]).decode("utf-16-le") == 'Write-Output "hi"'
    assert build_argv("pwsh.exe", "Get-Date")[5] == "-EncodedCommand"


def test_build_argv_rejects_powershell_extra_args():
    with pytest.raises(ValidationError):
        build_argv("powershell", "Get-Date", ["-x"])


def test_build_argv_rejects_unbalanced_quotes():
    with pytest.raises(ValidationError):
        build_argv("echo", 'say "hello')


@posix_only
def test_spawn_success_captures_stdout():
    result = asyncio.run(spawn("echo", ["ping"], 5000))
    assert isinstance(result, ExecutionResult)
    assert result.exit_code == 0
    assert result.stdout.strip() == "ping"
    assert result.stderr == ""
    assert result.backgrounded is False
    assert result.execution_time >= 0


@posix_only
def test_spawn_respects_cwd(tmp_path):
    result = asyncio.run(spawn("pwd", [], 5000, cwd=str(tmp_path)))
    assert os.path.realpath(result.stdout.strip()) == os.path.realpath(tmp_path)


@posix_only
def test_spawn_nonzero_exit_is_command_failure():
    with pytest.raises(CommandFailedError) as exc:
        asyncio.run(spawn("sh", ["-c", "echo out; echo err >&2; exit 3"], 5000))
    assert exc.value.exit_code == 3
    assert exc.value.stdout == "out\n"
    assert exc.value.stderr == "err\n"
    assert exc.value.to_dict()["ok"] is False


@posix_only
def test_spawn_timeout_keeps_partial_output_and_returns_promptly():
    started = time.monotonic()
    with pytest.raises(CommandTimeoutError) as exc:
        asyncio.run(spawn("sh", ["-c", "echo partial; sleep 5"], 500))
    assert time.monotonic() - started < 3
    assert "partial" in exc.value.stdout
    assert exc.value.exit_code is None
    assert exc.value.to_dict()["timeout"] is True


@posix_only
def test_spawn_timeout_terminates_the_process():
    async def scenario():
        with pytest.raises(CommandTimeoutError) as exc:
            await spawn("sh", ["-c", "echo $$; exec sleep 30"], 300)
        await drain_reapers()
        return int(exc.value.stdout.strip())

    pid = asyncio.run(scenario())
    assert _gone(pid)


@posix_only
def test_spawn_timeout_does_not_wait_for_sigterm_ignoring_process(monkeypatch):
    monkeypatch.setattr(runner, "_KILL_GRACE_SECONDS", 0.3)

    async def scenario():
        started = time.monotonic()
        with pytest.raises(CommandTimeoutError) as exc:
            await spawn("sh", ["-c", "trap '' TERM; echo $$; sleep 30"], 300)
        settled = time.monotonic() - started
        await drain_reapers()
        return settled, int(exc.value.stdout.strip())

    settled, pid = asyncio.run(scenario())
    assert settled < 1
    # The escalation to SIGKILL still happens after the timeout has been reported.
    assert _gone(pid)


@posix_only
def test_spawn_timeout_kills_grandchild_after_leader_exits():
    async def scenario():
        with pytest.raises(CommandTimeoutError) as exc:
            await spawn("sh", ["-c", "sleep 30 & echo $!"], 500)
        await drain_reapers()
        return int(exc.value.stdout.strip())

    grandchild = asyncio.run(scenario())
    assert _gone(grandchild)


def test_spawn_missing_executable_is_spawn_error():
    with pytest.raises(SpawnError) as exc:
        asyncio.run(spawn("definitely-not-a-real-binary-4711", [], 1000))
    assert not isinstance(exc.value, CommandFailedError)
    assert exc.value.execution_time is not None


@posix_only
def test_spawn_missing_cwd_is_spawn_error(tmp_path):
    with pytest.raises(SpawnError):
        asyncio.run(spawn("echo", ["x"], 1000, cwd=str(tmp_path / "missing")))


@posix_only
def test_spawn_background_returns_before_exit():
    started = time.monotonic()
    result = asyncio.run(spawn("sleep", ["30"], 100, background=True))
    try:
        assert time.monotonic() - started < 2
        assert result.backgrounded is True
        assert result.exit_code == 0
        assert result.pid
        assert result.stdout == ""
        # still alive: no timeout applies to detached processes
        os.kill(result.pid, 0)
    finally:
        os.kill(result.pid, signal.SIGTERM)
    assert result.to_dict()["backgrounded"] is True


def test_spawn_background_missing_executable_is_spawn_error():
    with pytest.raises(SpawnError):
        asyncio.run(spawn("definitely-not-a-real-binary-4711", [], 1000, background=True))
