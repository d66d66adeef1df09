import asyncio
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from remote_bridge.errors import (
    CommandFailedError,
    ExecutionError,
    JobStateError,
    NotFoundError,
)
from remote_bridge.runner import ExecutionResult, spawn

logger = logging.getLogger(__name__)

RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"

COMMAND_STORE_LIMIT = 200


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Job:
    id: str
    tool: str
    command: str
    cwd: str | None = None
    background: bool = False
    status: str = RUNNING
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    pid: int | None = None
    created_at: int = 0
    completed_at: int | None = None
    execution_time: int | None = None
    error: str | None = None
    task: asyncio.Task | None = field(default=None, repr=False, compare=False)

    def elapsed(self, now_ms: int) -> int:
        if self.status == RUNNING:
            return now_ms - self.created_at
        if self.execution_time is not None:
            return self.execution_time
        return self.completed_at - self.created_at

    def to_summary(self, now_ms: int) -> dict:
        return {
            "id": self.id,
            "tool": self.tool,
            "command": self.command,
            "cwd": self.cwd,
            "background": self.background,
            "status": self.status,
            "pid": self.pid,
            "createdAt": self.created_at,
            "elapsed": self.elapsed(now_ms),
        }

    def to_dict(self, now_ms: int) -> dict:
        payload = self.to_summary(now_ms)
        payload.update(
            {
                "stdout": self.stdout,
                "stderr": self.stderr,
                "exitCode": self.exit_code,
                "completedAt": self.completed_at,
            }
        )
        if self.status == FAILED:
            payload["error"] = self.error
        return payload


class JobRegistry:
    """In-memory jobs keyed by id, in insertion order.

    Every read and write goes through one lock: handlers create and read
    jobs, execution tasks settle them, and the sweeper evicts them. Readers
    get dict snapshots, never the live records.
    """

    def __init__(
        self,
        retention_seconds: float = 3600.0,
        clock: Callable[[], int] | None = None,
    ):
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()
        self._counter = itertools.count(1)
        self._retention_ms = int(retention_seconds * 1000)
        self._clock = clock or _now_ms

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def create(
        self,
        tool: str,
        command: str,
        cwd: str | None = None,
        background: bool = False,
    ) -> str:
        with self._lock:
            now = self._clock()
            job_id = f"job_{now}_{next(self._counter)}"
            self._jobs[job_id] = Job(
                id=job_id,
                tool=tool,
                command=command[:COMMAND_STORE_LIMIT],
                cwd=cwd,
                background=background,
                created_at=now,
            )
        logger.info("Job %s created (tool=%s)", job_id, tool)
        return job_id

    def attach_task(self, job_id: str, task: asyncio.Task) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job:
                job.task = task

    def _running_job(self, job_id: str) -> Job:
        # Caller holds the lock.
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        if job.status != RUNNING:
            raise JobStateError(f"Job {job_id} already {job.status}")
        return job

    def complete(self, job_id: str, result: ExecutionResult) -> None:
        with self._lock:
            job = self._running_job(job_id)
            job.status = COMPLETED
            job.stdout = result.stdout
            job.stderr = result.stderr
            job.exit_code = result.exit_code
            job.pid = result.pid
            job.execution_time = result.execution_time
            job.completed_at = self._clock()
        logger.info(
            "Job %s completed (exit=%s, %sms)", job_id, result.exit_code, result.execution_time
        )

    def fail(self, job_id: str, error: Exception) -> None:
        with self._lock:
            job = self._running_job(job_id)
            now = self._clock()
            job.status = FAILED
            job.error = getattr(error, "message", None) or str(error) or type(error).__name__
            if isinstance(error, ExecutionError):
                job.stdout = error.stdout
                job.stderr = error.stderr
                job.exit_code = error.exit_code
                job.execution_time = error.execution_time
            if job.execution_time is None:
                job.execution_time = now - job.created_at
            job.completed_at = now
        logger.error("Job %s failed: %s", job_id, job.error)

    def get(self, job_id: str) -> dict | None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            return job.to_dict(self._clock())

    def list(self) -> list[dict]:
        with self._lock:
            now = self._clock()
            return [job.to_summary(now) for job in self._jobs.values()]

    def sweep(self) -> int:
        """Drop settled jobs created more than the retention window ago."""
        with self._lock:
            cutoff = self._clock() - self._retention_ms
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if job.status != RUNNING and job.created_at < cutoff
            ]
            for job_id in expired:
                del self._jobs[job_id]
        if expired:
            logger.info("Swept %d expired job(s)", len(expired))
        return len(expired)


async def run_job(
    registry: JobRegistry,
    job_id: str,
    argv: list[str],
    timeout_ms: int,
    cwd: str | None = None,
    background: bool = False,
) -> None:
    """Execute a job's process and settle its record exactly once."""
    try:
        result = await spawn(argv[0], argv[1:], timeout_ms, cwd=cwd, background=background)
    except CommandFailedError as e:
        # A non-zero exit completes the job; only runner-level failures fail it.
        registry.complete(
            job_id,
            ExecutionResult(
                stdout=e.stdout,
                stderr=e.stderr,
                exit_code=e.exit_code,
                execution_time=e.execution_time,
            ),
        )
    except ExecutionError as e:
        registry.fail(job_id, e)
    except Exception as e:  # noqa: BLE001
        logger.exception("Job %s crashed", job_id)
        registry.fail(job_id, e)
    else:
        registry.complete(job_id, result)


def start_job(
    registry: JobRegistry,
    job_id: str,
    argv: list[str],
    timeout_ms: int,
    cwd: str | None = None,
    background: bool = False,
) -> asyncio.Task:
    task = asyncio.create_task(run_job(registry, job_id, argv, timeout_ms, cwd, background))
    registry.attach_task(job_id, task)
    return task


async def run_sweeper(registry: JobRegistry, interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        registry.sweep()
