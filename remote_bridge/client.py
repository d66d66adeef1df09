"""Async HTTP client for a remote bridge.

Usage::

    async with RemoteBridgeClient("http://100.64.1.5:8788", token) as bridge:
        result = await bridge.powershell("Get-Date")
        job = await bridge.execute_async(tool="codex", command="review the repo")
"""

import asyncio
import os
import time

import httpx

SUBMIT_TIMEOUT = 10.0
HEALTH_TIMEOUT = 5.0


class RemoteBridgeError(Exception):
    def __init__(self, message: str, status_code: int | None = None, payload: dict | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}


class RemoteBridgeClient:
    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        base_url = base_url or os.environ.get("REMOTE_BRIDGE_URL")
        token = token or os.environ.get("REMOTE_BRIDGE_TOKEN")
        if not base_url:
            raise ValueError("REMOTE_BRIDGE_URL is not configured")
        if not token:
            raise ValueError("REMOTE_BRIDGE_TOKEN is not configured")

        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "RemoteBridgeClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, *, timeout: float | None = None, **kwargs) -> dict:
        try:
            response = await self._client.request(
                method, path, timeout=timeout or self.timeout, **kwargs
            )
        except httpx.TimeoutException:
            raise RemoteBridgeError("Request timeout")
        try:
            result = response.json()
        except ValueError:
            result = {}
        if response.is_error:
            raise RemoteBridgeError(
                result.get("error") or f"HTTP {response.status_code}",
                status_code=response.status_code,
                payload=result,
            )
        return result

    # -- execution ---------------------------------------------------------

    async def execute(
        self,
        tool: str,
        command: str,
        args: list[str] | None = None,
        timeout: int | None = None,
        cwd: str | None = None,
        background: bool = False,
    ) -> dict:
        """Run a command synchronously. *timeout* is in milliseconds."""
        timeout = timeout or int(self.timeout * 1000)
        return await self._request(
            "POST",
            "/run",
            json={
                "tool": tool,
                "command": command,
                "args": args or [],
                "timeout": timeout,
                "cwd": cwd,
                "background": background,
            },
            # leave the server room to report its own timeout first
            timeout=timeout / 1000 + 5,
        )

    async def powershell(self, command: str, timeout: int | None = None, cwd: str | None = None) -> dict:
        return await self.execute("powershell", command, timeout=timeout, cwd=cwd)

    async def powershell_background(self, command: str, cwd: str | None = None, timeout: int = 30000) -> dict:
        return await self.execute("powershell", command, timeout=timeout, cwd=cwd, background=True)

    async def python(self, script: str, args: list[str] | None = None, timeout: int | None = None) -> dict:
        return await self.execute("python", script, args=args, timeout=timeout)

    # -- jobs --------------------------------------------------------------

    async def submit_job(
        self,
        tool: str,
        command: str,
        args: list[str] | None = None,
        timeout: int | None = None,
        cwd: str | None = None,
        background: bool = False,
    ) -> dict:
        return await self._request(
            "POST",
            "/jobs/run",
            json={
                "tool": tool,
                "command": command,
                "args": args or [],
                "timeout": timeout,
                "cwd": cwd,
                "background": background,
            },
            timeout=SUBMIT_TIMEOUT,
        )

    async def get_job(self, job_id: str) -> dict:
        return await self._request("GET", f"/jobs/{job_id}", timeout=SUBMIT_TIMEOUT)

    async def list_jobs(self) -> dict:
        return await self._request("GET", "/jobs", timeout=SUBMIT_TIMEOUT)

    async def execute_async(
        self,
        tool: str,
        command: str,
        args: list[str] | None = None,
        timeout: int | None = None,
        cwd: str | None = None,
        background: bool = False,
        poll_interval: float = 3.0,
        max_wait: float = 600.0,
    ) -> dict:
        """Submit a job and poll until it leaves the running state."""
        submission = await self.submit_job(tool, command, args, timeout, cwd, background)
        job_id = submission["jobId"]
        deadline = time.monotonic() + max_wait

        while time.monotonic() < deadline:
            await asyncio.sleep(poll_interval)
            status = await self.get_job(job_id)
            if status["status"] != "running":
                return status

        raise TimeoutError(f"Job {job_id} still running after {max_wait}s")

    # -- files -------------------------------------------------------------

    async def _file_op(self, operation: str, body: dict) -> dict:
        return await self._request("POST", f"/files/{operation}", json=body)

    async def read_file(self, path: str, encoding: str = "utf-8") -> dict:
        return await self._file_op("read", {"path": path, "encoding": encoding})

    async def write_file(self, path: str, content: str, create_dirs: bool = False) -> dict:
        return await self._file_op("write", {"path": path, "content": content, "createDirs": create_dirs})

    async def list_dir(self, path: str, recursive: bool = False) -> dict:
        return await self._file_op("list", {"path": path, "recursive": recursive})

    async def delete(self, path: str, recursive: bool = False) -> dict:
        return await self._file_op("delete", {"path": path, "recursive": recursive})

    async def file_info(self, path: str) -> dict:
        return await self._file_op("info", {"path": path})

    async def edit_file(self, path: str, search: str, replace: str, replace_all: bool = False) -> dict:
        return await self._file_op(
            "edit", {"path": path, "search": search, "replace": replace, "all": replace_all}
        )

    async def health(self) -> dict:
        try:
            return await self._request("GET", "/health", timeout=HEALTH_TIMEOUT)
        except (RemoteBridgeError, httpx.HTTPError) as e:
            raise RemoteBridgeError(f"Bridge health check failed: {e}")
