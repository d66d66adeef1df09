import asyncio
import contextlib
import logging
import os
import platform
import secrets
import socket
import sys
import time
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from remote_bridge import files
from remote_bridge.env import (
    ALLOWED_FILE_ROOTS,
    ALLOWED_TOOLS,
    BRIDGE_TOKEN,
    COMMAND_TIMEOUT,
    CORS_ALLOWED_ORIGINS,
    JOB_RETENTION_SECONDS,
    JOB_SWEEP_INTERVAL_SECONDS,
    MAX_FILE_SIZE,
)
from remote_bridge.errors import (
    BridgeError,
    ForbiddenToolError,
    NotFoundError,
    UnauthorizedError,
)
from remote_bridge.jobs import RUNNING, JobRegistry, run_sweeper, start_job
from remote_bridge.runner import build_argv, drain_reapers, spawn

logger = logging.getLogger(__name__)


def get_system_info() -> str:
    """Gather runtime system metadata for the OpenAPI description."""
    return (
        f"This bridge is running {platform.system()} {platform.release()} ({platform.machine()}) "
        f"on {socket.gethostname()} as user '{os.getenv('USER') or os.getenv('USERNAME', 'unknown')}'. "
        f"Python {sys.version.split()[0]} is available."
    )


_RUN_DESCRIPTION = (
    "Run a tool on the bridge host and wait for it to finish.\n\n" + get_system_info()
)

bearer_scheme = HTTPBearer(auto_error=False)


PUBLIC_PATHS = ("/health", "/docs", "/docs/oauth2-redirect", "/redoc", "/openapi.json")


def verify_api_key(request: Request) -> None:
    # An unset token locks every endpoint rather than opening them.
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if (
        not BRIDGE_TOKEN
        or scheme.lower() != "bearer"
        or not token
        or not secrets.compare_digest(token.encode(), BRIDGE_TOKEN.encode())
    ):
        client = request.client.host if request.client else "unknown"
        logger.warning("Unauthorized access attempt from %s to %s", client, request.url.path)
        raise UnauthorizedError("Unauthorized")


def get_job_registry(request: Request) -> JobRegistry:
    return request.app.state.jobs


@asynccontextmanager
async def lifespan(app: FastAPI):
    if not BRIDGE_TOKEN:
        logger.error("BRIDGE_TOKEN is not set; every authenticated endpoint will answer 401")
    elif len(BRIDGE_TOKEN) < 32:
        logger.warning("BRIDGE_TOKEN is short; use at least 32 characters")

    app.state.jobs = JobRegistry(retention_seconds=JOB_RETENTION_SECONDS)
    app.state.started_at = time.monotonic()
    sweeper = asyncio.create_task(run_sweeper(app.state.jobs, JOB_SWEEP_INTERVAL_SECONDS))
    logger.info(
        "Bridge server started (allowed tools: %s, timeout: %sms)",
        ", ".join(ALLOWED_TOOLS) if ALLOWED_TOOLS else "ALL",
        COMMAND_TIMEOUT,
    )
    try:
        yield
    finally:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        await drain_reapers()
        logger.info("Shutting down bridge server")


app = FastAPI(
    title="Remote Bridge",
    description="Authenticated remote execution and file access for a trusted host.",
    version="0.1.0",
    lifespan=lifespan,
)


@app.middleware("http")
async def require_bearer_token(request: Request, call_next):
    """Reject unauthenticated calls before the body is read or validated."""
    if request.method != "OPTIONS" and request.url.path not in PUBLIC_PATHS:
        try:
            verify_api_key(request)
        except UnauthorizedError as exc:
            return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
    return await call_next(request)


# Registered after the auth middleware so CORS stays the outermost layer.
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in CORS_ALLOWED_ORIGINS.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


@app.exception_handler(BridgeError)
async def bridge_error_handler(request: Request, exc: BridgeError):
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(level, "%s %s -> %s: %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        problems.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return JSONResponse(
        status_code=400,
        content={"ok": False, "error": "Invalid request: " + "; ".join(problems)},
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"ok": False, "error": str(exc) or "Internal error"})


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class RunRequest(BaseModel):
    tool: str = Field(
        ...,
        min_length=1,
        description="Program to run, e.g. 'powershell', 'bash', 'python', 'codex'.",
        json_schema_extra={"examples": ["bash", "powershell"]},
    )
    command: str = Field(
        ...,
        min_length=1,
        description="Command for the tool. Shells receive it whole; other tools get it split into arguments.",
        json_schema_extra={"examples": ["echo hello", "Get-Date"]},
    )
    args: list[str] = Field(
        default_factory=list,
        description="Extra arguments appended verbatim after the command.",
    )
    timeout: int | None = Field(
        None,
        gt=0,
        description="Timeout in milliseconds. Defaults to the server's COMMAND_TIMEOUT.",
    )
    cwd: str | None = Field(
        None,
        description="Working directory for the process. Defaults to the server's current directory.",
    )
    background: bool = Field(
        False,
        description="Start the process detached and return without waiting for it. No output is captured.",
    )


class ReadRequest(BaseModel):
    path: str = Field(..., description="Path of the file to read.")
    encoding: str = Field(
        "utf-8",
        description="Text encoding, or 'base64' to get the raw bytes base64-encoded.",
    )


class WriteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    path: str = Field(..., description="Path of the file to write. Overwrites if it exists.")
    content: str = Field(..., description="Text content to write.")
    create_dirs: bool = Field(
        False,
        alias="createDirs",
        description="Create missing parent directories.",
    )


class PathRequest(BaseModel):
    path: str = Field(..., description="Target path.")


class ListRequest(PathRequest):
    recursive: bool = Field(
        False,
        description=f"Include nested entries as 'children', up to {files.MAX_LIST_DEPTH} levels deep.",
    )


class DeleteRequest(PathRequest):
    recursive: bool = Field(False, description="Required to delete a directory.")


class EditRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    path: str = Field(..., description="Path of the file to modify.")
    search: str = Field(..., min_length=1, description="Exact string to find.")
    replace: str = Field(..., description="Replacement text.")
    replace_all: bool = Field(
        False,
        alias="all",
        description="Replace every occurrence instead of only the first.",
    )


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@app.get(
    "/health",
    operation_id="health_check",
    summary="Health check",
    description="Returns service status. No authentication required.",
)
async def health(request: Request):
    return {
        "ok": True,
        "service": "remote-bridge",
        "status": "running",
        "uptime": round(time.monotonic() - request.app.state.started_at, 3),
        "allowedTools": ALLOWED_TOOLS or "ALL (unrestricted)",
        "timeout": COMMAND_TIMEOUT,
        "jobs": len(request.app.state.jobs),
    }


# ---------------------------------------------------------------------------
# Execute
# ---------------------------------------------------------------------------


def _prepare_argv(request: RunRequest) -> list[str]:
    if ALLOWED_TOOLS is not None and request.tool not in ALLOWED_TOOLS:
        logger.warning("Tool not allowed: %s", request.tool)
        raise ForbiddenToolError(
            f"Tool '{request.tool}' not allowed. Allowed tools: {', '.join(ALLOWED_TOOLS)}"
        )
    return build_argv(request.tool, request.command, request.args)


@app.post(
    "/run",
    operation_id="run_command",
    summary="Execute a command",
    description=_RUN_DESCRIPTION,
    dependencies=[Depends(bearer_scheme)],
    responses={
        400: {"description": "Missing or malformed fields."},
        401: {"description": "Invalid or missing bearer token."},
        403: {"description": "Tool not in the allow-list."},
        500: {"description": "Spawn error, timeout, or non-zero exit. Partial output included."},
    },
)
async def run_command(request: RunRequest):
    argv = _prepare_argv(request)
    timeout = request.timeout or COMMAND_TIMEOUT

    logger.info("Executing %s: %s", request.tool, request.command[:100])
    result = await spawn(
        argv[0], argv[1:], timeout, cwd=request.cwd, background=request.background
    )
    logger.info(
        "Command completed (tool=%s, exit=%s, %sms)",
        request.tool,
        result.exit_code,
        result.execution_time,
    )
    return {"ok": True, **result.to_dict()}


@app.post(
    "/jobs/run",
    operation_id="submit_job",
    summary="Submit an asynchronous job",
    description="Start a command without waiting for it and return a job ID to poll.",
    dependencies=[Depends(bearer_scheme)],
    responses={
        400: {"description": "Missing or malformed fields."},
        401: {"description": "Invalid or missing bearer token."},
        403: {"description": "Tool not in the allow-list."},
    },
)
async def submit_job(request: RunRequest, jobs: JobRegistry = Depends(get_job_registry)):
    argv = _prepare_argv(request)
    timeout = request.timeout or COMMAND_TIMEOUT

    job_id = jobs.create(request.tool, request.command, request.cwd, request.background)
    start_job(jobs, job_id, argv, timeout, cwd=request.cwd, background=request.background)
    return {"ok": True, "jobId": job_id, "status": RUNNING}


@app.get(
    "/jobs",
    operation_id="list_jobs",
    summary="List jobs",
    description="Summaries of every tracked job, running or settled, without output.",
    dependencies=[Depends(bearer_scheme)],
    responses={
        401: {"description": "Invalid or missing bearer token."},
    },
)
async def list_jobs(jobs: JobRegistry = Depends(get_job_registry)):
    summaries = jobs.list()
    return {"ok": True, "jobs": summaries, "count": len(summaries)}


@app.get(
    "/jobs/{job_id}",
    operation_id="get_job",
    summary="Get job status and output",
    dependencies=[Depends(bearer_scheme)],
    responses={
        404: {"description": "Job not found."},
        401: {"description": "Invalid or missing bearer token."},
    },
)
async def get_job(job_id: str, jobs: JobRegistry = Depends(get_job_registry)):
    snapshot = jobs.get(job_id)
    if snapshot is None:
        raise NotFoundError("not found")
    return {"ok": True, **snapshot}


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


@app.post(
    "/files/read",
    operation_id="read_file",
    summary="Read a file",
    description="Return the contents of a file. PDFs return their extracted text; 'base64' encoding returns raw bytes.",
    dependencies=[Depends(bearer_scheme)],
    responses={
        400: {"description": "Path rejected."},
        404: {"description": "File not found."},
        413: {"description": "File larger than MAX_FILE_SIZE."},
        401: {"description": "Invalid or missing bearer token."},
    },
)
async def read_file(request: ReadRequest):
    target = files.validate_path(request.path, ALLOWED_FILE_ROOTS)
    return await files.read_file(target, request.encoding, MAX_FILE_SIZE)


@app.post(
    "/files/write",
    operation_id="write_file",
    summary="Write a file",
    description="Write text content to a file, optionally creating parent directories.",
    dependencies=[Depends(bearer_scheme)],
    responses={
        400: {"description": "Path rejected."},
        401: {"description": "Invalid or missing bearer token."},
    },
)
async def write_file(request: WriteRequest):
    target = files.validate_path(request.path, ALLOWED_FILE_ROOTS)
    return await files.write_file(target, request.content, request.create_dirs)


@app.post(
    "/files/list",
    operation_id="list_files",
    summary="List directory contents",
    dependencies=[Depends(bearer_scheme)],
    responses={
        400: {"description": "Path rejected."},
        404: {"description": "Directory not found."},
        401: {"description": "Invalid or missing bearer token."},
    },
)
async def list_files(request: ListRequest):
    target = files.validate_path(request.path, ALLOWED_FILE_ROOTS)
    return await files.list_dir(target, request.recursive)


@app.post(
    "/files/delete",
    operation_id="delete_path",
    summary="Delete a file or directory",
    dependencies=[Depends(bearer_scheme)],
    responses={
        400: {"description": "Path rejected, or directory without recursive."},
        404: {"description": "Path not found."},
        401: {"description": "Invalid or missing bearer token."},
    },
)
async def delete_path(request: DeleteRequest):
    target = files.validate_path(request.path, ALLOWED_FILE_ROOTS)
    return await files.delete_path(target, request.recursive)


@app.post(
    "/files/info",
    operation_id="file_info",
    summary="File metadata",
    description="Existence, type, size and timestamps of a path.",
    dependencies=[Depends(bearer_scheme)],
    responses={
        400: {"description": "Path rejected."},
        401: {"description": "Invalid or missing bearer token."},
    },
)
async def file_info(request: PathRequest):
    target = files.validate_path(request.path, ALLOWED_FILE_ROOTS)
    return await files.file_info(target)


@app.post(
    "/files/edit",
    operation_id="edit_file",
    summary="Search and replace in a file",
    dependencies=[Depends(bearer_scheme)],
    responses={
        400: {"description": "Path rejected or missing search/replace."},
        404: {"description": "File not found."},
        401: {"description": "Invalid or missing bearer token."},
    },
)
async def edit_file(request: EditRequest):
    target = files.validate_path(request.path, ALLOWED_FILE_ROOTS)
    return await files.edit_file(target, request.search, request.replace, request.replace_all)
