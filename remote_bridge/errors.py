class BridgeError(Exception):
    """Base class for failures rendered as ``{"ok": false, "error": ...}``."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {"ok": False, "error": self.message}


class ValidationError(BridgeError):
    status_code = 400


class PathRejectedError(BridgeError):
    status_code = 400


class UnauthorizedError(BridgeError):
    status_code = 401


class ForbiddenToolError(BridgeError):
    status_code = 403


class NotFoundError(BridgeError):
    status_code = 404


class FileTooLargeError(BridgeError):
    status_code = 413


class ExecutionError(BridgeError):
    """A process run that did not settle as a success.

    Whatever output was captured before settlement is kept so callers can
    diagnose a truncated run.
    """

    def __init__(
        self,
        message: str,
        stdout: str = "",
        stderr: str = "",
        exit_code: int | None = None,
        execution_time: int | None = None,
    ):
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code
        self.execution_time = execution_time

    def to_dict(self) -> dict:
        return {
            "ok": False,
            "error": self.message,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exitCode": self.exit_code if self.exit_code is not None else 1,
            "executionTime": self.execution_time,
        }


class SpawnError(ExecutionError):
    """The OS could not create the process (missing binary, permissions, bad cwd)."""


class CommandTimeoutError(ExecutionError):
    def to_dict(self) -> dict:
        return {**super().to_dict(), "timeout": True}


class CommandFailedError(ExecutionError):
    """The process exited with a non-zero code."""


class JobStateError(BridgeError):
    """A settled job was asked to settle again."""

    status_code = 409
