"""jjdag exception hierarchy with exit codes and recovery metadata."""

from typing import Any, Optional

# Exit code constants (simple 0-5 range)
EXIT_SUCCESS = 0  # Operation succeeded
EXIT_ERROR = 1  # Generic error / failure
EXIT_NOT_READY = 2  # Retryable / state must be refreshed first
EXIT_PARTIAL = 4  # Plan failed after some steps were applied
EXIT_USAGE = 5  # Invalid usage / user-correctable


class JjdagError(Exception):
    """Base exception for all jjdag errors."""

    def __init__(self, message: str, exit_code: int = EXIT_ERROR):
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code


class ConfigError(JjdagError):
    """Configuration errors (invalid values, unreadable files)."""

    def __init__(self, message: str = "Configuration error"):
        super().__init__(message, exit_code=EXIT_ERROR)


class RegistryUnavailable(JjdagError):
    """
    Workspace listing failed or could not be parsed.

    Retryable: re-issue the refresh. The previous snapshot stays in place.
    """

    def __init__(self, message: str = "Workspace registry unavailable"):
        super().__init__(message, exit_code=EXIT_NOT_READY)


class PlanRejected(JjdagError):
    """Intent is invalid against the current registry (unknown name, duplicate, ...)."""

    def __init__(self, message: str):
        super().__init__(message, exit_code=EXIT_USAGE)


class PathCollision(JjdagError):
    """Move destination already exists and is non-empty."""

    def __init__(self, path: Any, message: Optional[str] = None):
        super().__init__(message or f"Destination already exists: {path}", exit_code=EXIT_USAGE)
        self.path = path


class TopologyDrift(JjdagError):
    """Store, listing and filesystem disagree; nothing is fixed automatically."""

    def __init__(self, message: str, mismatches: Optional[list[Any]] = None):
        super().__init__(message, exit_code=EXIT_NOT_READY)
        self.mismatches = mismatches or []


class StoreError(JjdagError):
    """Base for operation-store failures."""


class RecordNotFound(StoreError):
    """Workspace name absent from the operation store."""

    def __init__(self, name: str):
        super().__init__(f"No store record for workspace '{name}'")
        self.name = name


class StoreCorrupt(StoreError):
    """Store file does not have the expected structure. No write was attempted."""

    def __init__(self, message: str = "Operation store is corrupt"):
        super().__init__(message)


class IoFailure(StoreError):
    """Filesystem error while reading or writing the store, surfaced verbatim."""

    def __init__(self, error: OSError, receipt: Any = None):
        super().__init__(str(error))
        self.error = error
        self.receipt = receipt


class MoveVerificationFailed(JjdagError):
    """Destination of a directory move does not match the pre-move snapshot."""

    def __init__(
        self,
        message: str,
        expected: Any = None,
        actual: Any = None,
        receipt: Any = None,
    ):
        super().__init__(message)
        self.expected = expected
        self.actual = actual
        self.receipt = receipt


class CommandFailed(JjdagError):
    """External jj invocation exited non-zero."""

    def __init__(self, args: list[str], exit_code: int, stderr: str = ""):
        message = f"Command failed ({exit_code}): {' '.join(args)}"
        if stderr.strip():
            message += f"\n{stderr.strip()}"
        super().__init__(message)
        self.args_list = args
        self.returncode = exit_code
        self.stderr = stderr


class PlanFailed(JjdagError):
    """
    A plan step failed and compensations were attempted.

    The failing condition is chained as ``__cause__``. Compensation failures
    and irreversible-step warnings are listed, never raised in its place.
    """

    def __init__(
        self,
        step_index: int,
        step: Any,
        cause: Exception,
        compensation_errors: Optional[list[str]] = None,
        warnings: Optional[list[str]] = None,
    ):
        message = f"Plan failed at step {step_index + 1} ({step.describe()}): {cause}"
        super().__init__(message, exit_code=EXIT_PARTIAL)
        self.step_index = step_index
        self.step = step
        self.cause = cause
        self.compensation_errors = compensation_errors or []
        self.warnings = warnings or []
