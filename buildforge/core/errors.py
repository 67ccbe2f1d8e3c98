"""
Build engine error taxonomy.

Every error carries a `reason` string (stored on the Build) and a `retryable`
flag read by the queue's job handler.
"""
from typing import Optional


class BuildEngineError(Exception):
    """Base class for build engine errors."""
    reason = "internal"
    retryable = True

    def __init__(self, message: str, reason: Optional[str] = None, summary: Optional[str] = None):
        super().__init__(message)
        if reason is not None:
            self.reason = reason
        # Message without quoted build output
        self.summary = summary or message

    @property
    def message(self) -> str:
        return str(self)


class ConfigurationError(BuildEngineError):
    """Unsupported project type or missing required command."""
    reason = "configuration"
    retryable = False


class CloneError(BuildEngineError):
    """Repository unreachable, or branch/commit not found."""
    reason = "clone_failed"


class ExecutionError(BuildEngineError):
    """Build script exited with a non-zero code."""
    reason = "execution_failed"

    def __init__(
        self,
        message: str,
        exit_code: Optional[int] = None,
        log: str = "",
        reason: Optional[str] = None,
        summary: Optional[str] = None,
    ):
        super().__init__(message, reason=reason, summary=summary)
        self.exit_code = exit_code
        self.log = log


class BuildTimeoutError(ExecutionError):
    """Clone or run exceeded its wall-clock bound."""
    reason = "timeout"


class PackagingError(BuildEngineError):
    """Artifact archive could not be created."""
    reason = "packaging_failed"


class CacheError(BuildEngineError):
    """Cache restore/save failure. Never fails a build."""
    reason = "cache"


class BuildCancelledError(BuildEngineError):
    """Build was cancelled while its environment was running."""
    reason = "cancelled"
    retryable = False


class InvalidTransitionError(BuildEngineError):
    """Attempted to move a build out of a terminal status."""
    reason = "invalid_transition"
    retryable = False
