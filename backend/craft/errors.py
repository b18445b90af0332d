"""Exception classes for sandbox orchestration, tool execution and metering."""

from typing import Any


class CraftError(Exception):
    """Base exception for Craft backend errors."""


class UsageDeniedError(CraftError):
    """Raised when a user has no credits left for the current period."""

    def __init__(
        self,
        reason: str,
        used: float,
        limit: float,
        remaining: float,
    ):
        self.reason = reason
        self.used = used
        self.limit = limit
        self.remaining = remaining
        super().__init__(reason)


class SandboxProviderUnavailableError(CraftError):
    """The sandbox provider failed to create or reach a sandbox. Retryable."""

    def __init__(self, message: str, project_id: str | None = None):
        self.project_id = project_id
        super().__init__(message)


class SandboxNotFoundError(CraftError):
    """The provider no longer knows the sandbox (paused, expired or killed)."""

    def __init__(self, sandbox_id: str):
        self.sandbox_id = sandbox_id
        super().__init__(f"Sandbox {sandbox_id} not found")


class ToolValidationError(CraftError):
    """Tool arguments were malformed or rejected."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.details = details
        super().__init__(message)


class ToolTimeoutError(CraftError):
    """A sandbox operation exceeded its timeout."""

    def __init__(self, operation: str, timeout_ms: int):
        self.operation = operation
        self.timeout_ms = timeout_ms
        super().__init__(f"{operation} timed out after {timeout_ms}ms")


class MeteringPersistenceError(CraftError):
    """Recording a usage turn failed. Logged, never shown to the end user."""
