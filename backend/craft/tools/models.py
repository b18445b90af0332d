from datetime import datetime
from datetime import timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field


class SandboxToolName(str, Enum):
    WRITE_FILE = "write_file"
    READ_FILE = "read_file"
    RUN_COMMAND = "run_command"
    INSTALL_DEPENDENCY = "install_dependency"


class ToolCallStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class ToolErrorKind(str, Enum):
    VALIDATION = "validation"
    TIMEOUT = "timeout"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    EXECUTION = "execution"


class ToolCall(BaseModel):
    """One tool invocation requested by the model during a turn.

    Status only moves forward: running -> success or running -> error.
    completed_at is set exactly when the call leaves running.
    """

    id: str
    name: str
    args: dict[str, Any] = Field(default_factory=dict)
    status: ToolCallStatus = ToolCallStatus.RUNNING
    result: str | None = None
    error: str | None = None
    error_kind: ToolErrorKind | None = None
    # Structured result for callers other than the model (e.g. install endpoint)
    details: dict[str, Any] | None = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status != ToolCallStatus.RUNNING

    def _complete(self, status: ToolCallStatus) -> None:
        if self.is_terminal:
            raise ValueError(
                f"Tool call {self.id} already completed with status {self.status.value}"
            )
        self.status = status
        self.completed_at = datetime.now(timezone.utc)

    def mark_success(
        self, result: str, details: dict[str, Any] | None = None
    ) -> "ToolCall":
        self.result = result
        self.details = details
        self._complete(ToolCallStatus.SUCCESS)
        return self

    def mark_error(
        self,
        error: str,
        kind: ToolErrorKind,
        details: dict[str, Any] | None = None,
    ) -> "ToolCall":
        self.error = error
        self.error_kind = kind
        self.details = details
        self._complete(ToolCallStatus.ERROR)
        return self

    def llm_facing_response(self) -> str:
        """Text fed back to the model as the tool message content."""
        if self.status == ToolCallStatus.SUCCESS:
            return self.result or "Done."
        if self.status == ToolCallStatus.ERROR:
            kind = self.error_kind.value if self.error_kind else "error"
            return f"Tool failed ({kind}): {self.error}"
        return "Tool is still running."


class PackagePartition(BaseModel):
    valid: list[str]
    rejected: list[str]
