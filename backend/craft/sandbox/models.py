"""Pydantic models for sandbox module communication."""

from datetime import datetime
from datetime import timedelta
from datetime import timezone

from pydantic import BaseModel
from pydantic import Field


def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


class SandboxConfig(BaseModel):
    """Configuration for creating a sandbox.

    Passed to SandboxProvider.create().
    """

    project_id: str
    timeout_ms: int
    template: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class SandboxInfo(BaseModel):
    """Information about a freshly created sandbox.

    Returned by SandboxProvider.create().
    """

    sandbox_id: str
    created_at: datetime = Field(default_factory=_utc_now)


class CommandResult(BaseModel):
    """Captured output of a command run inside a sandbox."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and self.error is None

    @property
    def output(self) -> str:
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


class SandboxHandle(BaseModel):
    """In-process record pointing at one live sandbox.

    Owned by the SandboxRegistry. Callers borrow it for the duration of a
    single operation and must not keep references past that call.
    """

    sandbox_id: str
    project_id: str
    timeout_ms: int
    last_accessed_at: datetime = Field(default_factory=_utc_now)
    dev_server_process_id: int | None = None

    @property
    def expires_at(self) -> datetime:
        return self.last_accessed_at + timedelta(milliseconds=self.timeout_ms)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or _utc_now()) >= self.expires_at

    def is_idle_for(self, idle_ms: int, now: datetime | None = None) -> bool:
        return (now or _utc_now()) - self.last_accessed_at >= timedelta(
            milliseconds=idle_ms
        )

    def touch(self, now: datetime | None = None) -> None:
        candidate = now or _utc_now()
        # liveness only ever moves forward
        if candidate > self.last_accessed_at:
            self.last_accessed_at = candidate


class PausedSandbox(BaseModel):
    """A sandbox the reaper paused. Its filesystem survives until destroyed."""

    sandbox_id: str
    project_id: str
    paused_at: datetime = Field(default_factory=_utc_now)

    def is_older_than(self, max_age_seconds: int, now: datetime | None = None) -> bool:
        return (now or _utc_now()) - self.paused_at >= timedelta(
            seconds=max_age_seconds
        )


class ReapSummary(BaseModel):
    paused: int = 0
    destroyed: int = 0


class SandboxHealth(BaseModel):
    healthy: bool
    sandbox_id: str | None
    message: str
