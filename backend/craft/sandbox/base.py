"""Abstract base class and factory for sandbox providers.

SandboxProvider is the abstract interface to whatever actually runs project
sandboxes. Use get_sandbox_provider() to get the implementation selected by
SANDBOX_BACKEND.

IMPORTANT: Only the SandboxLifecycleManager may call create(), extend_timeout(),
pause(), resume() and destroy(). Everything else goes through the lifecycle
manager so the SandboxRegistry stays the single source of truth for live sandboxes.

Architecture Note (Project-Scoped Sandbox Model):
- One sandbox is shared by every request for a project
- The project lives at SANDBOX_PROJECT_DIR inside the sandbox
- The provider enforces its own idle timeout; heartbeats push it back
"""

import threading
from abc import ABC
from abc import abstractmethod

from craft.configs import SANDBOX_BACKEND
from craft.configs import SandboxBackend
from craft.sandbox.models import CommandResult
from craft.sandbox.models import SandboxConfig
from craft.sandbox.models import SandboxInfo
from craft.utils.logger import setup_logger

logger = setup_logger()


class SandboxProvider(ABC):
    """Abstract interface for remote sandbox operations.

    Defines the contract for:
    - Creation and destruction of sandboxes
    - Pausing idle sandboxes and resuming them later
    - Timeout extension (keep-alive)
    - Command execution, foreground and background
    - File reads and writes

    Error contract for implementations:
    - SandboxNotFoundError when the sandbox is gone (paused, expired, killed)
    - ToolTimeoutError when an operation exceeds its timeout
    - Any other exception is treated as the provider being unavailable

    Use get_sandbox_provider() to get the appropriate implementation.
    """

    @abstractmethod
    async def create(self, config: SandboxConfig) -> SandboxInfo:
        """Create a new sandbox.

        Args:
            config: Project and timeout settings for the new sandbox

        Returns:
            SandboxInfo with the provider's identifier for the sandbox
        """
        ...

    @abstractmethod
    async def run_command(
        self, sandbox_id: str, command: str, timeout_ms: int
    ) -> CommandResult:
        """Run a shell command and wait for it to finish.

        A non-zero exit code is reported through CommandResult.exit_code,
        not raised.
        """
        ...

    @abstractmethod
    async def start_background_command(self, sandbox_id: str, command: str) -> int:
        """Start a long-running command without waiting for it.

        Returns:
            The process id inside the sandbox
        """
        ...

    @abstractmethod
    async def write_file(
        self, sandbox_id: str, path: str, content: str, timeout_ms: int
    ) -> None:
        """Write a file at an absolute path inside the sandbox, creating parents."""
        ...

    @abstractmethod
    async def read_file(self, sandbox_id: str, path: str, timeout_ms: int) -> str:
        """Read a file at an absolute path inside the sandbox."""
        ...

    @abstractmethod
    async def extend_timeout(self, sandbox_id: str, extension_ms: int) -> None:
        """Push back the sandbox's own idle timeout to now + extension_ms."""
        ...

    @abstractmethod
    async def pause(self, sandbox_id: str) -> None:
        """Suspend the sandbox. Billing stops and the filesystem is kept."""
        ...

    @abstractmethod
    async def resume(self, sandbox_id: str, timeout_ms: int) -> None:
        """Bring a paused sandbox back with a fresh idle timeout.

        Raises:
            SandboxNotFoundError: If the sandbox no longer exists
        """
        ...

    @abstractmethod
    async def destroy(self, sandbox_id: str) -> None:
        """Release the sandbox. Best effort: the provider timeout reclaims it anyway."""
        ...


# Singleton instance cache for the factory
_sandbox_provider_instance: SandboxProvider | None = None
_sandbox_provider_lock = threading.Lock()


def get_sandbox_provider() -> SandboxProvider:
    """Get the appropriate SandboxProvider implementation based on SANDBOX_BACKEND.

    Returns:
        SandboxProvider instance:
        - E2BSandboxProvider for e2b backend (production)
        - LocalSandboxProvider for local backend (development)
    """
    global _sandbox_provider_instance

    if _sandbox_provider_instance is None:
        with _sandbox_provider_lock:
            if _sandbox_provider_instance is None:
                if SANDBOX_BACKEND == SandboxBackend.LOCAL:
                    from craft.sandbox.local.local_sandbox_provider import (
                        LocalSandboxProvider,
                    )

                    _sandbox_provider_instance = LocalSandboxProvider()
                elif SANDBOX_BACKEND == SandboxBackend.E2B:
                    from craft.sandbox.e2b.e2b_sandbox_provider import (
                        E2BSandboxProvider,
                    )

                    _sandbox_provider_instance = E2BSandboxProvider()
                else:
                    raise ValueError(f"Unknown sandbox backend: {SANDBOX_BACKEND}")

                logger.info(
                    f"Using {type(_sandbox_provider_instance).__name__} "
                    f"for sandbox backend '{SANDBOX_BACKEND.value}'"
                )

    return _sandbox_provider_instance
