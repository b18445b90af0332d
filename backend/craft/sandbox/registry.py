"""In-memory registry of sandbox handles, keyed by project."""

import asyncio
import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from datetime import timezone

from craft.sandbox.models import PausedSandbox
from craft.sandbox.models import SandboxHandle
from craft.utils.logger import setup_logger

logger = setup_logger()


class _ProjectLock:
    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        # Holders plus waiters. The entry is pruned when this drops to zero.
        self.users = 0


class SandboxRegistry:
    """Authoritative map of project_id -> SandboxHandle.

    The plain accessors (get/put/touch/remove) never await, so each one is
    atomic on the event loop. Read-modify-write sequences that span an await
    (e.g. "look up, and create if missing") must hold lock(project_id). Locks
    are per project, so unrelated projects never wait on each other. A
    project's lock only exists while someone holds or waits on it.

    Paused sandboxes are tracked separately from live handles. A project has
    at most one of each, and get_or_create resumes the paused one before it
    provisions anything new.

    NOTE: put() does not tear down a handle it replaces. Callers that replace
    a live handle are responsible for releasing the old sandbox.
    """

    def __init__(self) -> None:
        self._handles: dict[str, SandboxHandle] = {}
        self._paused: dict[str, PausedSandbox] = {}
        self._locks: dict[str, _ProjectLock] = {}

    def __len__(self) -> int:
        return len(self._handles)

    @asynccontextmanager
    async def lock(self, project_id: str) -> AsyncIterator[None]:
        entry = self._locks.get(project_id)
        if entry is None:
            entry = _ProjectLock()
            self._locks[project_id] = entry

        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(project_id) is entry:
                del self._locks[project_id]

    def active_lock_count(self) -> int:
        return len(self._locks)

    def get(self, project_id: str) -> SandboxHandle | None:
        return self._handles.get(project_id)

    def put(self, project_id: str, handle: SandboxHandle) -> None:
        previous = self._handles.get(project_id)
        if previous is not None and previous.sandbox_id != handle.sandbox_id:
            logger.warning(
                f"Replacing sandbox {previous.sandbox_id} with {handle.sandbox_id} "
                f"for project {project_id}"
            )
        self._handles[project_id] = handle

    def touch(self, project_id: str) -> None:
        handle = self._handles.get(project_id)
        if handle is not None:
            handle.touch()

    def remove(self, project_id: str) -> SandboxHandle | None:
        return self._handles.pop(project_id, None)

    def find_by_sandbox_id(self, sandbox_id: str) -> SandboxHandle | None:
        for handle in self._handles.values():
            if handle.sandbox_id == sandbox_id:
                return handle
        return None

    def expired_handles(self, now: datetime | None = None) -> list[SandboxHandle]:
        now = now or datetime.now(tz=timezone.utc)
        return [handle for handle in self._handles.values() if handle.is_expired(now)]

    def idle_handles(
        self, idle_ms: int, now: datetime | None = None
    ) -> list[SandboxHandle]:
        now = now or datetime.now(tz=timezone.utc)
        return [
            handle
            for handle in self._handles.values()
            if handle.is_idle_for(idle_ms, now)
        ]

    def mark_paused(self, handle: SandboxHandle) -> PausedSandbox:
        """Move a handle from the live map to the paused map."""
        self._handles.pop(handle.project_id, None)
        paused = PausedSandbox(
            sandbox_id=handle.sandbox_id, project_id=handle.project_id
        )
        self._paused[handle.project_id] = paused
        return paused

    def get_paused(self, project_id: str) -> PausedSandbox | None:
        return self._paused.get(project_id)

    def pop_paused(self, project_id: str) -> PausedSandbox | None:
        return self._paused.pop(project_id, None)

    def paused_older_than(
        self, max_age_seconds: int, now: datetime | None = None
    ) -> list[PausedSandbox]:
        now = now or datetime.now(tz=timezone.utc)
        return [
            paused
            for paused in self._paused.values()
            if paused.is_older_than(max_age_seconds, now)
        ]


_registry: SandboxRegistry | None = None
_registry_lock = threading.Lock()


def get_sandbox_registry() -> SandboxRegistry:
    """Get the process-wide registry instance."""
    global _registry
    if _registry is None:
        with _registry_lock:
            if _registry is None:
                _registry = SandboxRegistry()
    return _registry
