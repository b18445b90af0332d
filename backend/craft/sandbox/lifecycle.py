"""Creation, keep-alive, pausing and teardown of project sandboxes.

SandboxLifecycleManager is the only component that asks the provider to
create, extend, pause, resume or destroy a sandbox. All handles it produces
live in the SandboxRegistry.

Effective lifecycle of a project's sandbox (not stored as a field):
    absent -> provisioning -> ready -> (idle) -> paused -> (stale) -> absent
                                 ^                 |
                                 +---- resumed ----+

The reaper pauses sandboxes idle for longer than the pause threshold and
destroys ones that stayed paused past their TTL. A sandbox can also die on the
provider side (expired, killed). That's only noticed when the next operation
finds a dead handle (SandboxNotFoundError) or the local handle has expired.
"""

import asyncio
import threading

from craft.configs import DEV_SERVER_COMMAND
from craft.configs import HEALTH_CHECK_TIMEOUT_MS
from craft.configs import HEARTBEAT_INTERVAL_MS
from craft.configs import SANDBOX_CLEANUP_INTERVAL_SECONDS
from craft.configs import SANDBOX_PAUSE_AFTER_IDLE_MS
from craft.configs import SANDBOX_PAUSED_TTL_SECONDS
from craft.configs import SANDBOX_PROJECT_DIR
from craft.configs import SANDBOX_TIMEOUT_MS
from craft.errors import SandboxNotFoundError
from craft.errors import SandboxProviderUnavailableError
from craft.sandbox.base import get_sandbox_provider
from craft.sandbox.base import SandboxProvider
from craft.sandbox.models import PausedSandbox
from craft.sandbox.models import ReapSummary
from craft.sandbox.models import SandboxConfig
from craft.sandbox.models import SandboxHandle
from craft.sandbox.models import SandboxHealth
from craft.sandbox.registry import get_sandbox_registry
from craft.sandbox.registry import SandboxRegistry
from craft.utils.logger import setup_logger

logger = setup_logger()


def validate_heartbeat_margin(heartbeat_interval_ms: int, idle_timeout_ms: int) -> None:
    """Ensure one missed heartbeat can't let a sandbox time out.

    Raises:
        ValueError: If the heartbeat interval is not strictly less than half
            of the idle timeout
    """
    if heartbeat_interval_ms <= 0 or idle_timeout_ms <= 0:
        raise ValueError("Heartbeat interval and idle timeout must be positive")

    if heartbeat_interval_ms * 2 >= idle_timeout_ms:
        raise ValueError(
            f"Heartbeat interval ({heartbeat_interval_ms}ms) must be less than half "
            f"of the sandbox idle timeout ({idle_timeout_ms}ms)"
        )


def validate_pause_threshold(
    heartbeat_interval_ms: int, pause_after_idle_ms: int, idle_timeout_ms: int
) -> None:
    """The reaper must pause a sandbox before the provider times it out, and
    never pause one whose heartbeats are arriving on schedule.

    Raises:
        ValueError: Unless heartbeat interval < pause threshold < idle timeout
    """
    if not heartbeat_interval_ms < pause_after_idle_ms < idle_timeout_ms:
        raise ValueError(
            f"Pause threshold ({pause_after_idle_ms}ms) must be greater than the "
            f"heartbeat interval ({heartbeat_interval_ms}ms) and less than the "
            f"sandbox idle timeout ({idle_timeout_ms}ms)"
        )


class SandboxLifecycleManager:
    def __init__(
        self,
        registry: SandboxRegistry,
        provider: SandboxProvider,
        sandbox_timeout_ms: int = SANDBOX_TIMEOUT_MS,
        heartbeat_interval_ms: int = HEARTBEAT_INTERVAL_MS,
        pause_after_idle_ms: int = SANDBOX_PAUSE_AFTER_IDLE_MS,
        paused_ttl_seconds: int = SANDBOX_PAUSED_TTL_SECONDS,
    ) -> None:
        validate_heartbeat_margin(heartbeat_interval_ms, sandbox_timeout_ms)
        validate_pause_threshold(
            heartbeat_interval_ms, pause_after_idle_ms, sandbox_timeout_ms
        )

        self._registry = registry
        self._provider = provider
        self._sandbox_timeout_ms = sandbox_timeout_ms
        self._pause_after_idle_ms = pause_after_idle_ms
        self._paused_ttl_seconds = paused_ttl_seconds

    @property
    def registry(self) -> SandboxRegistry:
        return self._registry

    @property
    def provider(self) -> SandboxProvider:
        return self._provider

    async def get_or_create(self, project_id: str) -> SandboxHandle:
        """Return the project's live sandbox, resuming or provisioning one if needed.

        A paused sandbox is resumed first so the project keeps its files. Only
        when that fails is a fresh sandbox created. Concurrent callers for the
        same project wait on the project's lock, so only the first one
        resumes or provisions. Other projects are unaffected.

        Sandboxes this call gives up on (an expired handle, a paused sandbox
        that would not resume) are destroyed once the lock is released.

        Raises:
            SandboxProviderUnavailableError: If the provider fails to create
                the sandbox. No registry entry is left behind.
        """
        abandoned: list[str] = []
        try:
            async with self._registry.lock(project_id):
                handle = self._registry.get(project_id)
                if handle is not None:
                    if not handle.is_expired():
                        handle.touch()
                        return handle

                    logger.info(
                        f"Sandbox {handle.sandbox_id} for project {project_id} "
                        "expired, releasing it"
                    )
                    self._registry.remove(project_id)
                    abandoned.append(handle.sandbox_id)

                paused = self._registry.pop_paused(project_id)
                if paused is not None:
                    resumed = await self._resume(paused)
                    if resumed is not None:
                        return resumed
                    abandoned.append(paused.sandbox_id)

                return await self._provision(project_id)
        finally:
            for sandbox_id in abandoned:
                await self._destroy_quietly(sandbox_id, project_id)

    async def _resume(self, paused: PausedSandbox) -> SandboxHandle | None:
        try:
            await self._provider.resume(paused.sandbox_id, self._sandbox_timeout_ms)
        except Exception as e:
            logger.warning(
                f"Failed to resume sandbox {paused.sandbox_id} for project "
                f"{paused.project_id}, provisioning a new one: {e}"
            )
            return None

        # Background processes are not assumed to survive a pause
        handle = SandboxHandle(
            sandbox_id=paused.sandbox_id,
            project_id=paused.project_id,
            timeout_ms=self._sandbox_timeout_ms,
        )
        self._registry.put(paused.project_id, handle)
        logger.info(
            f"Resumed sandbox {paused.sandbox_id} for project {paused.project_id}"
        )
        return handle

    async def _provision(self, project_id: str) -> SandboxHandle:
        logger.info(f"Provisioning sandbox for project {project_id}")
        try:
            info = await self._provider.create(
                SandboxConfig(
                    project_id=project_id,
                    timeout_ms=self._sandbox_timeout_ms,
                )
            )
        except Exception as e:
            logger.error(f"Failed to provision sandbox for project {project_id}: {e}")
            raise SandboxProviderUnavailableError(
                f"Failed to provision sandbox: {e}", project_id=project_id
            ) from e

        handle = SandboxHandle(
            sandbox_id=info.sandbox_id,
            project_id=project_id,
            timeout_ms=self._sandbox_timeout_ms,
        )
        self._registry.put(project_id, handle)
        logger.info(f"Sandbox {info.sandbox_id} ready for project {project_id}")
        return handle

    async def keep_alive(self, sandbox_id: str, extension_ms: int) -> bool:
        """Ask the provider to push back the sandbox's idle timeout.

        Never raises. A failed extension is tolerated because the idle timeout
        is more than twice the heartbeat interval, so the next heartbeat can
        still make it. A sandbox the provider no longer knows is dropped from
        the registry so the next operation provisions a fresh one.
        """
        try:
            await self._provider.extend_timeout(sandbox_id, extension_ms)
        except SandboxNotFoundError:
            handle = self._registry.find_by_sandbox_id(sandbox_id)
            if handle is not None:
                await self.invalidate(handle.project_id, sandbox_id)
            logger.warning(f"Sandbox {sandbox_id} is gone, heartbeat dropped it")
            return False
        except Exception as e:
            logger.warning(f"Failed to extend timeout of sandbox {sandbox_id}: {e}")
            return False

        handle = self._registry.find_by_sandbox_id(sandbox_id)
        if handle is not None:
            handle.touch()
        return True

    async def teardown(self, project_id: str) -> bool:
        """Remove the project's sandbox, live or paused, and release it.

        Never raises.

        Returns:
            Whether the project had a sandbox to release
        """
        async with self._registry.lock(project_id):
            handle = self._registry.remove(project_id)
            paused = self._registry.pop_paused(project_id)

        sandbox_ids = [
            record.sandbox_id for record in (handle, paused) if record is not None
        ]
        for sandbox_id in sandbox_ids:
            await self._destroy_quietly(sandbox_id, project_id)
        return bool(sandbox_ids)

    async def invalidate(self, project_id: str, sandbox_id: str) -> None:
        """Drop a handle that turned out to be dead.

        Only removes the entry if it still points at sandbox_id, so a handle
        another request already re-provisioned is left alone.
        """
        async with self._registry.lock(project_id):
            handle = self._registry.get(project_id)
            if handle is not None and handle.sandbox_id == sandbox_id:
                logger.info(
                    f"Dropping dead sandbox {sandbox_id} for project {project_id}"
                )
                self._registry.remove(project_id)

    async def reap_idle_sandboxes(self) -> ReapSummary:
        """Pause idle sandboxes and destroy the ones nobody will come back to.

        - Idle past the pause threshold: paused (destroyed if the pause fails)
        - Handle already expired: destroyed, the provider has reclaimed it
        - Paused past the paused TTL: destroyed
        """
        summary = ReapSummary()

        for handle in self._registry.idle_handles(self._pause_after_idle_ms):
            project_id = handle.project_id
            destroy = False
            async with self._registry.lock(project_id):
                current = self._registry.get(project_id)
                # Touched or replaced while we waited on the lock
                if current is not handle or not handle.is_idle_for(
                    self._pause_after_idle_ms
                ):
                    continue

                if handle.is_expired():
                    self._registry.remove(project_id)
                    destroy = True
                else:
                    try:
                        await self._provider.pause(handle.sandbox_id)
                    except Exception as e:
                        logger.warning(
                            f"Failed to pause sandbox {handle.sandbox_id} "
                            f"for project {project_id}, destroying it: {e}"
                        )
                        self._registry.remove(project_id)
                        destroy = True
                    else:
                        self._registry.mark_paused(handle)
                        summary.paused += 1
                        logger.info(
                            f"Paused idle sandbox {handle.sandbox_id} "
                            f"for project {project_id}"
                        )

            if destroy:
                await self._destroy_quietly(handle.sandbox_id, project_id)
                summary.destroyed += 1

        for paused in self._registry.paused_older_than(self._paused_ttl_seconds):
            async with self._registry.lock(paused.project_id):
                # Resumed while we waited on the lock
                if self._registry.get_paused(paused.project_id) is not paused:
                    continue
                self._registry.pop_paused(paused.project_id)

            await self._destroy_quietly(paused.sandbox_id, paused.project_id)
            summary.destroyed += 1

        if summary.paused or summary.destroyed:
            logger.info(
                f"Idle sweep paused {summary.paused} and destroyed "
                f"{summary.destroyed} sandboxes"
            )
        return summary

    async def check_health(self, project_id: str) -> SandboxHealth:
        """Run a trivial command in the project's sandbox.

        An unhealthy sandbox is torn down so the next operation provisions a
        fresh one.
        """
        handle = self._registry.get(project_id)
        if handle is None:
            return SandboxHealth(
                healthy=False, sandbox_id=None, message="No active sandbox"
            )

        sandbox_id = handle.sandbox_id
        try:
            result = await self._provider.run_command(
                sandbox_id, "echo ok", HEALTH_CHECK_TIMEOUT_MS
            )
            healthy = result.succeeded and "ok" in result.stdout
        except Exception as e:
            logger.warning(f"Health check failed for sandbox {sandbox_id}: {e}")
            healthy = False

        if not healthy:
            await self.invalidate(project_id, sandbox_id)
            await self._destroy_quietly(sandbox_id, project_id)
            return SandboxHealth(
                healthy=False,
                sandbox_id=sandbox_id,
                message="Sandbox was unresponsive and has been released",
            )

        self._registry.touch(project_id)
        return SandboxHealth(
            healthy=True, sandbox_id=sandbox_id, message="Sandbox is healthy"
        )

    async def start_dev_server(self, project_id: str) -> SandboxHandle:
        """Start the project's dev server unless one is already recorded.

        A sandbox that turns out to be dead is replaced once.

        Raises:
            SandboxProviderUnavailableError: If no sandbox can be provisioned
            SandboxNotFoundError: If the replacement sandbox is dead as well
        """
        handle = await self.get_or_create(project_id)
        if handle.dev_server_process_id is not None:
            return handle

        command = f"cd {SANDBOX_PROJECT_DIR} && {DEV_SERVER_COMMAND}"
        try:
            pid = await self._provider.start_background_command(
                handle.sandbox_id, command
            )
        except SandboxNotFoundError:
            await self.invalidate(project_id, handle.sandbox_id)
            handle = await self.get_or_create(project_id)
            pid = await self._provider.start_background_command(
                handle.sandbox_id, command
            )
        handle.dev_server_process_id = pid
        logger.info(f"Dev server started in sandbox {handle.sandbox_id} (pid {pid})")
        return handle

    async def _destroy_quietly(self, sandbox_id: str, project_id: str) -> None:
        try:
            await self._provider.destroy(sandbox_id)
        except Exception as e:
            # Provider idle timeout reclaims it eventually
            logger.warning(
                f"Failed to destroy sandbox {sandbox_id} for project {project_id}: {e}"
            )


async def run_idle_sandbox_reaper(
    manager: SandboxLifecycleManager,
    interval_seconds: int = SANDBOX_CLEANUP_INTERVAL_SECONDS,
) -> None:
    """Periodically pause idle sandboxes and destroy stale ones until cancelled."""
    logger.info(f"Idle sandbox reaper started (every {interval_seconds}s)")
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await manager.reap_idle_sandboxes()
        except Exception as e:
            logger.exception(f"Idle sandbox reaper iteration failed: {e}")


_lifecycle_manager: SandboxLifecycleManager | None = None
_lifecycle_manager_lock = threading.Lock()


def get_sandbox_lifecycle_manager() -> SandboxLifecycleManager:
    global _lifecycle_manager
    if _lifecycle_manager is None:
        with _lifecycle_manager_lock:
            if _lifecycle_manager is None:
                _lifecycle_manager = SandboxLifecycleManager(
                    registry=get_sandbox_registry(),
                    provider=get_sandbox_provider(),
                )
    return _lifecycle_manager
