"""Sandbox provider backed by e2b microVMs."""

from e2b import AsyncSandbox
from e2b import CommandExitException
from e2b import NotFoundException
from e2b import TimeoutException

from craft.configs import E2B_API_KEY
from craft.configs import E2B_TEMPLATE
from craft.errors import SandboxNotFoundError
from craft.errors import ToolTimeoutError
from craft.sandbox.base import SandboxProvider
from craft.sandbox.models import CommandResult
from craft.sandbox.models import SandboxConfig
from craft.sandbox.models import SandboxInfo
from craft.utils.logger import setup_logger

logger = setup_logger()


def _ms_to_seconds(timeout_ms: int) -> int:
    return max(1, timeout_ms // 1000)


class E2BSandboxProvider(SandboxProvider):
    """Runs project sandboxes on e2b.

    Connected AsyncSandbox objects are cached by sandbox id so repeated
    operations don't reconnect. A cache miss (e.g. after a process restart)
    reconnects by id, which also resumes a paused sandbox.
    """

    def __init__(
        self,
        api_key: str | None = E2B_API_KEY,
        template: str | None = E2B_TEMPLATE,
    ) -> None:
        self._api_key = api_key
        self._template = template
        self._sandboxes: dict[str, AsyncSandbox] = {}

    async def _get_sandbox(self, sandbox_id: str) -> AsyncSandbox:
        sandbox = self._sandboxes.get(sandbox_id)
        if sandbox is not None:
            return sandbox

        try:
            sandbox = await AsyncSandbox.connect(sandbox_id, api_key=self._api_key)
        except NotFoundException as e:
            raise SandboxNotFoundError(sandbox_id) from e

        self._sandboxes[sandbox_id] = sandbox
        return sandbox

    async def create(self, config: SandboxConfig) -> SandboxInfo:
        sandbox = await AsyncSandbox.create(
            template=config.template or self._template,
            timeout=_ms_to_seconds(config.timeout_ms),
            metadata={"project_id": config.project_id, **config.metadata},
            api_key=self._api_key,
        )
        self._sandboxes[sandbox.sandbox_id] = sandbox
        logger.info(
            f"Created e2b sandbox {sandbox.sandbox_id} for project {config.project_id}"
        )
        return SandboxInfo(sandbox_id=sandbox.sandbox_id)

    async def run_command(
        self, sandbox_id: str, command: str, timeout_ms: int
    ) -> CommandResult:
        sandbox = await self._get_sandbox(sandbox_id)
        try:
            result = await sandbox.commands.run(
                command, timeout=_ms_to_seconds(timeout_ms)
            )
        except CommandExitException as e:
            return CommandResult(
                stdout=e.stdout, stderr=e.stderr, exit_code=e.exit_code, error=e.error
            )
        except TimeoutException as e:
            raise ToolTimeoutError(command, timeout_ms) from e
        except NotFoundException as e:
            self._sandboxes.pop(sandbox_id, None)
            raise SandboxNotFoundError(sandbox_id) from e

        return CommandResult(
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            error=result.error,
        )

    async def start_background_command(self, sandbox_id: str, command: str) -> int:
        sandbox = await self._get_sandbox(sandbox_id)
        try:
            handle = await sandbox.commands.run(command, background=True)
        except NotFoundException as e:
            self._sandboxes.pop(sandbox_id, None)
            raise SandboxNotFoundError(sandbox_id) from e
        return handle.pid

    async def write_file(
        self, sandbox_id: str, path: str, content: str, timeout_ms: int
    ) -> None:
        sandbox = await self._get_sandbox(sandbox_id)
        try:
            await sandbox.files.write(
                path, content, request_timeout=_ms_to_seconds(timeout_ms)
            )
        except TimeoutException as e:
            raise ToolTimeoutError(f"write {path}", timeout_ms) from e
        except NotFoundException as e:
            self._sandboxes.pop(sandbox_id, None)
            raise SandboxNotFoundError(sandbox_id) from e

    async def read_file(self, sandbox_id: str, path: str, timeout_ms: int) -> str:
        sandbox = await self._get_sandbox(sandbox_id)
        try:
            return await sandbox.files.read(
                path, request_timeout=_ms_to_seconds(timeout_ms)
            )
        except TimeoutException as e:
            raise ToolTimeoutError(f"read {path}", timeout_ms) from e
        except NotFoundException as e:
            # envd answers 404 both for a missing file and a gone sandbox
            if await sandbox.is_running():
                raise FileNotFoundError(path) from e
            self._sandboxes.pop(sandbox_id, None)
            raise SandboxNotFoundError(sandbox_id) from e

    async def extend_timeout(self, sandbox_id: str, extension_ms: int) -> None:
        sandbox = await self._get_sandbox(sandbox_id)
        try:
            await sandbox.set_timeout(_ms_to_seconds(extension_ms))
        except NotFoundException as e:
            self._sandboxes.pop(sandbox_id, None)
            raise SandboxNotFoundError(sandbox_id) from e

    async def pause(self, sandbox_id: str) -> None:
        sandbox = await self._get_sandbox(sandbox_id)
        try:
            await sandbox.beta_pause()
        except NotFoundException as e:
            raise SandboxNotFoundError(sandbox_id) from e
        finally:
            # connect() is what resumes, so never reuse the paused object
            self._sandboxes.pop(sandbox_id, None)
        logger.info(f"Paused e2b sandbox {sandbox_id}")

    async def resume(self, sandbox_id: str, timeout_ms: int) -> None:
        self._sandboxes.pop(sandbox_id, None)
        sandbox = await self._get_sandbox(sandbox_id)
        try:
            await sandbox.set_timeout(_ms_to_seconds(timeout_ms))
        except NotFoundException as e:
            self._sandboxes.pop(sandbox_id, None)
            raise SandboxNotFoundError(sandbox_id) from e
        logger.info(f"Resumed e2b sandbox {sandbox_id}")

    async def destroy(self, sandbox_id: str) -> None:
        sandbox = self._sandboxes.pop(sandbox_id, None)
        if sandbox is None:
            await AsyncSandbox.kill(sandbox_id, api_key=self._api_key)
        else:
            await sandbox.kill()
        logger.info(f"Killed e2b sandbox {sandbox_id}")
