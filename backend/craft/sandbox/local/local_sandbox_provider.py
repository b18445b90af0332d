"""Local filesystem-based sandbox provider for development.

Each sandbox is a directory under SANDBOX_BASE_PATH and commands run as
subprocesses of the API server. Sandbox paths under SANDBOX_PROJECT_DIR are
mapped onto the sandbox directory.

NOTE: there is no isolation and no provider-side idle timeout. Sandboxes live
until destroyed or until the idle reaper pauses and later destroys them.
"""

import asyncio
import shutil
import uuid
from pathlib import Path

from craft.configs import SANDBOX_BASE_PATH
from craft.configs import SANDBOX_PROJECT_DIR
from craft.errors import SandboxNotFoundError
from craft.errors import ToolTimeoutError
from craft.sandbox.base import SandboxProvider
from craft.sandbox.models import CommandResult
from craft.sandbox.models import SandboxConfig
from craft.sandbox.models import SandboxInfo
from craft.utils.logger import setup_logger

logger = setup_logger()


class LocalSandboxProvider(SandboxProvider):
    def __init__(self, base_path: Path | None = None) -> None:
        self._base_path = base_path or Path(SANDBOX_BASE_PATH)
        self._background_processes: dict[str, list[asyncio.subprocess.Process]] = {}

    def _get_project_path(self, sandbox_id: str) -> Path:
        project_path = self._base_path / sandbox_id / "project"
        if not project_path.is_dir():
            raise SandboxNotFoundError(sandbox_id)
        return project_path

    def _to_local_path(self, sandbox_id: str, path: str) -> Path:
        project_path = self._get_project_path(sandbox_id)
        relative = Path(path).relative_to(SANDBOX_PROJECT_DIR)
        target = project_path / relative

        # Security check
        target.resolve().relative_to(project_path.resolve())
        return target

    def _to_local_command(self, sandbox_id: str, command: str) -> str:
        project_path = self._get_project_path(sandbox_id)
        return command.replace(SANDBOX_PROJECT_DIR, str(project_path))

    async def create(self, config: SandboxConfig) -> SandboxInfo:
        sandbox_id = f"local-{uuid.uuid4().hex[:12]}"
        project_path = self._base_path / sandbox_id / "project"
        await asyncio.to_thread(project_path.mkdir, parents=True, exist_ok=True)
        logger.info(
            f"Created local sandbox {sandbox_id} for project {config.project_id} "
            f"at {project_path}"
        )
        return SandboxInfo(sandbox_id=sandbox_id)

    async def run_command(
        self, sandbox_id: str, command: str, timeout_ms: int
    ) -> CommandResult:
        local_command = self._to_local_command(sandbox_id, command)
        process = await asyncio.create_subprocess_shell(
            local_command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=timeout_ms / 1000
            )
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise ToolTimeoutError(command, timeout_ms) from e

        return CommandResult(
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            exit_code=process.returncode if process.returncode is not None else -1,
        )

    async def start_background_command(self, sandbox_id: str, command: str) -> int:
        local_command = self._to_local_command(sandbox_id, command)
        # Inherit stdout/stderr so an undrained pipe can't block the process
        process = await asyncio.create_subprocess_shell(
            local_command, cwd=self._get_project_path(sandbox_id)
        )
        self._background_processes.setdefault(sandbox_id, []).append(process)
        logger.info(f"Started background process {process.pid} in {sandbox_id}")
        return process.pid

    async def write_file(
        self, sandbox_id: str, path: str, content: str, timeout_ms: int
    ) -> None:
        target = self._to_local_path(sandbox_id, path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)

        try:
            await asyncio.wait_for(asyncio.to_thread(_write), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            raise ToolTimeoutError(f"write {path}", timeout_ms) from e

    async def read_file(self, sandbox_id: str, path: str, timeout_ms: int) -> str:
        target = self._to_local_path(sandbox_id, path)
        if not target.is_file():
            raise ValueError(f"Not a file: {path}")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(target.read_text), timeout=timeout_ms / 1000
            )
        except asyncio.TimeoutError as e:
            raise ToolTimeoutError(f"read {path}", timeout_ms) from e

    async def extend_timeout(self, sandbox_id: str, extension_ms: int) -> None:
        # Raises if the sandbox directory is gone
        self._get_project_path(sandbox_id)

    async def _stop_background_processes(self, sandbox_id: str) -> None:
        for process in self._background_processes.pop(sandbox_id, []):
            if process.returncode is None:
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=5.0)
                except asyncio.TimeoutError:
                    process.kill()

    async def pause(self, sandbox_id: str) -> None:
        # Processes don't survive a local pause; the project directory does
        self._get_project_path(sandbox_id)
        await self._stop_background_processes(sandbox_id)
        logger.info(f"Paused local sandbox {sandbox_id}")

    async def resume(self, sandbox_id: str, timeout_ms: int) -> None:
        self._get_project_path(sandbox_id)
        logger.info(f"Resumed local sandbox {sandbox_id}")

    async def destroy(self, sandbox_id: str) -> None:
        await self._stop_background_processes(sandbox_id)
        sandbox_path = self._base_path / sandbox_id
        await asyncio.to_thread(shutil.rmtree, sandbox_path, ignore_errors=True)
        logger.info(f"Destroyed local sandbox {sandbox_id}")
