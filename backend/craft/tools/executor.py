"""Executes sandbox tool calls requested by the model.

Each call is validated first, then a sandbox is obtained through the
lifecycle manager, then the operation runs with its own timeout. Failures
never escape execute(): they end up on the ToolCall as an error status so
the model can react to them within the same turn.
"""

import asyncio
import posixpath
from collections.abc import Awaitable
from collections.abc import Callable
from typing import Any

from craft.configs import COMMAND_TIMEOUT_MS
from craft.configs import FILE_WRITE_TIMEOUT_MS
from craft.configs import INSTALL_TIMEOUT_MS
from craft.configs import MAX_TOOL_OUTPUT_CHARS
from craft.configs import SANDBOX_PROJECT_DIR
from craft.errors import SandboxNotFoundError
from craft.errors import SandboxProviderUnavailableError
from craft.errors import ToolTimeoutError
from craft.errors import ToolValidationError
from craft.sandbox.base import SandboxProvider
from craft.sandbox.lifecycle import get_sandbox_lifecycle_manager
from craft.sandbox.lifecycle import SandboxLifecycleManager
from craft.tools.definitions import COMMAND_FIELD
from craft.tools.definitions import CONTENT_FIELD
from craft.tools.definitions import PACKAGES_FIELD
from craft.tools.definitions import PATH_FIELD
from craft.tools.models import SandboxToolName
from craft.tools.models import ToolCall
from craft.tools.models import ToolErrorKind
from craft.tools.package_validation import partition_packages
from craft.utils.logger import setup_logger

logger = setup_logger()

# Extra time given to the provider to report its own timeout before the
# local ceiling cancels the call
_PROVIDER_TIMEOUT_GRACE_SECONDS = 5.0

OperationResult = tuple[str, dict[str, Any] | None]
# Takes a sandbox id, returns (llm-facing result, structured details)
SandboxOperation = Callable[[str], Awaitable[OperationResult]]


class ToolExecutionError(Exception):
    """The operation ran but failed (e.g. non-zero exit code)."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.details = details
        super().__init__(message)


def _truncate(output: str) -> str:
    if len(output) <= MAX_TOOL_OUTPUT_CHARS:
        return output
    return output[:MAX_TOOL_OUTPUT_CHARS] + "\n... (output truncated)"


def sanitize_project_path(path: str) -> str:
    """Resolve a model-provided path to an absolute path inside the project.

    Removes '..' components and any leading slash so paths like
    '../../etc/passwd' stay inside SANDBOX_PROJECT_DIR.
    """
    if not isinstance(path, str) or not path.strip():
        raise ToolValidationError("A non-empty file path is required")

    path = path.strip()
    if path.startswith(SANDBOX_PROJECT_DIR):
        path = path[len(SANDBOX_PROJECT_DIR) :]

    clean_parts = [
        part for part in path.split("/") if part and part not in (".", "..")
    ]
    if not clean_parts:
        raise ToolValidationError(f"Invalid file path: {path}")

    return posixpath.join(SANDBOX_PROJECT_DIR, *clean_parts)


def build_install_command(packages: list[str]) -> str:
    """Build the pnpm command. Only call with names that passed validation."""
    return f"cd {SANDBOX_PROJECT_DIR} && pnpm add {' '.join(packages)}"


class ToolExecutor:
    def __init__(self, lifecycle_manager: SandboxLifecycleManager) -> None:
        self._lifecycle = lifecycle_manager

    @property
    def _provider(self) -> SandboxProvider:
        return self._lifecycle.provider

    async def execute(self, project_id: str, tool_call: ToolCall) -> ToolCall:
        """Run one tool call against the project's sandbox.

        Returns the same ToolCall, moved to success or error.
        """
        try:
            operation, timeout_ms = self._build_operation(tool_call)
        except ToolValidationError as e:
            logger.info(f"Rejected tool call {tool_call.name}: {e}")
            return tool_call.mark_error(str(e), ToolErrorKind.VALIDATION, e.details)

        try:
            result, details = await self._run_on_sandbox(
                project_id, operation, timeout_ms
            )
        except ToolTimeoutError as e:
            logger.warning(f"Tool {tool_call.name} timed out for project {project_id}")
            return tool_call.mark_error(str(e), ToolErrorKind.TIMEOUT)
        except (SandboxProviderUnavailableError, SandboxNotFoundError) as e:
            return tool_call.mark_error(str(e), ToolErrorKind.PROVIDER_UNAVAILABLE)
        except ToolExecutionError as e:
            return tool_call.mark_error(
                _truncate(str(e)), ToolErrorKind.EXECUTION, e.details
            )
        except Exception as e:
            logger.error(f"Error running tool {tool_call.name}: {e}")
            return tool_call.mark_error(str(e), ToolErrorKind.EXECUTION)

        return tool_call.mark_success(_truncate(result), details)

    async def _run_on_sandbox(
        self, project_id: str, operation: SandboxOperation, timeout_ms: int
    ) -> OperationResult:
        handle = await self._lifecycle.get_or_create(project_id)
        try:
            result = await self._with_ceiling(operation(handle.sandbox_id), timeout_ms)
        except SandboxNotFoundError:
            # Sandbox was paused or expired on the provider side
            await self._lifecycle.invalidate(project_id, handle.sandbox_id)
            handle = await self._lifecycle.get_or_create(project_id)
            result = await self._with_ceiling(operation(handle.sandbox_id), timeout_ms)

        self._lifecycle.registry.touch(project_id)
        return result

    async def _with_ceiling(
        self, operation: Awaitable[OperationResult], timeout_ms: int
    ) -> OperationResult:
        try:
            return await asyncio.wait_for(
                operation, timeout=timeout_ms / 1000 + _PROVIDER_TIMEOUT_GRACE_SECONDS
            )
        except asyncio.TimeoutError as e:
            raise ToolTimeoutError("sandbox operation", timeout_ms) from e

    def _build_operation(self, tool_call: ToolCall) -> tuple[SandboxOperation, int]:
        try:
            tool_name = SandboxToolName(tool_call.name)
        except ValueError:
            raise ToolValidationError(f"Unknown tool: {tool_call.name}") from None

        args = tool_call.args
        if tool_name == SandboxToolName.WRITE_FILE:
            return self._write_file(args), FILE_WRITE_TIMEOUT_MS
        if tool_name == SandboxToolName.READ_FILE:
            return self._read_file(args), FILE_WRITE_TIMEOUT_MS
        if tool_name == SandboxToolName.RUN_COMMAND:
            return self._run_command(args), COMMAND_TIMEOUT_MS
        return self._install_dependency(args), INSTALL_TIMEOUT_MS

    def _write_file(self, args: dict[str, Any]) -> SandboxOperation:
        path = sanitize_project_path(args.get(PATH_FIELD, ""))
        content = args.get(CONTENT_FIELD)
        if not isinstance(content, str):
            raise ToolValidationError("write_file requires string content")

        async def _run(sandbox_id: str) -> OperationResult:
            await self._provider.write_file(
                sandbox_id, path, content, FILE_WRITE_TIMEOUT_MS
            )
            return f"Wrote {len(content)} characters to {path}", {"path": path}

        return _run

    def _read_file(self, args: dict[str, Any]) -> SandboxOperation:
        path = sanitize_project_path(args.get(PATH_FIELD, ""))

        async def _run(sandbox_id: str) -> OperationResult:
            content = await self._provider.read_file(
                sandbox_id, path, FILE_WRITE_TIMEOUT_MS
            )
            return content, {"path": path}

        return _run

    def _run_command(self, args: dict[str, Any]) -> SandboxOperation:
        command = args.get(COMMAND_FIELD)
        if not isinstance(command, str) or not command.strip():
            raise ToolValidationError("run_command requires a non-empty command")

        full_command = f"cd {SANDBOX_PROJECT_DIR} && {command}"

        async def _run(sandbox_id: str) -> OperationResult:
            result = await self._provider.run_command(
                sandbox_id, full_command, COMMAND_TIMEOUT_MS
            )
            details = {"exit_code": result.exit_code}
            if not result.succeeded:
                raise ToolExecutionError(
                    f"Command exited with code {result.exit_code}\n{result.output}",
                    details,
                )
            return result.output or "(no output)", details

        return _run

    def _install_dependency(self, args: dict[str, Any]) -> SandboxOperation:
        packages = args.get(PACKAGES_FIELD)
        if isinstance(packages, str):
            packages = [packages]
        if not isinstance(packages, list) or not packages:
            raise ToolValidationError("install_dependency requires a list of packages")

        partition = partition_packages(packages)
        if not partition.valid:
            raise ToolValidationError(
                f"No valid package names in request: {', '.join(partition.rejected)}",
                {"installed": [], "rejected": partition.rejected, "output": ""},
            )
        if partition.rejected:
            logger.info(f"Skipping invalid package names: {partition.rejected}")

        command = build_install_command(partition.valid)

        async def _run(sandbox_id: str) -> OperationResult:
            result = await self._provider.run_command(
                sandbox_id, command, INSTALL_TIMEOUT_MS
            )
            details: dict[str, Any] = {
                "installed": partition.valid if result.succeeded else [],
                "rejected": partition.rejected,
                "output": _truncate(result.output),
            }
            if not result.succeeded:
                raise ToolExecutionError(
                    f"pnpm add exited with code {result.exit_code}\n{result.output}",
                    details,
                )

            summary = f"Installed: {', '.join(partition.valid)}"
            if partition.rejected:
                summary += f"\nRejected as invalid: {', '.join(partition.rejected)}"
            return f"{summary}\n{result.output}".strip(), details

        return _run


def get_tool_executor() -> ToolExecutor:
    return ToolExecutor(get_sandbox_lifecycle_manager())
