"""Sandbox endpoints: heartbeat, installs, dev server, health and teardown."""

from uuid import uuid4

from fastapi import APIRouter
from fastapi import Depends
from fastapi import HTTPException

from craft.configs import HEARTBEAT_EXTENSION_MS
from craft.configs import HEARTBEAT_INTERVAL_MS
from craft.errors import SandboxNotFoundError
from craft.errors import SandboxProviderUnavailableError
from craft.sandbox.lifecycle import SandboxLifecycleManager
from craft.server.dependencies import get_executor
from craft.server.dependencies import get_lifecycle_manager
from craft.server.models import DevServerResponse
from craft.server.models import HeartbeatResponse
from craft.server.models import InstallRequest
from craft.server.models import InstallResponse
from craft.server.models import SandboxHealthResponse
from craft.server.models import SandboxTeardownResponse
from craft.tools.definitions import PACKAGES_FIELD
from craft.tools.executor import ToolExecutor
from craft.tools.models import SandboxToolName
from craft.tools.models import ToolCall
from craft.tools.models import ToolCallStatus
from craft.tools.models import ToolErrorKind
from craft.utils.logger import CURRENT_PROJECT_ID_CONTEXTVAR
from craft.utils.logger import setup_logger

logger = setup_logger()


router = APIRouter(prefix="/sandbox")

_INSTALL_ERROR_STATUS: dict[ToolErrorKind, int] = {
    ToolErrorKind.VALIDATION: 400,
    ToolErrorKind.PROVIDER_UNAVAILABLE: 503,
    ToolErrorKind.TIMEOUT: 504,
    ToolErrorKind.EXECUTION: 500,
}


@router.post("/{project_id}/heartbeat")
async def heartbeat(
    project_id: str,
    lifecycle_manager: SandboxLifecycleManager = Depends(get_lifecycle_manager),
) -> HeartbeatResponse:
    """
    Extend the project's sandbox timeout while the user has the project open.

    Always succeeds. A failed extension is reported as extended=False; the
    idle timeout is long enough that the next heartbeat can still make it.
    """
    CURRENT_PROJECT_ID_CONTEXTVAR.set(project_id)

    handle = lifecycle_manager.registry.get(project_id)
    if handle is None:
        return HeartbeatResponse(
            extended=False,
            message="No active sandbox for this project",
            sandbox_id=None,
            next_heartbeat_in_ms=HEARTBEAT_INTERVAL_MS,
        )

    extended = await lifecycle_manager.keep_alive(
        handle.sandbox_id, HEARTBEAT_EXTENSION_MS
    )
    logger.debug(
        f"Heartbeat for sandbox {handle.sandbox_id}: "
        f"{'extended' if extended else 'extension failed (will retry)'}"
    )

    return HeartbeatResponse(
        extended=extended,
        message=(
            "Sandbox timeout extended"
            if extended
            else "Heartbeat received (extension will retry)"
        ),
        sandbox_id=handle.sandbox_id,
        next_heartbeat_in_ms=HEARTBEAT_INTERVAL_MS,
    )


@router.post("/{project_id}/install")
async def install_dependencies(
    project_id: str,
    request: InstallRequest,
    tool_executor: ToolExecutor = Depends(get_executor),
) -> InstallResponse:
    """Install npm packages into the project's sandbox with pnpm.

    Invalid package names are skipped and reported back as rejected.
    """
    CURRENT_PROJECT_ID_CONTEXTVAR.set(project_id)

    tool_call = await tool_executor.execute(
        project_id,
        ToolCall(
            id=f"install_{uuid4().hex[:12]}",
            name=SandboxToolName.INSTALL_DEPENDENCY.value,
            args={PACKAGES_FIELD: request.packages},
        ),
    )

    if tool_call.status == ToolCallStatus.SUCCESS:
        details = tool_call.details or {}
        return InstallResponse(
            installed=details.get("installed", []),
            rejected=details.get("rejected", []),
            output=details.get("output", ""),
        )

    error_kind = tool_call.error_kind or ToolErrorKind.EXECUTION
    raise HTTPException(
        status_code=_INSTALL_ERROR_STATUS[error_kind],
        detail={
            "error": tool_call.error,
            "error_kind": error_kind.value,
            **(tool_call.details or {}),
        },
    )


@router.post("/{project_id}/dev-server")
async def start_dev_server(
    project_id: str,
    lifecycle_manager: SandboxLifecycleManager = Depends(get_lifecycle_manager),
) -> DevServerResponse:
    """Start the project's dev server in its sandbox. Idempotent."""
    CURRENT_PROJECT_ID_CONTEXTVAR.set(project_id)

    try:
        handle = await lifecycle_manager.start_dev_server(project_id)
    except (SandboxProviderUnavailableError, SandboxNotFoundError) as e:
        logger.error(f"Failed to start dev server for project {project_id}: {e}")
        raise HTTPException(status_code=503, detail=str(e))

    if handle.dev_server_process_id is None:
        raise HTTPException(status_code=500, detail="Dev server did not start")

    return DevServerResponse(
        project_id=project_id,
        sandbox_id=handle.sandbox_id,
        process_id=handle.dev_server_process_id,
    )


@router.get("/{project_id}/health")
async def sandbox_health(
    project_id: str,
    lifecycle_manager: SandboxLifecycleManager = Depends(get_lifecycle_manager),
) -> SandboxHealthResponse:
    CURRENT_PROJECT_ID_CONTEXTVAR.set(project_id)

    health = await lifecycle_manager.check_health(project_id)
    return SandboxHealthResponse(
        healthy=health.healthy,
        sandbox_id=health.sandbox_id,
        message=health.message,
    )


@router.delete("/{project_id}")
async def teardown_sandbox(
    project_id: str,
    lifecycle_manager: SandboxLifecycleManager = Depends(get_lifecycle_manager),
) -> SandboxTeardownResponse:
    """Release the project's sandbox. Idempotent."""
    CURRENT_PROJECT_ID_CONTEXTVAR.set(project_id)

    released = await lifecycle_manager.teardown(project_id)
    return SandboxTeardownResponse(project_id=project_id, released=released)
