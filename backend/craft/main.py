import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from craft.configs import APP_HOST
from craft.configs import APP_PORT
from craft.configs import CREATE_TABLES_ON_STARTUP
from craft.configs import HEARTBEAT_INTERVAL_MS
from craft.configs import SANDBOX_BACKEND
from craft.configs import SANDBOX_CLEANUP_INTERVAL_SECONDS
from craft.configs import SANDBOX_TIMEOUT_MS
from craft.db.engine import SqlEngine
from craft.db.models import Base
from craft.sandbox.lifecycle import get_sandbox_lifecycle_manager
from craft.sandbox.lifecycle import run_idle_sandbox_reaper
from craft.sandbox.lifecycle import validate_heartbeat_margin
from craft.server.chat_api import router as chat_router
from craft.server.sandbox_api import router as sandbox_router
from craft.server.usage_api import router as usage_router
from craft.utils.logger import setup_logger

logger = setup_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Refuse to start with a heartbeat cadence that can't survive one miss
    validate_heartbeat_margin(HEARTBEAT_INTERVAL_MS, SANDBOX_TIMEOUT_MS)

    SqlEngine.init_engine()
    if CREATE_TABLES_ON_STARTUP:
        logger.notice("Creating tables from models (CREATE_TABLES_ON_STARTUP)")
        Base.metadata.create_all(SqlEngine.get_engine())

    logger.notice(
        f"Sandbox backend: {SANDBOX_BACKEND.value}, idle timeout "
        f"{SANDBOX_TIMEOUT_MS}ms, heartbeat every {HEARTBEAT_INTERVAL_MS}ms"
    )

    lifecycle_manager = get_sandbox_lifecycle_manager()
    reaper_task = asyncio.create_task(
        run_idle_sandbox_reaper(lifecycle_manager, SANDBOX_CLEANUP_INTERVAL_SECONDS)
    )

    try:
        yield
    finally:
        reaper_task.cancel()
        try:
            await reaper_task
        except asyncio.CancelledError:
            pass
        SqlEngine.reset_engine()


def get_application(lifespan_override: Any | None = None) -> FastAPI:
    application = FastAPI(
        title="Craft Backend",
        lifespan=lifespan_override or lifespan,
    )

    application.include_router(chat_router)
    application.include_router(sandbox_router)
    application.include_router(usage_router)

    @application.get("/health")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    return application


app = get_application()


if __name__ == "__main__":
    logger.notice(f"Starting Craft Backend on http://{APP_HOST}:{str(APP_PORT)}/")
    uvicorn.run(app, host=APP_HOST, port=APP_PORT)
