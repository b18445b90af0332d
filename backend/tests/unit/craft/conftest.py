"""Shared fixtures for craft unit tests."""

import asyncio
from collections.abc import Generator
from collections.abc import Iterator
from contextlib import contextmanager

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from craft.configs import CreditPeriod
from craft.db.models import Base
from craft.errors import SandboxNotFoundError
from craft.sandbox.base import SandboxProvider
from craft.sandbox.lifecycle import SandboxLifecycleManager
from craft.sandbox.models import CommandResult
from craft.sandbox.models import SandboxConfig
from craft.sandbox.models import SandboxInfo
from craft.sandbox.registry import SandboxRegistry
from craft.tools.executor import ToolExecutor
from craft.usage.metering import SessionFactory
from craft.usage.metering import UsageMeter


class FakeSandboxProvider(SandboxProvider):
    """In-memory provider that records every call.

    Failure knobs:
    - create_error: raised by create()
    - extend_errors: raised by extend_timeout(), one per call, in order
    - dead_sandboxes: ids that report SandboxNotFoundError on use
    - operation_error: raised by run_command()/write_file()
    - pause_error: raised by pause()
    """

    def __init__(self) -> None:
        self.created: list[str] = []
        self.create_configs: list[SandboxConfig] = []
        self.destroyed: list[str] = []
        self.paused: list[str] = []
        self.resumed: list[tuple[str, int]] = []
        self.extended: list[tuple[str, int]] = []
        self.commands: list[tuple[str, str]] = []
        self.background_commands: list[tuple[str, str]] = []
        self.files: dict[tuple[str, str], str] = {}

        self.create_delay_seconds = 0.0
        self.operation_delay_seconds = 0.0
        self.create_error: Exception | None = None
        self.extend_errors: list[Exception] = []
        self.destroy_error: Exception | None = None
        self.pause_error: Exception | None = None
        self.operation_error: Exception | None = None
        self.dead_sandboxes: set[str] = set()
        self.command_result = CommandResult(stdout="ok")

    def _check_alive(self, sandbox_id: str) -> None:
        if sandbox_id in self.dead_sandboxes:
            raise SandboxNotFoundError(sandbox_id)

    async def create(self, config: SandboxConfig) -> SandboxInfo:
        await asyncio.sleep(self.create_delay_seconds)
        if self.create_error is not None:
            raise self.create_error

        sandbox_id = f"sbx-{len(self.created) + 1}"
        self.created.append(sandbox_id)
        self.create_configs.append(config)
        return SandboxInfo(sandbox_id=sandbox_id)

    async def run_command(
        self, sandbox_id: str, command: str, timeout_ms: int
    ) -> CommandResult:
        self._check_alive(sandbox_id)
        await asyncio.sleep(self.operation_delay_seconds)
        if self.operation_error is not None:
            raise self.operation_error
        self.commands.append((sandbox_id, command))
        return self.command_result

    async def start_background_command(self, sandbox_id: str, command: str) -> int:
        self._check_alive(sandbox_id)
        self.background_commands.append((sandbox_id, command))
        return 4242

    async def write_file(
        self, sandbox_id: str, path: str, content: str, timeout_ms: int
    ) -> None:
        self._check_alive(sandbox_id)
        await asyncio.sleep(self.operation_delay_seconds)
        if self.operation_error is not None:
            raise self.operation_error
        self.files[(sandbox_id, path)] = content

    async def read_file(self, sandbox_id: str, path: str, timeout_ms: int) -> str:
        self._check_alive(sandbox_id)
        try:
            return self.files[(sandbox_id, path)]
        except KeyError:
            raise FileNotFoundError(path) from None

    async def extend_timeout(self, sandbox_id: str, extension_ms: int) -> None:
        if self.extend_errors:
            raise self.extend_errors.pop(0)
        self._check_alive(sandbox_id)
        self.extended.append((sandbox_id, extension_ms))

    async def pause(self, sandbox_id: str) -> None:
        if self.pause_error is not None:
            raise self.pause_error
        self._check_alive(sandbox_id)
        self.paused.append(sandbox_id)

    async def resume(self, sandbox_id: str, timeout_ms: int) -> None:
        self._check_alive(sandbox_id)
        self.resumed.append((sandbox_id, timeout_ms))

    async def destroy(self, sandbox_id: str) -> None:
        if self.destroy_error is not None:
            raise self.destroy_error
        self.destroyed.append(sandbox_id)


@pytest.fixture
def fake_provider() -> FakeSandboxProvider:
    return FakeSandboxProvider()


@pytest.fixture
def registry() -> SandboxRegistry:
    return SandboxRegistry()


@pytest.fixture
def lifecycle_manager(
    registry: SandboxRegistry, fake_provider: FakeSandboxProvider
) -> SandboxLifecycleManager:
    return SandboxLifecycleManager(
        registry=registry,
        provider=fake_provider,
        sandbox_timeout_ms=600_000,
        heartbeat_interval_ms=240_000,
    )


@pytest.fixture
def tool_executor(lifecycle_manager: SandboxLifecycleManager) -> ToolExecutor:
    return ToolExecutor(lifecycle_manager)


@pytest.fixture
def db_sessionmaker() -> Generator[sessionmaker[Session], None, None]:
    """In-memory sqlite shared across threads (the meter uses to_thread)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def session_factory(
    db_sessionmaker: sessionmaker[Session],
) -> SessionFactory:
    @contextmanager
    def _session() -> Iterator[Session]:
        session = db_sessionmaker()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return _session


@pytest.fixture
def usage_meter(session_factory: SessionFactory) -> UsageMeter:
    return UsageMeter(session_factory=session_factory, period=CreditPeriod.DAILY)
