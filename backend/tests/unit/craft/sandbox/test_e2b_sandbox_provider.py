"""Tests for the e2b provider with the e2b SDK mocked out."""

from types import SimpleNamespace
from unittest.mock import AsyncMock
from unittest.mock import MagicMock
from unittest.mock import patch

import pytest
from e2b import NotFoundException
from e2b import TimeoutException

from craft.errors import SandboxNotFoundError
from craft.errors import ToolTimeoutError
from craft.sandbox.e2b.e2b_sandbox_provider import E2BSandboxProvider
from craft.sandbox.models import SandboxConfig

_MODULE = "craft.sandbox.e2b.e2b_sandbox_provider"


def _mock_sandbox(sandbox_id: str = "e2b-1") -> MagicMock:
    sandbox = MagicMock()
    sandbox.sandbox_id = sandbox_id
    sandbox.commands.run = AsyncMock(
        return_value=SimpleNamespace(stdout="ok", stderr="", exit_code=0, error=None)
    )
    sandbox.files.write = AsyncMock()
    sandbox.files.read = AsyncMock(return_value="content")
    sandbox.set_timeout = AsyncMock()
    sandbox.kill = AsyncMock()
    sandbox.beta_pause = AsyncMock()
    sandbox.is_running = AsyncMock(return_value=True)
    return sandbox


@pytest.mark.asyncio
async def test_create_passes_timeout_in_seconds() -> None:
    sandbox = _mock_sandbox()
    provider = E2BSandboxProvider(api_key="test-key", template="nextjs")

    with patch(f"{_MODULE}.AsyncSandbox") as mock_cls:
        mock_cls.create = AsyncMock(return_value=sandbox)
        info = await provider.create(
            SandboxConfig(project_id="project-1", timeout_ms=600_000)
        )

    assert info.sandbox_id == "e2b-1"
    kwargs = mock_cls.create.call_args.kwargs
    assert kwargs["timeout"] == 600
    assert kwargs["template"] == "nextjs"
    assert kwargs["metadata"] == {"project_id": "project-1"}


@pytest.mark.asyncio
async def test_operations_reuse_the_cached_sandbox() -> None:
    sandbox = _mock_sandbox()
    provider = E2BSandboxProvider(api_key="test-key")

    with patch(f"{_MODULE}.AsyncSandbox") as mock_cls:
        mock_cls.create = AsyncMock(return_value=sandbox)
        mock_cls.connect = AsyncMock()
        await provider.create(SandboxConfig(project_id="project-1", timeout_ms=1000))

        result = await provider.run_command("e2b-1", "ls", 30_000)
        await provider.write_file("e2b-1", "/home/user/project/a.txt", "a", 10_000)
        await provider.extend_timeout("e2b-1", 600_000)

    assert result.stdout == "ok"
    mock_cls.connect.assert_not_called()
    sandbox.commands.run.assert_awaited_once_with("ls", timeout=30)
    sandbox.set_timeout.assert_awaited_once_with(600)


@pytest.mark.asyncio
async def test_unknown_sandbox_reconnects_by_id() -> None:
    sandbox = _mock_sandbox("e2b-7")
    provider = E2BSandboxProvider(api_key="test-key")

    with patch(f"{_MODULE}.AsyncSandbox") as mock_cls:
        mock_cls.connect = AsyncMock(return_value=sandbox)
        content = await provider.read_file("e2b-7", "/home/user/project/a.txt", 10_000)

    assert content == "content"
    mock_cls.connect.assert_awaited_once_with("e2b-7", api_key="test-key")


@pytest.mark.asyncio
async def test_gone_sandbox_maps_to_not_found() -> None:
    provider = E2BSandboxProvider(api_key="test-key")

    with patch(f"{_MODULE}.AsyncSandbox") as mock_cls:
        mock_cls.connect = AsyncMock(side_effect=NotFoundException("paused"))
        with pytest.raises(SandboxNotFoundError):
            await provider.extend_timeout("e2b-9", 600_000)


@pytest.mark.asyncio
async def test_command_timeout_maps_to_tool_timeout() -> None:
    sandbox = _mock_sandbox()
    sandbox.commands.run = AsyncMock(side_effect=TimeoutException("slow"))
    provider = E2BSandboxProvider(api_key="test-key")

    with patch(f"{_MODULE}.AsyncSandbox") as mock_cls:
        mock_cls.create = AsyncMock(return_value=sandbox)
        await provider.create(SandboxConfig(project_id="project-1", timeout_ms=1000))
        with pytest.raises(ToolTimeoutError):
            await provider.run_command("e2b-1", "sleep 999", 30_000)


@pytest.mark.asyncio
async def test_destroy_without_cached_sandbox_kills_by_id() -> None:
    provider = E2BSandboxProvider(api_key="test-key")

    with patch(f"{_MODULE}.AsyncSandbox") as mock_cls:
        mock_cls.kill = AsyncMock()
        await provider.destroy("e2b-3")

    mock_cls.kill.assert_awaited_once_with("e2b-3", api_key="test-key")


@pytest.mark.asyncio
async def test_read_from_gone_sandbox_maps_to_not_found() -> None:
    sandbox = _mock_sandbox()
    sandbox.files.read = AsyncMock(side_effect=NotFoundException("sandbox gone"))
    sandbox.is_running = AsyncMock(return_value=False)
    replacement = _mock_sandbox()
    provider = E2BSandboxProvider(api_key="test-key")

    with patch(f"{_MODULE}.AsyncSandbox") as mock_cls:
        mock_cls.create = AsyncMock(return_value=sandbox)
        mock_cls.connect = AsyncMock(return_value=replacement)
        await provider.create(SandboxConfig(project_id="project-1", timeout_ms=1000))

        with pytest.raises(SandboxNotFoundError):
            await provider.read_file("e2b-1", "/home/user/project/a.txt", 10_000)

        # The dead object was dropped from the cache, so the next call reconnects
        await provider.run_command("e2b-1", "ls", 30_000)

    mock_cls.connect.assert_awaited_once_with("e2b-1", api_key="test-key")


@pytest.mark.asyncio
async def test_read_of_missing_file_in_live_sandbox_is_file_not_found() -> None:
    sandbox = _mock_sandbox()
    sandbox.files.read = AsyncMock(side_effect=NotFoundException("no such file"))
    provider = E2BSandboxProvider(api_key="test-key")

    with patch(f"{_MODULE}.AsyncSandbox") as mock_cls:
        mock_cls.create = AsyncMock(return_value=sandbox)
        mock_cls.connect = AsyncMock()
        await provider.create(SandboxConfig(project_id="project-1", timeout_ms=1000))

        with pytest.raises(FileNotFoundError):
            await provider.read_file("e2b-1", "/home/user/project/nope.txt", 10_000)
        await provider.run_command("e2b-1", "ls", 30_000)

    mock_cls.connect.assert_not_called()


@pytest.mark.asyncio
async def test_pause_then_resume_reconnects() -> None:
    sandbox = _mock_sandbox()
    resumed = _mock_sandbox()
    provider = E2BSandboxProvider(api_key="test-key")

    with patch(f"{_MODULE}.AsyncSandbox") as mock_cls:
        mock_cls.create = AsyncMock(return_value=sandbox)
        mock_cls.connect = AsyncMock(return_value=resumed)
        await provider.create(SandboxConfig(project_id="project-1", timeout_ms=1000))

        await provider.pause("e2b-1")
        await provider.resume("e2b-1", 600_000)
        await provider.run_command("e2b-1", "ls", 30_000)

    sandbox.beta_pause.assert_awaited_once()
    mock_cls.connect.assert_awaited_once_with("e2b-1", api_key="test-key")
    resumed.set_timeout.assert_awaited_once_with(600)
    resumed.commands.run.assert_awaited_once_with("ls", timeout=30)
    sandbox.commands.run.assert_not_called()


@pytest.mark.asyncio
async def test_resume_of_killed_sandbox_maps_to_not_found() -> None:
    provider = E2BSandboxProvider(api_key="test-key")

    with patch(f"{_MODULE}.AsyncSandbox") as mock_cls:
        mock_cls.connect = AsyncMock(side_effect=NotFoundException("killed"))
        with pytest.raises(SandboxNotFoundError):
            await provider.resume("e2b-4", 600_000)
