"""Tests for the sandbox endpoints, served through TestClient."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from craft.main import get_application
from craft.sandbox.lifecycle import SandboxLifecycleManager
from craft.sandbox.models import CommandResult
from craft.sandbox.models import SandboxHandle
from craft.sandbox.registry import SandboxRegistry
from craft.server.dependencies import get_executor
from craft.server.dependencies import get_lifecycle_manager
from craft.tools.executor import ToolExecutor


@asynccontextmanager
async def _noop_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    yield


@pytest.fixture
def client(
    lifecycle_manager: SandboxLifecycleManager, tool_executor: ToolExecutor
) -> TestClient:
    app = get_application(lifespan_override=_noop_lifespan)
    app.dependency_overrides[get_lifecycle_manager] = lambda: lifecycle_manager
    app.dependency_overrides[get_executor] = lambda: tool_executor
    return TestClient(app)


def _register_sandbox(registry: SandboxRegistry, project_id: str = "project-1") -> None:
    registry.put(
        project_id,
        SandboxHandle(
            sandbox_id="sbx-existing", project_id=project_id, timeout_ms=600_000
        ),
    )


class TestHeartbeat:
    def test_no_sandbox(self, client: TestClient) -> None:
        response = client.post("/sandbox/project-1/heartbeat")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["extended"] is False
        assert body["sandbox_id"] is None
        assert body["next_heartbeat_in_ms"] == 240_000

    def test_extends_live_sandbox(
        self, client: TestClient, registry: SandboxRegistry, fake_provider: Any
    ) -> None:
        _register_sandbox(registry)

        response = client.post("/sandbox/project-1/heartbeat")

        assert response.status_code == 200
        assert response.json()["extended"] is True
        assert fake_provider.extended == [("sbx-existing", 600_000)]

    def test_failed_extension_is_soft_and_recovers(
        self, client: TestClient, registry: SandboxRegistry, fake_provider: Any
    ) -> None:
        _register_sandbox(registry)
        fake_provider.extend_errors = [ConnectionError("network blip")]

        first = client.post("/sandbox/project-1/heartbeat")
        second = client.post("/sandbox/project-1/heartbeat")

        assert first.status_code == 200
        assert first.json()["success"] is True
        assert first.json()["extended"] is False
        assert second.json()["extended"] is True
        assert registry.get("project-1") is not None


class TestInstall:
    def test_installs_valid_and_reports_rejected(
        self, client: TestClient, fake_provider: Any
    ) -> None:
        response = client.post(
            "/sandbox/project-1/install",
            json={"packages": ["lodash", "@scope/pkg", "bad name!", "../evil"]},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["installed"] == ["lodash", "@scope/pkg"]
        assert body["rejected"] == ["bad name!", "../evil"]
        assert fake_provider.commands == [
            ("sbx-1", "cd /home/user/project && pnpm add lodash @scope/pkg")
        ]

    def test_all_invalid_is_bad_request(
        self, client: TestClient, fake_provider: Any
    ) -> None:
        response = client.post(
            "/sandbox/project-1/install", json={"packages": ["$(reboot)"]}
        )

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["error_kind"] == "validation"
        assert detail["rejected"] == ["$(reboot)"]
        assert fake_provider.commands == []

    def test_provider_down_is_service_unavailable(
        self, client: TestClient, fake_provider: Any
    ) -> None:
        fake_provider.create_error = RuntimeError("provider down")

        response = client.post("/sandbox/project-1/install", json={"packages": ["zod"]})

        assert response.status_code == 503

    def test_failed_install_is_server_error(
        self, client: TestClient, fake_provider: Any
    ) -> None:
        fake_provider.command_result = CommandResult(
            exit_code=1, stderr="ERR_PNPM_FETCH_404"
        )

        response = client.post(
            "/sandbox/project-1/install", json={"packages": ["not-a-real-package"]}
        )

        assert response.status_code == 500
        assert response.json()["detail"]["installed"] == []


class TestHealthAndTeardown:
    def test_health_without_sandbox(self, client: TestClient) -> None:
        response = client.get("/sandbox/project-1/health")

        assert response.status_code == 200
        assert response.json()["healthy"] is False

    def test_health_with_sandbox(
        self, client: TestClient, registry: SandboxRegistry
    ) -> None:
        _register_sandbox(registry)

        response = client.get("/sandbox/project-1/health")

        assert response.json() == {
            "healthy": True,
            "sandbox_id": "sbx-existing",
            "message": "Sandbox is healthy",
        }

    def test_teardown_is_idempotent(
        self, client: TestClient, registry: SandboxRegistry, fake_provider: Any
    ) -> None:
        _register_sandbox(registry)

        first = client.delete("/sandbox/project-1")
        second = client.delete("/sandbox/project-1")

        assert first.json() == {"project_id": "project-1", "released": True}
        assert second.json() == {"project_id": "project-1", "released": False}
        assert fake_provider.destroyed == ["sbx-existing"]
        assert registry.get("project-1") is None

    def test_teardown_releases_a_paused_sandbox(
        self, client: TestClient, registry: SandboxRegistry, fake_provider: Any
    ) -> None:
        _register_sandbox(registry)
        handle = registry.get("project-1")
        assert handle is not None
        registry.mark_paused(handle)

        response = client.delete("/sandbox/project-1")

        assert response.json() == {"project_id": "project-1", "released": True}
        assert fake_provider.destroyed == ["sbx-existing"]
        assert registry.get_paused("project-1") is None


class TestDevServer:
    def test_starts_dev_server_once(
        self, client: TestClient, fake_provider: Any
    ) -> None:
        first = client.post("/sandbox/project-1/dev-server")
        second = client.post("/sandbox/project-1/dev-server")

        assert first.status_code == 200
        assert first.json() == {
            "project_id": "project-1",
            "sandbox_id": "sbx-1",
            "process_id": 4242,
        }
        assert second.json() == first.json()
        assert len(fake_provider.background_commands) == 1

    def test_provider_down_is_service_unavailable(
        self, client: TestClient, fake_provider: Any
    ) -> None:
        fake_provider.create_error = RuntimeError("provider down")

        response = client.post("/sandbox/project-1/dev-server")

        assert response.status_code == 503
        assert fake_provider.background_commands == []


def test_app_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}
