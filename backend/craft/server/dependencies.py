"""Shared FastAPI dependencies.

Endpoints take their services through these so tests can swap them with
app.dependency_overrides.
"""

from craft.agent.streaming_loop import AgentStreamingLoop
from craft.sandbox.lifecycle import get_sandbox_lifecycle_manager
from craft.sandbox.lifecycle import SandboxLifecycleManager
from craft.tools.executor import get_tool_executor
from craft.tools.executor import ToolExecutor
from craft.usage.metering import get_usage_meter
from craft.usage.metering import UsageMeter


def get_lifecycle_manager() -> SandboxLifecycleManager:
    return get_sandbox_lifecycle_manager()


def get_executor() -> ToolExecutor:
    return get_tool_executor()


def get_meter() -> UsageMeter:
    return get_usage_meter()


def get_agent_loop() -> AgentStreamingLoop:
    return AgentStreamingLoop(
        tool_executor=get_tool_executor(),
        usage_meter=get_usage_meter(),
    )
