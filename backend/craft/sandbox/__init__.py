"""
Sandbox module for project-scoped remote execution environments.

Each project gets at most one sandbox at a time. Sandboxes are e2b microVMs in
production or directories on the local filesystem in development.

Usage:
    from craft.sandbox import get_sandbox_lifecycle_manager

    manager = get_sandbox_lifecycle_manager()
    handle = await manager.get_or_create(project_id)

Module structure:
    - base.py: SandboxProvider ABC and get_sandbox_provider() factory
    - registry.py: In-memory project -> handle map with per-project locks
    - lifecycle.py: Creation, keep-alive, teardown and idle reaping
    - models.py: Shared Pydantic models
    - e2b/: e2b-backed implementation for production
    - local/: Local filesystem-based implementation for development
"""

from craft.sandbox.base import get_sandbox_provider
from craft.sandbox.base import SandboxProvider
from craft.sandbox.lifecycle import get_sandbox_lifecycle_manager
from craft.sandbox.lifecycle import SandboxLifecycleManager
from craft.sandbox.models import SandboxHandle
from craft.sandbox.registry import get_sandbox_registry
from craft.sandbox.registry import SandboxRegistry

__all__ = [
    # Factory functions (preferred)
    "get_sandbox_lifecycle_manager",
    "get_sandbox_provider",
    "get_sandbox_registry",
    # Interfaces
    "SandboxProvider",
    "SandboxLifecycleManager",
    "SandboxRegistry",
    # Models
    "SandboxHandle",
]
