"""Local filesystem-based sandbox implementation.

This module provides the LocalSandboxProvider for development deployments
that run sandboxes as directories on the local filesystem.
"""

from craft.sandbox.local.local_sandbox_provider import LocalSandboxProvider

__all__ = [
    "LocalSandboxProvider",
]
