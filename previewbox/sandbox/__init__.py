"""
Sandbox module for running and previewing generated projects in isolation.

Components:
- base: Backend interface shared by every sandbox kind
- orchestrator: One Docker container per user, bound to a project
- native: Host-process backends (persistent and ephemeral)
- filesync: Push file trees in, watch external changes out
- executor: Run commands inside the container
- registry: Map users to backends, reap idle sandboxes
"""

from previewbox.sandbox.base import SandboxBackend
from previewbox.sandbox.executor import CommandExecutor
from previewbox.sandbox.filesync import FileSyncEngine, RecentWriteSet, WatchSubscription
from previewbox.sandbox.native import EphemeralSandbox, NativeSandbox
from previewbox.sandbox.orchestrator import SandboxOrchestrator
from previewbox.sandbox.registry import ReapResult, SandboxRegistry

__all__ = [
    # Backends
    "SandboxBackend",
    "SandboxOrchestrator",
    "NativeSandbox",
    "EphemeralSandbox",
    # Files
    "FileSyncEngine",
    "RecentWriteSet",
    "WatchSubscription",
    # Commands
    "CommandExecutor",
    # Registry
    "SandboxRegistry",
    "ReapResult",
]
