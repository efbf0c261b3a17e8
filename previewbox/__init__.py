"""
previewbox - Sandboxes for running and previewing generated application code.

Components:
- sandbox: Container and host-process backends, file sync, command execution, registry
- output: Reduce command output to a bounded report for the agent
- engines: Uniform workflows and observable state over every backend
- streaming: Server-sent event renderings of watch events and exec output
"""

from previewbox.config import Config, ConfigError, get_config
from previewbox.engines import EngineMode, EngineSelector, SandboxEngine
from previewbox.errors import (
    CapacityError,
    CommandTransportError,
    PreviewAddressError,
    SandboxCreationError,
    SandboxError,
    SandboxNotAvailableError,
)
from previewbox.logging_config import get_logger, setup_logging
from previewbox.sandbox import (
    EphemeralSandbox,
    FileSyncEngine,
    NativeSandbox,
    SandboxOrchestrator,
    SandboxRegistry,
)
from previewbox.output import register_profile, sanitize, sanitize_command_output

__version__ = "0.1.0"

__all__ = [
    # Config
    "Config",
    "ConfigError",
    "get_config",
    # Errors
    "SandboxError",
    "SandboxNotAvailableError",
    "SandboxCreationError",
    "PreviewAddressError",
    "CommandTransportError",
    "CapacityError",
    # Sandboxes
    "SandboxOrchestrator",
    "NativeSandbox",
    "EphemeralSandbox",
    "FileSyncEngine",
    "SandboxRegistry",
    # Engines
    "EngineMode",
    "EngineSelector",
    "SandboxEngine",
    # Output
    "sanitize",
    "sanitize_command_output",
    "register_profile",
    # Logging
    "get_logger",
    "setup_logging",
]
