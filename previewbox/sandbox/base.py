"""
Abstract sandbox interface shared by the container and host-process backends.

Implementations:
- SandboxOrchestrator: one Docker container per user, bound to a project
- NativeSandbox: host processes in a persistent projects directory
- EphemeralSandbox: host processes in a temporary directory
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Union

from previewbox.config import Config, get_config
from previewbox.errors import SandboxNotAvailableError
from previewbox.sandbox.filesync import FileSyncEngine
from previewbox.schemas import ExecResult, FileTree, SandboxHandle, SandboxInfo

Command = Union[str, Sequence[str]]
DataCallback = Callable[[str], Optional[Awaitable[None]]]

TIMEOUT_EXIT_CODE = 124


def as_argv(cmd: Command) -> List[str]:
    """Shell strings run through `sh -c`; argv lists run as given."""
    if isinstance(cmd, str):
        return ["sh", "-c", cmd]
    return list(cmd)


def timeout_suffix(seconds: int) -> str:
    return f"\n[Command timed out after {seconds}s]"


class SandboxBackend(ABC):
    """
    Abstract base for sandboxes bound to one caller identity.

    A backend owns at most one live sandbox at a time, bound to one project.
    It also acts as the file transport for its FileSyncEngine.
    """

    def __init__(self, user_id: str, config: Optional[Config] = None):
        self.user_id = user_id
        self.config = config or get_config()
        self._handle: Optional[SandboxHandle] = None
        self.files = FileSyncEngine(self)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @abstractmethod
    async def ensure(self, project_id: str) -> SandboxHandle:
        """Return a running sandbox bound to project_id, creating it if needed."""
        ...

    @abstractmethod
    async def ensure_running(self):
        """Resume or start the current sandbox. Raises SandboxNotAvailableError if absent."""
        ...

    @abstractmethod
    async def pause(self) -> None:
        ...

    @abstractmethod
    async def unpause(self) -> None:
        ...

    @abstractmethod
    async def teardown(self) -> None:
        """Destroy the sandbox. Safe to call when none exists."""
        ...

    @abstractmethod
    async def resolve_url(self) -> str:
        """Host-reachable URL of the preview server."""
        ...

    @abstractmethod
    async def info(self) -> Optional[SandboxInfo]:
        ...

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    @abstractmethod
    async def exec(
        self,
        cmd: Command,
        work_dir: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ExecResult:
        """
        Run a command to completion and return its combined output.

        Args:
            cmd: Shell string or argv list
            work_dir: Working directory, defaults to the project root
            env: Extra environment variables

        Returns:
            ExecResult; a timeout is reported as exit code 124, not raised
        """
        ...

    @abstractmethod
    async def exec_stream(
        self,
        cmd: Command,
        on_data: DataCallback,
        work_dir: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> int:
        """Run a command, forwarding output chunks to on_data. Returns the exit code."""
        ...

    # -------------------------------------------------------------------------
    # File transport (used by FileSyncEngine)
    # -------------------------------------------------------------------------

    @abstractmethod
    async def write_tree(self, tree: FileTree) -> None:
        ...

    @abstractmethod
    async def read_file(self, path: str) -> bytes:
        ...

    @abstractmethod
    async def delete_file(self, path: str) -> None:
        ...

    @abstractmethod
    async def mkdir(self, path: str) -> None:
        ...

    # -------------------------------------------------------------------------
    # Shared helpers
    # -------------------------------------------------------------------------

    @property
    def handle(self) -> Optional[SandboxHandle]:
        return self._handle

    @property
    def project_id(self) -> Optional[str]:
        return self._handle.project_id if self._handle else None

    @property
    def is_running(self) -> bool:
        return self._handle is not None

    @property
    def storage_path(self) -> Path:
        """Host-visible project directory of the live sandbox."""
        if self._handle is None:
            raise SandboxNotAvailableError()
        return self._handle.host_path

    @property
    def dev_server_port(self) -> int:
        """Port the preview server should listen on inside the sandbox."""
        return self.config.container_port

    def require_handle(self) -> SandboxHandle:
        if self._handle is None:
            raise SandboxNotAvailableError()
        return self._handle

    async def push(self, tree: FileTree) -> None:
        await self.files.push(tree)

    def watch(self):
        """Async iterator of WatchEvents; starts the watcher if needed."""
        return self.files.watch()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.teardown()


