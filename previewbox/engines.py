"""
Engines - One uniform workflow surface over every sandbox backend.

A SandboxEngine drives one backend (boot, mount, install, dev server) and
keeps observable state for the UI: status text, preview URL, build errors,
server and shell output, and preview console logs.

EngineSelector switches between the ephemeral, container and native
engines and reads all state through from whichever is active.
"""

import asyncio
import re
from enum import Enum
from typing import Dict, List, Optional, Union

from previewbox.config import Config, get_config
from previewbox.errors import SandboxError
from previewbox.logging_config import get_logger
from previewbox.sandbox.base import Command, SandboxBackend
from previewbox.sandbox.native import EphemeralSandbox, NativeSandbox
from previewbox.sandbox.orchestrator import SandboxOrchestrator
from previewbox.sandbox.registry import SandboxRegistry
from previewbox.schemas import ConsoleLog, ExecResult, FileTree, SandboxHandle

logger = get_logger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

SERVER_OUTPUT_LIMIT = 50000

DEV_SERVER_URL_PATTERN = re.compile(r"Local:\s+(https?://(?:localhost|127\.0\.0\.1|0\.0\.0\.0):\d+)")
COLOR_CODES = re.compile(r"\x1b\[[0-9;]*[mK]")

BUILD_START_MARKER = "Building..."
BUILD_COMPLETE_MARKER = "Application bundle generation complete"
BUILD_ERROR_MARKERS = ("[ERROR]", "✘", "Error:")
BUILD_FAILED_MARKERS = ("Application bundle generation failed", "Build failed")

CLEAN_PATHS = ["src"]
FULL_CLEAN_PATHS = ["node_modules", "pnpm-lock.yaml", "package-lock.json", ".angular"]


class EngineMode(str, Enum):
    """Which backend runs the project."""
    EPHEMERAL = "ephemeral"
    CONTAINER = "container"
    NATIVE = "native"


# =============================================================================
# ENGINE
# =============================================================================

class SandboxEngine:
    """
    Workflows and observable state for one sandbox backend.

    Args:
        backend: The sandbox this engine drives
        install_command: Dependency install command
        build_command: Production build command
        start_command: Dev server command; "{port}" is replaced with the
            port the server should listen on
    """

    def __init__(
        self,
        backend: SandboxBackend,
        install_command: str = "npm install",
        build_command: str = "npm run build",
        start_command: str = "npm start -- --port {port} --host 0.0.0.0",
    ):
        self.backend = backend
        self.install_command = install_command
        self.build_command = build_command
        self.start_command = start_command

        self.status = "Idle"
        self.url: Optional[str] = None
        self.build_error: Optional[str] = None
        self.server_output = ""
        self.shell_output = ""
        self.console_logs: List[ConsoleLog] = []

        self._dev_server_task: Optional[asyncio.Task] = None
        self._ready_task: Optional[asyncio.Task] = None
        self._error_buffer = ""
        self._has_errors = False
        self._last_package_json: Optional[bytes] = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def boot(self, project_id: str) -> SandboxHandle:
        self.status = "Starting sandbox..."
        try:
            handle = await self.backend.ensure(project_id)
        except Exception:
            self.status = "Boot Failed"
            raise
        self.status = "Project Ready"
        return handle

    async def teardown(self) -> None:
        await self.stop_dev_server()
        await self.backend.teardown()
        self._last_package_json = None
        self.status = "Idle"

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    async def mount(self, tree: FileTree) -> None:
        self.status = "Mounting files..."
        await self.backend.push(tree)

    async def write_file(self, path: str, content: Union[str, bytes]) -> None:
        await self.backend.files.write_file(path, content)

    async def read_file(self, path: str) -> str:
        data = await self.backend.files.read_file(path)
        return data.decode("utf-8", errors="replace")

    async def read_binary_file(self, path: str) -> bytes:
        return await self.backend.files.read_file(path)

    async def delete_file(self, path: str) -> None:
        await self.backend.files.delete_file(path)

    async def mkdir(self, path: str) -> None:
        await self.backend.files.mkdir(path)

    async def clean(self, full: bool = False) -> None:
        """Remove sources, and with full=True dependencies and caches too."""
        self.status = "Cleaning workspace..."
        paths = CLEAN_PATHS + (FULL_CLEAN_PATHS if full else [])
        if full:
            self._last_package_json = None
        await self.backend.exec(["rm", "-rf", *paths])

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def exec(
        self,
        cmd: Command,
        work_dir: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ExecResult:
        result = await self.backend.exec(cmd, work_dir=work_dir, env=env)
        self.shell_output += result.output
        return result

    async def run_install(self) -> int:
        """Install dependencies, skipping when package.json has not changed."""
        self.status = "Checking dependencies..."
        try:
            package_json = await self.backend.files.read_file("package.json")
        except FileNotFoundError:
            package_json = None

        if package_json is not None and package_json == self._last_package_json:
            self._append_server_output("Dependencies unchanged, skipping install...\n")
            self.status = "Dependencies up to date"
            return 0

        self.status = "Installing dependencies..."
        exit_code = await self.backend.exec_stream(self.install_command, self._append_server_output)
        if exit_code == 0:
            self._last_package_json = package_json
            self.status = "Dependencies installed"
        else:
            self.status = "Install Failed"
        logger.info("install_finished", exit_code=exit_code)
        return exit_code

    async def run_build(self) -> int:
        self.status = "Building..."
        self._reset_build_errors()
        exit_code = await self.backend.exec_stream(self.build_command, self._on_build_output)
        if exit_code == 0:
            self.status = "Build Complete"
        else:
            self.status = "Build Error"
            if not self.build_error:
                self.build_error = f"Build exited with code {exit_code}"
        logger.info("build_finished", exit_code=exit_code)
        return exit_code

    # -------------------------------------------------------------------------
    # Dev server
    # -------------------------------------------------------------------------

    @property
    def dev_server_running(self) -> bool:
        return self._dev_server_task is not None and not self._dev_server_task.done()

    async def start_dev_server(self) -> None:
        """Start the dev server in the background; state updates as output arrives."""
        await self.stop_dev_server()
        self.status = "Starting dev server..."
        self._reset_build_errors()

        command = self.start_command.format(port=self.backend.dev_server_port)
        self._dev_server_task = asyncio.create_task(
            self.backend.exec_stream(command, self._on_server_output)
        )
        self._dev_server_task.add_done_callback(self._on_dev_server_exit)
        logger.info("dev_server_started", command=command)

    async def stop_dev_server(self) -> None:
        self.url = None
        task, self._dev_server_task = self._dev_server_task, None
        ready, self._ready_task = self._ready_task, None
        if ready is not None:
            ready.cancel()
        if task is None:
            return

        self.status = "Stopping dev server..."
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except SandboxError as e:
            logger.debug("dev_server_already_failed", error=str(e))

        if isinstance(self.backend, SandboxOrchestrator) and self.backend.is_running:
            # The exec keeps running in the container after we stop reading it
            port = self.backend.dev_server_port
            try:
                await self.backend.exec(["sh", "-c", f"fuser -k {port}/tcp || true"])
            except SandboxError as e:
                logger.warning("dev_server_port_cleanup_failed", port=port, error=str(e))

        self.status = "Server stopped"
        logger.info("dev_server_stopped")

    def _on_dev_server_exit(self, task: asyncio.Task) -> None:
        if task.cancelled() or task is not self._dev_server_task:
            return
        error = task.exception()
        if error is not None:
            self.status = "Server Error"
            logger.warning("dev_server_failed", error=str(error))
        else:
            self.status = f"Server exited with code {task.result()}"
        self.url = None

    def _on_server_output(self, chunk: str) -> None:
        clean = self._on_build_output(chunk)

        if BUILD_COMPLETE_MARKER in clean:
            self.status = "Ready"
            if self.url is None:
                self._schedule_ready()

        if DEV_SERVER_URL_PATTERN.search(clean):
            self._schedule_ready()

    def _on_build_output(self, chunk: str) -> str:
        """Record output and track build errors. Returns the chunk without colors."""
        self._append_server_output(chunk)
        clean = COLOR_CODES.sub("", chunk)

        if BUILD_START_MARKER in clean:
            self.status = "Building..."
            self._reset_build_errors()

        if any(marker in clean for marker in BUILD_ERROR_MARKERS):
            self.status = "Build Error"
            self._has_errors = True

        if self._has_errors:
            self._error_buffer += clean
            self.build_error = self._error_buffer

        if any(marker in clean for marker in BUILD_FAILED_MARKERS):
            self.status = "Build Error"
            if not self._has_errors:
                self.build_error = clean.strip()

        if BUILD_COMPLETE_MARKER in clean:
            self._reset_build_errors()

        return clean

    def _schedule_ready(self) -> None:
        if self._ready_task is None or self._ready_task.done():
            self._ready_task = asyncio.create_task(self._mark_ready())

    async def _mark_ready(self) -> None:
        try:
            url = await self.backend.resolve_url()
        except SandboxError as e:
            self.status = "Preview Unavailable"
            logger.warning("dev_server_url_unavailable", error=str(e))
            return
        self.url = url
        self.status = "Ready"
        logger.info("dev_server_ready", url=url)

    def _reset_build_errors(self) -> None:
        self._error_buffer = ""
        self._has_errors = False
        self.build_error = None

    def _append_server_output(self, chunk: str) -> None:
        output = self.server_output + chunk
        if len(output) > SERVER_OUTPUT_LIMIT:
            output = output[-SERVER_OUTPUT_LIMIT:]
        self.server_output = output

    # -------------------------------------------------------------------------
    # Logs
    # -------------------------------------------------------------------------

    def add_console_log(self, level: str, message: str) -> None:
        self.console_logs.append(ConsoleLog(level=level, message=message))

    def clear_server_output(self) -> None:
        self.server_output = ""

    def clear_shell_output(self) -> None:
        self.shell_output = ""

    def clear_preview_logs(self) -> None:
        self.console_logs = []

    def clear_build_error(self) -> None:
        self._reset_build_errors()


# =============================================================================
# SELECTOR
# =============================================================================

class EngineSelector:
    """
    Facade over one engine per mode.

    All state is read from the active engine on every access, so switching
    modes never leaves stale values behind.
    """

    def __init__(self, engines: Dict[EngineMode, SandboxEngine], mode: EngineMode = EngineMode.CONTAINER):
        if mode not in engines:
            raise ValueError(f"No engine configured for mode {mode.value}")
        self._engines = engines
        self._mode = mode

    @classmethod
    def for_user(
        cls,
        user_id: str,
        user_name: Optional[str] = None,
        registry: Optional[SandboxRegistry] = None,
        config: Optional[Config] = None,
        mode: EngineMode = EngineMode.CONTAINER,
    ) -> "EngineSelector":
        """Build a selector with all three engines for one user."""
        config = config or get_config()
        if registry is not None:
            container = registry.get(user_id, user_name=user_name)
        else:
            container = SandboxOrchestrator(user_id, user_name=user_name, config=config)

        engines = {
            EngineMode.EPHEMERAL: SandboxEngine(EphemeralSandbox(user_id, config=config)),
            EngineMode.CONTAINER: SandboxEngine(container),
            EngineMode.NATIVE: SandboxEngine(NativeSandbox(user_id, config=config)),
        }
        return cls(engines, mode=mode)

    @property
    def mode(self) -> EngineMode:
        return self._mode

    @property
    def active(self) -> SandboxEngine:
        return self._engines[self._mode]

    def engine(self, mode: EngineMode) -> SandboxEngine:
        return self._engines[mode]

    async def set_mode(self, mode: EngineMode) -> None:
        """Stop the active engine's dev server, then switch. The old engine stays alive."""
        if mode not in self._engines:
            raise ValueError(f"No engine configured for mode {mode.value}")
        if mode == self._mode:
            return
        logger.info("engine_switching", old=self._mode.value, new=mode.value)
        await self.active.stop_dev_server()
        self._mode = mode

    # Read-through state

    @property
    def status(self) -> str:
        return self.active.status

    @property
    def url(self) -> Optional[str]:
        return self.active.url

    @property
    def build_error(self) -> Optional[str]:
        return self.active.build_error

    @property
    def server_output(self) -> str:
        return self.active.server_output

    @property
    def shell_output(self) -> str:
        return self.active.shell_output

    @property
    def console_logs(self) -> List[ConsoleLog]:
        return self.active.console_logs

    # Delegated workflows

    async def boot(self, project_id: str) -> SandboxHandle:
        return await self.active.boot(project_id)

    async def teardown(self) -> None:
        await self.active.teardown()

    async def mount(self, tree: FileTree) -> None:
        await self.active.mount(tree)

    async def write_file(self, path: str, content: Union[str, bytes]) -> None:
        await self.active.write_file(path, content)

    async def read_file(self, path: str) -> str:
        return await self.active.read_file(path)

    async def read_binary_file(self, path: str) -> bytes:
        return await self.active.read_binary_file(path)

    async def delete_file(self, path: str) -> None:
        await self.active.delete_file(path)

    async def mkdir(self, path: str) -> None:
        await self.active.mkdir(path)

    async def clean(self, full: bool = False) -> None:
        await self.active.clean(full=full)

    async def exec(
        self,
        cmd: Command,
        work_dir: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ExecResult:
        return await self.active.exec(cmd, work_dir=work_dir, env=env)

    async def run_install(self) -> int:
        return await self.active.run_install()

    async def run_build(self) -> int:
        return await self.active.run_build()

    async def start_dev_server(self) -> None:
        await self.active.start_dev_server()

    async def stop_dev_server(self) -> None:
        await self.active.stop_dev_server()

    def add_console_log(self, level: str, message: str) -> None:
        self.active.add_console_log(level, message)

    def clear_server_output(self) -> None:
        self.active.clear_server_output()

    def clear_shell_output(self) -> None:
        self.active.clear_shell_output()

    def clear_preview_logs(self) -> None:
        self.active.clear_preview_logs()

    def clear_build_error(self) -> None:
        self.active.clear_build_error()
