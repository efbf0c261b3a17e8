"""
Native sandboxes - run projects directly on the host.

No isolation. Used when Docker is unavailable or unwanted:
- NativeSandbox keeps each project in a persistent projects directory
- EphemeralSandbox works in a temporary directory removed on teardown
"""

import asyncio
import codecs
import inspect
import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, Optional, Set

from previewbox.config import Config
from previewbox.errors import CommandTransportError, SandboxCreationError
from previewbox.logging_config import get_logger
from previewbox.sandbox.base import (
    TIMEOUT_EXIT_CODE,
    Command,
    DataCallback,
    SandboxBackend,
    as_argv,
    timeout_suffix,
)
from previewbox.schemas import ExecResult, FileTree, SandboxHandle, SandboxInfo, SandboxStatus
from previewbox.utils import allocate_port, resolve_within, validate_project_id, write_tree_to_dir

logger = get_logger(__name__)

READ_CHUNK_SIZE = 4096


class NativeSandbox(SandboxBackend):
    """Runs commands as host processes inside a per-project directory."""

    def __init__(self, user_id: str, config: Optional[Config] = None, base_dir: Optional[Path] = None):
        super().__init__(user_id, config)
        self._base_dir = Path(base_dir) if base_dir else None
        self._processes: Set[asyncio.subprocess.Process] = set()
        self._ensure_lock = asyncio.Lock()

    @property
    def base_dir(self) -> Path:
        return self._base_dir or self.config.native_projects_dir

    @property
    def process_count(self) -> int:
        return len(self._processes)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def ensure(self, project_id: str) -> SandboxHandle:
        validate_project_id(project_id)

        async with self._ensure_lock:
            return await self._provision(project_id)

    async def _provision(self, project_id: str) -> SandboxHandle:
        if self._handle is not None and self._handle.project_id == project_id:
            return self._handle
        if self._handle is not None:
            await self.teardown()

        project_path = self.base_dir / project_id
        await asyncio.to_thread(project_path.mkdir, parents=True, exist_ok=True)

        port = allocate_port(self.config.port_range_start, self.config.port_range_end)
        if port is None:
            raise SandboxCreationError("No available ports for the preview server.")

        self._handle = SandboxHandle(
            sandbox_id=str(project_path),
            name=f"native-{project_id}",
            user_id=self.user_id,
            project_id=project_id,
            host_path=project_path,
            workdir=str(project_path),
            port=port,
            status=SandboxStatus.RUNNING,
        )
        logger.info("native_sandbox_ready", user_id=self.user_id, path=str(project_path), port=port)
        return self._handle

    async def ensure_running(self) -> SandboxHandle:
        return self.require_handle()

    async def pause(self) -> None:
        # Host processes keep running; there is nothing to freeze
        logger.debug("native_pause_ignored", user_id=self.user_id)

    async def unpause(self) -> None:
        logger.debug("native_unpause_ignored", user_id=self.user_id)

    async def teardown(self) -> None:
        """Stop the watcher and terminate every process we started."""
        self.files.stop_watch()
        for process in list(self._processes):
            _terminate(process)
        self._processes.clear()
        if self._handle is not None:
            logger.info("native_sandbox_stopped", user_id=self.user_id, path=str(self._handle.host_path))
        self._handle = None

    async def resolve_url(self) -> str:
        handle = self.require_handle()
        return f"http://127.0.0.1:{handle.port}"

    async def info(self) -> Optional[SandboxInfo]:
        if self._handle is None:
            return None
        return SandboxInfo(
            container_id=self._handle.sandbox_id,
            container_name=self._handle.name,
            host_project_path=str(self._handle.host_path.resolve()),
            container_workdir=self._handle.workdir,
            status="running",
        )

    @property
    def dev_server_port(self) -> int:
        handle = self.require_handle()
        return handle.port or self.config.container_port

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def _resolve_workdir(self, work_dir: Optional[str]) -> Path:
        root = self.require_handle().host_path
        if not work_dir or work_dir in (self.config.container_workdir, "."):
            return root
        path = Path(work_dir)
        if path.is_absolute():
            return path
        return resolve_within(root, work_dir)

    async def _spawn(self, cmd: Command, work_dir: Optional[str], env: Optional[Dict[str, str]]):
        argv = as_argv(cmd)
        merged_env = {**os.environ, **(env or {})}
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(self._resolve_workdir(work_dir)),
                env=merged_env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise CommandTransportError(f"Failed to start {argv[0]}: {e}") from e
        self._processes.add(process)
        return process, argv

    async def exec(
        self,
        cmd: Command,
        work_dir: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ExecResult:
        process, argv = await self._spawn(cmd, work_dir, env)
        chunks = []

        async def drain() -> int:
            while True:
                chunk = await process.stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                chunks.append(chunk)
            return await process.wait()

        timeout = self.config.exec_timeout
        try:
            exit_code = await asyncio.wait_for(drain(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("exec_timed_out", command=" ".join(argv), timeout=timeout)
            _terminate(process)
            output = b"".join(chunks).decode("utf-8", errors="replace")
            return ExecResult(
                output=output + timeout_suffix(timeout),
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
            )
        finally:
            self._processes.discard(process)

        return ExecResult(output=b"".join(chunks).decode("utf-8", errors="replace"), exit_code=exit_code)

    async def exec_stream(
        self,
        cmd: Command,
        on_data: DataCallback,
        work_dir: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> int:
        """Stream output to on_data; cancelling terminates the process."""
        process, _argv = await self._spawn(cmd, work_dir, env)
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        try:
            while True:
                chunk = await process.stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if text:
                    result = on_data(text)
                    if inspect.isawaitable(result):
                        await result
            tail = decoder.decode(b"", final=True)
            if tail:
                result = on_data(tail)
                if inspect.isawaitable(result):
                    await result
            return await process.wait()
        except asyncio.CancelledError:
            _terminate(process)
            raise
        finally:
            self._processes.discard(process)

    # -------------------------------------------------------------------------
    # File transport
    # -------------------------------------------------------------------------

    async def write_tree(self, tree: FileTree) -> None:
        await asyncio.to_thread(write_tree_to_dir, tree, self.require_handle().host_path)

    async def read_file(self, path: str) -> bytes:
        target = resolve_within(self.require_handle().host_path, path)
        return await asyncio.to_thread(target.read_bytes)

    async def delete_file(self, path: str) -> None:
        target = resolve_within(self.require_handle().host_path, path)

        def remove() -> None:
            if target.is_dir():
                shutil.rmtree(target)
            elif target.exists() or target.is_symlink():
                target.unlink()

        await asyncio.to_thread(remove)

    async def mkdir(self, path: str) -> None:
        target = resolve_within(self.require_handle().host_path, path)
        await asyncio.to_thread(target.mkdir, parents=True, exist_ok=True)


class EphemeralSandbox(NativeSandbox):
    """A native sandbox in a throwaway directory, deleted on teardown."""

    def __init__(self, user_id: str, config: Optional[Config] = None):
        super().__init__(user_id, config)
        self._temp_dir: Optional[Path] = None

    @property
    def base_dir(self) -> Path:
        if self._temp_dir is None:
            self._temp_dir = Path(tempfile.mkdtemp(prefix="previewbox_"))
        return self._temp_dir

    async def teardown(self) -> None:
        await super().teardown()
        if self._temp_dir is not None:
            temp_dir, self._temp_dir = self._temp_dir, None
            await asyncio.to_thread(shutil.rmtree, temp_dir, True)
            logger.info("ephemeral_sandbox_removed", path=str(temp_dir))


def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        pass
