"""
Sandbox Orchestrator - One preview container per user, bound to one project.

This module handles:
- Creating the container lazily, or adopting one left by a previous server run
- Recreating it when the user switches projects
- Pausing, resuming and tearing it down
- Host port allocation with a single retry on conflicts
- Moving files in and out of the container

Lifecycle:
    absent -> creating -> running <-> paused
    running -> recreating -> running      (different project)
    any -> stopping -> absent             (teardown)
"""

import asyncio
import io
import tarfile
from pathlib import Path
from typing import Any, Dict, Optional, Set

import docker
from docker.errors import APIError, ImageNotFound, NotFound

from previewbox.config import Config
from previewbox.errors import (
    PreviewAddressError,
    SandboxCreationError,
    SandboxError,
    SandboxNotAvailableError,
)
from previewbox.logging_config import get_logger
from previewbox.sandbox.base import Command, DataCallback, SandboxBackend
from previewbox.sandbox.executor import CommandExecutor
from previewbox.schemas import (
    ExecResult,
    FileTree,
    SandboxHandle,
    SandboxInfo,
    SandboxStatus,
)
from previewbox.utils import (
    allocate_port,
    host_owner,
    make_tar_bytes,
    safe_container_name,
    validate_project_id,
)

logger = get_logger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

KEEP_ALIVE_COMMAND = ["/bin/sh", "-c", "tail -f /dev/null"]
CLEANUP_TOOLS_COMMAND = ["sh", "-c", "apt-get update && apt-get install -y psmisc"]

CPU_PERIOD = 100000
STOP_TIMEOUT_SECONDS = 2

# Port mapping can lag behind container start
URL_RESOLVE_ATTEMPTS = 3
URL_RESOLVE_DELAY_SECONDS = 0.5


def _is_already_running(error: APIError) -> bool:
    return getattr(error, "status_code", None) == 304


def _is_port_conflict(error: APIError) -> bool:
    return "port is already allocated" in str(error).lower()


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class SandboxOrchestrator(SandboxBackend):
    """
    Lifecycle state machine for one user's container sandbox.

    Creation and recreation run as a single in-flight task; concurrent
    callers of ensure() await that task instead of starting their own.
    """

    def __init__(
        self,
        user_id: str,
        user_name: Optional[str] = None,
        config: Optional[Config] = None,
        client: Optional[Any] = None,
    ):
        super().__init__(user_id, config)
        self.container_name = safe_container_name(user_name, user_id)
        self._client = client
        self._container = None
        self._status = SandboxStatus.ABSENT
        self._inflight: Optional[asyncio.Task] = None
        self._inflight_project: Optional[str] = None
        self.executor = CommandExecutor(self)

    @property
    def client(self):
        """Lazy initialization of the Docker client."""
        if self._client is None:
            self._client = docker.DockerClient(base_url=f"unix://{self.config.docker_socket_path}")
        return self._client

    @property
    def status(self) -> SandboxStatus:
        return self._status

    def _set_status(self, status: SandboxStatus) -> None:
        self._status = status
        if self._handle is not None:
            self._handle.status = status

    def project_path(self, project_id: str) -> Path:
        return self.config.projects_root / project_id

    # -------------------------------------------------------------------------
    # ensure / recreation
    # -------------------------------------------------------------------------

    async def ensure(self, project_id: str) -> SandboxHandle:
        """
        Return a running sandbox bound to project_id.

        Creates one on first use, reuses the current one for the same project
        (returning the same handle object), and recreates it when the project
        differs.

        Raises:
            ValueError: If project_id is not a safe directory name
            SandboxCreationError: If the container could not be started
        """
        validate_project_id(project_id)

        while self._inflight is not None:
            inflight, inflight_project = self._inflight, self._inflight_project
            await asyncio.wait({inflight})
            if inflight_project == project_id and not inflight.cancelled() and inflight.exception() is not None:
                raise inflight.exception()

        if self._handle is not None and self._handle.project_id == project_id:
            await self.ensure_running()
            return self._handle

        task = asyncio.create_task(self._provision(project_id))
        self._inflight = task
        self._inflight_project = project_id
        task.add_done_callback(self._clear_inflight)
        return await asyncio.shield(task)

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None
            self._inflight_project = None

    async def _provision(self, project_id: str) -> SandboxHandle:
        recreating = self._handle is not None
        if recreating:
            logger.info(
                "sandbox_recreating",
                user_id=self.user_id,
                old_project=self._handle.project_id,
                new_project=project_id,
            )
            self._set_status(SandboxStatus.RECREATING)
        else:
            self._set_status(SandboxStatus.CREATING)

        host_path = self.project_path(project_id)
        try:
            if recreating:
                await self._destroy_current()
            await asyncio.to_thread(host_path.mkdir, parents=True, exist_ok=True)

            container = await self._adopt_existing(host_path)
            if container is None:
                container = await self._create_container(host_path, project_id)
        except BaseException:
            self._set_status(SandboxStatus.ABSENT)
            raise

        self._container = container
        self._handle = SandboxHandle(
            sandbox_id=container.id,
            name=self.container_name,
            user_id=self.user_id,
            project_id=project_id,
            host_path=host_path,
            workdir=self.config.container_workdir,
            port=self._mapped_port(container),
            status=SandboxStatus.RUNNING,
        )
        self._status = SandboxStatus.RUNNING

        if self.files.has_subscribers:
            self.files.start_watch()

        logger.info(
            "sandbox_ready",
            user_id=self.user_id,
            project_id=project_id,
            container=self.container_name,
            port=self._handle.port,
        )
        return self._handle

    async def _adopt_existing(self, host_path: Path):
        """
        Reuse a container with our name if it is bound to host_path.

        Returns:
            The running container, or None when a fresh one must be created
        """
        try:
            container = await asyncio.to_thread(self.client.containers.get, self.container_name)
        except NotFound:
            return None

        bound_path = self._bound_host_path(container)
        if bound_path is None or Path(bound_path).resolve() != host_path.resolve():
            logger.info(
                "sandbox_bind_mismatch",
                container=self.container_name,
                bound=bound_path,
                expected=str(host_path),
            )
            await self._stop_and_remove(container)
            return None

        state = container.attrs.get("State", {})
        try:
            if state.get("Paused"):
                logger.info("sandbox_unpausing_existing", container=self.container_name)
                await asyncio.to_thread(container.unpause)
            elif not state.get("Running"):
                logger.info("sandbox_starting_existing", container=self.container_name)
                await asyncio.to_thread(container.start)
        except APIError as e:
            if not _is_already_running(e):
                logger.warning(
                    "sandbox_existing_start_failed",
                    container=self.container_name,
                    error=str(e),
                )
                await self._force_remove(container)
                return None

        await asyncio.to_thread(container.reload)
        logger.info("sandbox_adopted", container=self.container_name)
        return container

    def _bound_host_path(self, container) -> Optional[str]:
        binds = container.attrs.get("HostConfig", {}).get("Binds") or []
        for bind in binds:
            parts = bind.split(":")
            if len(parts) >= 2 and parts[1] == self.config.container_workdir:
                return parts[0]
        return None

    async def _ensure_image(self) -> None:
        image = self.config.image
        try:
            await asyncio.to_thread(self.client.images.get, image)
        except ImageNotFound:
            logger.info("image_pulling", image=image)
            await asyncio.to_thread(self.client.images.pull, image)
            logger.info("image_pulled", image=image)

    def _container_kwargs(self, host_path: Path, project_id: str, port: int) -> Dict[str, Any]:
        cfg = self.config
        kwargs: Dict[str, Any] = {
            "image": cfg.image,
            "name": self.container_name,
            "command": KEEP_ALIVE_COMMAND,
            "tty": True,
            "working_dir": cfg.container_workdir,
            "volumes": {str(host_path): {"bind": cfg.container_workdir, "mode": "rw"}},
            "ports": {f"{cfg.container_port}/tcp": port},
            "mem_limit": cfg.memory_limit,
            "cpu_period": CPU_PERIOD,
            "cpu_quota": cfg.cpu_quota,
            "labels": {"previewbox.user": self.user_id, "previewbox.project": project_id},
        }
        if cfg.run_as_host_user:
            uid, gid = host_owner()
            if uid is not None:
                kwargs["user"] = f"{uid}:{gid}"
        return kwargs

    async def _create_container(self, host_path: Path, project_id: str):
        """Create and start a fresh container, retrying once with another port."""
        await self._ensure_image()

        tried_ports: Set[int] = set()
        last_error: Optional[Exception] = None

        for attempt in range(2):
            port = allocate_port(
                self.config.port_range_start, self.config.port_range_end, exclude=tried_ports
            )
            if port is None:
                raise SandboxCreationError("No available ports. Too many preview sandboxes running.")
            tried_ports.add(port)

            try:
                container = await asyncio.to_thread(
                    self.client.containers.create,
                    **self._container_kwargs(host_path, project_id, port),
                )
            except APIError as e:
                raise SandboxCreationError(f"Failed to create container: {e}") from e

            try:
                await asyncio.to_thread(container.start)
            except APIError as e:
                if not _is_already_running(e):
                    last_error = e
                    port_conflict = _is_port_conflict(e)
                    logger.warning(
                        "sandbox_start_failed",
                        container=self.container_name,
                        port=port,
                        attempt=attempt + 1,
                        port_conflict=port_conflict,
                        error=str(e),
                    )
                    await self._force_remove(container)
                    if not port_conflict:
                        raise SandboxCreationError(f"Failed to start container: {e}") from e
                    continue

            await asyncio.to_thread(container.reload)
            logger.info("sandbox_created", container=self.container_name, port=port)
            await self._install_cleanup_tools(container)
            return container

        raise SandboxCreationError(f"Failed to start container: {last_error}") from last_error

    async def _install_cleanup_tools(self, container) -> None:
        """Best effort: fuser (psmisc) makes dev-server port cleanup reliable."""
        if not self.config.install_cleanup_tools:
            return
        try:
            result = await asyncio.to_thread(container.exec_run, CLEANUP_TOOLS_COMMAND, user="root")
            if result.exit_code != 0:
                logger.warning("cleanup_tools_install_failed", exit_code=result.exit_code)
        except APIError as e:
            logger.warning("cleanup_tools_install_failed", error=str(e))

    def _mapped_port(self, container) -> Optional[int]:
        ports = (container.attrs.get("NetworkSettings") or {}).get("Ports") or {}
        bindings = ports.get(f"{self.config.container_port}/tcp")
        if bindings and bindings[0].get("HostPort"):
            return int(bindings[0]["HostPort"])
        return None

    # -------------------------------------------------------------------------
    # Running state
    # -------------------------------------------------------------------------

    async def _await_inflight(self) -> None:
        if self._inflight is not None:
            await asyncio.wait({self._inflight})

    def _require_container(self):
        if self._container is None:
            raise SandboxNotAvailableError()
        return self._container

    async def ensure_running(self):
        """
        Resume a paused container or start a stopped one.

        Returns:
            The live docker container

        Raises:
            SandboxNotAvailableError: If there is no sandbox, or it vanished
        """
        await self._await_inflight()
        container = self._require_container()

        try:
            await asyncio.to_thread(container.reload)
        except NotFound:
            logger.warning("sandbox_vanished", container=self.container_name)
            self.files.stop_watch()
            self._forget()
            self._status = SandboxStatus.ABSENT
            raise SandboxNotAvailableError()

        state = container.attrs.get("State", {})
        if state.get("Paused"):
            await asyncio.to_thread(container.unpause)
        elif not state.get("Running"):
            try:
                await asyncio.to_thread(container.start)
            except APIError as e:
                if not _is_already_running(e):
                    raise

        self._set_status(SandboxStatus.RUNNING)
        return container

    async def pause(self) -> None:
        if self._container is None:
            return
        await asyncio.to_thread(self._container.reload)
        state = self._container.attrs.get("State", {})
        if state.get("Running") and not state.get("Paused"):
            await asyncio.to_thread(self._container.pause)
            self._set_status(SandboxStatus.PAUSED)
            logger.info("sandbox_paused", container=self.container_name)

    async def unpause(self) -> None:
        if self._container is None:
            return
        await asyncio.to_thread(self._container.reload)
        if self._container.attrs.get("State", {}).get("Paused"):
            await asyncio.to_thread(self._container.unpause)
            self._set_status(SandboxStatus.RUNNING)
            logger.info("sandbox_unpaused", container=self.container_name)

    async def resolve_url(self) -> str:
        """
        Host URL of the preview port.

        Raises:
            PreviewAddressError: If the port mapping never became visible
        """
        container = await self.ensure_running()

        for attempt in range(URL_RESOLVE_ATTEMPTS):
            await asyncio.to_thread(container.reload)
            port = self._mapped_port(container)
            if port is not None:
                if self._handle is not None:
                    self._handle.port = port
                return f"http://127.0.0.1:{port}"
            if attempt < URL_RESOLVE_ATTEMPTS - 1:
                await asyncio.sleep(URL_RESOLVE_DELAY_SECONDS)

        raise PreviewAddressError()

    async def info(self) -> Optional[SandboxInfo]:
        if self._container is None or self._handle is None:
            return None
        await asyncio.to_thread(self._container.reload)
        attrs = self._container.attrs
        return SandboxInfo(
            container_id=attrs.get("Id", self._container.id),
            container_name=attrs.get("Name", self.container_name).lstrip("/"),
            host_project_path=str(self._handle.host_path.resolve()),
            container_workdir=self.config.container_workdir,
            status=attrs.get("State", {}).get("Status", "unknown"),
        )

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def teardown(self) -> None:
        """Stop the watcher, stop and remove the container. Safe when absent."""
        await self._await_inflight()
        if self._container is None:
            self.files.stop_watch()
            return

        self._set_status(SandboxStatus.STOPPING)
        name = self.container_name
        try:
            await self._destroy_current()
        finally:
            self._status = SandboxStatus.ABSENT
        logger.info("sandbox_torn_down", user_id=self.user_id, container=name)

    async def _destroy_current(self) -> None:
        self.files.stop_watch()
        container = self._container
        self._forget()
        if container is not None:
            await self._stop_and_remove(container)

    def _forget(self) -> None:
        self._container = None
        self._handle = None

    async def _stop_and_remove(self, container) -> None:
        try:
            await asyncio.to_thread(container.stop, timeout=STOP_TIMEOUT_SECONDS)
        except NotFound:
            logger.debug("container_already_removed", container=self.container_name)
            return
        except APIError as e:
            # Already stopped
            logger.debug("container_stop_ignored", container=self.container_name, error=str(e))
        await self._force_remove(container)

    async def _force_remove(self, container) -> None:
        try:
            await asyncio.to_thread(container.remove, force=True)
        except NotFound:
            logger.debug("container_already_removed", container=self.container_name)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def exec(
        self,
        cmd: Command,
        work_dir: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ExecResult:
        return await self.executor.exec(cmd, work_dir=work_dir, env=env)

    async def exec_stream(
        self,
        cmd: Command,
        on_data: DataCallback,
        work_dir: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> int:
        return await self.executor.exec_stream(cmd, on_data, work_dir=work_dir, env=env)

    # -------------------------------------------------------------------------
    # File transport
    # -------------------------------------------------------------------------

    def _container_path(self, relative: str) -> str:
        return f"{self.config.container_workdir.rstrip('/')}/{relative}"

    async def write_tree(self, tree: FileTree) -> None:
        container = self._require_container()
        uid, gid = host_owner() if self.config.run_as_host_user else (None, None)
        archive = make_tar_bytes(tree, uid=uid, gid=gid)
        ok = await asyncio.to_thread(container.put_archive, self.config.container_workdir, archive)
        if not ok:
            raise SandboxError(f"Failed to copy files into {self.container_name}")

    async def read_file(self, path: str) -> bytes:
        container = self._require_container()
        try:
            bits, _stat = await asyncio.to_thread(container.get_archive, self._container_path(path))
            raw = await asyncio.to_thread(lambda: b"".join(bits))
        except NotFound:
            raise FileNotFoundError(path) from None

        with tarfile.open(fileobj=io.BytesIO(raw)) as tar:
            member = tar.next()
            if member is None or not member.isfile():
                raise IsADirectoryError(path)
            extracted = tar.extractfile(member)
            return extracted.read() if extracted else b""

    async def delete_file(self, path: str) -> None:
        result = await self.exec(["rm", "-rf", self._container_path(path)])
        if not result.ok:
            raise SandboxError(f"Failed to delete {path}: {result.output.strip()}")

    async def mkdir(self, path: str) -> None:
        result = await self.exec(["mkdir", "-p", self._container_path(path)])
        if not result.ok:
            raise SandboxError(f"Failed to create directory {path}: {result.output.strip()}")
