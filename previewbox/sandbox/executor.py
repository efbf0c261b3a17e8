"""
Command Executor - Run commands inside a sandbox container.

This module handles:
- One-shot commands with combined stdout/stderr and a local timeout
- Streaming commands that forward output as it arrives
- Resuming a paused or stopped container before running

The Docker SDK is blocking, so each exec runs in a worker thread.
"""

import asyncio
import codecs
import inspect
import threading
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from docker.errors import DockerException

from previewbox.errors import CommandTransportError
from previewbox.logging_config import get_logger
from previewbox.sandbox.base import (
    TIMEOUT_EXIT_CODE,
    Command,
    DataCallback,
    as_argv,
    timeout_suffix,
)
from previewbox.schemas import ExecResult

if TYPE_CHECKING:
    from previewbox.sandbox.orchestrator import SandboxOrchestrator

logger = get_logger(__name__)

# Sentinel pushed once the exec stream is exhausted
_END = object()


class CommandExecutor:
    """Runs commands in the orchestrator's current container."""

    def __init__(self, orchestrator: "SandboxOrchestrator", timeout: Optional[int] = None):
        self._orchestrator = orchestrator
        self.timeout = timeout or orchestrator.config.exec_timeout

    async def exec(
        self,
        cmd: Command,
        work_dir: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ExecResult:
        """
        Run a command and collect its combined output.

        Args:
            cmd: Shell string (run with sh -c) or argv list
            work_dir: Working directory, defaults to the project root
            env: Extra environment variables

        Returns:
            ExecResult. When the command outlives the timeout, the output so
            far is returned with exit code 124.

        Raises:
            SandboxNotAvailableError: If no sandbox exists
            CommandTransportError: If the Docker API fails
        """
        container = await self._orchestrator.ensure_running()
        argv = as_argv(cmd)
        workdir = work_dir or self._orchestrator.config.container_workdir
        chunks: List[bytes] = []
        stop = threading.Event()

        task = asyncio.ensure_future(
            asyncio.to_thread(self._run, container.id, argv, workdir, env, chunks.append, stop)
        )
        try:
            exit_code = await asyncio.wait_for(asyncio.shield(task), timeout=self.timeout)
        except asyncio.TimeoutError:
            stop.set()
            task.add_done_callback(_discard_result)
            logger.warning("exec_timed_out", command=" ".join(argv), timeout=self.timeout)
            output = b"".join(chunks).decode("utf-8", errors="replace")
            return ExecResult(
                output=output + timeout_suffix(self.timeout),
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
            )
        except asyncio.CancelledError:
            stop.set()
            raise

        output = b"".join(chunks).decode("utf-8", errors="replace")
        return ExecResult(output=output, exit_code=-1 if exit_code is None else exit_code)

    async def exec_stream(
        self,
        cmd: Command,
        on_data: DataCallback,
        work_dir: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> int:
        """
        Run a command, handing decoded output chunks to on_data as they arrive.

        on_data may be a plain function or a coroutine function. There is no
        timeout; cancel the awaiting task to stop forwarding.

        Returns:
            The exit code, or -1 when the runtime cannot report it
        """
        container = await self._orchestrator.ensure_running()
        argv = as_argv(cmd)
        workdir = work_dir or self._orchestrator.config.container_workdir
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        stop = threading.Event()

        def forward(chunk: bytes) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, chunk)

        def run() -> Optional[int]:
            try:
                return self._run(container.id, argv, workdir, env, forward, stop, tolerate_inspect_failure=True)
            finally:
                loop.call_soon_threadsafe(queue.put_nowait, _END)

        task = asyncio.ensure_future(asyncio.to_thread(run))
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        collected = False

        try:
            while True:
                chunk = await queue.get()
                if chunk is _END:
                    break
                text = decoder.decode(chunk)
                if text:
                    await _deliver(on_data, text)

            tail = decoder.decode(b"", final=True)
            if tail:
                await _deliver(on_data, tail)

            collected = True
            exit_code = await task
        finally:
            stop.set()
            if not collected:
                task.add_done_callback(_discard_result)
                task.add_done_callback(_discard_result)

        return -1 if exit_code is None else exit_code

    def _run(
        self,
        container_id: str,
        argv: List[str],
        workdir: str,
        env: Optional[Dict[str, str]],
        sink: Callable[[bytes], None],
        stop: threading.Event,
        tolerate_inspect_failure: bool = False,
    ) -> Optional[int]:
        """Create, start and drain one exec (blocking operation)."""
        api = self._orchestrator.client.api
        try:
            exec_id = api.exec_create(
                container_id,
                argv,
                stdout=True,
                stderr=True,
                workdir=workdir,
                environment=env or None,
            )["Id"]
            for chunk in api.exec_start(exec_id, stream=True):
                if stop.is_set():
                    break
                sink(chunk)
        except (DockerException, OSError) as e:
            raise CommandTransportError(f"Exec failed: {e}") from e

        if stop.is_set():
            return None

        try:
            return api.exec_inspect(exec_id).get("ExitCode")
        except (DockerException, OSError) as e:
            if tolerate_inspect_failure:
                logger.debug("exec_inspect_failed", error=str(e))
                return None
            raise CommandTransportError(f"Exec inspect failed: {e}") from e


def _discard_result(task: asyncio.Future) -> None:
    # The caller has stopped waiting; late transport errors are only logged
    if not task.cancelled() and task.exception() is not None:
        logger.debug("exec_failed_after_caller_left", error=str(task.exception()))


async def _deliver(on_data: DataCallback, text: str) -> None:
    result = on_data(text)
    if inspect.isawaitable(result):
        await result
