"""
Server-sent event streams for file watching and streaming exec.

Each generator yields ready-to-write SSE frames. Closing the generator
(client disconnect) unsubscribes or stops forwarding.
"""

import asyncio
import json
from typing import Any, AsyncIterator, Dict, Optional

from previewbox.errors import SandboxError
from previewbox.logging_config import get_logger
from previewbox.sandbox.base import Command, SandboxBackend

logger = get_logger(__name__)

HEARTBEAT_SECONDS = 30.0
HEARTBEAT_FRAME = ": heartbeat\n\n"

# Headers a web framework should send with these streams
SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}

_END = object()


def format_event(payload: Dict[str, Any]) -> str:
    """Frame a JSON payload as one SSE data event."""
    return f"data: {json.dumps(payload)}\n\n"


async def watch_event_stream(
    sandbox: SandboxBackend,
    heartbeat: float = HEARTBEAT_SECONDS,
) -> AsyncIterator[str]:
    """
    Stream external file changes in a sandbox.

    Yields {"type": "changed", "path", "content"} and
    {"type": "deleted", "path"} events, with a heartbeat comment whenever
    nothing happened for `heartbeat` seconds.
    """
    try:
        subscription = sandbox.files.subscribe()
    except SandboxError as e:
        yield format_event({"error": str(e)})
        return

    try:
        while True:
            try:
                event = await asyncio.wait_for(subscription.get(), timeout=heartbeat)
            except asyncio.TimeoutError:
                yield HEARTBEAT_FRAME
                continue
            yield format_event(event.to_payload())
    finally:
        subscription.close()
        logger.debug("watch_stream_closed", user_id=sandbox.user_id)


async def exec_event_stream(
    sandbox: SandboxBackend,
    cmd: Command,
    work_dir: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    heartbeat: float = HEARTBEAT_SECONDS,
) -> AsyncIterator[str]:
    """
    Run a command and stream its output.

    Yields {"output": chunk} events, then {"done": true, "exitCode": n},
    or {"error": message} if the sandbox fails.
    """
    queue: asyncio.Queue = asyncio.Queue()

    async def run() -> int:
        try:
            return await sandbox.exec_stream(cmd, queue.put_nowait, work_dir=work_dir, env=env)
        finally:
            queue.put_nowait(_END)

    task = asyncio.create_task(run())
    try:
        while True:
            try:
                item = await asyncio.wait_for(queue.get(), timeout=heartbeat)
            except asyncio.TimeoutError:
                yield HEARTBEAT_FRAME
                continue
            if item is _END:
                break
            yield format_event({"output": item})

        try:
            exit_code = await task
        except SandboxError as e:
            yield format_event({"error": str(e)})
            return
        yield format_event({"done": True, "exitCode": exit_code})
    finally:
        if not task.done():
            task.cancel()
