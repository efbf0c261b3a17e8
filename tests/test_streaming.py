"""Tests for the SSE renderings of watch events and exec output."""

import json
import sys

import pytest
from watchfiles import Change

from previewbox.sandbox.native import NativeSandbox
from previewbox.streaming import HEARTBEAT_FRAME, exec_event_stream, format_event, watch_event_stream


def parse(frame):
    assert frame.startswith("data: ") and frame.endswith("\n\n")
    return json.loads(frame[len("data: "):])


@pytest.fixture
async def native(config):
    box = NativeSandbox("u1", config=config)
    box.files.debounce = 0.01
    yield box
    await box.teardown()


class TestFormat:

    def test_data_frame(self):
        assert format_event({"type": "deleted", "path": "a.txt"}) == (
            'data: {"type": "deleted", "path": "a.txt"}\n\n'
        )


class TestWatchStream:

    async def test_heartbeat_then_event(self, native, monkeypatch):
        await native.ensure("p1")
        monkeypatch.setattr(native.files, "start_watch", lambda: None)
        stream = watch_event_stream(native, heartbeat=0.05)

        assert await stream.__anext__() == HEARTBEAT_FRAME
        assert native.files.has_subscribers

        root = native.storage_path
        (root / "index.ts").write_text("export {}")
        native.files.handle_change(Change.added, str(root / "index.ts"), root)

        frame = HEARTBEAT_FRAME
        while frame == HEARTBEAT_FRAME:
            frame = await stream.__anext__()
        assert parse(frame) == {"type": "changed", "path": "index.ts", "content": "export {}"}

        await stream.aclose()
        assert not native.files.has_subscribers

    async def test_no_sandbox(self, native):
        stream = watch_event_stream(native, heartbeat=0.05)
        frames = [frame async for frame in stream]
        assert [parse(frame) for frame in frames] == [{"error": "No sandbox available"}]


@pytest.mark.skipif(sys.platform == "win32", reason="Uses POSIX shell commands")
class TestExecStream:

    async def test_output_then_done(self, native):
        await native.ensure("p1")
        frames = [frame async for frame in exec_event_stream(native, "echo hello")]
        events = [parse(frame) for frame in frames if frame != HEARTBEAT_FRAME]

        assert "".join(e["output"] for e in events if "output" in e) == "hello\n"
        assert events[-1] == {"done": True, "exitCode": 0}

    async def test_exit_code(self, native):
        await native.ensure("p1")
        frames = [frame async for frame in exec_event_stream(native, "exit 3")]
        assert parse(frames[-1]) == {"done": True, "exitCode": 3}

    async def test_heartbeats_while_quiet(self, native):
        await native.ensure("p1")
        frames = [frame async for frame in exec_event_stream(native, "sleep 0.3; echo late", heartbeat=0.05)]
        assert HEARTBEAT_FRAME in frames
        assert parse(frames[-1])["done"] is True

    async def test_no_sandbox(self, native):
        frames = [frame async for frame in exec_event_stream(native, "ls")]
        assert [parse(frame) for frame in frames] == [{"error": "No sandbox available"}]
