"""
File Sync - Move file trees into a sandbox and report changes made inside it.

This module handles:
- Pushing a whole file tree as one archive
- Watching the host-visible project directory for external changes
- Suppressing echoes of our own writes (recent-write grace window)
- Debouncing bursts of events per file
- Fanning events out to subscribers
"""

import asyncio
import time
from pathlib import Path
from typing import TYPE_CHECKING, AsyncIterator, Callable, Dict, List, Optional, Union

from watchfiles import Change, DefaultFilter, awatch

from previewbox.logging_config import get_logger
from previewbox.schemas import FileEntry, FileTree, WatchEvent
from previewbox.utils import file_tree_for_path, iter_file_paths, normalize_relative_path

if TYPE_CHECKING:
    from previewbox.sandbox.base import SandboxBackend

logger = get_logger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

# Subtrees that churn constantly and never hold user-edited sources
IGNORED_DIRS = {"node_modules", ".angular", ".nx", "dist", ".git", ".cache", "tmp"}

IGNORED_FILE_PATTERNS = (r"^\.DS_Store$",)

DEBOUNCE_SECONDS = 0.3
RECENT_WRITE_GRACE_SECONDS = 2.0


class StorageFilter(DefaultFilter):
    """
    watchfiles filter that skips build output, dependencies and OS metadata.

    Directory names are matched relative to root, so a project stored
    under e.g. /tmp is still watched.
    """

    def __init__(self, root: Optional[Path] = None):
        super().__init__(
            ignore_dirs=tuple(set(DefaultFilter.ignore_dirs) | IGNORED_DIRS),
            ignore_entity_patterns=tuple(DefaultFilter.ignore_entity_patterns) + IGNORED_FILE_PATTERNS,
        )
        self.roots = [] if root is None else list(dict.fromkeys([Path(root), Path(root).resolve()]))

    def __call__(self, change: Change, path: str) -> bool:
        if self.roots:
            relative = _relative_to_any(Path(path), self.roots)
            if relative is None:
                return False
            path = str(relative)
        return super().__call__(change, path)


def _relative_to_any(path: Path, roots: List[Path]) -> Optional[Path]:
    for root in roots:
        try:
            return path.relative_to(root)
        except ValueError:
            continue
    return None


class RecentWriteSet:
    """
    Paths we wrote ourselves, each expiring after a grace window.

    Membership checks drop expired entries, so nothing needs a timer.
    """

    def __init__(self, grace: float = RECENT_WRITE_GRACE_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.grace = grace
        self._clock = clock
        self._deadlines: Dict[str, float] = {}

    def add(self, path: str) -> None:
        self._deadlines[path] = self._clock() + self.grace

    def __contains__(self, path: object) -> bool:
        deadline = self._deadlines.get(path)  # type: ignore[arg-type]
        if deadline is None:
            return False
        if self._clock() >= deadline:
            del self._deadlines[path]  # type: ignore[arg-type]
            return False
        return True

    def __len__(self) -> int:
        now = self._clock()
        self._deadlines = {p: d for p, d in self._deadlines.items() if d > now}
        return len(self._deadlines)


class WatchSubscription:
    """One consumer's queue of watch events. Closing it is always safe."""

    def __init__(self, engine: "FileSyncEngine"):
        self._engine = engine
        self.queue: "asyncio.Queue[WatchEvent]" = asyncio.Queue()
        self.closed = False

    async def get(self) -> WatchEvent:
        return await self.queue.get()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._engine._unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> WatchEvent:
        if self.closed:
            raise StopAsyncIteration
        return await self.queue.get()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.close()


# =============================================================================
# ENGINE
# =============================================================================

class FileSyncEngine:
    """
    Keeps a sandbox's files in sync with the editing session.

    The transport is the owning sandbox backend: it knows where the project
    lives on the host and how to move bytes in and out of the sandbox.
    """

    def __init__(
        self,
        transport: "SandboxBackend",
        debounce: float = DEBOUNCE_SECONDS,
        grace: float = RECENT_WRITE_GRACE_SECONDS,
    ):
        self._transport = transport
        self.debounce = debounce
        self.recent_writes = RecentWriteSet(grace)

        self._watch_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._watch_root: Optional[Path] = None
        self._pending: Dict[str, asyncio.Task] = {}
        self._subscribers: List[WatchSubscription] = []

    # -------------------------------------------------------------------------
    # Writes and reads
    # -------------------------------------------------------------------------

    async def push(self, tree: FileTree) -> None:
        """
        Write a file tree into the sandbox as a single archive.

        Every file path is recorded as a recent write first, so the watcher
        does not report our own writes back.
        """
        for path in iter_file_paths(tree):
            self.recent_writes.add(path)
        await self._transport.write_tree(tree)

    async def write_file(self, path: str, content: Union[str, bytes]) -> None:
        """Write one file, creating parent directories."""
        if isinstance(content, bytes):
            entry = FileEntry.from_bytes(content)
        else:
            entry = FileEntry(contents=content)
        await self.push(file_tree_for_path(path, entry))

    async def read_file(self, path: str) -> bytes:
        return await self._transport.read_file(normalize_relative_path(path))

    async def delete_file(self, path: str) -> None:
        relative = normalize_relative_path(path)
        self.recent_writes.add(relative)
        await self._transport.delete_file(relative)

    async def mkdir(self, path: str) -> None:
        await self._transport.mkdir(normalize_relative_path(path))

    # -------------------------------------------------------------------------
    # Watching
    # -------------------------------------------------------------------------

    @property
    def is_watching(self) -> bool:
        return self._watch_task is not None and not self._watch_task.done()

    @property
    def has_subscribers(self) -> bool:
        return bool(self._subscribers)

    def start_watch(self) -> None:
        """Start watching the project directory. Does nothing if already watching."""
        if self.is_watching:
            return

        root = Path(self._transport.storage_path)
        self._watch_root = root
        self._stop_event = asyncio.Event()
        self._watch_task = asyncio.create_task(self._watch_loop(root, self._stop_event))
        logger.info("file_watcher_started", path=str(root))

    def stop_watch(self) -> None:
        """Stop watching and cancel pending debounce timers. Safe when not watching."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._watch_task is not None:
            self._watch_task.cancel()
            logger.info("file_watcher_stopped", path=str(self._watch_root))
        for task in self._pending.values():
            task.cancel()
        self._pending.clear()
        self._watch_task = None
        self._stop_event = None
        self._watch_root = None

    async def _watch_loop(self, root: Path, stop_event: asyncio.Event) -> None:
        try:
            async for changes in awatch(root, watch_filter=StorageFilter(root), stop_event=stop_event):
                for change, raw_path in changes:
                    self.handle_change(change, raw_path, root)
        except asyncio.CancelledError:
            raise
        except (OSError, RuntimeError) as e:
            # Watching is best effort; the sandbox keeps working without it
            logger.warning("file_watcher_error", path=str(root), error=str(e))

    def handle_change(self, change: Change, raw_path: str, root: Optional[Path] = None) -> None:
        """
        Route one filesystem event through echo suppression and debouncing.

        Args:
            change: watchfiles change type
            raw_path: Absolute host path reported by the watcher
            root: Project directory the path is relative to
        """
        root = root or self._watch_root
        if root is None:
            return
        relative_path = _relative_to_any(Path(raw_path), [root, root.resolve()])
        if relative_path is None or not relative_path.parts:
            return
        relative = relative_path.as_posix()

        if relative in self.recent_writes:
            return

        kind = "deleted" if change == Change.deleted else "changed"

        existing = self._pending.pop(relative, None)
        if existing is not None:
            existing.cancel()

        self._pending[relative] = asyncio.create_task(
            self._emit_after_debounce(relative, kind, root / relative)
        )

    async def _emit_after_debounce(self, relative: str, kind: str, full_path: Path) -> None:
        await asyncio.sleep(self.debounce)
        if self._pending.get(relative) is asyncio.current_task():
            del self._pending[relative]

        if kind == "deleted":
            event = WatchEvent(kind="deleted", path=relative)
        else:
            try:
                data = await asyncio.to_thread(full_path.read_bytes)
            except FileNotFoundError:
                event = WatchEvent(kind="deleted", path=relative)
            except IsADirectoryError:
                return
            else:
                entry = FileEntry.from_bytes(data)
                event = WatchEvent(
                    kind="changed", path=relative, content=entry.contents, encoding=entry.encoding
                )

        self._publish(event)

    # -------------------------------------------------------------------------
    # Subscribers
    # -------------------------------------------------------------------------

    def subscribe(self) -> WatchSubscription:
        """Register a consumer and make sure the watcher runs."""
        self.start_watch()
        subscription = WatchSubscription(self)
        self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: WatchSubscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def _publish(self, event: WatchEvent) -> None:
        logger.debug("file_event", kind=event.kind, path=event.path)
        for subscription in list(self._subscribers):
            subscription.queue.put_nowait(event)

    async def watch(self) -> AsyncIterator[WatchEvent]:
        """Yield watch events until the consumer stops iterating."""
        subscription = self.subscribe()
        try:
            while True:
                yield await subscription.get()
        finally:
            subscription.close()
