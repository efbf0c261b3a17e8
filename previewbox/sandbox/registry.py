"""
Sandbox Registry - Map caller identities to their sandbox backends.

Responsibilities:
- Get-or-create one backend per user
- Track activity and capacity
- Pause idle sandboxes and hibernate (tear down) long-idle ones
- Tear everything down at shutdown
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from previewbox.config import Config, get_config
from previewbox.errors import CapacityError
from previewbox.logging_config import get_logger, setup_logging
from previewbox.sandbox.base import SandboxBackend
from previewbox.sandbox.orchestrator import SandboxOrchestrator
from previewbox.schemas import SandboxStatus

logger = get_logger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

REAPER_INTERVAL_SECONDS = 5 * 60

# Builds a backend for (user_id, user_name)
SandboxFactory = Callable[[str, Optional[str]], SandboxBackend]


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class RegistryEntry:
    """A registered backend and when its user last did something."""
    sandbox: SandboxBackend
    last_activity: float

    def idle_seconds(self, now: float) -> float:
        return max(0.0, now - self.last_activity)


@dataclass
class ReapResult:
    """User ids affected by one reaper pass."""
    paused: List[str]
    hibernated: List[str]


# =============================================================================
# REGISTRY CLASS
# =============================================================================

class SandboxRegistry:
    """
    Owns the mapping from user id to sandbox backend.

    The registry never owns the sandbox itself: releasing an entry tears the
    backend down, and hibernation tears it down while keeping the entry.
    """

    def __init__(
        self,
        factory: Optional[SandboxFactory] = None,
        config: Optional[Config] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or get_config()
        self._factory = factory or self._container_factory
        self._clock = clock
        self._entries: Dict[str, RegistryEntry] = {}
        self._reaper_task: Optional[asyncio.Task] = None

        setup_logging(level=self.config.log_level, json_output=self.config.log_json)

    def _container_factory(self, user_id: str, user_name: Optional[str]) -> SandboxBackend:
        return SandboxOrchestrator(user_id, user_name=user_name, config=self.config)

    def get(self, user_id: str, user_name: Optional[str] = None, enforce_capacity: bool = False) -> SandboxBackend:
        """
        Get the user's backend, creating one if needed. Records activity.

        Raises:
            CapacityError: If enforce_capacity is set and the server is full
        """
        entry = self._entries.get(user_id)
        if entry is None:
            if enforce_capacity and self.is_at_capacity(user_id):
                raise CapacityError(
                    f"Server is at capacity ({self.config.max_sandboxes} sandboxes). Try again later."
                )
            entry = RegistryEntry(sandbox=self._factory(user_id, user_name), last_activity=self._clock())
            self._entries[user_id] = entry
            logger.debug("registry_created", user_id=user_id)
        else:
            entry.last_activity = self._clock()
        return entry.sandbox

    def touch(self, user_id: str) -> None:
        """Record activity so the reaper leaves this sandbox alone."""
        entry = self._entries.get(user_id)
        if entry is not None:
            entry.last_activity = self._clock()

    async def release(self, user_id: str) -> bool:
        """
        Tear down and forget a user's sandbox.

        Returns:
            True if the user had an entry
        """
        entry = self._entries.pop(user_id, None)
        if entry is None:
            return False
        await entry.sandbox.teardown()
        logger.info("registry_released", user_id=user_id)
        return True

    async def close(self) -> int:
        """
        Stop the reaper and tear down every sandbox.

        Returns:
            Number of sandboxes released
        """
        await self.stop_reaper()
        count = 0
        for user_id in list(self._entries.keys()):
            if await self.release(user_id):
                count += 1
        return count

    @property
    def active_count(self) -> int:
        """Number of registered backends with a live sandbox."""
        return sum(1 for entry in self._entries.values() if entry.sandbox.is_running)

    def is_at_capacity(self, user_id: str) -> bool:
        """True when the server is full and this user holds no live sandbox."""
        entry = self._entries.get(user_id)
        if entry is not None and entry.sandbox.is_running:
            return False
        return self.active_count >= self.config.max_sandboxes

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # -------------------------------------------------------------------------
    # Reaper
    # -------------------------------------------------------------------------

    async def reap(self) -> ReapResult:
        """
        Pause idle sandboxes and hibernate long-idle ones.

        Hibernated users keep their registry entry; their next ensure()
        recreates the sandbox.
        """
        now = self._clock()
        pause_after = self.config.idle_pause_minutes * 60
        hibernate_after = self.config.hibernate_minutes * 60
        result = ReapResult(paused=[], hibernated=[])

        for user_id, entry in list(self._entries.items()):
            sandbox = entry.sandbox
            if not sandbox.is_running:
                continue
            idle = entry.idle_seconds(now)
            try:
                if idle > hibernate_after:
                    await sandbox.teardown()
                    result.hibernated.append(user_id)
                    logger.info("sandbox_hibernated", user_id=user_id, idle_seconds=int(idle))
                elif idle > pause_after and sandbox.handle.status != SandboxStatus.PAUSED:
                    await sandbox.pause()
                    result.paused.append(user_id)
                    logger.info("sandbox_idle_paused", user_id=user_id, idle_seconds=int(idle))
            except Exception as e:
                # One broken sandbox must not stop the sweep
                logger.warning("reap_failed", user_id=user_id, error=str(e), exc_info=True)

        return result

    def start_reaper(self, interval: float = REAPER_INTERVAL_SECONDS) -> None:
        """Run reap() periodically in a background task."""
        if self._reaper_task is not None and not self._reaper_task.done():
            return

        async def reaper_loop():
            while True:
                await asyncio.sleep(interval)
                await self.reap()

        self._reaper_task = asyncio.create_task(reaper_loop())
        logger.info("reaper_started", interval=interval)

    async def stop_reaper(self) -> None:
        task, self._reaper_task = self._reaper_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
