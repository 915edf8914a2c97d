"""In-memory ip index with periodic change detection and atomic reload."""

from __future__ import annotations

import asyncio
import logging
import math
from numbers import Real
from typing import Hashable

from geogate.errors import ConfigError, LoadError, NotInitializedError, ReloadFailure
from geogate.snapshot import Record, Snapshot, SnapshotLoader

log = logging.getLogger(__name__)


def _reload_interval(value: object) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool) or not isinstance(value, Real):
        raise ConfigError(f"reload_interval_seconds must be a number, got {value!r}")
    if not math.isfinite(value) or value < 0:
        raise ConfigError(
            f"reload_interval_seconds must be zero or a finite positive number, got {value!r}"
        )
    return float(value)


class HotReloadingIndex:
    """Serves lookups from an immutable snapshot that a background check replaces.

    Readers only ever dereference ``self._snapshot``; a reload builds the new
    mapping off the event loop and publishes it with a single assignment.
    Checks are chained: the next one is scheduled only once the previous one
    has finished, so two reloads never overlap.
    """

    def __init__(
        self,
        source: str,
        loader: SnapshotLoader,
        *,
        reload_interval_seconds: float | None = 0,
    ) -> None:
        if not source:
            raise ConfigError("source must be a non-empty string")
        self._source = str(source)
        self._loader = loader
        self._interval = _reload_interval(reload_interval_seconds)

        self._snapshot: Snapshot | None = None
        self._marker: Hashable | None = None
        self._initialized = False
        self._generation = 0
        self._timer: asyncio.TimerHandle | None = None
        self._check_task: asyncio.Task | None = None

    @property
    def source(self) -> str:
        return self._source

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def size(self) -> int:
        snapshot = self._snapshot
        return len(snapshot) if snapshot is not None else 0

    def _read(self) -> tuple[Hashable, Snapshot]:
        # The marker is taken before parsing so a write racing with the read
        # is picked up again by the next check.
        marker = self._loader.marker(self._source)
        return marker, self._loader.load(self._source)

    async def initialize(self) -> None:
        """Load the source once and start periodic checks if enabled.

        Raises LoadError when the source cannot be read or parsed; nothing is
        retained in that case. A second call after success does nothing.
        """
        if self._initialized:
            return
        generation = self._generation
        try:
            marker, snapshot = await asyncio.to_thread(self._read)
        except (OSError, ValueError) as exc:
            log.error("Failed to load geolocation database from %s: %s", self._source, exc)
            raise LoadError(
                f"Failed to load geolocation database from {self._source}"
            ) from exc

        if generation != self._generation:
            log.info("Index for %s disposed during initial load", self._source)
            return
        if self._initialized:
            # A concurrent initialize() finished first.
            return
        self._snapshot = snapshot
        self._marker = marker
        self._initialized = True
        log.info("Loaded %d records from %s", len(snapshot), self._source)
        self._schedule_next(generation)

    def lookup(self, key: str) -> Record | None:
        """O(1) lookup against the current snapshot."""
        snapshot = self._snapshot
        if not self._initialized or snapshot is None:
            raise NotInitializedError("index has not been initialized")
        return snapshot.get(key)

    async def reload_if_changed(self) -> bool:
        """Reload the source if its marker changed. Returns True on reload.

        Raises ReloadFailure and keeps the current snapshot on any read or
        parse problem.
        """
        try:
            current = await asyncio.to_thread(self._loader.marker, self._source)
        except OSError as exc:
            raise ReloadFailure(f"Source not accessible: {self._source}") from exc
        if current == self._marker:
            log.debug("Source unchanged: %s", self._source)
            return False

        log.info("Source changed, reloading: %s", self._source)
        try:
            marker, snapshot = await asyncio.to_thread(self._read)
        except (OSError, ValueError) as exc:
            raise ReloadFailure(f"Failed to reload {self._source}: {exc}") from exc

        self._snapshot = snapshot
        self._marker = marker
        log.info("Reloaded %d records from %s", len(snapshot), self._source)
        return True

    def _schedule_next(self, generation: int) -> None:
        if self._interval <= 0 or not self._initialized or generation != self._generation:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._interval, self._start_check, generation)

    def _start_check(self, generation: int) -> None:
        self._timer = None
        if generation != self._generation:
            return
        self._check_task = asyncio.create_task(self._run_check(generation))

    async def _run_check(self, generation: int) -> None:
        try:
            await self.reload_if_changed()
        except Exception:
            log.warning("Geolocation database reload failed", exc_info=True)
        finally:
            if self._check_task is asyncio.current_task():
                self._check_task = None
            self._schedule_next(generation)

    def dispose(self) -> None:
        """Stop periodic checks and mark the index uninitialized.

        Safe to call repeatedly. A check already running is left to finish;
        it will not schedule another one.
        """
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._initialized:
            log.info("Disposed index for %s", self._source)
        self._initialized = False
        self._snapshot = None
        self._marker = None

    async def wait_closed(self) -> None:
        """Wait for a check that was in flight when dispose() was called."""
        task = self._check_task
        if task is not None:
            await asyncio.shield(task)
