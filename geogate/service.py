"""Facade the HTTP layer talks to: ip lookups plus per-client admission."""

from __future__ import annotations

import logging
from typing import Any

from geogate.errors import NotInitializedError
from geogate.index import HotReloadingIndex
from geogate.ratelimit import Decision, TokenBucketStore
from geogate.snapshot import Record, get_loader

log = logging.getLogger(__name__)


class GeoService:
    def __init__(self, index: HotReloadingIndex, limiter: TokenBucketStore) -> None:
        self._index = index
        self._limiter = limiter

    @property
    def index(self) -> HotReloadingIndex:
        return self._index

    @property
    def limiter(self) -> TokenBucketStore:
        return self._limiter

    @property
    def ready(self) -> bool:
        return self._index.initialized

    async def initialize(self) -> None:
        await self._index.initialize()

    def _require_ready(self) -> None:
        if not self._index.initialized:
            raise NotInitializedError("service has not been initialized")

    def lookup(self, ip: str) -> Record | None:
        """Return the record for ``ip`` or None when the ip is unknown."""
        self._require_ready()
        return self._index.lookup(ip)

    def admit(self, key: str) -> Decision:
        """Take one token from the bucket for ``key``."""
        self._require_ready()
        return self._limiter.admit(key)

    def dispose(self) -> None:
        self._index.dispose()

    async def aclose(self) -> None:
        """Dispose and wait for any reload that was already running."""
        self.dispose()
        await self._index.wait_closed()


def build_service(config: dict[str, Any]) -> GeoService:
    """Construct a service from a loaded config dict. Performs no I/O."""
    geo = config["geo"]
    rate_limit = config["rate_limit"]

    index = HotReloadingIndex(
        geo["path"],
        get_loader(geo["database_type"]),
        reload_interval_seconds=geo["reload_interval_seconds"],
    )
    limiter = TokenBucketStore(
        refill_rate_per_second=rate_limit["refill_rate_per_second"],
        capacity=rate_limit["capacity"],
    )
    log.debug(
        "Built service: source=%s type=%s rate=%s capacity=%s",
        geo["path"],
        geo["database_type"],
        limiter.refill_rate_per_second,
        limiter.capacity,
    )
    return GeoService(index, limiter)
