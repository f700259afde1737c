"""
Resource Location Cache for the Collaborative Sync Core

Resolves (coordinates, variant) keys to expiring access URLs while keeping
network calls to a minimum:

- fresh descriptors are served from memory
- concurrent requests for the same key share one in-flight resolution
- batch lookups issue a single call for everything not already cached
- a periodic sweep drops expired descriptors independently of access

Descriptors and pending resolutions are owned exclusively by this cache.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from core.error_handler import ResolutionFailure
from models.resources import (
    CachedAccessDescriptor,
    ResolutionRequest,
    ResolvedItem,
    ResourceCoordinates,
    ResourceKey,
    Variant,
)


logger = logging.getLogger(__name__)

DEFAULT_TTL = 20 * 60 * 60  # 20 hours, below the server-issued token lifetime
DEFAULT_EVICTION_INTERVAL = 30 * 60  # 30 minutes

Resolver = Callable[[ResolutionRequest], Awaitable[List[ResolvedItem]]]
Clock = Callable[[], float]


@dataclass
class CacheStats:
    """Cache telemetry counters."""
    hits: int = 0
    misses: int = 0
    joins: int = 0
    network_calls: int = 0
    evictions: int = 0
    purges: int = 0


class _PendingResolution:
    """In-flight marker that late callers attach to."""

    __slots__ = ("future", "generation")

    def __init__(self, future: asyncio.Future, generation: Tuple[int, int]):
        self.future = future
        self.generation = generation


def _consume_exception(future: asyncio.Future) -> None:
    # Failures nobody joined must not be reported as "never retrieved"
    if not future.cancelled():
        future.exception()


class ResourceLocationCache:
    """
    TTL cache of resource access URLs with request deduplication.

    Entry lifecycle: unresolved -> pending -> cached -> expired, then either
    purged or resolved again.

    Usage:
        cache = ResourceLocationCache(resolver=HttpResourceResolver(api_url))
        await cache.start()
        url = await cache.resolve_one(coords, Variant.OPTIMIZED)
        urls = await cache.resolve_batch(grid_coords, [Variant.THUMBNAIL])
        cache.purge(coords)  # after upload, replace or delete
        await cache.stop()
    """

    def __init__(
        self,
        resolver: Resolver,
        clock: Clock = time.time,
        ttl: float = DEFAULT_TTL,
        eviction_interval: float = DEFAULT_EVICTION_INTERVAL
    ):
        """
        Initialize ResourceLocationCache.

        Args:
            resolver: Async callable issuing one network resolution call
            clock: Returns the current time in epoch seconds
            ttl: Seconds a resolved URL is served from cache
            eviction_interval: Seconds between expiry sweeps once started
        """
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        if eviction_interval <= 0:
            raise ValueError("eviction_interval must be positive")

        self._resolver = resolver
        self._clock = clock
        self.ttl = ttl
        self.eviction_interval = eviction_interval

        self._entries: Dict[ResourceKey, CachedAccessDescriptor] = {}
        self._pending: Dict[ResourceKey, _PendingResolution] = {}

        # Purge generations: a completion only populates the cache when the
        # generation it started under is still current
        self._epoch = 0
        self._generations: Dict[ResourceCoordinates, int] = {}

        self._eviction_task: Optional[asyncio.Task] = None
        self.stats = CacheStats()

    async def resolve_one(self, coords: ResourceCoordinates, variant: Variant) -> str:
        """
        Resolve one resource variant to a usable URL.

        Args:
            coords: Resource coordinates
            variant: Requested rendition

        Returns:
            Access URL

        Raises:
            ResolutionFailure: If the network call fails or returns no URL
        """
        key = ResourceKey(coords, variant)

        url = self._lookup(key)
        if url is not None:
            return url

        pending = self._pending.get(key)
        if pending is not None:
            self.stats.joins += 1
            logger.debug(f"Joining in-flight resolution for {key}")
            return await asyncio.shield(pending.future)

        self.stats.misses += 1
        registrations = self._register([key])
        resolved = await self._complete(registrations)
        if key not in resolved:
            raise ResolutionFailure(f"No URL returned for {key}")
        return resolved[key]

    async def resolve_batch(
        self,
        coords_list: Iterable[ResourceCoordinates],
        variants: Sequence[Variant] = (Variant.THUMBNAIL,)
    ) -> Dict[ResourceKey, str]:
        """
        Resolve many resources at once, as needed by grids and lists.

        Cached keys are served immediately, keys already in flight are
        joined, and the remainder is resolved with exactly one network call
        per owner/container pair.

        Args:
            coords_list: Resources to resolve
            variants: Renditions wanted for every resource

        Returns:
            Mapping of key to URL; keys the server returned nothing for are omitted

        Raises:
            ResolutionFailure: If a network call (own or joined) fails
        """
        results: Dict[ResourceKey, str] = {}
        joined: Dict[ResourceKey, asyncio.Future] = {}
        uncached: Dict[Tuple[str, str], List[ResourceKey]] = {}
        seen = set()

        for coords in coords_list:
            for variant in variants:
                key = ResourceKey(coords, variant)
                if key in seen:
                    continue
                seen.add(key)

                url = self._lookup(key)
                if url is not None:
                    results[key] = url
                    continue

                pending = self._pending.get(key)
                if pending is not None:
                    self.stats.joins += 1
                    joined[key] = pending.future
                    continue

                self.stats.misses += 1
                uncached.setdefault(coords.container, []).append(key)

        logger.debug(
            f"Batch of {len(seen)} keys: {len(results)} cached, "
            f"{len(joined)} in flight, {sum(len(k) for k in uncached.values())} to resolve"
        )

        # Register every key before the first suspension so that concurrent
        # callers join instead of issuing duplicate calls
        registrations = [self._register(keys) for keys in uncached.values()]
        if registrations:
            try:
                fetched = await asyncio.gather(*(self._complete(regs) for regs in registrations))
            except asyncio.CancelledError:
                # Child calls cancelled before they started never reach _complete's handler
                for regs in registrations:
                    self._abandon(regs)
                raise
            for resolved in fetched:
                results.update(resolved)

        for key, future in joined.items():
            results[key] = await asyncio.shield(future)

        return results

    def purge(self, coords: ResourceCoordinates) -> int:
        """
        Drop every variant of a resource, e.g. after upload, replace or delete.

        In-flight resolutions for the resource are not cancelled; they still
        answer their callers but no longer populate the cache.

        Args:
            coords: Resource coordinates

        Returns:
            Number of cached descriptors removed
        """
        removed = 0
        for variant in Variant:
            key = ResourceKey(coords, variant)
            if self._entries.pop(key, None) is not None:
                removed += 1
            self._pending.pop(key, None)

        self._generations[coords] = self._generations.get(coords, 0) + 1
        self.stats.purges += 1
        logger.debug(f"Purged {removed} cached URLs for {coords}")
        return removed

    def purge_all(self) -> None:
        """Drop every descriptor and detach every in-flight resolution."""
        self._entries.clear()
        self._pending.clear()
        self._generations.clear()
        self._epoch += 1
        self.stats.purges += 1
        logger.info("Cleared resource URL cache")

    def evict_expired(self) -> int:
        """
        Remove descriptors past their expiry.

        Returns:
            Number of descriptors removed
        """
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if not entry.is_fresh(now)]
        for key in expired:
            del self._entries[key]

        self.stats.evictions += len(expired)
        if expired:
            logger.debug(f"Evicted {len(expired)} expired URLs")
        return len(expired)

    async def start(self) -> None:
        """Start the periodic eviction sweep."""
        if self._eviction_task is not None and not self._eviction_task.done():
            return
        self._eviction_task = asyncio.create_task(self._eviction_loop())
        logger.info(f"Eviction sweep started (every {self.eviction_interval}s)")

    async def stop(self) -> None:
        """Stop the periodic eviction sweep."""
        task = self._eviction_task
        self._eviction_task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Eviction sweep stopped")

    async def _eviction_loop(self) -> None:
        """Sweep expired descriptors every eviction_interval seconds."""
        while True:
            await asyncio.sleep(self.eviction_interval)
            self.evict_expired()

    async def __aenter__(self) -> 'ResourceLocationCache':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def get_stats(self) -> Dict[str, int]:
        """
        Get cache telemetry.

        Returns:
            Counters plus current entry and pending counts
        """
        data = asdict(self.stats)
        data["entries"] = len(self._entries)
        data["pending"] = len(self._pending)
        return data

    def __len__(self) -> int:
        return len(self._entries)

    def _lookup(self, key: ResourceKey) -> Optional[str]:
        """Return the cached URL if still fresh."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_fresh(self._clock()):
            return None
        self.stats.hits += 1
        return entry.url

    def _generation(self, coords: ResourceCoordinates) -> Tuple[int, int]:
        return (self._epoch, self._generations.get(coords, 0))

    def _register(self, keys: List[ResourceKey]) -> Dict[ResourceKey, _PendingResolution]:
        """Create and register pending markers for keys (no suspension)."""
        loop = asyncio.get_running_loop()
        registrations = {}
        for key in keys:
            future = loop.create_future()
            future.add_done_callback(_consume_exception)
            pending = _PendingResolution(future, self._generation(key.coordinates))
            self._pending[key] = pending
            registrations[key] = pending
        return registrations

    async def _complete(self, registrations: Dict[ResourceKey, _PendingResolution]) -> Dict[ResourceKey, str]:
        """
        Issue one network call for registered keys and settle their markers.

        Returns:
            Mapping of key to URL for every key the server answered
        """
        keys = list(registrations)
        request = ResolutionRequest.for_keys(keys)
        self.stats.network_calls += 1

        try:
            items = await self._resolver(request)
        except asyncio.CancelledError:
            logger.debug(f"Resolution call for {request.owner_id}/{request.container_id} cancelled")
            self._abandon(registrations)
            raise
        except Exception as e:
            if isinstance(e, ResolutionFailure):
                failure = e
            else:
                failure = ResolutionFailure(f"Resolution failed for {len(keys)} resources: {e}")
                failure.__cause__ = e
            logger.warning(f"Resolution call for {request.owner_id}/{request.container_id} failed: {e}")
            for key, pending in registrations.items():
                self._settle(key, pending, error=failure)
            raise failure

        now = self._clock()
        resolved: Dict[ResourceKey, str] = {}
        for item in items:
            key = item.key_in(request)
            pending = registrations.get(key)
            if pending is None:
                logger.debug(f"Ignoring unrequested item {key}")
                continue

            resolved[key] = item.url
            if self._generation(key.coordinates) != pending.generation:
                logger.debug(f"{key} was purged during resolution; not caching")
                continue
            self._entries[key] = CachedAccessDescriptor(
                url=item.url,
                expires_at=self._expiry(now, item.expires_at),
                variant=key.variant
            )

        for key, pending in registrations.items():
            if key in resolved:
                self._settle(key, pending, url=resolved[key])
            else:
                self._settle(key, pending, error=ResolutionFailure(f"No URL returned for {key}"))

        return resolved

    def _abandon(self, registrations: Dict[ResourceKey, _PendingResolution]) -> None:
        """Release markers whose resolution was cancelled; joiners fail, later callers resolve anew."""
        for key, pending in registrations.items():
            self._settle(key, pending, error=ResolutionFailure(f"Resolution cancelled for {key}"))

    def _settle(
        self,
        key: ResourceKey,
        pending: _PendingResolution,
        url: Optional[str] = None,
        error: Optional[Exception] = None
    ) -> None:
        if self._pending.get(key) is pending:
            del self._pending[key]
        if pending.future.done():
            return
        if error is not None:
            pending.future.set_exception(error)
        else:
            pending.future.set_result(url)

    def _expiry(self, now: float, server_expires_at: Optional[float]) -> float:
        expires_at = now + self.ttl
        if server_expires_at is not None and server_expires_at < expires_at:
            return server_expires_at
        return expires_at
