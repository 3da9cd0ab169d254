"""TTL cache of resolved direct media URLs."""
import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional
from studio.core.logging import logger


@dataclass(frozen=True)
class ResolvedSource:
    """A direct, time-limited media URL for a canonical reference."""
    direct_url: str
    expires_at: float  # clock() timestamp
    
    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class SourceCache:
    """
    Maps canonical references to resolved sources.
    
    Concurrent misses for the same key share one resolution.
    """
    
    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        """
        Initialize the cache.
        
        Args:
            ttl_seconds: Lifetime of each entry
            clock: Monotonic time source
        """
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, ResolvedSource] = {}
        self._in_flight: Dict[str, asyncio.Future] = {}
    
    def get(self, key: str) -> Optional[ResolvedSource]:
        """Return the entry for key, or None if missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            self._entries.pop(key, None)
            return None
        return entry
    
    def put(self, key: str, direct_url: str) -> ResolvedSource:
        entry = ResolvedSource(direct_url=direct_url, expires_at=self._clock() + self.ttl_seconds)
        self._entries[key] = entry
        return entry
    
    async def get_or_resolve(
        self,
        key: str,
        resolve: Callable[[str], Awaitable[str]]
    ) -> ResolvedSource:
        """
        Look up key, resolving it on a miss.
        
        Args:
            key: Canonical reference
            resolve: Coroutine producing the direct URL; must be side-effect free
            
        Returns:
            Cached or freshly resolved source
        """
        entry = self.get(key)
        if entry is not None:
            logger.debug(f"Resolver cache hit: {key}")
            return entry
        
        in_flight = self._in_flight.get(key)
        if in_flight is not None:
            return await asyncio.shield(in_flight)
        
        logger.info(f"Resolver cache miss: {key}")
        future = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            direct_url = await resolve(key)
            entry = self.put(key, direct_url)
            future.set_result(entry)
            return entry
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an unawaited future does not log a warning
            future.exception()
            raise
        finally:
            self._in_flight.pop(key, None)
    
    def clear(self) -> None:
        self._entries.clear()
    
    def __len__(self) -> int:
        return len(self._entries)
