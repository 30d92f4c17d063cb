"""Process-wide cache of long-lived third-party HTTP clients."""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

import httpx
import structlog

logger = structlog.get_logger(__name__)

ClientFactory = Callable[[], httpx.AsyncClient]


class ClientCache:
    """
    Keyed cache of ``httpx.AsyncClient`` instances.

    Lookups take a lock for get-or-create. When the lock is contended for
    longer than ``lock_timeout`` seconds the caller gets a fresh uncached
    client instead of waiting. ``client()`` closes such a client when the
    block exits; callers of ``get()`` must close it themselves
    (``is_cached`` tells which case applies).
    """

    def __init__(self, lock_timeout: float = 0.5):
        self._clients: dict[str, httpx.AsyncClient] = {}
        self._lock = asyncio.Lock()
        self._lock_timeout = lock_timeout

    async def get(self, key: str, factory: ClientFactory) -> httpx.AsyncClient:
        """
        Return the cached client for ``key``, creating it when missing.

        Args:
            key: Cache key (usually the provider name plus credentials id)
            factory: Builds a new client on cache miss

        Returns:
            Cached client, or an uncached one under lock contention
        """
        client = self._clients.get(key)
        if client is not None and not client.is_closed:
            return client

        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self._lock_timeout)
        except asyncio.TimeoutError:
            logger.warning("client_cache_contended", key=key)
            return factory()

        try:
            client = self._clients.get(key)
            if client is None or client.is_closed:
                client = factory()
                self._clients[key] = client
                logger.debug("client_cache_created", key=key)
            return client
        finally:
            self._lock.release()

    @asynccontextmanager
    async def client(self, key: str, factory: ClientFactory) -> AsyncIterator[httpx.AsyncClient]:
        """Borrow the client for ``key``; an uncached fallback client is closed on exit."""
        client = await self.get(key, factory)
        try:
            yield client
        finally:
            if not self.is_cached(key, client):
                await client.aclose()

    def is_cached(self, key: str, client: httpx.AsyncClient) -> bool:
        return self._clients.get(key) is client

    async def close(self) -> None:
        """Close every cached client."""
        async with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            await client.aclose()
        logger.info("client_cache_closed", count=len(clients))


# Global client cache instance
client_cache = ClientCache()
