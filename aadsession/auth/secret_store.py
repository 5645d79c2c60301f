"""Pluggable secret storage backends.

Provides the SecretStore ABC (a get/set/delete-by-key string store) and
concrete implementations for in-memory, OS keyring, and Redis-backed
persistence. The session store keeps its whole durable state as one JSON
value under a single key.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading

from abc import ABC, abstractmethod
from typing import Any


logger = logging.getLogger("aadsession.auth")


class SecretStore(ABC):
    """Abstract base class for secret storage.

    All methods are async to support both local and network-backed stores.
    """

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Read the value stored under ``key``.

        Parameters
        ----------
        key : str
            Storage key.

        Returns
        -------
        str or None
            The stored value, or None if the key is absent.
        """

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value.

        Parameters
        ----------
        key : str
            Storage key.
        value : str
            The value to persist.
        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete ``key``. Deleting a missing key is not an error.

        Parameters
        ----------
        key : str
            Storage key.
        """


class MemorySecretStore(SecretStore):
    """In-memory secret store for development, tests and single-process use.

    One instance shared by several session stores behaves like a secret
    store synced between processes.
    """

    def __init__(self) -> None:
        """Initialize the memory secret store."""
        self._values: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> str | None:
        """Read a value from memory."""
        async with self._lock:
            return self._values.get(key)

    async def set(self, key: str, value: str) -> None:
        """Store a value in memory."""
        async with self._lock:
            self._values[key] = value

    async def delete(self, key: str) -> None:
        """Delete a value from memory."""
        async with self._lock:
            self._values.pop(key, None)


class KeyringSecretStore(SecretStore):
    """OS keyring-backed secret store for persistent desktop credentials.

    Parameters
    ----------
    service_name : str
        Service name for keyring storage (default "aadsession").
    """

    def __init__(self, service_name: str = "aadsession") -> None:
        """Initialize the keyring secret store."""
        import keyring

        self._service_name = service_name
        self._keyring = keyring

    async def get(self, key: str) -> str | None:
        """Read a value from the OS keyring."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._keyring.get_password, self._service_name, key)

    async def set(self, key: str, value: str) -> None:
        """Store a value in the OS keyring."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._keyring.set_password, self._service_name, key, value)

    async def delete(self, key: str) -> None:
        """Delete a value from the OS keyring."""
        from keyring.errors import PasswordDeleteError

        loop = asyncio.get_running_loop()
        with contextlib.suppress(PasswordDeleteError):
            await loop.run_in_executor(None, self._keyring.delete_password, self._service_name, key)


class RedisSecretStore(SecretStore):
    """Redis-backed secret store for multi-worker deployments.

    Parameters
    ----------
    redis_url : str
        Redis connection URL.
    prefix : str
        Key prefix for namespacing (default "aadsession").
    pool_size : int
        Connection pool size (default 10).
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        prefix: str = "aadsession",
        pool_size: int = 10,
    ) -> None:
        """Initialize the Redis secret store."""
        from redis.asyncio import Redis as RedisClient

        self._prefix = prefix
        self._redis: Any = RedisClient.from_url(
            redis_url,
            max_connections=pool_size,
            decode_responses=True,
        )

    def _key(self, key: str) -> str:
        """Build a Redis key with prefix."""
        return f"{self._prefix}:secrets:{key}"

    async def get(self, key: str) -> str | None:
        """Read a value from Redis."""
        return await self._redis.get(self._key(key))

    async def set(self, key: str, value: str) -> None:
        """Store a value in Redis."""
        await self._redis.set(self._key(key), value)

    async def delete(self, key: str) -> None:
        """Delete a value from Redis."""
        await self._redis.delete(self._key(key))


_secret_store_instance: SecretStore | None = None
_secret_store_lock = threading.Lock()


def get_secret_store(backend: str = "memory", **kwargs: Any) -> SecretStore:
    """Factory function for secret stores.

    Returns a singleton instance. Call ``reset_secret_store()`` to clear
    the cached instance (e.g. in tests).

    Parameters
    ----------
    backend : str
        Storage backend: "memory", "keyring", or "redis".
    **kwargs : Any
        Additional keyword arguments passed to the store constructor.

    Returns
    -------
    SecretStore
        A configured secret store instance.
    """
    global _secret_store_instance  # noqa: PLW0603

    with _secret_store_lock:
        if _secret_store_instance is not None:
            return _secret_store_instance

        if backend == "memory":
            _secret_store_instance = MemorySecretStore()
        elif backend == "keyring":
            _secret_store_instance = KeyringSecretStore(
                service_name=kwargs.get("service_name", "aadsession"),
            )
        elif backend == "redis":
            _secret_store_instance = RedisSecretStore(
                redis_url=kwargs.get("redis_url", "redis://localhost:6379/0"),
                prefix=kwargs.get("prefix", "aadsession"),
                pool_size=kwargs.get("pool_size", 10),
            )
        else:
            msg = f"Unknown secret store backend: {backend}"
            raise ValueError(msg)

        logger.debug("Using %s secret store", backend)
        return _secret_store_instance


def reset_secret_store() -> None:
    """Reset the singleton secret store instance.

    Useful for tests that need a fresh secret store between runs.
    """
    global _secret_store_instance  # noqa: PLW0603

    with _secret_store_lock:
        _secret_store_instance = None
