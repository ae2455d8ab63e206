"""Document store used by the ledger, class registry and voucher services.

Values are JSON documents addressed by hierarchical paths such as
``creditVouchers/AB12CD34`` or ``users/<uid>/profile``. There are no
cross-path transactions; per-path atomicity is provided by ``create``
(set-if-absent) and ``transact`` (optimistic compare-and-swap).

Two backends share the ``DocumentStore`` interface:

- ``RedisDocumentStore`` keeps each document as a JSON string under
  ``<STORE_KEY_PREFIX><path>`` and uses WATCH/MULTI for ``transact``.
- ``InMemoryDocumentStore`` keeps documents in a dict with a version counter
  per path. It is used for local development and in the test suite.
"""
import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from educore.core.config import settings
from educore.core.errors import ConcurrentModification, StoreError
from educore.core.logging import get_logger

logger = get_logger(__name__)

Mutator = Callable[[Optional[Any]], Any]


class AbortTransaction(Exception):
    """Raised by a mutator to end ``transact`` without writing.

    ``transact`` returns ``result`` instead of a new value.
    """

    def __init__(self, result: Any = None):
        super().__init__("transaction aborted")
        self.result = result


def normalize_path(path: str) -> str:
    """Strip surrounding slashes and reject empty segments."""
    cleaned = path.strip().strip("/")
    if not cleaned or any(not segment for segment in cleaned.split("/")):
        raise ValueError(f"Invalid document path: {path!r}")
    return cleaned


def _encode(value: Any) -> str:
    return json.dumps(value, default=str)


def _decode(raw: Optional[str]) -> Optional[Any]:
    if raw is None:
        return None
    return json.loads(raw)


def merge_fields(current: Optional[Any], fields: Dict[str, Any]) -> Dict[str, Any]:
    """Shallow-merge ``fields`` into a document; ``None`` deletes a field."""
    merged = dict(current) if isinstance(current, dict) else {}
    for key, value in fields.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


class DocumentStore(ABC):
    """Async key-value tree with get/set/update/remove by path."""

    def __init__(self, max_retries: Optional[int] = None):
        self.max_retries = max_retries or settings.cas_max_retries

    @abstractmethod
    async def get(self, path: str) -> Optional[Any]:
        """Return the value at ``path`` or None when absent."""

    @abstractmethod
    async def set(self, path: str, value: Any) -> None:
        """Overwrite the value at ``path``."""

    @abstractmethod
    async def remove(self, path: str) -> None:
        """Delete the value at ``path``. Removing an absent path is a no-op."""

    @abstractmethod
    async def exists(self, path: str) -> bool:
        ...

    @abstractmethod
    async def create(self, path: str, value: Any) -> bool:
        """Write ``value`` only if nothing is stored at ``path`` yet.

        Returns:
            True if the value was written, False if the path was taken
        """

    @abstractmethod
    async def children(self, path: str) -> Dict[str, Any]:
        """Return the documents stored directly below ``path`` keyed by name."""

    @abstractmethod
    async def transact(
        self,
        path: str,
        mutator: Mutator,
        max_retries: Optional[int] = None,
    ) -> Any:
        """Apply ``mutator`` to the current value and write the result atomically.

        The write only lands if the document did not change since it was
        read; otherwise the read and ``mutator`` are repeated. ``mutator``
        receives a private copy (None when absent). Raising
        ``AbortTransaction`` ends the call without writing; any other
        exception propagates, also without writing.

        Returns:
            The value written, or ``AbortTransaction.result``

        Raises:
            ConcurrentModification: If every attempt lost a race
        """

    async def update(self, path: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Merge ``fields`` into the document at ``path``."""
        return await self.transact(path, lambda current: merge_fields(current, fields))

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class InMemoryDocumentStore(DocumentStore):
    """Process-local store with per-path versions.

    Every operation yields to the event loop once before touching state, so
    concurrent tasks interleave the way they would against a network store.

    Example:
        >>> store = InMemoryDocumentStore()
        >>> await store.set("creditVouchers/AB12CD34", {"credits": 10})
        >>> await store.get("creditVouchers/AB12CD34")
        {'credits': 10}
    """

    def __init__(self, max_retries: Optional[int] = None):
        super().__init__(max_retries)
        self._data: Dict[str, str] = {}
        self._versions: Dict[str, int] = {}

    def _write(self, path: str, value: Any) -> None:
        self._data[path] = _encode(value)
        self._versions[path] = self._versions.get(path, 0) + 1

    async def get(self, path: str) -> Optional[Any]:
        path = normalize_path(path)
        await asyncio.sleep(0)
        return _decode(self._data.get(path))

    async def set(self, path: str, value: Any) -> None:
        path = normalize_path(path)
        await asyncio.sleep(0)
        self._write(path, value)

    async def remove(self, path: str) -> None:
        path = normalize_path(path)
        await asyncio.sleep(0)
        if self._data.pop(path, None) is not None:
            self._versions[path] = self._versions.get(path, 0) + 1

    async def exists(self, path: str) -> bool:
        path = normalize_path(path)
        await asyncio.sleep(0)
        return path in self._data

    async def create(self, path: str, value: Any) -> bool:
        path = normalize_path(path)
        await asyncio.sleep(0)
        if path in self._data:
            return False
        self._write(path, value)
        return True

    async def children(self, path: str) -> Dict[str, Any]:
        prefix = normalize_path(path) + "/"
        await asyncio.sleep(0)
        result = {}
        for key, raw in self._data.items():
            if key.startswith(prefix) and "/" not in key[len(prefix):]:
                result[key[len(prefix):]] = _decode(raw)
        return result

    async def transact(
        self,
        path: str,
        mutator: Mutator,
        max_retries: Optional[int] = None,
    ) -> Any:
        path = normalize_path(path)
        attempts = max_retries or self.max_retries

        for attempt in range(1, attempts + 1):
            version = self._versions.get(path, 0)
            current = _decode(self._data.get(path))
            try:
                new_value = mutator(current)
            except AbortTransaction as abort:
                return abort.result
            # Round trip to the "server" before the conditional write.
            await asyncio.sleep(0)
            if self._versions.get(path, 0) == version:
                self._write(path, new_value)
                return _decode(self._data[path])
            logger.debug(f"Write conflict on {path} (attempt {attempt}/{attempts})")

        raise ConcurrentModification(path, attempts)


# Redis connection pool (lazy initialization)
_redis_pool: Optional[redis.ConnectionPool] = None
_redis_client: Optional[redis.Redis] = None


def get_redis_client(
    host: Optional[str] = None,
    port: Optional[int] = None,
    db: Optional[int] = None,
    password: Optional[str] = None,
) -> redis.Redis:
    """Get or create the shared asyncio Redis client.

    Uses settings from environment variables if not explicitly provided.
    The connection itself is established on first use; call
    ``RedisDocumentStore.ping`` to check reachability.
    """
    global _redis_pool, _redis_client

    if _redis_client is None:
        host = host or settings.redis_host
        port = port or settings.redis_port
        db = db if db is not None else settings.redis_db
        password = password or settings.redis_password

        logger.info(f"Initializing Redis connection pool: {host}:{port}/{db}")
        _redis_pool = redis.ConnectionPool(
            host=host,
            port=port,
            db=db,
            password=password,
            decode_responses=True,
            max_connections=50,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        _redis_client = redis.Redis(connection_pool=_redis_pool)

    return _redis_client


class RedisDocumentStore(DocumentStore):
    """Redis-backed document store. One JSON string per document path."""

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        key_prefix: Optional[str] = None,
        max_retries: Optional[int] = None,
    ):
        super().__init__(max_retries)
        self.redis = redis_client or get_redis_client()
        self.key_prefix = settings.store_key_prefix if key_prefix is None else key_prefix

        logger.info(f"RedisDocumentStore initialized with key prefix {self.key_prefix!r}")

    def _make_key(self, path: str) -> str:
        """Create full Redis key with prefix."""
        return f"{self.key_prefix}{normalize_path(path)}"

    async def get(self, path: str) -> Optional[Any]:
        key = self._make_key(path)
        try:
            return _decode(await self.redis.get(key))
        except RedisError as e:
            logger.error(f"Error reading {key}: {e}", exc_info=True)
            raise StoreError(f"Could not read {path}") from e

    async def set(self, path: str, value: Any) -> None:
        key = self._make_key(path)
        try:
            await self.redis.set(key, _encode(value))
        except RedisError as e:
            logger.error(f"Error writing {key}: {e}", exc_info=True)
            raise StoreError(f"Could not write {path}") from e

    async def remove(self, path: str) -> None:
        key = self._make_key(path)
        try:
            await self.redis.delete(key)
        except RedisError as e:
            logger.error(f"Error deleting {key}: {e}", exc_info=True)
            raise StoreError(f"Could not delete {path}") from e

    async def exists(self, path: str) -> bool:
        key = self._make_key(path)
        try:
            return bool(await self.redis.exists(key))
        except RedisError as e:
            logger.error(f"Error checking {key}: {e}", exc_info=True)
            raise StoreError(f"Could not check {path}") from e

    async def create(self, path: str, value: Any) -> bool:
        key = self._make_key(path)
        try:
            return bool(await self.redis.set(key, _encode(value), nx=True))
        except RedisError as e:
            logger.error(f"Error creating {key}: {e}", exc_info=True)
            raise StoreError(f"Could not create {path}") from e

    async def children(self, path: str) -> Dict[str, Any]:
        prefix = self._make_key(path) + "/"
        try:
            keys = [
                key async for key in self.redis.scan_iter(match=f"{prefix}*", count=500)
                if "/" not in key[len(prefix):]
            ]
            if not keys:
                return {}
            values = await self.redis.mget(keys)
        except RedisError as e:
            logger.error(f"Error listing {prefix}*: {e}", exc_info=True)
            raise StoreError(f"Could not list {path}") from e

        return {
            key[len(prefix):]: _decode(raw)
            for key, raw in zip(keys, values)
            if raw is not None
        }

    async def transact(
        self,
        path: str,
        mutator: Mutator,
        max_retries: Optional[int] = None,
    ) -> Any:
        key = self._make_key(path)
        attempts = max_retries or self.max_retries

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                for attempt in range(1, attempts + 1):
                    try:
                        await pipe.watch(key)
                        current = _decode(await pipe.get(key))
                        try:
                            new_value = mutator(current)
                        except AbortTransaction as abort:
                            return abort.result
                        pipe.multi()
                        pipe.set(key, _encode(new_value))
                        await pipe.execute()
                        return new_value
                    except WatchError:
                        logger.debug(f"Write conflict on {key} (attempt {attempt}/{attempts})")
                        continue
        except RedisError as e:
            logger.error(f"Error in transaction on {key}: {e}", exc_info=True)
            raise StoreError(f"Could not update {path}") from e

        raise ConcurrentModification(path, attempts)

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        await self.redis.aclose()


_store: Optional[DocumentStore] = None


def get_document_store() -> DocumentStore:
    """Return the process-wide store for the configured backend."""
    global _store

    if _store is None:
        if settings.store_backend == "redis":
            _store = RedisDocumentStore()
        else:
            logger.warning("Using in-memory document store; data is lost on restart")
            _store = InMemoryDocumentStore()

    return _store
