"""
Valkey (Redis-compatible) backend for the tree store.

Simple layout on top of redis-py's asyncio client. Connection URL from Vault.
Fail-fast: connect() pings before returning, and connection problems surface
as TransientStoreError rather than fallback values.

Layout:
    {namespace}:{collection path}   hash, one field per child key, JSON value
    {namespace}:changes             pub/sub channel, JSON list of changed paths

Paths address documents (collection/key) or whole collections. A document
is stored as one JSON value, so reading a path below a document returns the
matching part of that JSON; writing below a document is not supported.
"""

import asyncio
import json
import logging
from contextlib import contextmanager
from typing import Any

import redis.asyncio as redis
from redis.exceptions import (
    AuthenticationError,
    ConnectionError as RedisConnectionError,
    NoPermissionError,
    TimeoutError as RedisTimeoutError,
    WatchError,
)

from clients.store_client import (
    DEFAULT_TIMEOUT_SECONDS,
    StoreClient,
    StorePermissionError,
    TransientStoreError,
    Write,
)
from utils.push_id import PushIdGenerator

logger = logging.getLogger(__name__)

# Optimistic transaction attempts before giving up on a contended commit
_MAX_COMMIT_ATTEMPTS = 5


def _split(path: str) -> tuple[str, str]:
    parent, _, key = path.rpartition("/")
    return parent, key


@contextmanager
def _translate_errors(path: str):
    """Map redis-py exceptions onto store error kinds."""
    try:
        yield
    except (AuthenticationError, NoPermissionError) as e:
        raise StorePermissionError(f"Valkey denied access: {e}", path) from e
    except (RedisConnectionError, RedisTimeoutError) as e:
        raise TransientStoreError(f"Valkey unreachable: {e}", path) from e


class ValkeyStore(StoreClient):
    """
    Tree store backed by Valkey.

    Usage:
        store = await ValkeyStore.connect("redis://localhost:6379/0")
        await store.set("clients/c1", {"name": "Acme"})
        await store.close()
    """

    def __init__(
        self,
        client: redis.Redis,
        namespace: str = "invoicereview",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        id_generator: PushIdGenerator | None = None,
    ):
        super().__init__(timeout_seconds=timeout_seconds, id_generator=id_generator)
        self._client = client
        self.namespace = namespace
        self._channel = f"{namespace}:changes"
        self._listener: asyncio.Task | None = None
        self._pubsub = None

    @classmethod
    async def connect(
        cls,
        url: str,
        namespace: str = "invoicereview",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> "ValkeyStore":
        """
        Open a connection and verify it (fail-fast).

        Args:
            url: Redis-compatible connection URL (e.g., redis://localhost:6379/0)
            namespace: Key prefix separating this application's data
            timeout_seconds: Deadline for every store operation

        Raises:
            TransientStoreError: If Valkey is unreachable
            StorePermissionError: If credentials are rejected
        """
        client = redis.from_url(url, decode_responses=True)
        store = cls(client, namespace=namespace, timeout_seconds=timeout_seconds)
        await store.ping()
        logger.info("ValkeyStore connected")
        return store

    async def ping(self) -> bool:
        """
        Health check.

        Returns True if Valkey responds.
        Raises TransientStoreError if unreachable.
        """
        with _translate_errors(""):
            await self._client.ping()
        return True

    def _key(self, collection_path: str) -> str:
        return f"{self.namespace}:{collection_path}"

    async def _read(self, path: str) -> Any:
        with _translate_errors(path):
            children = await self._client.hgetall(self._key(path))
            if children:
                return {key: json.loads(raw) for key, raw in children.items()}

            # Walk up until a stored document is found, then descend into it.
            segments = path.split("/") if path else []
            for split in range(len(segments), 0, -1):
                parent = "/".join(segments[: split - 1])
                raw = await self._client.hget(self._key(parent), segments[split - 1])
                if raw is None:
                    continue
                node = json.loads(raw)
                for segment in segments[split:]:
                    if not isinstance(node, dict) or segment not in node:
                        return None
                    node = node[segment]
                return node
            return None

    async def _apply(self, writes: list[Write]) -> None:
        label = writes[0].path
        merge_targets = [w for w in writes if w.merge]

        with _translate_errors(label):
            for attempt in range(1, _MAX_COMMIT_ATTEMPTS + 1):
                async with self._client.pipeline(transaction=True) as pipe:
                    try:
                        if merge_targets:
                            await pipe.watch(*{self._key(_split(w.path)[0]) for w in merge_targets})
                        current = {}
                        for write in merge_targets:
                            parent, key = _split(write.path)
                            raw = await pipe.hget(self._key(parent), key)
                            current[write.path] = json.loads(raw) if raw else None

                        pipe.multi()
                        for write in writes:
                            self._queue_write(pipe, write, current.get(write.path))
                        await pipe.execute()
                        break
                    except WatchError:
                        logger.info(f"Commit on {label} contended (attempt {attempt}), retrying")
            else:
                raise TransientStoreError("Commit kept conflicting with concurrent writers", label)

            await self._client.publish(self._channel, json.dumps([w.path for w in writes]))

    def _queue_write(self, pipe, write: Write, current: Any) -> None:
        parent, key = _split(write.path)
        if write.delete:
            pipe.hdel(self._key(parent), key)
            pipe.delete(self._key(write.path))
            return

        value = write.value
        if write.merge:
            merged = dict(current) if isinstance(current, dict) else {}
            for name, field_value in value.items():
                if field_value is None:
                    merged.pop(name, None)
                else:
                    merged[name] = field_value
            value = merged

        if value in (None, {}):
            pipe.hdel(self._key(parent), key)
        else:
            pipe.hset(self._key(parent), key, json.dumps(value))

    # ------------------------------------------------------------------
    # Change feed
    # ------------------------------------------------------------------

    def _start_watching(self) -> None:
        if self._listener is None or self._listener.done():
            self._listener = asyncio.get_running_loop().create_task(self._listen())

    async def _listen(self) -> None:
        self._pubsub = self._client.pubsub()
        try:
            await self._pubsub.subscribe(self._channel)
            async for message in self._pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    paths = json.loads(message["data"])
                except (TypeError, ValueError):
                    logger.warning(f"Ignoring malformed change notice: {message.get('data')!r}")
                    continue
                self._notify(paths)
        except (RedisConnectionError, RedisTimeoutError):
            logger.exception("Valkey change feed lost; subscribers will stop receiving updates")

    async def close(self) -> None:
        """Stop the change feed and close the connection."""
        await super().close()
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
        if self._pubsub is not None:
            await self._pubsub.aclose()
        await self._client.aclose()
        logger.info("ValkeyStore closed")
