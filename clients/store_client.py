"""
Hierarchical store client contract.

The store is a tree of JSON values addressed by slash-separated paths
("invoices/-NxQ3vB0a1b2c3d4e5f6"). A collection is a node whose children
are documents. Backends implement four hooks (_read, _apply, _query and
optionally _start_watching); everything callers see - timeouts, timestamp
stamping, id generation, tagged results and change delivery - lives here.

Failures are returned, not raised: every public coroutine returns a
StoreResult. Callers that prefer exceptions call .unwrap(). Programming
faults (non-JSON values, malformed paths) still raise immediately.
"""

import asyncio
import inspect
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable

from utils.push_id import PushIdGenerator
from utils.timezone import now_iso

logger = logging.getLogger(__name__)

# Characters the tree store does not allow inside a key
_FORBIDDEN_KEY_CHARS = re.compile(r"[.#$\[\]]")

DEFAULT_TIMEOUT_SECONDS = 10.0


class StoreError(Exception):
    """Base class for store failures. Always tagged with the failing path."""

    retryable = False

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        self.message = message
        super().__init__(f"{message} (path: {path})" if path is not None else message)


class TransientStoreError(StoreError):
    """Network-level failure. Safe to retry with backoff."""

    retryable = True


class StoreTimeoutError(TransientStoreError):
    """
    Operation exceeded its deadline.

    For writes the outcome is unknown: the write may or may not have applied.
    """


class StorePermissionError(StoreError):
    """Access denied by the store. Not retryable."""


@dataclass(frozen=True)
class StoreResult:
    """
    Tagged outcome of a store operation.

    success=True carries data (and exists for reads);
    success=False carries a StoreError in error.
    """

    success: bool
    path: str
    data: Any = None
    exists: bool = False
    error: StoreError | None = None

    @classmethod
    def ok(cls, path: str, data: Any = None, exists: bool = True) -> "StoreResult":
        return cls(success=True, path=path, data=data, exists=exists)

    @classmethod
    def failure(cls, path: str, error: StoreError) -> "StoreResult":
        return cls(success=False, path=path, error=error)

    def unwrap(self) -> Any:
        """Return data, or raise the carried StoreError."""
        if not self.success:
            raise self.error
        return self.data


@dataclass(frozen=True)
class Write:
    """
    One path in an atomic multi-path commit.

    value=None with delete=True removes the node. stamp=False writes the
    value exactly as given (used for append-only log entries).
    """

    path: str
    value: Any = None
    merge: bool = False
    delete: bool = False
    stamp: bool = True

    @classmethod
    def put(cls, path: str, value: dict, stamp: bool = True) -> "Write":
        return cls(path=path, value=value, stamp=stamp)

    @classmethod
    def patch(cls, path: str, value: dict) -> "Write":
        return cls(path=path, value=value, merge=True)

    @classmethod
    def remove(cls, path: str) -> "Write":
        return cls(path=path, delete=True, stamp=False)


@dataclass(eq=False)
class _Subscription:
    path: str
    on_change: Callable[[StoreResult], Any]
    active: bool = True
    pending: bool = False


def normalize_path(path: str, for_write: bool = False) -> str:
    """
    Canonical form of a path: no leading/trailing or doubled slashes.

    Raises ValueError on forbidden characters, or on the root path when
    writing.
    """
    segments = [s for s in path.strip().split("/") if s]
    for segment in segments:
        if _FORBIDDEN_KEY_CHARS.search(segment):
            raise ValueError(f"Invalid character in path segment '{segment}' of '{path}'")
    if for_write and not segments:
        raise ValueError("Cannot write to the root of the store")
    return "/".join(segments)


def child_path(parent: str, key: str) -> str:
    return f"{parent}/{key}" if parent else key


def paths_related(a: str, b: str) -> bool:
    """True if a change at one path is visible at the other (same, ancestor or descendant)."""
    if a == b or not a or not b:
        return True
    return a.startswith(b + "/") or b.startswith(a + "/")


class StoreClient(ABC):
    """
    Async client for a hierarchical key/value store.

    Usage:
        store = InMemoryStore()
        result = await store.create_with_generated_id("invoices", {"total": "10.00"})
        invoice_id = result.unwrap()["id"]

        result = await store.get(f"invoices/{invoice_id}")
        if result.success and result.exists:
            print(result.data)

        unsubscribe = store.subscribe("invoices", lambda r: print(r.data))
        ...
        unsubscribe()
    """

    supports_ordered_query = False

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        id_generator: PushIdGenerator | None = None,
    ):
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self.timeout_seconds = timeout_seconds
        self._ids = id_generator or PushIdGenerator()
        self._subscriptions: set[_Subscription] = set()
        self._deliveries: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _read(self, path: str) -> Any:
        """Return the JSON value at path, or None if nothing is stored there."""

    @abstractmethod
    async def _apply(self, writes: list[Write]) -> None:
        """
        Apply already-stamped writes atomically and announce the changes.

        Implementations call self._notify(paths) (directly or via their
        change feed) once the writes are visible to readers.
        """

    async def _query(
        self,
        path: str,
        order_by: str | None,
        equal_to: Any,
        start_at: Any,
        end_at: Any,
        limit: int | None,
    ) -> list[tuple[str, Any]]:
        raise NotImplementedError(f"{type(self).__name__} has no native ordered query")

    def _start_watching(self) -> None:
        """Hook for backends that need a change-feed listener running."""

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    async def get(self, path: str) -> StoreResult:
        """Read the full value at path. exists=False when nothing is stored."""
        path = normalize_path(path)

        async def op():
            value = await self._read(path)
            return StoreResult.ok(path, value, exists=value is not None)

        return await self._run("get", path, op())

    async def set(self, path: str, value: Any, merge: bool = False) -> StoreResult:
        """
        Write value at path.

        merge=False replaces the node and stamps createdAt and updatedAt.
        merge=True patches only the given keys (None removes a key) and
        stamps updatedAt.
        """
        path = normalize_path(path, for_write=True)
        if merge and not isinstance(value, dict):
            raise ValueError("merge writes need a dict of fields to patch")
        write = self._stamped(Write(path=path, value=value, merge=merge))

        async def op():
            await self._apply([write])
            return StoreResult.ok(path, write.value)

        return await self._run("set", path, op())

    async def update(self, path: str, fields: dict) -> StoreResult:
        """Patch fields at path. Shorthand for set(path, fields, merge=True)."""
        return await self.set(path, fields, merge=True)

    async def delete(self, path: str) -> StoreResult:
        """Remove the node at path and everything below it."""
        path = normalize_path(path, for_write=True)

        async def op():
            await self._apply([Write.remove(path)])
            return StoreResult.ok(path, None, exists=False)

        return await self._run("delete", path, op())

    async def create_with_generated_id(self, collection_path: str, value: dict) -> StoreResult:
        """
        Add a child with a fresh push id.

        The stored document carries its own id plus createdAt/updatedAt;
        result.data is that document.
        """
        collection_path = normalize_path(collection_path, for_write=True)
        key = self.generate_id()
        path = child_path(collection_path, key)
        write = self._stamped(Write.put(path, {**value, "id": key}))

        async def op():
            await self._apply([write])
            return StoreResult.ok(path, write.value)

        return await self._run("push", path, op())

    push = create_with_generated_id

    def generate_id(self) -> str:
        """Reserve a push id without writing anything."""
        return self._ids.generate()

    async def commit(self, writes: Iterable[Write]) -> StoreResult:
        """
        Apply several writes atomically: either all become visible or none.

        result.data maps each written path to the value stored there
        (None for deletions).
        """
        stamped = [
            self._stamped(replace(w, path=normalize_path(w.path, for_write=True)))
            for w in writes
        ]
        if not stamped:
            raise ValueError("commit needs at least one write")
        label = stamped[0].path if len(stamped) == 1 else ",".join(w.path for w in stamped)

        async def op():
            await self._apply(stamped)
            return StoreResult.ok(label, {w.path: None if w.delete else w.value for w in stamped})

        return await self._run("commit", label, op())

    async def query(
        self,
        collection_path: str,
        order_by: str | None = None,
        equal_to: Any = None,
        start_at: Any = None,
        end_at: Any = None,
        limit: int | None = None,
    ) -> StoreResult:
        """
        Ordered single-field query on a collection.

        Only available when supports_ordered_query is True. result.data is
        a list of (key, value) pairs in store order.
        """
        if not self.supports_ordered_query:
            raise NotImplementedError(f"{type(self).__name__} has no native ordered query")
        collection_path = normalize_path(collection_path)
        coro = self._query(collection_path, order_by, equal_to, start_at, end_at, limit)

        async def op():
            return StoreResult.ok(collection_path, await coro)

        return await self._run("query", collection_path, op())

    def subscribe(self, path: str, on_change: Callable[[StoreResult], Any]) -> Callable[[], None]:
        """
        Watch a node.

        on_change (plain function or coroutine function) receives a
        StoreResult with the full current value: once right away, then after
        every change at, above or below path. Must be called with an event
        loop running. Returns an unsubscribe function.
        """
        path = normalize_path(path)
        asyncio.get_running_loop()  # raises outside an event loop
        subscription = _Subscription(path=path, on_change=on_change)
        self._subscriptions.add(subscription)
        self._start_watching()
        self._schedule(subscription)

        def unsubscribe() -> None:
            subscription.active = False
            self._subscriptions.discard(subscription)

        return unsubscribe

    def subscribe_many(
        self, paths: Iterable[str], on_change: Callable[[StoreResult], Any]
    ) -> Callable[[], None]:
        """Watch several nodes with one callback; result.path tells them apart."""
        unsubscribers = [self.subscribe(p, on_change) for p in paths]

        def unsubscribe() -> None:
            for fn in unsubscribers:
                fn()

        return unsubscribe

    async def wait_for_deliveries(self) -> None:
        """Block until every scheduled change delivery has run."""
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.active = False
        self._subscriptions.clear()
        for task in list(self._deliveries):
            task.cancel()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self, operation: str, path: str, coro) -> StoreResult:
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"Store {operation} timed out after {self.timeout_seconds}s: {path}")
            return StoreResult.failure(
                path,
                StoreTimeoutError(f"{operation} timed out after {self.timeout_seconds}s", path),
            )
        except StoreError as e:
            logger.warning(f"Store {operation} failed: {e}")
            if e.path is None:
                e.path = path
            return StoreResult.failure(path, e)

    def _stamped(self, write: Write) -> Write:
        if write.delete:
            return write
        if write.value is None:
            return replace(write, value=None, delete=True, merge=False)
        if not write.stamp or not isinstance(write.value, dict):
            return write
        now = now_iso()
        value = {**write.value, "updatedAt": now}
        if not write.merge:
            value["createdAt"] = now
        return replace(write, value=value)

    def _notify(self, changed_paths: Iterable[str]) -> None:
        """Schedule delivery to every subscription a change is visible to."""
        changed = list(changed_paths)
        for subscription in list(self._subscriptions):
            if any(paths_related(subscription.path, p) for p in changed):
                self._schedule(subscription)

    def _schedule(self, subscription: _Subscription) -> None:
        if subscription.pending or not subscription.active:
            return
        subscription.pending = True
        task = asyncio.get_running_loop().create_task(self._deliver(subscription))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    async def _deliver(self, subscription: _Subscription) -> None:
        subscription.pending = False
        result = await self.get(subscription.path)
        if not subscription.active:
            return
        try:
            outcome = subscription.on_change(result)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception(f"Subscriber for {subscription.path} failed")
