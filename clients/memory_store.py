"""
In-process tree store.

Backs tests and local development with the same contract as the Valkey
backend. Values are round-tripped through JSON on the way in and out, so
callers can never mutate stored state by accident and only JSON-compatible
data is accepted, exactly as with a networked store.
"""

import asyncio
import json
import logging
from typing import Any, Iterable

from clients.store_client import StoreClient, StorePermissionError, Write, DEFAULT_TIMEOUT_SECONDS
from utils.ordering import child_sort_key, in_range, values_equal
from utils.push_id import PushIdGenerator

logger = logging.getLogger(__name__)


def _copy(value: Any) -> Any:
    return json.loads(json.dumps(value))


class InMemoryStore(StoreClient):
    """
    Tree store held in a nested dict.

    Usage:
        store = InMemoryStore()
        await store.set("clients/c1", {"name": "Acme"})

        # Simulate a slow network (every operation sleeps first)
        slow = InMemoryStore(latency_seconds=0.05)

        # Simulate security rules rejecting a subtree
        locked = InMemoryStore(denied_paths=["organizations/other"])
    """

    supports_ordered_query = True

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        latency_seconds: float = 0.0,
        denied_paths: Iterable[str] = (),
        id_generator: PushIdGenerator | None = None,
    ):
        super().__init__(timeout_seconds=timeout_seconds, id_generator=id_generator)
        self.latency_seconds = latency_seconds
        self.denied_paths = {p.strip("/") for p in denied_paths}
        self._root: dict[str, Any] = {}

    def snapshot(self) -> dict[str, Any]:
        """Copy of the whole tree, for debugging and assertions."""
        return _copy(self._root)

    async def _read(self, path: str) -> Any:
        await self._simulate_network(path)
        node: Any = self._root
        for segment in path.split("/") if path else []:
            if not isinstance(node, dict) or segment not in node:
                return None
            node = node[segment]
        return _copy(node)

    async def _apply(self, writes: list[Write]) -> None:
        for write in writes:
            self._check_access(write.path)
        await self._simulate_network(writes[0].path)

        # Serialize everything before touching the tree so a bad value
        # cannot leave half of a commit applied.
        prepared = [(w, None if w.delete else _copy(w.value)) for w in writes]
        for write, value in prepared:
            if write.delete:
                self._remove(write.path)
            elif write.merge:
                self._merge(write.path, value)
            else:
                self._put(write.path, value)

        self._notify(w.path for w in writes)

    async def _query(
        self,
        path: str,
        order_by: str | None,
        equal_to: Any,
        start_at: Any,
        end_at: Any,
        limit: int | None,
    ) -> list[tuple[str, Any]]:
        node = await self._read(path)
        if not isinstance(node, dict):
            return []

        def ordered_value(key: str, child: Any) -> Any:
            if order_by is None:
                return key
            return child.get(order_by) if isinstance(child, dict) else None

        matches = []
        for key, child in node.items():
            value = ordered_value(key, child)
            if equal_to is not None and not values_equal(value, equal_to):
                continue
            if not in_range(value, start_at, end_at):
                continue
            matches.append((key, child))

        matches.sort(key=lambda item: child_sort_key(item[0], item[1], order_by))
        if limit is not None:
            matches = matches[:limit]
        return matches

    # ------------------------------------------------------------------
    # Tree manipulation
    # ------------------------------------------------------------------

    def _parent_for_write(self, path: str) -> tuple[dict, str]:
        segments = path.split("/")
        node = self._root
        for segment in segments[:-1]:
            child = node.get(segment)
            if not isinstance(child, dict):
                child = {}
                node[segment] = child
            node = child
        return node, segments[-1]

    def _put(self, path: str, value: Any) -> None:
        if value is None or value == {}:
            self._remove(path)
            return
        parent, key = self._parent_for_write(path)
        parent[key] = value

    def _merge(self, path: str, fields: dict) -> None:
        parent, key = self._parent_for_write(path)
        current = parent.get(key)
        if not isinstance(current, dict):
            current = {}
        for name, value in fields.items():
            if value is None:
                current.pop(name, None)
            else:
                current[name] = value
        if current:
            parent[key] = current
        else:
            self._remove(path)

    def _remove(self, path: str) -> None:
        segments = path.split("/")
        trail = [self._root]
        node: Any = self._root
        for segment in segments[:-1]:
            node = node.get(segment) if isinstance(node, dict) else None
            if not isinstance(node, dict):
                return
            trail.append(node)
        trail[-1].pop(segments[-1], None)

        # Empty nodes do not exist in a tree store; prune them upwards.
        for depth in range(len(segments) - 1, 0, -1):
            if trail[depth]:
                break
            trail[depth - 1].pop(segments[depth - 1], None)

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    async def _simulate_network(self, path: str) -> None:
        self._check_access(path)
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)

    def _check_access(self, path: str) -> None:
        for denied in self.denied_paths:
            if path == denied or path.startswith(denied + "/"):
                raise StorePermissionError("Permission denied", path)
