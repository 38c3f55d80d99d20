"""
Collection query engine.

The tree store has no secondary indexes. One field can be ordered and
filtered by the store (equality or an inclusive range); everything else
(membership filters, multi-field filters, substring search, descending
order, pagination) happens here over the materialized list.

Pagination is a slice over one fetched snapshot, not a cursor: fetch again
after any mutation to see consistent pages.
"""

import inspect
import logging
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field

from clients.store_client import StoreClient, StoreError, StoreResult
from utils.ordering import child_sort_key, in_range, values_equal

logger = logging.getLogger(__name__)


class QueryOptions(BaseModel):
    """
    How to read a collection.

    order_by/equal_to/start_at/end_at/limit go to the store when it
    supports ordered queries. filters maps a field to a required value, or
    to a list of accepted values. search is matched case-insensitively as a
    substring of any search_fields value.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    order_by: str | None = None
    equal_to: Any = None
    start_at: Any = None
    end_at: Any = None
    limit: int | None = Field(None, ge=1)
    sort_desc: bool = False
    filters: dict[str, Any] = Field(default_factory=dict)
    search: str | None = None
    search_fields: tuple[str, ...] = ()
    page: int | None = Field(None, ge=0)
    page_size: int | None = Field(None, ge=1)

    @property
    def needs_client_filtering(self) -> bool:
        return bool(self.filters) or bool(self.search and self.search.strip())


class Page(BaseModel):
    """One page of a fetched snapshot."""

    items: list[dict[str, Any]]
    total: int
    page: int
    page_size: int
    has_more: bool


def order_children(
    node: Any,
    order_by: str | None = None,
    equal_to: Any = None,
    start_at: Any = None,
    end_at: Any = None,
) -> list[tuple[str, Any]]:
    """Order and range-filter the children of a node the way the store does."""
    if not isinstance(node, dict):
        return []
    matches = []
    for key, child in node.items():
        if order_by is None:
            value = key
        else:
            value = child.get(order_by) if isinstance(child, dict) else None
        if equal_to is not None and not values_equal(value, equal_to):
            continue
        if not in_range(value, start_at, end_at):
            continue
        matches.append((key, child))
    matches.sort(key=lambda item: child_sort_key(item[0], item[1], order_by))
    return matches


def _annotate(pairs: list[tuple[str, Any]]) -> list[dict[str, Any]]:
    return [{**child, "id": key} for key, child in pairs if isinstance(child, dict)]


def _matches_filters(document: dict[str, Any], filters: dict[str, Any]) -> bool:
    for field, expected in filters.items():
        actual = document.get(field)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if not any(values_equal(actual, option) for option in expected):
                return False
        elif not values_equal(actual, expected):
            return False
    return True


def _matches_search(document: dict[str, Any], term: str, fields: tuple[str, ...]) -> bool:
    needle = term.strip().lower()
    candidates = fields or tuple(k for k, v in document.items() if isinstance(v, str))
    for field in candidates:
        value = document.get(field)
        if value is not None and needle in str(value).lower():
            return True
    return False


class CollectionQuery:
    """
    Reads collections with filtering, ordering and paging.

    Usage:
        query = CollectionQuery(store)
        active = await query.fetch(
            "clients",
            QueryOptions(order_by="userId", equal_to="u1", filters={"isActive": True}),
        )
    """

    def __init__(self, store: StoreClient, default_page_size: int = 20):
        self.store = store
        self.default_page_size = default_page_size

    async def fetch(self, collection_path: str, options: QueryOptions | None = None) -> list[dict[str, Any]]:
        """
        Matching documents, each annotated with its key as "id".

        Raises:
            StoreError: The read failed (carries the failing path)
        """
        options = options or QueryOptions()
        documents = await self._materialize(collection_path, options)
        return self._paged(self._refine(documents, options), options)

    async def paginate(self, collection_path: str, options: QueryOptions | None = None) -> Page:
        """Like fetch, but also reports the total and whether more pages follow."""
        options = options or QueryOptions()
        documents = self._refine(await self._materialize(collection_path, options), options)
        page = options.page or 0
        page_size = options.page_size or self.default_page_size
        start = page * page_size
        return Page(
            items=documents[start:start + page_size],
            total=len(documents),
            page=page,
            page_size=page_size,
            has_more=start + page_size < len(documents),
        )

    def subscribe(
        self,
        collection_path: str,
        options: QueryOptions | None,
        on_change: Callable[[list[dict[str, Any]]], Any],
        on_error: Callable[[StoreError], Any] | None = None,
    ) -> Callable[[], None]:
        """
        Stream the query result.

        on_change receives the full re-evaluated list on subscription and
        after every change anywhere in the collection. Store failures go to
        on_error, or are logged when no on_error is given.
        """
        options = options or QueryOptions()

        async def handle(result: StoreResult) -> None:
            if not result.success:
                if on_error is None:
                    logger.warning(f"Collection subscription on {collection_path} failed: {result.error}")
                    return
                outcome = on_error(result.error)
            else:
                pairs = order_children(
                    result.data, options.order_by, options.equal_to, options.start_at, options.end_at
                )
                documents = self._refine(self._limited(_annotate(pairs), options, pushed=False), options)
                outcome = on_change(self._paged(documents, options))
            if inspect.isawaitable(outcome):
                await outcome

        return self.store.subscribe(collection_path, handle)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _materialize(self, collection_path: str, options: QueryOptions) -> list[dict[str, Any]]:
        """Ordered, range-filtered documents; limited when that is safe to do early."""
        if self.store.supports_ordered_query:
            pushed_limit = None if options.needs_client_filtering else options.limit
            result = await self.store.query(
                collection_path,
                order_by=options.order_by,
                equal_to=options.equal_to,
                start_at=options.start_at,
                end_at=options.end_at,
                limit=pushed_limit,
            )
            return self._limited(_annotate(result.unwrap()), options, pushed=pushed_limit is not None)

        result = await self.store.get(collection_path)
        pairs = order_children(
            result.unwrap(), options.order_by, options.equal_to, options.start_at, options.end_at
        )
        return self._limited(_annotate(pairs), options, pushed=False)

    @staticmethod
    def _limited(documents: list[dict[str, Any]], options: QueryOptions, pushed: bool) -> list[dict[str, Any]]:
        # With client-side filters the limit applies after filtering (see _refine)
        if pushed or options.limit is None or options.needs_client_filtering:
            return documents
        return documents[:options.limit]

    @staticmethod
    def _refine(documents: list[dict[str, Any]], options: QueryOptions) -> list[dict[str, Any]]:
        """Client-side filters, search, late limit and descending order."""
        if options.filters:
            documents = [d for d in documents if _matches_filters(d, options.filters)]
        if options.search and options.search.strip():
            documents = [d for d in documents if _matches_search(d, options.search, options.search_fields)]
        if options.needs_client_filtering and options.limit is not None:
            documents = documents[:options.limit]
        if options.sort_desc:
            documents = list(reversed(documents))
        return documents

    def _paged(self, documents: list[dict[str, Any]], options: QueryOptions) -> list[dict[str, Any]]:
        if options.page is None and options.page_size is None:
            return documents
        page = options.page or 0
        page_size = options.page_size or self.default_page_size
        start = page * page_size
        return documents[start:start + page_size]
