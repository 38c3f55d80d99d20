"""
Per-organization activity log.

Every mutation of an invoice or client is recorded here. The log is:
- Append-only (entries never modified or deleted)
- User-attributed (who made the change)
- Written in the same atomic commit as the mutation it describes, so an
  entry never references a document write that did not happen

Entries live at organizations/{orgId}/activities/{pushId}. Push ids sort
by creation time, so key order is chronological order.
"""

import logging
from typing import Any, Callable

from clients.store_client import StoreClient, Write
from core.models.activity import ActivityEntry, ActivityType
from core.query import CollectionQuery, QueryOptions
from utils.timezone import now_iso
from utils.user_context import get_current_actor

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 100


def compute_changes(
    old: dict[str, Any],
    new: dict[str, Any],
    exclude_fields: set[str] | None = None
) -> dict[str, dict[str, Any]]:
    """
    Compute changes between two document states.

    Args:
        old: Previous storage shape of the entity
        new: New storage shape of the entity
        exclude_fields: Keys to ignore (defaults to the timestamps)

    Returns:
        Dict of {field: {"old": old_val, "new": new_val}} for changed fields.
        Empty dict if no changes.
    """
    exclude = exclude_fields or {"createdAt", "updatedAt"}
    changes = {}

    for key in sorted(set(old) | set(new)):
        if key in exclude:
            continue

        old_val = old.get(key)
        new_val = new.get(key)

        if old_val != new_val:
            changes[key] = {"old": old_val, "new": new_val}

    return changes


class ActivityLogger:
    """
    Activity trail for one organization.

    Usage:
        audit = ActivityLogger(store, organization_id="org1")

        # Inside a service: document and entry land together or not at all
        await store.commit([
            Write.put(f"invoices/{invoice_id}", document),
            audit.entry_write(
                ActivityType.INVOICE_CREATED,
                entity_type="invoice",
                entity_id=invoice_id,
                details={"invoiceNumber": "INV-20240101-0001"},
            ),
        ])

        # Standalone append (nothing else to commit)
        await audit.log(ActivityType.CLIENT_UPDATED, "client", client_id, {"changes": {...}})

        # Read back, newest first
        history = await audit.get_entity_history("invoice", invoice_id)
    """

    def __init__(self, store: StoreClient, organization_id: str):
        if not organization_id:
            raise ValueError("organization_id is required")
        self.store = store
        self.organization_id = organization_id
        self.collection_path = f"organizations/{organization_id}/activities"
        self._query = CollectionQuery(store)

    def build_entry(
        self,
        activity_type: ActivityType,
        entity_type: str,
        entity_id: str,
        details: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> ActivityEntry:
        """
        New entry with a fresh push id.

        user_id defaults to the signed-in actor.
        """
        if user_id is None:
            user_id = get_current_actor().id
        return ActivityEntry(
            id=self.store.generate_id(),
            type=activity_type,
            user_id=user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            timestamp=now_iso(),
            details=details or {},
        )

    def entry_write(
        self,
        activity_type: ActivityType,
        entity_type: str,
        entity_id: str,
        details: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> Write:
        """The write that appends one entry, for inclusion in a commit."""
        entry = self.build_entry(activity_type, entity_type, entity_id, details, user_id)
        return Write.put(f"{self.collection_path}/{entry.id}", entry.to_document(), stamp=False)

    async def log(
        self,
        activity_type: ActivityType,
        entity_type: str,
        entity_id: str,
        details: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> ActivityEntry:
        """
        Append one entry on its own.

        Raises:
            StoreError: The write failed
        """
        entry = self.build_entry(activity_type, entity_type, entity_id, details, user_id)
        write = Write.put(f"{self.collection_path}/{entry.id}", entry.to_document(), stamp=False)
        result = await self.store.commit([write])
        result.unwrap()
        logger.info(f"Activity logged: {activity_type.value} {entity_type}/{entity_id}")
        return entry

    async def get_entity_history(
        self,
        entity_type: str,
        entity_id: str,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> list[ActivityEntry]:
        """
        Full history for an entity.

        Returns:
            Entries, newest first.
        """
        documents = await self._query.fetch(
            self.collection_path,
            QueryOptions(
                order_by="entityId",
                equal_to=entity_id,
                filters={"entityType": entity_type},
                sort_desc=True,
            ),
        )
        return [ActivityEntry.from_document(d) for d in documents[:limit]]

    async def get_user_activity(
        self,
        user_id: str | None = None,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> list[ActivityEntry]:
        """
        Recent activity by user (defaults to the signed-in actor).

        Returns:
            Entries, newest first.
        """
        if user_id is None:
            user_id = get_current_actor().id

        documents = await self._query.fetch(
            self.collection_path,
            QueryOptions(order_by="userId", equal_to=user_id, sort_desc=True),
        )
        return [ActivityEntry.from_document(d) for d in documents[:limit]]

    async def get_recent(self, limit: int = 50) -> list[ActivityEntry]:
        """Latest entries across the organization, newest first."""
        documents = await self._query.fetch(self.collection_path, QueryOptions(sort_desc=True))
        return [ActivityEntry.from_document(d) for d in documents[:limit]]

    def subscribe(
        self,
        on_change: Callable[[list[ActivityEntry]], Any],
        limit: int = 50,
    ) -> Callable[[], None]:
        """Stream the latest entries, newest first, after every append."""

        def handle(documents: list[dict[str, Any]]) -> Any:
            return on_change([ActivityEntry.from_document(d) for d in documents[:limit]])

        return self._query.subscribe(self.collection_path, QueryOptions(sort_desc=True), handle)
