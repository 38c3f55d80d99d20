"""
Client service.

Clients are soft-deleted by toggling isActive so invoices keep a valid
reference. hard_delete removes the document and refuses while invoices
still point at the client, unless forced.
"""

import inspect
import logging
from typing import Any, Callable

from clients.store_client import StoreClient, StoreResult, Write
from core.audit import ActivityLogger, compute_changes
from core.config import LedgerConfig
from core.errors import ClientInUseError, NotFoundError
from core.models import ActivityType, Client
from core.models.client import GUARDED_FIELDS
from core.permissions import require_admin, require_writer
from core.query import CollectionQuery, QueryOptions
from utils.user_context import Actor

logger = logging.getLogger(__name__)

ENTITY_TYPE = "client"

SEARCH_FIELDS = ("name", "email", "company")


class ClientService:
    """Service for client operations."""

    def __init__(
        self,
        store: StoreClient,
        audit: ActivityLogger,
        config: LedgerConfig | None = None,
        collection_path: str = "clients",
        invoice_collection_path: str = "invoices",
    ):
        self.store = store
        self.audit = audit
        self.config = config or LedgerConfig()
        self.collection_path = collection_path.strip("/")
        self.invoice_collection_path = invoice_collection_path.strip("/")
        self.query = CollectionQuery(store, default_page_size=self.config.default_page_size)

    @classmethod
    def for_organization(
        cls,
        store: StoreClient,
        organization_id: str,
        config: LedgerConfig | None = None,
    ) -> "ClientService":
        """Service over organizations/{orgId}/clients, checking that organization's invoices."""
        return cls(
            store,
            ActivityLogger(store, organization_id),
            config,
            collection_path=f"organizations/{organization_id}/clients",
            invoice_collection_path=f"organizations/{organization_id}/invoices",
        )

    def _path(self, client_id: str) -> str:
        if not client_id or "/" in client_id:
            raise ValueError(f"Invalid client id: {client_id!r}")
        return f"{self.collection_path}/{client_id}"

    async def _load(self, client_id: str) -> tuple[Client, dict[str, Any]]:
        result = await self.store.get(self._path(client_id))
        document = result.unwrap()
        if not result.exists:
            raise NotFoundError(ENTITY_TYPE, client_id)
        return Client.from_document(document, id=client_id), document

    async def _save(
        self,
        client: Client,
        previous: dict[str, Any],
        activity_type: ActivityType,
        details: dict[str, Any],
        actor: Actor,
    ) -> Client:
        path = self._path(client.id)
        result = await self.store.commit([
            Write.patch(path, client.to_patch(previous)),
            self.audit.entry_write(activity_type, ENTITY_TYPE, client.id, details, user_id=actor.id),
        ])
        written = result.unwrap()[path]
        client.updated_at = written.get("updatedAt", client.updated_at)
        return client

    async def create(self, data: dict[str, Any], actor: Actor | None = None) -> Client:
        """
        Create a client.

        Args:
            data: Client fields (camelCase or snake_case keys)
            actor: Acting user (defaults to the signed-in actor)

        Returns:
            Created client, active, with id and timestamps

        Raises:
            ValidationError: Name missing, or malformed email or phone
            StoreError: The write failed; no activity entry was written
        """
        actor = require_writer(actor, "create clients")

        document: dict[str, Any] = {}
        for name, value in data.items():
            key = Client.storage_key(name)
            if key is None or (key in GUARDED_FIELDS and key != "userId"):
                continue
            document[key] = value
        if not document.get("userId"):
            document["userId"] = actor.id

        client = Client.from_document(document).ensure_valid()
        client.id = self.store.generate_id()
        path = self._path(client.id)

        result = await self.store.commit([
            Write.put(path, client.to_document()),
            self.audit.entry_write(
                ActivityType.CLIENT_CREATED,
                entity_type=ENTITY_TYPE,
                entity_id=client.id,
                details={"name": client.name},
                user_id=actor.id,
            ),
        ])
        stored = Client.from_document(result.unwrap()[path])

        logger.info(f"Client created: {stored.id}")
        return stored

    async def get(self, client_id: str) -> Client:
        """
        Get client by ID.

        Raises:
            NotFoundError: Nothing stored under that id
        """
        client, _ = await self._load(client_id)
        return client

    async def update(self, client_id: str, changes: dict[str, Any], actor: Actor | None = None) -> Client:
        """
        Update client fields. Only changed fields are recorded.

        Raises:
            ValidationError: Guarded field or invalid result
            NotFoundError: Client not found
        """
        actor = require_writer(actor, "update clients")
        client, document = await self._load(client_id)
        before = client.to_document()

        client.apply_changes(changes)
        diff = compute_changes(before, client.to_document())
        if not diff:
            return client

        return await self._save(client, document, ActivityType.CLIENT_UPDATED, {"changes": diff}, actor)

    async def set_active_status(self, client_id: str, is_active: bool, actor: Actor | None = None) -> Client:
        """Soft delete (is_active=False) or restore a client."""
        actor = require_writer(actor, "change client status")
        client, document = await self._load(client_id)
        if client.is_active == is_active:
            return client

        if is_active:
            client.activate()
        else:
            client.deactivate()
        saved = await self._save(
            client,
            document,
            ActivityType.CLIENT_STATUS_CHANGED,
            {"isActive": is_active},
            actor,
        )
        logger.info(f"Client {client_id} {'activated' if is_active else 'deactivated'}")
        return saved

    async def deactivate(self, client_id: str, actor: Actor | None = None) -> Client:
        return await self.set_active_status(client_id, False, actor)

    async def activate(self, client_id: str, actor: Actor | None = None) -> Client:
        return await self.set_active_status(client_id, True, actor)

    async def referencing_invoice_ids(self, client_id: str) -> list[str]:
        """Ids of invoices billed to the client."""
        documents = await self.query.fetch(
            self.invoice_collection_path,
            QueryOptions(order_by="clientId", equal_to=client_id),
        )
        return [d["id"] for d in documents]

    async def hard_delete(self, client_id: str, force: bool = False, actor: Actor | None = None) -> None:
        """
        Permanently delete a client. Admin only.

        Args:
            client_id: Client to delete
            force: Delete even while invoices reference the client
            actor: Acting user

        Raises:
            ClientInUseError: Invoices reference the client and force is False
            NotFoundError: Client not found
        """
        actor = require_admin(actor, "delete clients")
        client, _ = await self._load(client_id)

        invoice_ids = await self.referencing_invoice_ids(client_id)
        if invoice_ids and not force:
            raise ClientInUseError(client_id, invoice_ids)
        if invoice_ids:
            logger.warning(f"Force-deleting client {client_id} still referenced by {len(invoice_ids)} invoice(s)")

        result = await self.store.commit([
            Write.remove(self._path(client_id)),
            self.audit.entry_write(
                ActivityType.CLIENT_DELETED,
                entity_type=ENTITY_TYPE,
                entity_id=client_id,
                details={"name": client.name, "orphanedInvoices": invoice_ids},
                user_id=actor.id,
            ),
        ])
        result.unwrap()
        logger.info(f"Client deleted: {client_id}")

    async def list_for_user(
        self,
        user_id: str,
        active_only: bool = True,
        sort_by: str = "name",
        sort_desc: bool = False,
        page: int | None = None,
        page_size: int | None = None,
    ) -> list[Client]:
        """Clients owned by a user, ordered by sort_by."""
        filters: dict[str, Any] = {"userId": user_id}
        if active_only:
            filters["isActive"] = True
        documents = await self.query.fetch(
            self.collection_path,
            QueryOptions(order_by=sort_by, filters=filters, sort_desc=sort_desc, page=page, page_size=page_size),
        )
        return [Client.from_document(d) for d in documents]

    async def search(self, user_id: str, term: str, active_only: bool = True) -> list[Client]:
        """
        Case-insensitive substring search over name, email and company.

        An empty term returns every (active) client of the user.
        """
        filters: dict[str, Any] = {"isActive": True} if active_only else {}
        documents = await self.query.fetch(
            self.collection_path,
            QueryOptions(
                order_by="userId",
                equal_to=user_id,
                filters=filters,
                search=term,
                search_fields=SEARCH_FIELDS,
            ),
        )
        return [Client.from_document(d) for d in documents]

    def subscribe(self, client_id: str, on_change: Callable[[Client | None], Any]) -> Callable[[], None]:
        """Watch one client; on_change gets None once it is deleted."""

        async def handle(result: StoreResult) -> None:
            if not result.success:
                logger.warning(f"Client subscription {client_id} failed: {result.error}")
                return
            client = Client.from_document(result.data, id=client_id) if result.exists else None
            outcome = on_change(client)
            if inspect.isawaitable(outcome):
                await outcome

        return self.store.subscribe(self._path(client_id), handle)

    def subscribe_to_user_clients(
        self,
        user_id: str,
        on_change: Callable[[list[Client]], Any],
        active_only: bool = True,
    ) -> Callable[[], None]:
        """Stream a user's clients ordered by name."""
        filters: dict[str, Any] = {"userId": user_id}
        if active_only:
            filters["isActive"] = True

        def handle(documents: list[dict[str, Any]]) -> Any:
            return on_change([Client.from_document(d) for d in documents])

        return self.query.subscribe(self.collection_path, QueryOptions(order_by="name", filters=filters), handle)
