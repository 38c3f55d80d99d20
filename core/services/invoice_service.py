"""
Invoice ledger service.

Owns the write path for invoice documents: every mutation goes through the
Invoice entity (validation and derived amounts) before it reaches the store,
and is committed together with its activity entry.

Reads and writes are read-modify-write without a version check. Two callers
updating the same invoice at the same time can lose one update (e.g. one of
two concurrent payments); each stored document is still internally
consistent because it is always written whole from one entity.
"""

import inspect
import logging
import mimetypes
from datetime import date, datetime
from typing import Any, Callable
from uuid import uuid4

from clients.blob_client import BlobStorage, BlobStorageError
from clients.store_client import StoreClient, StoreResult, Write
from core.audit import ActivityLogger, compute_changes
from core.config import LedgerConfig
from core.errors import NotFoundError, ValidationError
from core.models import ActivityType, Attachment, Invoice, InvoiceStatus, Payment
from core.models.invoice import DERIVED_FIELDS, GUARDED_FIELDS
from core.permissions import require_admin, require_writer
from core.query import CollectionQuery, QueryOptions
from utils.timezone import now_utc
from utils.user_context import Actor

logger = logging.getLogger(__name__)

ENTITY_TYPE = "invoice"

# Statuses that can still become overdue
_OPEN_STATUSES = [InvoiceStatus.DRAFT.value, InvoiceStatus.PENDING.value, InvoiceStatus.OVERDUE.value]


class InvoiceService:
    """Service for invoice operations."""

    def __init__(
        self,
        store: StoreClient,
        audit: ActivityLogger,
        blobs: BlobStorage,
        config: LedgerConfig | None = None,
        collection_path: str = "invoices",
    ):
        self.store = store
        self.audit = audit
        self.blobs = blobs
        self.config = config or LedgerConfig()
        self.collection_path = collection_path.strip("/")
        self.query = CollectionQuery(store, default_page_size=self.config.default_page_size)

    @classmethod
    def for_organization(
        cls,
        store: StoreClient,
        organization_id: str,
        blobs: BlobStorage,
        config: LedgerConfig | None = None,
    ) -> "InvoiceService":
        """Service over organizations/{orgId}/invoices with that organization's log."""
        return cls(
            store,
            ActivityLogger(store, organization_id),
            blobs,
            config,
            collection_path=f"organizations/{organization_id}/invoices",
        )

    def _path(self, invoice_id: str) -> str:
        if not invoice_id or "/" in invoice_id:
            raise ValueError(f"Invalid invoice id: {invoice_id!r}")
        return f"{self.collection_path}/{invoice_id}"

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _load(self, invoice_id: str) -> tuple[Invoice, dict[str, Any]]:
        """Entity plus the raw stored document it came from."""
        result = await self.store.get(self._path(invoice_id))
        document = result.unwrap()
        if not result.exists:
            raise NotFoundError(ENTITY_TYPE, invoice_id)
        return Invoice.from_document(document, id=invoice_id), document

    async def get(self, invoice_id: str) -> Invoice:
        """
        Get invoice by ID.

        Raises:
            NotFoundError: Nothing stored under that id
            StoreError: The read failed
        """
        invoice, _ = await self._load(invoice_id)
        return invoice

    async def find(self, invoice_id: str) -> Invoice | None:
        """Get invoice by ID, or None if absent."""
        try:
            return await self.get(invoice_id)
        except NotFoundError:
            return None

    async def list_for_user(
        self,
        user_id: str,
        status: "InvoiceStatus | str | list[InvoiceStatus | str] | None" = None,
        client_id: str | None = None,
        sort_by: str = "dueDate",
        sort_desc: bool = True,
        page: int | None = None,
        page_size: int | None = None,
    ) -> list[Invoice]:
        """
        Invoices owned by a user.

        Args:
            user_id: Owning user
            status: One status or a list of accepted statuses
            client_id: Only invoices billed to this client
            sort_by: Document field to order by (e.g. "dueDate", "issueDate")
            sort_desc: Newest/largest first
            page: Zero-based page number
            page_size: Page size (config default when only page is given)
        """
        filters: dict[str, Any] = {"userId": user_id}
        if status is not None:
            if isinstance(status, (list, tuple, set)):
                filters["status"] = [InvoiceStatus(s).value for s in status]
            else:
                filters["status"] = InvoiceStatus(status).value
        if client_id is not None:
            filters["clientId"] = client_id

        documents = await self.query.fetch(
            self.collection_path,
            QueryOptions(
                order_by=sort_by,
                filters=filters,
                sort_desc=sort_desc,
                page=page,
                page_size=page_size,
            ),
        )
        return [Invoice.from_document(d) for d in documents]

    async def list_overdue(self, user_id: str, now: datetime | date | None = None) -> list[Invoice]:
        """Unpaid invoices past their due date, oldest due date first."""
        invoices = await self.list_for_user(user_id, status=_OPEN_STATUSES, sort_desc=False)
        return [invoice for invoice in invoices if invoice.is_overdue(now)]

    def subscribe(self, invoice_id: str, on_change: Callable[[Invoice | None], Any]) -> Callable[[], None]:
        """
        Watch one invoice.

        on_change receives the current Invoice, or None once it is deleted.
        """
        path = self._path(invoice_id)

        async def handle(result: StoreResult) -> None:
            if not result.success:
                logger.warning(f"Invoice subscription {invoice_id} failed: {result.error}")
                return
            invoice = Invoice.from_document(result.data, id=invoice_id) if result.exists else None
            outcome = on_change(invoice)
            if inspect.isawaitable(outcome):
                await outcome

        return self.store.subscribe(path, handle)

    def subscribe_to_user_invoices(
        self,
        user_id: str,
        options: QueryOptions | None,
        on_change: Callable[[list[Invoice]], Any],
    ) -> Callable[[], None]:
        """Stream a user's invoices, re-evaluated after every change in the collection."""
        options = options or QueryOptions(order_by="dueDate", sort_desc=True)
        options = options.model_copy(update={"filters": {**options.filters, "userId": user_id}})

        def handle(documents: list[dict[str, Any]]) -> Any:
            return on_change([Invoice.from_document(d) for d in documents])

        return self.query.subscribe(self.collection_path, options, handle)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _generate_invoice_number(self, user_id: str) -> str:
        """
        Generate an invoice number for a user.

        Format: {prefix}-YYYYMMDD-XXXX where XXXX is a per-day sequence.
        Two creates racing on the same day can pick the same number.
        """
        today = now_utc().strftime("%Y%m%d")
        prefix = f"{self.config.invoice_number_prefix}-{today}-"

        documents = await self.query.fetch(
            self.collection_path,
            QueryOptions(order_by="userId", equal_to=user_id),
        )
        sequence = 0
        for document in documents:
            number = document.get("invoiceNumber") or ""
            if not number.startswith(prefix):
                continue
            try:
                sequence = max(sequence, int(number[len(prefix):]))
            except ValueError:
                continue

        return f"{prefix}{sequence + 1:04d}"

    async def create(self, data: dict[str, Any], actor: Actor | None = None) -> Invoice:
        """
        Create an invoice in DRAFT status.

        Derived amounts, status, payments and attachments in data are
        ignored; amounts are computed from the line items.

        Args:
            data: Invoice fields (camelCase or snake_case keys)
            actor: Acting user (defaults to the signed-in actor)

        Returns:
            The stored invoice, with id and timestamps

        Raises:
            ValidationError: Required fields or line items missing or malformed
            AccessDeniedError: Actor may not write
            StoreError: The write failed; no activity entry was written
        """
        actor = require_writer(actor, "create invoices")

        document: dict[str, Any] = {}
        for name, value in data.items():
            key = Invoice.storage_key(name)
            if key is None or key in DERIVED_FIELDS:
                continue
            if key in GUARDED_FIELDS and key != "userId":
                continue
            document[key] = value
        if not document.get("userId"):
            document["userId"] = actor.id

        invoice = Invoice.from_document(document)
        invoice.status = InvoiceStatus.DRAFT
        invoice.calculate_amounts()

        errors = invoice.validation_errors()
        if not invoice.invoice_number:
            errors.pop("invoiceNumber", None)
        if errors:
            raise ValidationError(errors, "Invalid invoice")
        if not invoice.invoice_number:
            invoice.invoice_number = await self._generate_invoice_number(invoice.user_id)

        invoice.id = self.store.generate_id()
        path = self._path(invoice.id)
        result = await self.store.commit([
            Write.put(path, invoice.to_document()),
            self.audit.entry_write(
                ActivityType.INVOICE_CREATED,
                entity_type=ENTITY_TYPE,
                entity_id=invoice.id,
                details={
                    "invoiceNumber": invoice.invoice_number,
                    "clientId": invoice.client_id,
                    "total": str(invoice.total),
                },
                user_id=actor.id,
            ),
        ])
        stored = Invoice.from_document(result.unwrap()[path])

        logger.info(f"Invoice created: {stored.id} ({stored.invoice_number})")
        return stored

    async def _save(
        self,
        invoice: Invoice,
        previous: dict[str, Any],
        activity_type: ActivityType,
        details: dict[str, Any],
        actor: Actor,
    ) -> Invoice:
        """Persist the whole entity and its activity entry in one commit."""
        path = self._path(invoice.id)
        result = await self.store.commit([
            Write.patch(path, invoice.to_patch(previous)),
            self.audit.entry_write(activity_type, ENTITY_TYPE, invoice.id, details, user_id=actor.id),
        ])
        written = result.unwrap()[path]
        invoice.updated_at = written.get("updatedAt", invoice.updated_at)
        return invoice

    async def update(self, invoice_id: str, changes: dict[str, Any], actor: Actor | None = None) -> Invoice:
        """
        Apply a partial update.

        The activity entry carries a before/after diff of changed fields
        only. An update that changes nothing writes nothing.

        Raises:
            ValidationError: Invalid change (derived or guarded field, bad value)
            TransitionError: Invoice is cancelled
            NotFoundError: Invoice not found
        """
        actor = require_writer(actor, "update invoices")
        invoice, document = await self._load(invoice_id)
        before = invoice.to_document()

        invoice.apply_changes(changes)
        diff = compute_changes(before, invoice.to_document())
        if not diff:
            return invoice

        saved = await self._save(invoice, document, ActivityType.INVOICE_UPDATED, {"changes": diff}, actor)
        logger.info(f"Invoice updated: {invoice_id} ({', '.join(diff)})")
        return saved

    async def add_payment(
        self,
        invoice_id: str,
        payment: "Payment | dict[str, Any]",
        actor: Actor | None = None,
    ) -> Invoice:
        """
        Record a payment.

        Raises:
            ValidationError: Amount <= 0, or date or method missing
            TransitionError: Invoice is cancelled or already paid
            NotFoundError: Invoice not found
        """
        actor = require_writer(actor, "record payments")
        invoice, document = await self._load(invoice_id)
        previous_status = invoice.status

        recorded = invoice.add_payment(payment)
        details = {
            "paymentId": recorded.id,
            "amount": str(recorded.amount),
            "date": recorded.paid_on.isoformat(),
            "method": recorded.method,
            "amountPaid": str(invoice.amount_paid),
            "outstandingAmount": str(invoice.outstanding_amount),
        }
        if invoice.status != previous_status:
            details["previousStatus"] = previous_status.value
            details["newStatus"] = invoice.status.value

        saved = await self._save(invoice, document, ActivityType.INVOICE_PAYMENT_ADDED, details, actor)
        logger.info(f"Payment recorded on invoice {invoice_id}: {recorded.amount} ({saved.status.value})")
        return saved

    async def update_status(
        self,
        invoice_id: str,
        status: "InvoiceStatus | str",
        actor: Actor | None = None,
    ) -> Invoice:
        """
        Move an invoice to another status.

        Cancelling requires the admin role. Moving to pending re-validates
        the whole invoice first.

        Raises:
            ValidationError: Unknown status (raised before any store call), or
                the stored invoice is invalid when moving to pending
            TransitionError: Transition not allowed
            AccessDeniedError: Actor lacks the needed role
            NotFoundError: Invoice not found
        """
        try:
            target = InvoiceStatus(status)
        except ValueError:
            raise ValidationError({"status": f"Invalid status: {status}"}, "Invalid status")

        if target == InvoiceStatus.CANCELLED:
            actor = require_admin(actor, "cancel invoices")
        else:
            actor = require_writer(actor, "change invoice status")

        invoice, document = await self._load(invoice_id)
        previous_status = invoice.status
        if target == InvoiceStatus.PENDING:
            invoice.submit()
        else:
            invoice.update_status(target)

        saved = await self._save(
            invoice,
            document,
            ActivityType.INVOICE_STATUS_CHANGED,
            {"previousStatus": previous_status.value, "newStatus": target.value},
            actor,
        )
        logger.info(f"Invoice {invoice_id} status: {previous_status.value} -> {target.value}")
        return saved

    async def submit(self, invoice_id: str, actor: Actor | None = None) -> Invoice:
        """Send a draft for review (draft -> pending)."""
        return await self.update_status(invoice_id, InvoiceStatus.PENDING, actor)

    async def cancel(self, invoice_id: str, actor: Actor | None = None) -> Invoice:
        """Cancel an invoice. Admin only."""
        return await self.update_status(invoice_id, InvoiceStatus.CANCELLED, actor)

    async def delete(self, invoice_id: str, actor: Actor | None = None) -> list[str]:
        """
        Delete an invoice and its attachments. Admin only.

        Every attachment blob is attempted even if some deletions fail;
        the document and its activity entry are always committed afterwards.

        Returns:
            Storage paths of attachments whose deletion failed (orphaned blobs)

        Raises:
            NotFoundError: Invoice not found
            StoreError: The document delete failed
        """
        actor = require_admin(actor, "delete invoices")
        invoice, _ = await self._load(invoice_id)

        failed: list[str] = []
        for attachment in invoice.attachments:
            try:
                await self.blobs.delete(attachment.path)
            except BlobStorageError as e:
                logger.warning(f"Could not delete attachment {attachment.path} of invoice {invoice_id}: {e}")
                failed.append(attachment.path)

        result = await self.store.commit([
            Write.remove(self._path(invoice_id)),
            self.audit.entry_write(
                ActivityType.INVOICE_DELETED,
                entity_type=ENTITY_TYPE,
                entity_id=invoice_id,
                details={
                    "invoiceNumber": invoice.invoice_number,
                    "attachmentsDeleted": len(invoice.attachments) - len(failed),
                    "attachmentsFailed": failed,
                },
                user_id=actor.id,
            ),
        ])
        result.unwrap()

        logger.info(f"Invoice deleted: {invoice_id}")
        return failed

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    def _check_upload(self, filename: str, data: bytes, content_type: str) -> None:
        errors = {}
        if not filename:
            errors["name"] = "File name is required"
        if not data:
            errors["size"] = "File is empty"
        elif len(data) > self.config.max_attachment_bytes:
            errors["size"] = f"File exceeds {self.config.max_attachment_bytes} bytes"
        if content_type not in self.config.allowed_attachment_types:
            errors["type"] = f"File type {content_type} is not allowed"
        if errors:
            raise ValidationError(errors, "Invalid attachment")

    def _attachment_path(self, invoice_id: str, filename: str, content_type: str) -> str:
        _, dot, ext = filename.rpartition(".")
        if not dot or not ext:
            ext = (mimetypes.guess_extension(content_type) or ".bin").lstrip(".")
        return (
            f"organizations/{self.audit.organization_id}/invoices/{invoice_id}"
            f"/attachments/{uuid4()}.{ext.lower()}"
        )

    async def add_attachment(
        self,
        invoice_id: str,
        filename: str,
        data: bytes,
        content_type: str,
        actor: Actor | None = None,
    ) -> Attachment:
        """
        Upload a file and attach it to an invoice.

        Uploading and the document write are not transactional; if the
        document write fails the uploaded blob is removed again.

        Raises:
            ValidationError: Too large, type not allowed, or too many attachments
            BlobStorageError: Upload failed (nothing was written)
            StoreError: Document write failed
        """
        actor = require_writer(actor, "attach files")
        self._check_upload(filename, data, content_type)

        invoice, document = await self._load(invoice_id)
        if len(invoice.attachments) >= self.config.max_attachments_per_invoice:
            raise ValidationError(
                {"attachments": f"At most {self.config.max_attachments_per_invoice} attachments are allowed"}
            )

        stored = await self.blobs.upload(data, self._attachment_path(invoice_id, filename, content_type), content_type)
        attachment = invoice.add_attachment(
            {"name": filename, "size": stored.size, "type": stored.type, "url": stored.url, "path": stored.path},
            max_count=self.config.max_attachments_per_invoice,
        )

        path = self._path(invoice_id)
        result = await self.store.commit([
            Write.patch(path, invoice.to_patch(document)),
            self.audit.entry_write(
                ActivityType.ATTACHMENT_ADDED,
                entity_type=ENTITY_TYPE,
                entity_id=invoice_id,
                details={"name": filename, "path": stored.path, "size": stored.size, "type": stored.type},
                user_id=actor.id,
            ),
        ])
        if not result.success:
            try:
                await self.blobs.delete(stored.path)
            except BlobStorageError as e:
                logger.warning(f"Could not remove orphaned attachment {stored.path}: {e}")
            result.unwrap()

        logger.info(f"Attachment added to invoice {invoice_id}: {stored.path}")
        return attachment

    async def remove_attachment(self, invoice_id: str, path: str, actor: Actor | None = None) -> Invoice:
        """
        Remove an attachment from an invoice and delete its blob.

        The descriptor is removed first; the blob is deleted only after that
        commit succeeds. A failed blob deletion is logged and leaves an
        orphaned blob, never a descriptor pointing at a missing file.

        Raises:
            NotFoundError: Invoice not found, or no attachment at path
            StoreError: Document write failed (blob left in place)
        """
        actor = require_writer(actor, "remove attachments")
        invoice, document = await self._load(invoice_id)
        removed = invoice.remove_attachment(path)

        saved = await self._save(
            invoice,
            document,
            ActivityType.ATTACHMENT_REMOVED,
            {"name": removed.name, "path": removed.path},
            actor,
        )

        try:
            await self.blobs.delete(removed.path)
        except BlobStorageError as e:
            logger.warning(f"Could not delete attachment blob {removed.path}: {e}")
        logger.info(f"Attachment removed from invoice {invoice_id}: {path}")
        return saved
