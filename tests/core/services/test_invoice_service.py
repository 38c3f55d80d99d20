"""Tests for InvoiceService."""

import asyncio
import re
from datetime import date
from decimal import Decimal

import pytest
import pytest_asyncio

from clients.blob_client import InMemoryBlobStorage
from clients.memory_store import InMemoryStore
from clients.store_client import StorePermissionError, StoreTimeoutError, TransientStoreError
from core.audit import ActivityLogger
from core.config import LedgerConfig
from core.errors import AccessDeniedError, NotFoundError, TransitionError, ValidationError
from core.models import ActivityType, InvoiceStatus
from core.query import QueryOptions
from core.services.invoice_service import InvoiceService

TEST_USER_ID = "user-0001"
TEST_USER_B_ID = "user-0002"
TEST_ORG_ID = "org-test"

PDF = b"%PDF-1.7 test document"

PAYMENT = {"amount": "100", "date": "2024-02-01", "method": "bank_transfer"}


@pytest_asyncio.fixture
async def created(invoice_service, invoice_data, as_reviewer):
    """A stored draft invoice with total 210.00."""
    return await invoice_service.create(invoice_data)


async def history_types(audit, invoice_id):
    return [e.type for e in await audit.get_entity_history("invoice", invoice_id)]


def with_due(invoice_data, due):
    return {**invoice_data, "dueDate": due}


def with_price(invoice_data, price):
    """Single-line invoice without tax or discount, so total == price."""
    return {
        **invoice_data,
        "items": [{"description": "Work", "quantity": 1, "price": price}],
        "taxRate": 0,
        "discountRate": 0,
    }


class TestCreateInvoice:
    """Tests for InvoiceService.create."""

    @pytest.mark.asyncio
    async def test_create_computes_amounts(self, created):
        assert created.id
        assert created.status == InvoiceStatus.DRAFT
        assert created.subtotal == Decimal("200.00")
        assert created.tax_amount == Decimal("20.00")
        assert created.discount_amount == Decimal("10.00")
        assert created.total == Decimal("210.00")
        assert created.amount_paid == Decimal("0")
        assert created.outstanding_amount == Decimal("210.00")
        assert created.created_at is not None
        assert created.created_at == created.updated_at

    @pytest.mark.asyncio
    async def test_create_stores_numeric_amounts(self, created, store):
        stored = (await store.get(f"invoices/{created.id}")).unwrap()

        assert stored["total"] == 210
        assert stored["outstandingAmount"] == 210
        assert stored["status"] == "draft"
        assert stored["dueDate"] == "2024-01-31"
        assert stored["id"] == created.id

    @pytest.mark.asyncio
    async def test_create_generates_daily_sequence(self, invoice_service, invoice_data, as_reviewer):
        first = await invoice_service.create(invoice_data)
        second = await invoice_service.create(invoice_data)

        assert re.fullmatch(r"INV-\d{8}-0001", first.invoice_number)
        assert second.invoice_number == first.invoice_number[:-4] + "0002"

    @pytest.mark.asyncio
    async def test_sequence_is_per_user(self, invoice_service, invoice_data, as_reviewer):
        await invoice_service.create(invoice_data)
        other = await invoice_service.create({**invoice_data, "userId": TEST_USER_B_ID})

        assert other.invoice_number.endswith("-0001")

    @pytest.mark.asyncio
    async def test_configured_prefix(self, store, audit, blobs, invoice_data, as_reviewer):
        service = InvoiceService(store, audit, blobs, LedgerConfig(invoice_number_prefix="ACME"))

        invoice = await service.create(invoice_data)

        assert invoice.invoice_number.startswith("ACME-")

    @pytest.mark.asyncio
    async def test_explicit_number_kept(self, invoice_service, invoice_data, as_reviewer):
        invoice = await invoice_service.create({**invoice_data, "invoiceNumber": "CUSTOM-7"})
        assert invoice.invoice_number == "CUSTOM-7"

    @pytest.mark.asyncio
    async def test_derived_and_guarded_input_ignored(self, invoice_service, invoice_data, as_reviewer):
        invoice = await invoice_service.create({
            **invoice_data,
            "total": "1.00",
            "status": "paid",
            "paymentHistory": [{"amount": "999", "date": "2024-01-02", "method": "cash"}],
            "unknownField": "dropped",
        })

        assert invoice.total == Decimal("210.00")
        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.payment_history == []

    @pytest.mark.asyncio
    async def test_user_defaults_to_actor(self, invoice_service, invoice_data, as_reviewer):
        data = {k: v for k, v in invoice_data.items() if k != "userId"}
        invoice = await invoice_service.create(data)
        assert invoice.user_id == as_reviewer.id

    @pytest.mark.asyncio
    async def test_create_logs_activity(self, created, audit, as_reviewer):
        history = await audit.get_entity_history("invoice", created.id)

        assert len(history) == 1
        assert history[0].type == ActivityType.INVOICE_CREATED
        assert history[0].user_id == as_reviewer.id
        assert history[0].details == {
            "invoiceNumber": created.invoice_number,
            "clientId": "client-1",
            "total": "210.00",
        }

    @pytest.mark.asyncio
    async def test_invalid_input_writes_nothing(self, invoice_service, invoice_data, store, as_reviewer):
        data = {**invoice_data, "items": [], "clientId": ""}

        with pytest.raises(ValidationError) as exc_info:
            await invoice_service.create(data)

        assert set(exc_info.value.errors) == {"items", "clientId"}
        assert store.snapshot() == {}

    @pytest.mark.asyncio
    async def test_line_item_errors_by_index(self, invoice_service, invoice_data, as_reviewer):
        data = {**invoice_data, "items": [
            {"description": "Fine", "quantity": 1, "price": "10"},
            {"description": "", "quantity": 0, "price": "10"},
        ]}

        with pytest.raises(ValidationError) as exc_info:
            await invoice_service.create(data)

        assert set(exc_info.value.errors["items"]) == {1}
        assert set(exc_info.value.errors["items"][1]) == {"description", "quantity"}

    @pytest.mark.asyncio
    async def test_due_before_issue_rejected(self, invoice_service, invoice_data, as_reviewer):
        with pytest.raises(ValidationError) as exc_info:
            await invoice_service.create(with_due(invoice_data, "2023-12-01"))
        assert "dueDate" in exc_info.value.errors

    @pytest.mark.asyncio
    async def test_failed_commit_leaves_no_activity(self, invoice_service, invoice_data, store, audit, as_reviewer):
        store.denied_paths.add(audit.collection_path)

        with pytest.raises(StorePermissionError):
            await invoice_service.create(invoice_data)

        assert store.snapshot() == {}

    @pytest.mark.asyncio
    async def test_viewer_cannot_create(self, invoice_service, invoice_data, viewer, store):
        with pytest.raises(AccessDeniedError):
            await invoice_service.create(invoice_data, actor=viewer)
        assert store.snapshot() == {}

    @pytest.mark.asyncio
    async def test_no_actor_fails_fast(self, invoice_service, invoice_data):
        with pytest.raises(RuntimeError):
            await invoice_service.create(invoice_data)


class TestReadInvoice:
    """get, find and path handling."""

    @pytest.mark.asyncio
    async def test_get_round_trips(self, created, invoice_service):
        fetched = await invoice_service.get(created.id)
        assert fetched == created

    @pytest.mark.asyncio
    async def test_get_missing(self, invoice_service):
        with pytest.raises(NotFoundError):
            await invoice_service.get("does-not-exist")

    @pytest.mark.asyncio
    async def test_find_missing_returns_none(self, invoice_service):
        assert await invoice_service.find("does-not-exist") is None

    @pytest.mark.asyncio
    async def test_nested_id_rejected(self, invoice_service):
        with pytest.raises(ValueError):
            await invoice_service.get("a/b")

    @pytest.mark.asyncio
    async def test_timeout_surfaces_as_store_error(self, blobs):
        slow = InMemoryStore(timeout_seconds=0.01, latency_seconds=0.5)
        service = InvoiceService(slow, ActivityLogger(slow, TEST_ORG_ID), blobs)

        with pytest.raises(StoreTimeoutError) as exc_info:
            await service.get("inv-1")

        assert exc_info.value.retryable is True
        assert exc_info.value.path == "invoices/inv-1"


class TestUpdateInvoice:
    """Partial updates and their activity diffs."""

    @pytest.mark.asyncio
    async def test_update_records_diff(self, created, invoice_service, audit):
        updated = await invoice_service.update(created.id, {"notes": "Net 15 please"})

        assert updated.notes == "Net 15 please"
        history = await audit.get_entity_history("invoice", created.id)
        assert history[0].type == ActivityType.INVOICE_UPDATED
        assert history[0].details == {
            "changes": {"notes": {"old": "Thanks for your business", "new": "Net 15 please"}}
        }

    @pytest.mark.asyncio
    async def test_noop_update_writes_nothing(self, created, invoice_service, audit):
        await invoice_service.update(created.id, {"notes": created.notes})

        assert await history_types(audit, created.id) == [ActivityType.INVOICE_CREATED]

    @pytest.mark.asyncio
    async def test_items_change_recomputes(self, created, invoice_service, audit):
        updated = await invoice_service.update(
            created.id, {"items": [{"description": "Audit", "quantity": 1, "price": "300"}]}
        )

        assert updated.total == Decimal("315.00")
        assert updated.outstanding_amount == Decimal("315.00")
        history = await audit.get_entity_history("invoice", created.id)
        assert {"items", "subtotal", "taxAmount", "discountAmount", "total", "outstandingAmount"} <= set(
            history[0].details["changes"]
        )

    @pytest.mark.asyncio
    async def test_clearing_a_field_removes_it(self, created, invoice_service, store):
        await invoice_service.update(created.id, {"notes": None})

        stored = (await store.get(f"invoices/{created.id}")).unwrap()
        assert "notes" not in stored
        assert stored["createdAt"] == created.created_at

    @pytest.mark.asyncio
    async def test_derived_field_rejected(self, created, invoice_service):
        with pytest.raises(ValidationError) as exc_info:
            await invoice_service.update(created.id, {"total": "1.00"})

        assert "total" in exc_info.value.errors
        assert (await invoice_service.get(created.id)).total == Decimal("210.00")

    @pytest.mark.asyncio
    async def test_status_cannot_be_updated_directly(self, created, invoice_service):
        with pytest.raises(ValidationError):
            await invoice_service.update(created.id, {"status": "paid"})

    @pytest.mark.asyncio
    async def test_cancelled_invoice_is_frozen(self, created, invoice_service, admin):
        await invoice_service.cancel(created.id, actor=admin)

        with pytest.raises(TransitionError):
            await invoice_service.update(created.id, {"notes": "too late"})

    @pytest.mark.asyncio
    async def test_update_missing(self, invoice_service, as_reviewer):
        with pytest.raises(NotFoundError):
            await invoice_service.update("nope", {"notes": "x"})


class TestPayments:
    """Payments drive amounts and status."""

    @pytest.mark.asyncio
    async def test_partial_payment(self, created, invoice_service, audit):
        invoice = await invoice_service.add_payment(created.id, PAYMENT)

        assert invoice.status == InvoiceStatus.PENDING
        assert invoice.amount_paid == Decimal("100.00")
        assert invoice.outstanding_amount == Decimal("110.00")

        entry = (await audit.get_entity_history("invoice", created.id))[0]
        assert entry.type == ActivityType.INVOICE_PAYMENT_ADDED
        assert entry.details["paymentId"] == invoice.payment_history[0].id
        assert entry.details["amount"] == "100.00"
        assert entry.details["date"] == "2024-02-01"
        assert entry.details["amountPaid"] == "100.00"
        assert entry.details["outstandingAmount"] == "110.00"
        assert entry.details["previousStatus"] == "draft"
        assert entry.details["newStatus"] == "pending"

    @pytest.mark.asyncio
    async def test_settling_payment_marks_paid(self, created, invoice_service):
        await invoice_service.add_payment(created.id, PAYMENT)
        invoice = await invoice_service.add_payment(created.id, {**PAYMENT, "amount": "110.00"})

        assert invoice.status == InvoiceStatus.PAID
        assert invoice.outstanding_amount == Decimal("0.00")
        assert len(invoice.payment_history) == 2

    @pytest.mark.asyncio
    async def test_overpayment_marks_paid(self, created, invoice_service):
        invoice = await invoice_service.add_payment(created.id, {**PAYMENT, "amount": "300"})

        assert invoice.status == InvoiceStatus.PAID
        assert invoice.outstanding_amount == Decimal("-90.00")

    @pytest.mark.asyncio
    async def test_payment_on_paid_invoice_rejected(self, created, invoice_service):
        await invoice_service.add_payment(created.id, {**PAYMENT, "amount": "210"})

        with pytest.raises(TransitionError):
            await invoice_service.add_payment(created.id, PAYMENT)

    @pytest.mark.asyncio
    async def test_payment_on_cancelled_invoice_rejected(self, created, invoice_service, admin):
        await invoice_service.cancel(created.id, actor=admin)

        with pytest.raises(TransitionError):
            await invoice_service.add_payment(created.id, PAYMENT)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payment, field", [
        ({**PAYMENT, "amount": "0"}, "amount"),
        ({**PAYMENT, "amount": "-5"}, "amount"),
        ({k: v for k, v in PAYMENT.items() if k != "date"}, "date"),
        ({**PAYMENT, "method": "  "}, "method"),
    ])
    async def test_invalid_payment_writes_nothing(self, created, invoice_service, audit, payment, field):
        with pytest.raises(ValidationError) as exc_info:
            await invoice_service.add_payment(created.id, payment)

        assert field in exc_info.value.errors
        assert (await invoice_service.get(created.id)).payment_history == []
        assert await history_types(audit, created.id) == [ActivityType.INVOICE_CREATED]

    @pytest.mark.asyncio
    async def test_viewer_cannot_record_payment(self, created, invoice_service, viewer):
        with pytest.raises(AccessDeniedError):
            await invoice_service.add_payment(created.id, PAYMENT, actor=viewer)

    @pytest.mark.asyncio
    async def test_concurrent_payments_lose_one_but_stay_consistent(self, invoice_data, as_reviewer):
        slow = InMemoryStore(latency_seconds=0.02)
        audit = ActivityLogger(slow, TEST_ORG_ID)
        service = InvoiceService(slow, audit, InMemoryBlobStorage())
        invoice = await service.create(invoice_data)

        await asyncio.gather(
            service.add_payment(invoice.id, {**PAYMENT, "amount": "50"}),
            service.add_payment(invoice.id, {**PAYMENT, "amount": "60"}),
        )

        stored = await service.get(invoice.id)
        assert len(stored.payment_history) == 1
        assert stored.amount_paid == stored.payment_history[0].amount
        assert stored.outstanding_amount == stored.total - stored.amount_paid
        assert (await history_types(audit, invoice.id)).count(ActivityType.INVOICE_PAYMENT_ADDED) == 2

    @pytest.mark.asyncio
    async def test_retry_after_unknown_outcome_duplicates(self, created, invoice_service, store, audit, monkeypatch):
        original_apply = store._apply

        async def apply_then_drop(writes):
            await original_apply(writes)
            raise TransientStoreError("connection reset")

        monkeypatch.setattr(store, "_apply", apply_then_drop)
        with pytest.raises(TransientStoreError):
            await invoice_service.add_payment(created.id, PAYMENT)
        monkeypatch.undo()

        await invoice_service.add_payment(created.id, PAYMENT)

        stored = await invoice_service.get(created.id)
        assert stored.amount_paid == Decimal("200.00")
        assert (await history_types(audit, created.id)).count(ActivityType.INVOICE_PAYMENT_ADDED) == 2


class TestStatus:
    """Explicit status changes."""

    @pytest.mark.asyncio
    async def test_submit(self, created, invoice_service, audit):
        invoice = await invoice_service.submit(created.id)

        assert invoice.status == InvoiceStatus.PENDING
        entry = (await audit.get_entity_history("invoice", created.id))[0]
        assert entry.type == ActivityType.INVOICE_STATUS_CHANGED
        assert entry.details == {"previousStatus": "draft", "newStatus": "pending"}

    @pytest.mark.asyncio
    async def test_submit_revalidates_stored_invoice(self, invoice_service, store, as_reviewer):
        await store.set("invoices/legacy-1", {
            "userId": TEST_USER_ID,
            "clientId": "client-1",
            "invoiceNumber": "OLD-1",
            "issueDate": "2024-01-01",
            "dueDate": "2024-01-31",
            "status": "draft",
            "items": [],
        })

        with pytest.raises(ValidationError) as exc_info:
            await invoice_service.submit("legacy-1")

        assert "items" in exc_info.value.errors
        assert (await invoice_service.get("legacy-1")).status == InvoiceStatus.DRAFT

    @pytest.mark.asyncio
    async def test_unknown_status_rejected_before_io(self, invoice_service, as_reviewer):
        with pytest.raises(ValidationError):
            await invoice_service.update_status("does-not-exist", "bogus")

    @pytest.mark.asyncio
    async def test_overdue_cannot_be_set(self, created, invoice_service):
        with pytest.raises(TransitionError):
            await invoice_service.update_status(created.id, InvoiceStatus.OVERDUE)

    @pytest.mark.asyncio
    async def test_paid_requires_settled_balance(self, created, invoice_service):
        await invoice_service.submit(created.id)

        with pytest.raises(TransitionError):
            await invoice_service.update_status(created.id, "paid")

    @pytest.mark.asyncio
    async def test_draft_cannot_jump_to_paid(self, created, invoice_service):
        with pytest.raises(TransitionError):
            await invoice_service.update_status(created.id, "paid")

    @pytest.mark.asyncio
    async def test_reviewer_cannot_cancel(self, created, invoice_service):
        with pytest.raises(AccessDeniedError):
            await invoice_service.cancel(created.id)
        assert (await invoice_service.get(created.id)).status == InvoiceStatus.DRAFT

    @pytest.mark.asyncio
    async def test_admin_cancels(self, created, invoice_service, admin):
        invoice = await invoice_service.cancel(created.id, actor=admin)
        assert invoice.status == InvoiceStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancelled_is_terminal(self, created, invoice_service, admin):
        await invoice_service.cancel(created.id, actor=admin)

        with pytest.raises(TransitionError):
            await invoice_service.update_status(created.id, "pending", actor=admin)

    @pytest.mark.asyncio
    async def test_created_at_preserved(self, created, invoice_service, store):
        await invoice_service.submit(created.id)

        stored = (await store.get(f"invoices/{created.id}")).unwrap()
        assert stored["createdAt"] == created.created_at


class TestDeleteInvoice:
    """Deletion cleans up attachments best-effort."""

    @pytest.mark.asyncio
    async def test_reviewer_cannot_delete(self, created, invoice_service):
        with pytest.raises(AccessDeniedError):
            await invoice_service.delete(created.id)
        assert await invoice_service.find(created.id) is not None

    @pytest.mark.asyncio
    async def test_delete_reports_failed_blobs(self, created, invoice_service, blobs, audit, admin):
        paths = []
        for n in range(3):
            attachment = await invoice_service.add_attachment(created.id, f"doc{n}.pdf", PDF, "application/pdf")
            paths.append(attachment.path)
        blobs.fail_deletes_for.add(paths[1])

        failed = await invoice_service.delete(created.id, actor=admin)

        assert failed == [paths[1]]
        assert blobs.delete_attempts == paths
        assert list(blobs.objects) == [paths[1]]
        assert await invoice_service.find(created.id) is None

        entry = (await audit.get_entity_history("invoice", created.id))[0]
        assert entry.type == ActivityType.INVOICE_DELETED
        assert entry.details["attachmentsDeleted"] == 2
        assert entry.details["attachmentsFailed"] == [paths[1]]

    @pytest.mark.asyncio
    async def test_delete_missing(self, invoice_service, admin):
        with pytest.raises(NotFoundError):
            await invoice_service.delete("nope", actor=admin)


class TestAttachments:
    """Upload, limits and cleanup."""

    @pytest.mark.asyncio
    async def test_add_attachment(self, created, invoice_service, blobs, audit):
        attachment = await invoice_service.add_attachment(created.id, "Receipt.PDF", PDF, "application/pdf")

        assert re.fullmatch(
            rf"organizations/{TEST_ORG_ID}/invoices/{created.id}/attachments/[0-9a-f-]{{36}}\.pdf",
            attachment.path,
        )
        assert attachment.name == "Receipt.PDF"
        assert attachment.size == len(PDF)
        assert attachment.url.endswith(attachment.path)
        assert attachment.uploaded_at is not None
        assert blobs.objects[attachment.path] == (PDF, "application/pdf")

        stored = await invoice_service.get(created.id)
        assert stored.attachments == [attachment]
        assert await history_types(audit, created.id) == [
            ActivityType.ATTACHMENT_ADDED,
            ActivityType.INVOICE_CREATED,
        ]

    @pytest.mark.asyncio
    async def test_extension_from_content_type(self, created, invoice_service):
        attachment = await invoice_service.add_attachment(created.id, "scan", b"\x89PNG", "image/png")
        assert attachment.path.endswith(".png")

    @pytest.mark.asyncio
    async def test_disallowed_type(self, created, invoice_service, blobs):
        with pytest.raises(ValidationError) as exc_info:
            await invoice_service.add_attachment(created.id, "notes.txt", b"hello", "text/plain")

        assert "type" in exc_info.value.errors
        assert blobs.objects == {}

    @pytest.mark.asyncio
    async def test_too_large(self, created, store, audit, blobs):
        service = InvoiceService(store, audit, blobs, LedgerConfig(max_attachment_bytes=4))

        with pytest.raises(ValidationError) as exc_info:
            await service.add_attachment(created.id, "big.pdf", PDF, "application/pdf")

        assert "size" in exc_info.value.errors
        assert blobs.objects == {}

    @pytest.mark.asyncio
    async def test_count_limit(self, created, store, audit, blobs):
        service = InvoiceService(store, audit, blobs, LedgerConfig(max_attachments_per_invoice=1))
        await service.add_attachment(created.id, "one.pdf", PDF, "application/pdf")

        with pytest.raises(ValidationError) as exc_info:
            await service.add_attachment(created.id, "two.pdf", PDF, "application/pdf")

        assert "attachments" in exc_info.value.errors
        assert len(blobs.objects) == 1

    @pytest.mark.asyncio
    async def test_failed_commit_removes_uploaded_blob(self, created, invoice_service, store, blobs, monkeypatch):
        async def failing_apply(writes):
            raise TransientStoreError("connection reset")

        monkeypatch.setattr(store, "_apply", failing_apply)

        with pytest.raises(TransientStoreError):
            await invoice_service.add_attachment(created.id, "doc.pdf", PDF, "application/pdf")

        assert blobs.objects == {}
        assert len(blobs.delete_attempts) == 1

    @pytest.mark.asyncio
    async def test_remove_attachment(self, created, invoice_service, blobs, audit):
        attachment = await invoice_service.add_attachment(created.id, "doc.pdf", PDF, "application/pdf")

        invoice = await invoice_service.remove_attachment(created.id, attachment.path)

        assert invoice.attachments == []
        assert blobs.objects == {}
        entry = (await audit.get_entity_history("invoice", created.id))[0]
        assert entry.type == ActivityType.ATTACHMENT_REMOVED
        assert entry.details == {"name": "doc.pdf", "path": attachment.path}

    @pytest.mark.asyncio
    async def test_remove_survives_blob_failure(self, created, invoice_service, blobs):
        attachment = await invoice_service.add_attachment(created.id, "doc.pdf", PDF, "application/pdf")
        blobs.fail_deletes_for.add(attachment.path)

        invoice = await invoice_service.remove_attachment(created.id, attachment.path)

        assert invoice.attachments == []
        assert (await invoice_service.get(created.id)).attachments == []

    @pytest.mark.asyncio
    async def test_failed_remove_commit_keeps_blob(self, created, invoice_service, store, blobs, audit, monkeypatch):
        attachment = await invoice_service.add_attachment(created.id, "doc.pdf", PDF, "application/pdf")

        async def failing_apply(writes):
            raise TransientStoreError("connection reset")

        monkeypatch.setattr(store, "_apply", failing_apply)

        with pytest.raises(TransientStoreError):
            await invoice_service.remove_attachment(created.id, attachment.path)
        monkeypatch.undo()

        stored = await invoice_service.get(created.id)
        assert [a.path for a in stored.attachments] == [attachment.path]
        assert attachment.path in blobs.objects
        assert blobs.delete_attempts == []
        assert ActivityType.ATTACHMENT_REMOVED not in await history_types(audit, created.id)

    @pytest.mark.asyncio
    async def test_remove_unknown_attachment(self, created, invoice_service):
        with pytest.raises(NotFoundError):
            await invoice_service.remove_attachment(created.id, "organizations/x/nothing.pdf")


class TestListing:
    """Per-user listing, filters and overdue detection."""

    @pytest_asyncio.fixture
    async def three_invoices(self, invoice_service, invoice_data, as_reviewer):
        january = await invoice_service.create(with_due(invoice_data, "2024-01-31"))
        march = await invoice_service.create({**with_due(invoice_data, "2024-03-31"), "clientId": "client-2"})
        february = await invoice_service.create(with_due(invoice_data, "2024-02-29"))
        await invoice_service.create({**invoice_data, "userId": TEST_USER_B_ID})
        return january, february, march

    @pytest.mark.asyncio
    async def test_newest_due_first_by_default(self, invoice_service, three_invoices):
        january, february, march = three_invoices

        invoices = await invoice_service.list_for_user(TEST_USER_ID)

        assert [i.id for i in invoices] == [march.id, february.id, january.id]

    @pytest.mark.asyncio
    async def test_ascending(self, invoice_service, three_invoices):
        january, february, march = three_invoices

        invoices = await invoice_service.list_for_user(TEST_USER_ID, sort_desc=False)

        assert [i.id for i in invoices] == [january.id, february.id, march.id]

    @pytest.mark.asyncio
    async def test_sort_by_total_is_numeric(self, invoice_service, invoice_data, as_reviewer):
        for price in ("20.00", "100.00", "9.00"):
            await invoice_service.create(with_price(invoice_data, price))

        ascending = await invoice_service.list_for_user(TEST_USER_ID, sort_by="total", sort_desc=False)
        descending = await invoice_service.list_for_user(TEST_USER_ID, sort_by="total")

        assert [i.total for i in ascending] == [Decimal("9.00"), Decimal("20.00"), Decimal("100.00")]
        assert [i.total for i in descending] == [Decimal("100.00"), Decimal("20.00"), Decimal("9.00")]

    @pytest.mark.asyncio
    async def test_total_range_is_numeric(self, invoice_service, invoice_data, as_reviewer):
        for price in ("20.00", "100.00", "9.00", "50.00"):
            await invoice_service.create(with_price(invoice_data, price))

        above = await invoice_service.query.fetch(
            invoice_service.collection_path, QueryOptions(order_by="total", start_at=50)
        )
        between = await invoice_service.query.fetch(
            invoice_service.collection_path, QueryOptions(order_by="total", start_at=10, end_at=50)
        )

        assert [d["total"] for d in above] == [50, 100]
        assert [d["total"] for d in between] == [20, 50]

    @pytest.mark.asyncio
    async def test_status_filter(self, invoice_service, three_invoices):
        january, _, _ = three_invoices
        await invoice_service.submit(january.id)

        pending = await invoice_service.list_for_user(TEST_USER_ID, status="pending")
        open_ones = await invoice_service.list_for_user(TEST_USER_ID, status=["draft", InvoiceStatus.PENDING])

        assert [i.id for i in pending] == [january.id]
        assert len(open_ones) == 3

    @pytest.mark.asyncio
    async def test_client_filter(self, invoice_service, three_invoices):
        _, _, march = three_invoices

        invoices = await invoice_service.list_for_user(TEST_USER_ID, client_id="client-2")

        assert [i.id for i in invoices] == [march.id]

    @pytest.mark.asyncio
    async def test_paging(self, invoice_service, three_invoices):
        january, _, _ = three_invoices

        second_page = await invoice_service.list_for_user(TEST_USER_ID, page=1, page_size=2)

        assert [i.id for i in second_page] == [january.id]

    @pytest.mark.asyncio
    async def test_unknown_status_filter(self, invoice_service):
        with pytest.raises(ValueError):
            await invoice_service.list_for_user(TEST_USER_ID, status="bogus")

    @pytest.mark.asyncio
    async def test_list_overdue(self, invoice_service, three_invoices, admin):
        january, february, march = three_invoices
        await invoice_service.add_payment(january.id, {**PAYMENT, "amount": "210"})

        overdue = await invoice_service.list_overdue(TEST_USER_ID, now=date(2024, 3, 15))

        assert [i.id for i in overdue] == [february.id]

        await invoice_service.cancel(february.id, actor=admin)
        assert await invoice_service.list_overdue(TEST_USER_ID, now=date(2024, 3, 15)) == []

    @pytest.mark.asyncio
    async def test_overdue_does_not_change_status(self, invoice_service, three_invoices):
        january, _, _ = three_invoices

        await invoice_service.list_overdue(TEST_USER_ID, now=date(2024, 12, 31))

        assert (await invoice_service.get(january.id)).status == InvoiceStatus.DRAFT


class TestSubscriptions:
    """Live updates."""

    @pytest.mark.asyncio
    async def test_subscribe_to_invoice(self, created, invoice_service, store, admin):
        seen = []
        unsubscribe = invoice_service.subscribe(created.id, seen.append)
        await store.wait_for_deliveries()

        await invoice_service.update(created.id, {"notes": "changed"})
        await store.wait_for_deliveries()
        await invoice_service.delete(created.id, actor=admin)
        await store.wait_for_deliveries()
        unsubscribe()

        assert seen[0].notes == "Thanks for your business"
        assert any(i is not None and i.notes == "changed" for i in seen)
        assert seen[-1] is None

    @pytest.mark.asyncio
    async def test_subscribe_to_user_invoices(self, invoice_service, invoice_data, store, as_reviewer):
        seen = []
        unsubscribe = invoice_service.subscribe_to_user_invoices(TEST_USER_ID, None, seen.append)
        await store.wait_for_deliveries()

        mine = await invoice_service.create(invoice_data)
        await store.wait_for_deliveries()
        await invoice_service.create({**invoice_data, "userId": TEST_USER_B_ID})
        await store.wait_for_deliveries()
        unsubscribe()

        assert seen[0] == []
        assert [i.id for i in seen[-1]] == [mine.id]


class TestOrganizationScope:
    """Services bound to one organization's subtree."""

    @pytest.mark.asyncio
    async def test_for_organization_paths(self, store, blobs, invoice_data, as_reviewer):
        service = InvoiceService.for_organization(store, "org-x", blobs)

        invoice = await service.create(invoice_data)

        assert service.collection_path == "organizations/org-x/invoices"
        assert (await store.get(f"organizations/org-x/invoices/{invoice.id}")).exists
        assert len(await service.audit.get_entity_history("invoice", invoice.id)) == 1
        assert (await store.get(f"invoices/{invoice.id}")).exists is False
