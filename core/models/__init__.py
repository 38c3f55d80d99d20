"""Core domain models."""

from core.models.document import DocumentModel, to_cents
from core.models.invoice import Invoice, InvoiceStatus, LineItem, Payment, Attachment
from core.models.client import Client
from core.models.activity import ActivityEntry, ActivityType

__all__ = [
    "DocumentModel", "to_cents",
    # Invoice
    "Invoice", "InvoiceStatus", "LineItem", "Payment", "Attachment",
    # Client
    "Client",
    # Activity
    "ActivityEntry", "ActivityType",
]
