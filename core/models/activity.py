"""Activity log entry model."""

from enum import Enum
from typing import Any

from pydantic import Field

from core.models.document import DocumentModel


class ActivityType(str, Enum):
    """Mutations recorded in the activity log."""

    INVOICE_CREATED = "invoice_created"
    INVOICE_UPDATED = "invoice_updated"
    INVOICE_PAYMENT_ADDED = "invoice_payment_added"
    INVOICE_STATUS_CHANGED = "invoice_status_changed"
    INVOICE_DELETED = "invoice_deleted"
    ATTACHMENT_ADDED = "attachment_added"
    ATTACHMENT_REMOVED = "attachment_removed"
    CLIENT_CREATED = "client_created"
    CLIENT_UPDATED = "client_updated"
    CLIENT_STATUS_CHANGED = "client_status_changed"
    CLIENT_DELETED = "client_deleted"


class ActivityEntry(DocumentModel):
    """One immutable audit record. id is a push id, so ids sort by time."""

    id: str
    type: ActivityType
    user_id: str
    entity_type: str
    entity_id: str
    timestamp: str
    details: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}
