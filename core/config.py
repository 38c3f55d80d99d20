"""Ledger configuration."""

from pydantic import BaseModel, Field

DEFAULT_ATTACHMENT_TYPES = (
    "application/pdf",
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/webp",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
)


class LedgerConfig(BaseModel):
    """
    Invoice ledger configuration.

    Sizes are in bytes and durations in seconds. Defaults match what the
    review UI enforces on the client side.
    """

    # Store
    operation_timeout_seconds: float = Field(
        default=10.0,
        description="Deadline for every store operation",
        gt=0,
        le=120,
    )

    # Attachments
    max_attachment_bytes: int = Field(
        default=10 * 1024 * 1024,
        description="Largest accepted attachment",
        ge=1,
    )
    max_attachments_per_invoice: int = Field(
        default=5,
        description="Attachments allowed on one invoice",
        ge=0,
        le=50,
    )
    allowed_attachment_types: tuple[str, ...] = Field(
        default=DEFAULT_ATTACHMENT_TYPES,
        description="MIME types accepted for attachments",
    )

    # Listing
    default_page_size: int = Field(
        default=20,
        description="Page size when a caller pages without giving one",
        ge=1,
        le=500,
    )

    # Numbering
    invoice_number_prefix: str = Field(
        default="INV",
        description="Prefix of generated invoice numbers",
        min_length=1,
        max_length=10,
    )
