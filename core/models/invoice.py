"""Invoice domain models.

Amounts are Decimal in Python and JSON numbers in the store, so amount
fields order and range-filter numerically. Every derived amount is rounded
half-up to cents before the total is summed, so
total == subtotal + taxAmount - discountAmount holds exactly on stored values.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from core.errors import NotFoundError, TransitionError, ValidationError
from core.models.document import DocumentModel, Money, Number, field_errors, to_cents
from utils.timezone import now_iso, now_utc, parse_date, to_utc

ZERO = Decimal("0.00")


class InvoiceStatus(str, Enum):
    """Invoice lifecycle status."""

    DRAFT = "draft"
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"  # derived; only found on legacy documents
    CANCELLED = "cancelled"


# Explicit transitions. Reaching PAID also needs a settled balance.
_TRANSITIONS: dict[InvoiceStatus, set[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: {InvoiceStatus.PENDING, InvoiceStatus.CANCELLED},
    InvoiceStatus.PENDING: {InvoiceStatus.PAID, InvoiceStatus.CANCELLED},
    InvoiceStatus.OVERDUE: {InvoiceStatus.PENDING, InvoiceStatus.PAID, InvoiceStatus.CANCELLED},
    InvoiceStatus.PAID: {InvoiceStatus.CANCELLED},
    InvoiceStatus.CANCELLED: set(),
}

# Recomputed from other fields, never assigned by callers
DERIVED_FIELDS = frozenset(
    {"subtotal", "taxAmount", "discountAmount", "total", "amountPaid", "outstandingAmount"}
)

# Changed only through their own entity methods
GUARDED_FIELDS = frozenset({"id", "userId", "status", "paymentHistory", "attachments", "createdAt", "updatedAt"})


def _parse_calendar_date(value: Any) -> Any:
    if isinstance(value, (str, datetime)) and value:
        try:
            return parse_date(value)
        except ValueError:
            return value
    if value == "":
        return None
    return value


class LineItem(DocumentModel):
    """One billed line. Fields are optional here so validation can report them."""

    description: str | None = None
    quantity: Number | None = None
    price: Number | None = None

    @property
    def amount(self) -> Decimal:
        return (self.quantity or 0) * (self.price or 0)

    def validation_errors(self) -> dict[str, str]:
        errors = {}
        if not self.description or not self.description.strip():
            errors["description"] = "Description is required"
        if self.quantity is None or self.quantity <= 0:
            errors["quantity"] = "Quantity must be greater than 0"
        if self.price is None or self.price < 0:
            errors["price"] = "Price must be 0 or more"
        return errors


class Payment(DocumentModel):
    """A recorded payment. Append-only once on an invoice."""

    id: str | None = None
    amount: Money | None = None
    paid_on: date | None = Field(None, alias="date")
    method: str | None = None
    notes: str | None = None
    created_at: str | None = None

    @field_validator("paid_on", mode="before")
    @classmethod
    def _normalize_date(cls, value: Any) -> Any:
        return _parse_calendar_date(value)

    def validation_errors(self) -> dict[str, str]:
        errors = {}
        if self.amount is None or self.amount <= 0:
            errors["amount"] = "Payment amount must be greater than 0"
        if self.paid_on is None:
            errors["date"] = "Payment date is required"
        if not self.method or not self.method.strip():
            errors["method"] = "Payment method is required"
        return errors


class Attachment(DocumentModel):
    """Descriptor of a file stored in blob storage."""

    name: str
    size: int = Field(..., ge=0)
    type: str
    url: str
    path: str
    uploaded_at: str | None = None


class Invoice(DocumentModel):
    """
    Invoice entity.

    Mutate only through the methods below; each one either applies fully
    or raises and leaves the entity untouched.
    """

    id: str | None = None
    user_id: str | None = None
    client_id: str | None = None
    invoice_number: str | None = None
    status: InvoiceStatus = InvoiceStatus.DRAFT
    issue_date: date | None = None
    due_date: date | None = None
    items: list[LineItem] = Field(default_factory=list)

    subtotal: Money = ZERO
    tax_rate: Number = ZERO
    tax_amount: Money = ZERO
    discount_rate: Number = ZERO
    discount_amount: Money = ZERO
    total: Money = ZERO
    amount_paid: Money = ZERO
    outstanding_amount: Money = ZERO

    payment_history: list[Payment] = Field(default_factory=list)
    attachments: list[Attachment] = Field(default_factory=list)
    notes: str | None = None
    terms: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @field_validator("issue_date", "due_date", mode="before")
    @classmethod
    def _normalize_dates(cls, value: Any) -> Any:
        return _parse_calendar_date(value)

    @field_validator("tax_rate", "discount_rate", mode="before")
    @classmethod
    def _blank_rate_is_zero(cls, value: Any) -> Any:
        return ZERO if value in (None, "") else value

    # ------------------------------------------------------------------
    # Derived amounts
    # ------------------------------------------------------------------

    def calculate_amounts(self) -> "Invoice":
        """Recompute every derived amount from items, rates and payments."""
        subtotal = to_cents(sum((item.amount for item in self.items), Decimal(0)))
        tax_amount = to_cents(subtotal * self.tax_rate / 100)
        discount_amount = to_cents(subtotal * self.discount_rate / 100)
        total = subtotal + tax_amount - discount_amount
        amount_paid = to_cents(sum((p.amount or 0 for p in self.payment_history), Decimal(0)))

        self.subtotal = subtotal
        self.tax_amount = tax_amount
        self.discount_amount = discount_amount
        self.total = total
        self.amount_paid = amount_paid
        self.outstanding_amount = total - amount_paid
        return self

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validation_errors(self) -> dict[str, Any]:
        """Field -> message map; empty when the invoice is valid."""
        errors: dict[str, Any] = {}
        if not self.user_id:
            errors["userId"] = "User ID is required"
        if not self.client_id:
            errors["clientId"] = "Client ID is required"
        if not self.invoice_number:
            errors["invoiceNumber"] = "Invoice number is required"
        if self.issue_date is None:
            errors["issueDate"] = "Issue date is required"
        if self.due_date is None:
            errors["dueDate"] = "Due date is required"
        elif self.issue_date is not None and self.due_date < self.issue_date:
            errors["dueDate"] = "Due date cannot be before issue date"

        if not self.items:
            errors["items"] = "At least one item is required"
        else:
            item_errors = {
                index: item_error
                for index, item in enumerate(self.items)
                if (item_error := item.validation_errors())
            }
            if item_errors:
                errors["items"] = item_errors

        for name, rate in (("taxRate", self.tax_rate), ("discountRate", self.discount_rate)):
            if not ZERO <= rate <= 100:
                errors[name] = "Rate must be between 0 and 100"
        return errors

    def ensure_valid(self) -> "Invoice":
        """Raise ValidationError unless the invoice is valid."""
        errors = self.validation_errors()
        if errors:
            raise ValidationError(errors, "Invalid invoice")
        return self

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def apply_changes(self, changes: dict[str, Any]) -> "Invoice":
        """
        Apply a partial update, recompute amounts and re-validate.

        Keys may be camelCase or snake_case. Derived amounts, status,
        payments and attachments cannot be set this way.

        Raises:
            ValidationError: On unknown, derived or guarded fields, or if the
                result is invalid. The invoice is left unchanged.
        """
        patch: dict[str, Any] = {}
        errors: dict[str, str] = {}
        for name, value in changes.items():
            key = self.storage_key(name)
            if key is None:
                errors[name] = "Unknown field"
            elif key in DERIVED_FIELDS:
                errors[key] = "Calculated field; it cannot be set directly"
            elif key in GUARDED_FIELDS:
                errors[key] = "Field cannot be changed with an update"
            else:
                patch[key] = value
        if errors:
            raise ValidationError(errors, "Invalid invoice update")
        if self.status == InvoiceStatus.CANCELLED:
            raise TransitionError(self.status.value, self.status.value, "cancelled invoices cannot be edited")

        candidate = self.from_document({**self.to_document(), **patch})
        candidate.calculate_amounts().ensure_valid()
        if candidate.status == InvoiceStatus.PAID and candidate.outstanding_amount > 0:
            raise ValidationError({"total": "A paid invoice cannot end up with a balance due"})
        self._adopt(candidate)
        return self

    def add_payment(self, payment: "Payment | dict[str, Any]") -> Payment:
        """
        Record a payment and advance the status.

        A first partial payment moves a draft to pending; a payment that
        settles the balance moves the invoice to paid.

        Returns:
            The payment as recorded (with id and createdAt)

        Raises:
            ValidationError: Amount <= 0, or date or method missing
            TransitionError: Invoice is cancelled or already paid
        """
        if isinstance(payment, dict):
            try:
                payment = Payment.model_validate(payment)
            except PydanticValidationError as e:
                raise ValidationError(field_errors(e), "Invalid payment") from e
        errors = payment.validation_errors()
        if errors:
            raise ValidationError(errors, "Invalid payment")
        if self.status in (InvoiceStatus.CANCELLED, InvoiceStatus.PAID):
            raise TransitionError(self.status.value, "payment", "invoice is closed for payments")

        recorded = payment.model_copy(
            update={
                "id": payment.id or uuid4().hex,
                "amount": to_cents(payment.amount),
                "created_at": payment.created_at or now_iso(),
            }
        )
        self.payment_history = [*self.payment_history, recorded]
        self.calculate_amounts()
        if self.outstanding_amount <= 0:
            self.status = InvoiceStatus.PAID
        elif self.status in (InvoiceStatus.DRAFT, InvoiceStatus.OVERDUE):
            self.status = InvoiceStatus.PENDING
        return recorded

    def update_status(self, status: "InvoiceStatus | str") -> "Invoice":
        """
        Move to another status.

        Raises:
            ValidationError: status is not a known value
            TransitionError: The move is not allowed from the current status
        """
        try:
            target = InvoiceStatus(status)
        except ValueError:
            raise ValidationError({"status": f"Invalid status: {status}"}, "Invalid status")

        if target == InvoiceStatus.OVERDUE:
            raise TransitionError(self.status.value, target.value, "overdue is derived from the due date")
        if target not in _TRANSITIONS[self.status]:
            raise TransitionError(self.status.value, target.value)
        if target == InvoiceStatus.PAID and self.outstanding_amount > 0:
            raise TransitionError(
                self.status.value, target.value, f"{self.outstanding_amount} still outstanding"
            )
        self.status = target
        return self

    def submit(self) -> "Invoice":
        """Send a draft for review."""
        self.ensure_valid()
        return self.update_status(InvoiceStatus.PENDING)

    def cancel(self) -> "Invoice":
        return self.update_status(InvoiceStatus.CANCELLED)

    def add_attachment(self, attachment: "Attachment | dict[str, Any]", max_count: int | None = None) -> Attachment:
        """
        Append an attachment descriptor.

        Raises:
            ValidationError: Malformed descriptor, duplicate path or too many attachments
        """
        if isinstance(attachment, dict):
            try:
                attachment = Attachment.model_validate(attachment)
            except PydanticValidationError as e:
                raise ValidationError(field_errors(e), "Invalid attachment") from e
        if max_count is not None and len(self.attachments) >= max_count:
            raise ValidationError({"attachments": f"At most {max_count} attachments are allowed"})
        if any(a.path == attachment.path for a in self.attachments):
            raise ValidationError({"attachments": f"An attachment is already stored at {attachment.path}"})
        if attachment.uploaded_at is None:
            attachment = attachment.model_copy(update={"uploaded_at": now_iso()})
        self.attachments = [*self.attachments, attachment]
        return attachment

    def remove_attachment(self, path: str) -> Attachment:
        """Drop the attachment stored at path and return its descriptor."""
        for index, attachment in enumerate(self.attachments):
            if attachment.path == path:
                self.attachments = self.attachments[:index] + self.attachments[index + 1:]
                return attachment
        raise NotFoundError("attachment", path)

    # ------------------------------------------------------------------
    # Observed state
    # ------------------------------------------------------------------

    def is_overdue(self, now: datetime | date | None = None) -> bool:
        """
        True if unpaid past the due date.

        Never true for paid or cancelled invoices. Does not change status.
        """
        if self.status in (InvoiceStatus.PAID, InvoiceStatus.CANCELLED):
            return False
        if self.due_date is None:
            return False
        if now is None:
            today = now_utc().date()
        elif isinstance(now, datetime):
            today = to_utc(now).date() if now.tzinfo else now.date()
        else:
            today = now
        return today > self.due_date and self.outstanding_amount > 0

    def effective_status(self, now: datetime | date | None = None) -> InvoiceStatus:
        """Stored status, or OVERDUE when is_overdue() says so."""
        if self.is_overdue(now):
            return InvoiceStatus.OVERDUE
        if self.status == InvoiceStatus.OVERDUE:
            return InvoiceStatus.PENDING
        return self.status

    @property
    def is_paid(self) -> bool:
        return self.status == InvoiceStatus.PAID
