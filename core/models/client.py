"""Client (billable counterparty) domain model."""

import re
from typing import Any

from email_validator import EmailNotValidError, validate_email

from core.errors import ValidationError
from core.models.document import DocumentModel

_PHONE_PATTERN = re.compile(r"^\+?\(?[0-9]{3}\)?[-\s.]?[0-9]{3}[-\s.]?[0-9]{4,6}$")

# Changed only through their own entity methods
GUARDED_FIELDS = frozenset({"id", "userId", "isActive", "createdAt", "updatedAt"})


class Client(DocumentModel):
    """
    Client entity as stored.

    Clients are soft-deleted by clearing is_active so invoices keep a valid
    reference; hard deletion is a separate service operation.
    """

    id: str | None = None
    user_id: str | None = None
    name: str | None = None
    email: str | None = None
    company: str | None = None
    phone: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None
    tax_id: str | None = None
    notes: str | None = None
    is_active: bool = True
    created_at: str | None = None
    updated_at: str | None = None

    def validation_errors(self) -> dict[str, str]:
        errors = {}
        if not self.user_id:
            errors["userId"] = "User ID is required"
        if not self.name or not self.name.strip():
            errors["name"] = "Name is required"
        if self.email:
            try:
                validate_email(self.email, check_deliverability=False)
            except EmailNotValidError:
                errors["email"] = "Invalid email format"
        if self.phone and not _PHONE_PATTERN.match(self.phone.strip()):
            errors["phone"] = "Invalid phone number format"
        return errors

    def ensure_valid(self) -> "Client":
        errors = self.validation_errors()
        if errors:
            raise ValidationError(errors, "Invalid client")
        return self

    def apply_changes(self, changes: dict[str, Any]) -> "Client":
        """
        Apply a partial update and re-validate.

        Raises:
            ValidationError: Unknown or guarded fields, or an invalid result.
                The client is left unchanged.
        """
        patch: dict[str, Any] = {}
        errors: dict[str, str] = {}
        for name, value in changes.items():
            key = self.storage_key(name)
            if key is None:
                errors[name] = "Unknown field"
            elif key in GUARDED_FIELDS:
                errors[key] = "Field cannot be changed with an update"
            else:
                patch[key] = value
        if errors:
            raise ValidationError(errors, "Invalid client update")

        candidate = self.from_document({**self.to_document(), **patch})
        candidate.ensure_valid()
        self._adopt(candidate)
        return self

    def activate(self) -> "Client":
        self.is_active = True
        return self

    def deactivate(self) -> "Client":
        self.is_active = False
        return self

    def has_complete_address(self) -> bool:
        """Street, city, postal code and country are all present."""
        return all([self.address, self.city, self.postal_code, self.country])

    def formatted_address(self) -> str:
        """One-line address, e.g. "1 Main St, Springfield, IL 62701, USA"."""
        region = f"{self.state} {self.postal_code}" if self.state and self.postal_code else (
            self.state or self.postal_code
        )
        parts = [self.address, self.city, region, self.country]
        return ", ".join(p for p in parts if p)

    @property
    def display_name(self) -> str:
        """Human-readable name for display."""
        if self.company and self.name:
            return f"{self.name} ({self.company})"
        return self.name or self.company or "Unnamed Client"
