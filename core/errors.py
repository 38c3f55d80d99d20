"""Typed exceptions for domain failures.

Raised synchronously before any store call. Store failures have their own
hierarchy in clients.store_client and are never wrapped in these.
"""

from typing import Any


class DomainError(Exception):
    """Base class for invoice/client domain errors."""


class ValidationError(DomainError):
    """
    Entity invariant violated. Never persisted.

    errors maps field names to messages; line items report per-index maps
    under "items", e.g. {"items": {0: {"quantity": "..."}}}.
    """

    def __init__(self, errors: dict[str, Any], message: str = "Validation failed"):
        self.errors = errors
        fields = ", ".join(sorted(str(k) for k in errors))
        super().__init__(f"{message}: {fields}" if fields else message)


class NotFoundError(DomainError):
    """Referenced document does not exist."""

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.capitalize()} {entity_id} not found")


class TransitionError(DomainError):
    """Illegal status change, or a payment on a closed invoice."""

    def __init__(self, current: str, target: str, reason: str | None = None):
        self.current = current
        self.target = target
        detail = f": {reason}" if reason else ""
        super().__init__(f"Cannot move invoice from {current} to {target}{detail}")


class AccessDeniedError(DomainError):
    """Actor lacks the role needed for the operation. Not retryable."""


class ClientInUseError(DomainError):
    """Client is still referenced by invoices and cannot be hard deleted."""

    def __init__(self, client_id: str, invoice_ids: list[str]):
        self.client_id = client_id
        self.invoice_ids = invoice_ids
        super().__init__(
            f"Client {client_id} is referenced by {len(invoice_ids)} invoice(s)"
        )
