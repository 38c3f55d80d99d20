"""Shared base for models stored as documents in the tree store.

Documents use camelCase keys ("userId", "amountPaid"); Python code uses
snake_case attributes. Keys the model does not know are dropped on read.
Decimal fields are stored as JSON numbers so the store orders and
range-filters them numerically; inside the entity they stay Decimal.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Annotated, Any, Self

from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict, PlainSerializer
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from core.errors import ValidationError

CENT = Decimal("0.01")


def to_cents(value: Decimal) -> Decimal:
    """Round a money amount half-up to two decimal places."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _stored_number(value: Decimal) -> int | float:
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def _read_number(value: Any) -> Any:
    # Floats go through their shortest repr, not the binary expansion
    if isinstance(value, float):
        return str(value)
    return value


# Decimal in Python, JSON number in the store
Number = Annotated[
    Decimal,
    BeforeValidator(_read_number),
    PlainSerializer(_stored_number, when_used="json"),
]

# Number rounded to cents on the way in
Money = Annotated[
    Decimal,
    BeforeValidator(_read_number),
    AfterValidator(to_cents),
    PlainSerializer(_stored_number, when_used="json"),
]


def field_errors(exc: PydanticValidationError) -> dict[str, Any]:
    """
    Turn pydantic's error list into a nested field -> message map.

    ("items", 1, "price") becomes {"items": {1: {"price": "..."}}}.
    """
    errors: dict[Any, Any] = {}
    for error in exc.errors():
        loc = list(error["loc"]) or ["document"]
        node = errors
        for part in loc[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node.setdefault(loc[-1], error["msg"])
    return errors


class DocumentModel(BaseModel):
    """Base model with the storage (de)serialization boundary."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    @classmethod
    def from_document(cls, data: dict[str, Any], id: str | None = None) -> Self:
        """
        Build the entity from a stored document.

        Args:
            data: Document as read from the store (camelCase keys)
            id: Node key, used when the document does not carry its own id

        Raises:
            ValidationError: If a value has the wrong type
        """
        payload = dict(data)
        if id is not None and not payload.get("id"):
            payload["id"] = id
        try:
            return cls.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(field_errors(e)) from e

    def to_document(self) -> dict[str, Any]:
        """Storage shape: camelCase keys, JSON-safe values, unset fields omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_patch(self, previous: dict[str, Any]) -> dict[str, Any]:
        """
        Merge-write payload turning previous into this document.

        Keys present before but unset now map to None, which removes them.
        """
        document = self.to_document()
        for key in previous:
            if key not in document and key not in ("createdAt", "updatedAt"):
                document[key] = None
        return document

    @classmethod
    def storage_key(cls, name: str) -> str | None:
        """camelCase document key for a snake_case or camelCase field name."""
        for field_name, info in cls.model_fields.items():
            alias = info.alias or field_name
            if name in (field_name, alias):
                return alias
        return None

    def _adopt(self, other: Self) -> None:
        """Take over every field value of other (same class)."""
        for name in type(self).model_fields:
            setattr(self, name, getattr(other, name))
