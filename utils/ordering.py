"""
Ordering of child values in the tree store.

Children ordered by a field sort in this order:
missing/null, false, true, numbers (ascending), strings (lexicographic),
objects. Ties are broken by the child key. Both the in-memory backend
(native ordered queries) and the query engine (in-memory fallback) use
this module so results are identical whichever side orders them.
"""

from decimal import Decimal, InvalidOperation
from typing import Any

_NULL = 0
_FALSE = 1
_TRUE = 2
_NUMBER = 3
_STRING = 4
_OBJECT = 5


def value_rank(value: Any) -> tuple:
    """Sort key for a single child value."""
    if value is None:
        return (_NULL,)
    if value is False:
        return (_FALSE,)
    if value is True:
        return (_TRUE,)
    if isinstance(value, (int, float, Decimal)):
        return (_NUMBER, Decimal(str(value)))
    if isinstance(value, str):
        return (_STRING, value)
    return (_OBJECT,)


def child_sort_key(key: str, child: Any, order_by: str | None) -> tuple:
    """
    Sort key for a child node.

    Args:
        key: The child's key under its parent
        child: The child's value
        order_by: Field of the child to order by; None orders by key only
    """
    if order_by is None:
        return ((_STRING, key), key)
    value = child.get(order_by) if isinstance(child, dict) else None
    return (value_rank(value), key)


def in_range(value: Any, start_at: Any = None, end_at: Any = None) -> bool:
    """True if value lies within the inclusive [start_at, end_at] window."""
    rank = value_rank(value)
    if start_at is not None and rank < value_rank(start_at):
        return False
    if end_at is not None and rank > value_rank(end_at):
        return False
    return True


def values_equal(left: Any, right: Any) -> bool:
    """Equality that treats 10, 10.0 and Decimal("10.00") as the same number."""
    if isinstance(left, bool) or isinstance(right, bool):
        return left is right
    if isinstance(left, (int, float, Decimal)) and isinstance(right, (int, float, Decimal)):
        try:
            return Decimal(str(left)) == Decimal(str(right))
        except InvalidOperation:
            return False
    return left == right
