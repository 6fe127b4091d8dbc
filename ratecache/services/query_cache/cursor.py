"""Opaque cursors for keyset pagination.

A cursor encodes the ``(order value, id)`` of an item. It never refers to
a cache entry, so it stays valid after any cached page has expired.
"""

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Union

OrderValue = Union[str, int, float]
ItemId = Union[int, str]

NEXT = "next"
PREV = "prev"


@dataclass(frozen=True)
class Cursor:
    """Decoded cursor position."""

    order_value: OrderValue
    id: ItemId

    def key(self) -> tuple:
        return (self.order_value, self.id)


def encode_cursor(order_value: OrderValue, item_id: ItemId) -> str:
    """Encode an item position as a URL-safe opaque string."""
    raw = json.dumps(
        {"v": order_value, "id": item_id},
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: Optional[str]) -> Optional[Cursor]:
    """Decode a cursor string.

    Returns:
        The Cursor, or None for a missing or malformed cursor. Never raises.
    """
    if not cursor or not isinstance(cursor, str):
        return None

    padded = cursor.strip() + "=" * (-len(cursor.strip()) % 4)
    try:
        decoded = base64.urlsafe_b64decode(padded.encode("ascii"))
        data = json.loads(decoded.decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeError):
        # json.JSONDecodeError is a ValueError
        return None

    if not isinstance(data, dict) or "v" not in data or "id" not in data:
        return None
    order_value, item_id = data["v"], data["id"]
    if not isinstance(order_value, (str, int, float)) or isinstance(order_value, bool):
        return None
    if not isinstance(item_id, (str, int)) or isinstance(item_id, bool):
        return None
    return Cursor(order_value=order_value, id=item_id)


def item_field(item: Any, name: str) -> Any:
    """Read a field from a mapping or an object."""
    if isinstance(item, Mapping):
        return item[name]
    return getattr(item, name)


def cursor_filter(cursor: Cursor, direction: str) -> dict:
    """Query fragment applied before fetching a page.

    ``next`` pages walk towards smaller ``(order, id)`` pairs, ``prev``
    pages towards larger ones.
    """
    return {
        "op": "<" if direction == NEXT else ">",
        "value": cursor.order_value,
        "id": cursor.id,
    }


def select_page(
    items: Iterable[Any],
    filter_: Optional[Mapping[str, Any]],
    limit: int,
    order_field: str = "date",
    id_field: str = "id",
) -> List[Any]:
    """Reference keyset page selection over an in-memory sequence.

    Items are ordered by ``(order_field DESC, id_field DESC)``; the id is
    the strictly ordered tie-break. Data sources backed by SQL express the
    same filter as ``(order, id) < (:value, :id)``.

    Args:
        items: Candidate items in any order
        filter_: The ``cursor`` fragment of the query, or None for page one
        limit: Page size
        order_field: Primary ordering field
        id_field: Tie-break field

    Returns:
        At most ``limit`` items in descending order
    """
    def sort_key(item: Any) -> tuple:
        return (item_field(item, order_field), item_field(item, id_field))

    ordered = sorted(items, key=sort_key, reverse=True)
    if not filter_:
        return ordered[:limit]

    position = (filter_["value"], filter_["id"])
    if filter_["op"] == "<":
        return [item for item in ordered if sort_key(item) < position][:limit]

    # Previous page: the items closest above the cursor, still shown DESC
    above = [item for item in reversed(ordered) if sort_key(item) > position]
    return list(reversed(above[:limit]))
