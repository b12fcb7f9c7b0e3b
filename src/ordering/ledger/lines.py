"""Line-entry arithmetic shared by orders, order items and carts.

Tax, shipping, discount, coupon and override lines are all ``{name, price}``
entries in integer minor units. They are stored as JSON text on the owning
element.
"""

import json
from collections.abc import Iterable, Mapping


def load_lines(raw: str | None) -> list[dict]:
    """Decode a stored JSON line array. Empty or missing storage is an empty list."""
    if not raw:
        return []
    return json.loads(raw) if isinstance(raw, str) else list(raw)


def dump_lines(lines: Iterable[Mapping] | None) -> str:
    return json.dumps([dict(line) for line in lines or []])


def sum_lines(lines: Iterable[Mapping] | str | None) -> int:
    """Return the integer sum of ``price`` across line entries."""
    if isinstance(lines, str) or lines is None:
        lines = load_lines(lines)
    return sum(int(line.get("price") or 0) for line in lines)


def upsert_line(lines: list[dict], name: str, price: int) -> list[dict]:
    """Return a copy of ``lines`` with the entry called ``name`` set to ``price``."""
    updated = [dict(line) for line in lines if line.get("name") != name]
    position = next((i for i, line in enumerate(lines) if line.get("name") == name), len(updated))
    updated.insert(position, {"name": name, "price": int(price)})
    return updated


def remove_line(lines: list[dict], name: str) -> list[dict]:
    return [dict(line) for line in lines if line.get("name") != name]


def find_line(lines: Iterable[Mapping], name: str) -> Mapping | None:
    return next((line for line in lines if line.get("name") == name), None)
