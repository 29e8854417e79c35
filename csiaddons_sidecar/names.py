"""Helpers for names and string lists."""

from __future__ import annotations

import re
from typing import Iterable

_INVALID_LEASE_CHARS = re.compile(r"[^a-zA-Z0-9-]")


def normalize_lease_name(name: str) -> str:
    """Sanitise *name* so it can be used as the name of a Lease object."""
    if not name:
        raise ValueError("lease name must not be empty")
    name = _INVALID_LEASE_CHARS.sub("-", name)
    if name.endswith("-"):
        # a name must not end with '-'
        name += "X"
    return name


def remove_from_slice(items: Iterable[str], value: str) -> list[str]:
    """Return the items with every occurrence of *value* removed."""
    return [item for item in items if item != value]