"""Common helpers for API responses."""
from __future__ import annotations

from typing import Any, TypeVar


T = TypeVar("T")


def data_response(payload: T) -> dict[str, T]:
    """Wrap a payload in the standard data envelope."""

    return {"data": payload}


def page_response(items: list[T], total: int, page: int, size: int) -> dict[str, Any]:
    """Wrap one page of a listing with its pagination metadata."""

    return {"data": items, "meta": {"total": total, "page": page, "size": size}}
