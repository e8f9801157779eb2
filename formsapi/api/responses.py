from __future__ import annotations

from typing import Any

from formsapi.domain.models import ApiResponse, Page


def ok(data: Any = None, message: str = "OK") -> ApiResponse[Any]:
    return ApiResponse[Any](success=True, message=message, data=data)


def fail(message: str, errors: dict[str, list[str]] | None = None) -> ApiResponse[Any]:
    return ApiResponse[Any](success=False, message=message, errors=errors)


def page_of(items: list[Any], total: int, page: int, page_size: int) -> Page[Any]:
    return Page[Any](items=items, total=total, page=page, page_size=page_size)
