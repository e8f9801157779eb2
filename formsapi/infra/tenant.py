from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class CallerContext:
    """Identity of the authenticated caller, as resolved from its token."""

    user_id: str
    department_id: str | None
    role_name: str | None
    is_super_admin: bool

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> CallerContext:
        return cls(
            user_id=str(claims["sub"]),
            department_id=claims.get("department_id"),
            role_name=claims.get("role"),
            is_super_admin=bool(claims.get("is_super_admin", False)),
        )
