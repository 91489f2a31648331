from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class AuthContext:
    """The acting principal, resolved from the external session."""

    user_id: str
    correlation_id: str | None = None
    roles: list[str] = field(default_factory=list)
