from showroom.platform.security.context import AuthContext
from showroom.platform.security.ownership import (
    apply_ownership_filter,
    is_owned,
    owned_through,
    ownership_predicate,
    register_ownership,
    unscoped,
)
from showroom.platform.security.repository import BaseRepository

__all__ = [
    "AuthContext",
    "BaseRepository",
    "apply_ownership_filter",
    "is_owned",
    "owned_through",
    "ownership_predicate",
    "register_ownership",
    "unscoped",
]
