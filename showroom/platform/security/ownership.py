"""Ownership predicates keyed on entity type.

Every scoped query path goes through :func:`ownership_predicate`, so an entity
without a registered rule fails loudly instead of silently returning rows that
belong to other principals.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from sqlalchemy import ColumnElement, exists, select, true
from sqlalchemy.orm import InstrumentedAttribute, Session
from sqlalchemy.sql import Select

from showroom.platform.security.context import AuthContext


OwnershipRule = Callable[[str], ColumnElement[bool]]

_RULES: dict[type[Any], OwnershipRule] = {}


def register_ownership(model: type[Any], rule: OwnershipRule) -> None:
    _RULES[model] = rule


def owned_through(foreign_key: InstrumentedAttribute[Any], parent: type[Any]) -> OwnershipRule:
    """Rule for a child entity owned transitively by whoever owns its parent row."""

    def rule(principal_id: str) -> ColumnElement[bool]:
        parent_ids = select(parent.id).where(ownership_predicate_for(parent, principal_id))
        return foreign_key.in_(parent_ids)

    return rule


def unscoped(_principal_id: str) -> ColumnElement[bool]:
    return true()


def ownership_predicate_for(model: type[Any], principal_id: str) -> ColumnElement[bool]:
    rule = _RULES.get(model)
    if rule is None:
        raise LookupError(f"No ownership rule registered for {model.__name__}")
    return rule(principal_id)


def ownership_predicate(model: type[Any], ctx: AuthContext) -> ColumnElement[bool]:
    return ownership_predicate_for(model, ctx.user_id)


def apply_ownership_filter(query: Select[Any], model: type[Any], ctx: AuthContext) -> Select[Any]:
    return query.where(ownership_predicate(model, ctx))


def is_owned(session: Session, model: type[Any], entity_id: int, ctx: AuthContext) -> bool:
    stmt = select(exists().where(model.id == entity_id).where(ownership_predicate(model, ctx)))
    return bool(session.scalar(stmt))
