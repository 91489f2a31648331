"""Forward-only cursor pages over a stable total order.

A page request fetches ``limit + 1`` rows. When the extra row comes back it is
dropped from the page and its id becomes ``next_cursor``; the following request
starts at that row (inclusive). Every ordering ends with ``id ASC`` so that ties
on the business sort keys still yield a single, deterministic boundary.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from sqlalchemy import ColumnElement, and_, or_
from sqlalchemy.orm import InstrumentedAttribute, Session
from sqlalchemy.sql import Select
from sqlalchemy.sql.base import ExecutableOption

from showroom.core.config import get_settings
from showroom.core.errors import InvalidInputError


T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class SortKey:
    expression: ColumnElement[Any] | InstrumentedAttribute[Any]
    descending: bool = False

    def ordering(self) -> ColumnElement[Any]:
        return self.expression.desc() if self.descending else self.expression.asc()


@dataclass(slots=True)
class PageResult(Generic[T]):
    items: list[T]
    next_cursor: int | None


def resolve_limit(limit: int | None, *, default: int | None = None, maximum: int | None = None) -> int:
    settings = get_settings()
    if limit is None:
        limit = settings.page_size_default if default is None else default
    if maximum is None:
        maximum = settings.page_size_max
    if limit < 1 or limit > maximum:
        raise InvalidInputError(f"limit must be between 1 and {maximum}")
    return limit


def _at_or_after(keys: Sequence[SortKey], boundary: Sequence[Any]) -> ColumnElement[bool]:
    clauses: list[ColumnElement[bool]] = []
    last = len(keys) - 1
    for index, key in enumerate(keys):
        equal_prefix = [keys[position].expression == boundary[position] for position in range(index)]
        value = boundary[index]
        if index == last:
            step = key.expression >= value
        elif key.descending:
            step = key.expression < value
        else:
            step = key.expression > value
        clauses.append(and_(*equal_prefix, step))
    return or_(*clauses)


def paginate(
    session: Session,
    stmt: Select[Any],
    *,
    id_column: InstrumentedAttribute[int],
    sort_keys: Sequence[SortKey],
    cursor: int | None,
    limit: int | None,
    options: Sequence[ExecutableOption] = (),
) -> PageResult[Any]:
    """Return one page of ``stmt``.

    ``stmt`` must already carry the caller's filters and the ownership predicate;
    the cursor row is resolved through the same statement, so a cursor that is
    not visible to the caller produces an empty page rather than leaking rows.
    """

    limit = resolve_limit(limit)
    keys = [*sort_keys, SortKey(id_column)]

    if cursor is not None:
        boundary = session.execute(
            stmt.with_only_columns(*[key.expression for key in keys]).where(id_column == cursor)
        ).first()
        if boundary is None:
            return PageResult(items=[], next_cursor=None)
        stmt = stmt.where(_at_or_after(keys, tuple(boundary)))

    ordered = stmt.order_by(*[key.ordering() for key in keys]).limit(limit + 1)
    if options:
        ordered = ordered.options(*options)
    rows = list(session.scalars(ordered).all())

    next_cursor: int | None = None
    if len(rows) > limit:
        next_cursor = rows.pop().id
    return PageResult(items=rows, next_cursor=next_cursor)
