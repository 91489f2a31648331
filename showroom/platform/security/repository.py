from __future__ import annotations

import logging
from typing import Any, ClassVar, Generic, NoReturn, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from showroom.core.errors import NotFoundError
from showroom.metrics import observe_tenancy_not_found
from showroom.platform.security.context import AuthContext
from showroom.platform.security.ownership import apply_ownership_filter, is_owned


logger = logging.getLogger("showroom.security")

ModelT = TypeVar("ModelT")


class BaseRepository(Generic[ModelT]):
    model: ClassVar[type[Any]]
    resource = ""
    label = "entity"

    def apply_scope_query(self, query: Select[Any], ctx: AuthContext) -> Select[Any]:
        return apply_ownership_filter(query, self.model, ctx)

    def scoped_select(self, ctx: AuthContext) -> Select[Any]:
        return self.apply_scope_query(select(self.model), ctx)

    def is_visible(self, session: Session, ctx: AuthContext, entity_id: int) -> bool:
        return is_owned(session, self.model, entity_id, ctx)

    def get_visible(self, session: Session, ctx: AuthContext, entity_id: int) -> ModelT:
        row = session.scalar(self.scoped_select(ctx).where(self.model.id == entity_id))
        if row is None:
            self.not_found(ctx, entity_id)
        return row

    def ensure_visible(self, session: Session, ctx: AuthContext, entity_id: int) -> None:
        if not self.is_visible(session, ctx, entity_id):
            self.not_found(ctx, entity_id)

    def not_found(self, ctx: AuthContext, entity_id: int) -> NoReturn:
        observe_tenancy_not_found(self.resource)
        logger.info(
            "tenancy.not_found",
            extra={"entity_type": self.resource, "entity_id": entity_id, "principal_id": ctx.user_id},
        )
        raise NotFoundError(f"{self.label} not found")
