"""Audit trail of CRM mutations, written as structured records on the ``showroom.audit`` logger."""

from __future__ import annotations

import logging
from typing import Any

from showroom.context import get_correlation_id, reset_correlation_id, set_correlation_id


logger = logging.getLogger("showroom.audit")


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> None:
    # The record factory stamps correlation_id from the context var, so the
    # caller's id is bound there for the duration of the call.
    token = set_correlation_id(correlation_id or get_correlation_id())
    try:
        logger.info(
            "audit.%s",
            action,
            extra={
                "principal_id": actor_user_id,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "action": action,
                "before": before,
                "after": after,
            },
        )
    finally:
        reset_correlation_id(token)
