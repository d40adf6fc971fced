from __future__ import annotations

import uuid

from sqlalchemy import Column, String, event
from sqlalchemy.orm import Session

from inventory_engine.core.exceptions import CrossScopeViolation
from inventory_engine.services.scope_resolver import is_canonical_location


def new_document_id() -> str:
    return uuid.uuid4().hex


class ScopedColumns:
    """tenant_id + location_id carried by every partitioned document."""

    tenant_id = Column(String(128), nullable=False, index=True)
    location_id = Column(String(80), nullable=False, index=True)


def _validate_scoped(obj) -> None:
    tenant_id = getattr(obj, "tenant_id", None)
    location_id = getattr(obj, "location_id", None)
    if not tenant_id or not location_id:
        raise CrossScopeViolation(
            f"{type(obj).__name__} {getattr(obj, 'id', None)} is missing tenant_id/location_id"
        )
    if not is_canonical_location(location_id):
        raise CrossScopeViolation(
            f"{type(obj).__name__} {getattr(obj, 'id', None)} has non-canonical location_id {location_id!r}"
        )


@event.listens_for(Session, "before_flush")
def _enforce_scope_on_write(session, _flush_context, _instances) -> None:
    for obj in list(session.new) + list(session.dirty):
        if isinstance(obj, ScopedColumns):
            _validate_scoped(obj)
