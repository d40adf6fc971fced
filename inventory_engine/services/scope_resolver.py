"""Canonical (tenant, location) partition keys.

Every read and write in the engine is partitioned by the pair produced here.
Callers never assemble a ``locationId`` by hand; they pass the human-facing
branch identifier through :func:`resolve_location` or :func:`scope_for`.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Any

from inventory_engine.core.config import LOCATION_ID_PREFIX
from inventory_engine.core.exceptions import CrossScopeViolation, InvalidScopeError

_BRANCH_CODE_RE = re.compile(r"^[A-Z0-9][A-Z0-9_-]{0,63}$")
_KNOWN_PREFIXES = ("LOCATION_", "LOC_")

COLLECTIONS = {"inventory", "menuItems", "posItems", "orders", "stockMovements"}


def _normalize_branch_code(value: str) -> str:
    value = unicodedata.normalize("NFKC", value).strip().upper()
    for prefix in _KNOWN_PREFIXES:
        if value.startswith(prefix):
            value = value[len(prefix):]
            break
    return value


def resolve_location(branch_id: Any) -> str:
    """Map a branch identifier to its canonical location id.

    Pure and idempotent: ``" b1 "``, ``"B1"`` and ``"loc_B1"`` all resolve to
    ``"loc_B1"``. Anything that cannot be normalized raises InvalidScopeError.
    """
    if not isinstance(branch_id, str):
        raise InvalidScopeError(f"Branch id must be a string, got {type(branch_id).__name__}")

    code = _normalize_branch_code(branch_id)
    if not code:
        raise InvalidScopeError("Branch id is empty")
    if not _BRANCH_CODE_RE.match(code):
        raise InvalidScopeError(f"Branch id {branch_id!r} is not a valid branch code")
    return f"{LOCATION_ID_PREFIX}{code}"


def is_canonical_location(location_id: Any) -> bool:
    if not isinstance(location_id, str) or not location_id.startswith(LOCATION_ID_PREFIX):
        return False
    try:
        return resolve_location(location_id) == location_id
    except InvalidScopeError:
        return False


def normalize_tenant_id(tenant_id: Any) -> str:
    if not isinstance(tenant_id, str):
        raise InvalidScopeError(f"Tenant id must be a string, got {type(tenant_id).__name__}")
    normalized = unicodedata.normalize("NFKC", tenant_id).strip()
    if not normalized:
        raise InvalidScopeError("Tenant id is empty")
    if "/" in normalized or any(char.isspace() for char in normalized):
        raise InvalidScopeError(f"Tenant id {tenant_id!r} contains invalid characters")
    return normalized


@dataclass(frozen=True)
class Scope:
    tenant_id: str
    location_id: str

    @classmethod
    def from_location(cls, tenant_id: str, location_id: str) -> "Scope":
        """Rebuild a scope from stored ids; the location id must already be canonical."""
        if not is_canonical_location(location_id):
            raise InvalidScopeError(f"Location id {location_id!r} is not canonical")
        return cls(tenant_id=normalize_tenant_id(tenant_id), location_id=location_id)

    def as_fields(self) -> dict[str, str]:
        return {"tenant_id": self.tenant_id, "location_id": self.location_id}


def scope_for(tenant_id: Any, branch_id: Any) -> Scope:
    return Scope(tenant_id=normalize_tenant_id(tenant_id), location_id=resolve_location(branch_id))


def document_path(scope: Scope, collection: str, document_id: str) -> str:
    if collection not in COLLECTIONS:
        raise ValueError(f"Unknown collection {collection}")
    return f"tenants/{scope.tenant_id}/{collection}/{document_id}"


def scoped_query(db, model, scope: Scope):
    """Start a query on ``model`` already restricted to ``scope``."""
    if getattr(model, "tenant_id", None) is None or getattr(model, "location_id", None) is None:
        raise CrossScopeViolation(f"{getattr(model, '__name__', model)} is not a scoped model")
    return db.query(model).filter(
        model.tenant_id == scope.tenant_id,
        model.location_id == scope.location_id,
    )


def ensure_in_scope(document, scope: Scope) -> None:
    tenant_id = getattr(document, "tenant_id", None)
    location_id = getattr(document, "location_id", None)
    if tenant_id != scope.tenant_id or location_id != scope.location_id:
        raise CrossScopeViolation(
            f"Document {getattr(document, 'id', None)} belongs to {tenant_id}/{location_id}, "
            f"not {scope.tenant_id}/{scope.location_id}"
        )
