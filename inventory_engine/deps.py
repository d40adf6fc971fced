from __future__ import annotations

import logging
from typing import Optional

from fastapi import Header, HTTPException, status

from inventory_engine.core.exceptions import (
    ConcurrencyConflict,
    CrossScopeViolation,
    IngredientNotFoundError,
    InsufficientStockError,
    InvalidScopeError,
    RecipeNotFoundError,
    StoreUnavailableError,
)
from inventory_engine.core.request_context import set_request_context
from inventory_engine.services.cost_sync import CostSynchronizer, cost_synchronizer
from inventory_engine.services.event_bus import EventBus, event_bus
from inventory_engine.services.recipe_index import RecipeIndex, recipe_index
from inventory_engine.services.scope_resolver import Scope, normalize_tenant_id, scope_for
from inventory_engine.services.sync_queue import SyncQueue, sync_queue

logger = logging.getLogger(__name__)


def get_scope(
    x_tenant_id: Optional[str] = Header(None),
    x_branch_id: Optional[str] = Header(None),
) -> Scope:
    """Partition key for the request, from the identity headers set upstream."""
    if x_tenant_id is None or x_branch_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-ID and X-Branch-ID headers are required",
        )
    try:
        scope = scope_for(x_tenant_id, x_branch_id)
    except InvalidScopeError as exc:
        logger.warning("Rejected scope tenant=%r branch=%r: %s", x_tenant_id, x_branch_id, exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    set_request_context(tenant_id=scope.tenant_id, location_id=scope.location_id)
    return scope


def get_tenant_id(x_tenant_id: Optional[str] = Header(None)) -> str:
    try:
        tenant_id = normalize_tenant_id(x_tenant_id)
    except InvalidScopeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    set_request_context(tenant_id=tenant_id)
    return tenant_id


_STATUS_BY_ERROR = (
    (InvalidScopeError, status.HTTP_400_BAD_REQUEST),
    (CrossScopeViolation, status.HTTP_403_FORBIDDEN),
    (IngredientNotFoundError, status.HTTP_404_NOT_FOUND),
    (RecipeNotFoundError, status.HTTP_404_NOT_FOUND),
    (InsufficientStockError, status.HTTP_409_CONFLICT),
    (ConcurrencyConflict, status.HTTP_409_CONFLICT),
    (StoreUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (LookupError, status.HTTP_404_NOT_FOUND),
    (ValueError, status.HTTP_400_BAD_REQUEST),
)


def http_error(exc: Exception) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal error")


def get_recipe_index() -> RecipeIndex:
    return recipe_index


def get_event_bus() -> EventBus:
    return event_bus


def get_sync_queue() -> SyncQueue:
    return sync_queue


def get_cost_synchronizer() -> CostSynchronizer:
    return cost_synchronizer
