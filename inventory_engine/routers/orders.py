from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from inventory_engine.core.database import get_db
from inventory_engine.core.exceptions import InventoryEngineError
from inventory_engine.deps import get_recipe_index, get_scope, get_sync_queue, http_error
from inventory_engine.models.order import Order
from inventory_engine.schemas.documents import OrderCreate
from inventory_engine.services.deductor import QUEUED, complete_order_or_enqueue, fulfill_order
from inventory_engine.services.recipe_index import RecipeIndex
from inventory_engine.services.scope_resolver import Scope, document_path, scoped_query
from inventory_engine.services.sync_queue import SyncQueue

router = APIRouter(prefix="/api/orders", tags=["orders"])


def _order_to_dict(order: Order, scope: Scope) -> dict:
    return {
        "id": order.id,
        "path": document_path(scope, "orders", order.id),
        "tenant_id": order.tenant_id,
        "location_id": order.location_id,
        "idempotency_key": order.idempotency_key,
        "status": order.status,
        "total": str(order.total),
        "stock_applied_at": order.stock_applied_at.isoformat() if order.stock_applied_at else None,
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "lines": [
            {
                "menu_item_id": line.menu_item_id,
                "pos_item_id": line.pos_item_id,
                "name": line.name,
                "quantity": str(line.quantity),
                "unit_price": str(line.unit_price),
                "line_total": str(line.line_total),
            }
            for line in order.lines
        ],
    }


@router.post("/complete")
def complete(
    payload: OrderCreate,
    scope: Scope = Depends(get_scope),
    db: Session = Depends(get_db),
    index: RecipeIndex = Depends(get_recipe_index),
    queue: SyncQueue = Depends(get_sync_queue),
):
    try:
        result = complete_order_or_enqueue(db, scope, payload.model_dump(mode="json"), queue, index=index)
    except (InventoryEngineError, ValueError) as exc:
        raise http_error(exc) from exc
    status_code = 202 if result.status == QUEUED else 200
    return JSONResponse(status_code=status_code, content=result.to_dict())


@router.get("")
def list_orders(
    limit: int = Query(50, ge=1, le=500),
    scope: Scope = Depends(get_scope),
    db: Session = Depends(get_db),
):
    orders = scoped_query(db, Order, scope).order_by(Order.created_at.desc()).limit(limit).all()
    return [_order_to_dict(order, scope) for order in orders]


@router.get("/{order_id}")
def get_order(order_id: str, scope: Scope = Depends(get_scope), db: Session = Depends(get_db)):
    order = scoped_query(db, Order, scope).filter(Order.id == order_id).first()
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return _order_to_dict(order, scope)


@router.post("/{order_id}/fulfill")
def fulfill(
    order_id: str,
    scope: Scope = Depends(get_scope),
    db: Session = Depends(get_db),
    index: RecipeIndex = Depends(get_recipe_index),
):
    try:
        result = fulfill_order(db, scope, order_id, index=index)
    except (InventoryEngineError, ValueError, LookupError) as exc:
        raise http_error(exc) from exc
    return result.to_dict()
