from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from inventory_engine.core.database import get_db
from inventory_engine.core.exceptions import InventoryEngineError
from inventory_engine.deps import get_event_bus, get_recipe_index, get_scope, http_error
from inventory_engine.models.inventory import InventoryItem, StockMovement
from inventory_engine.schemas.documents import CostUpdate, InventoryItemCreate, StockAdjustment, StockReceipt
from inventory_engine.services.event_bus import EventBus
from inventory_engine.services.inventory import (
    adjust_stock,
    create_inventory_item,
    get_inventory_item,
    receive_stock,
    record_cost_change,
)
from inventory_engine.services.recipe_index import RecipeIndex
from inventory_engine.services.scope_resolver import Scope, document_path, scoped_query

router = APIRouter(prefix="/api/inventory", tags=["inventory"])


def _item_to_dict(item: InventoryItem, scope: Scope) -> dict:
    return {
        "id": item.id,
        "path": document_path(scope, "inventory", item.id),
        "tenant_id": item.tenant_id,
        "location_id": item.location_id,
        "name": item.name,
        "unit": item.unit,
        "quantity": str(item.quantity),
        "min_threshold": str(item.min_threshold),
        "cost_per_unit": str(item.cost_per_unit),
        "status": item.status,
        "needs_review": item.needs_review,
        "review_reason": item.review_reason,
        "source_ingredient_id": item.source_ingredient_id,
        "created_at": item.created_at.isoformat() if item.created_at else None,
        "updated_at": item.updated_at.isoformat() if item.updated_at else None,
    }


def _movement_to_dict(movement: StockMovement) -> dict:
    return {
        "id": movement.id,
        "tenant_id": movement.tenant_id,
        "location_id": movement.location_id,
        "inventory_item_id": movement.inventory_item_id,
        "quantity_delta": str(movement.quantity_delta),
        "previous_quantity": str(movement.previous_quantity),
        "new_quantity": str(movement.new_quantity),
        "reason": movement.reason,
        "order_id": movement.order_id,
        "idempotency_key": movement.idempotency_key,
        "note": movement.note,
        "created_at": movement.created_at.isoformat() if movement.created_at else None,
    }


@router.get("/items")
def list_items(
    needs_review: Optional[bool] = Query(None),
    scope: Scope = Depends(get_scope),
    db: Session = Depends(get_db),
):
    query = scoped_query(db, InventoryItem, scope)
    if needs_review is not None:
        query = query.filter(InventoryItem.needs_review.is_(needs_review))
    items = query.order_by(InventoryItem.name.asc()).all()
    return [_item_to_dict(item, scope) for item in items]


@router.post("/items", status_code=201)
def create_item(
    payload: InventoryItemCreate,
    scope: Scope = Depends(get_scope),
    db: Session = Depends(get_db),
):
    # Document ids are global across partitions.
    if payload.id and db.get(InventoryItem, payload.id) is not None:
        raise HTTPException(status_code=409, detail="Inventory item already exists")
    try:
        item = create_inventory_item(
            db,
            scope,
            name=payload.name,
            unit=payload.unit,
            quantity=payload.quantity,
            min_threshold=payload.min_threshold,
            cost_per_unit=payload.cost_per_unit,
            item_id=payload.id,
        )
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(status_code=409, detail="Inventory item already exists") from exc
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.refresh(item)
    return _item_to_dict(item, scope)


@router.get("/items/{item_id}")
def get_item(item_id: str, scope: Scope = Depends(get_scope), db: Session = Depends(get_db)):
    item = get_inventory_item(db, scope, item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Inventory item not found")
    return _item_to_dict(item, scope)


@router.post("/items/{item_id}/receive", status_code=201)
def receive_item(
    item_id: str,
    payload: StockReceipt,
    scope: Scope = Depends(get_scope),
    db: Session = Depends(get_db),
    index: RecipeIndex = Depends(get_recipe_index),
    bus: EventBus = Depends(get_event_bus),
):
    try:
        movement = receive_stock(
            db,
            scope,
            item_id,
            payload.quantity,
            unit_cost=payload.unit_cost,
            idempotency_key=payload.idempotency_key,
            index=index,
            bus=bus,
        )
    except (InventoryEngineError, ValueError, LookupError) as exc:
        raise http_error(exc) from exc
    return _movement_to_dict(movement)


@router.post("/items/{item_id}/adjust", status_code=201)
def adjust_item(
    item_id: str,
    payload: StockAdjustment,
    scope: Scope = Depends(get_scope),
    db: Session = Depends(get_db),
):
    try:
        movement = adjust_stock(
            db,
            scope,
            item_id,
            payload.quantity_delta,
            reason=payload.reason,
            note=payload.note,
            idempotency_key=payload.idempotency_key,
        )
    except (InventoryEngineError, ValueError, LookupError) as exc:
        raise http_error(exc) from exc
    return _movement_to_dict(movement)


@router.put("/items/{item_id}/cost")
def update_cost(
    item_id: str,
    payload: CostUpdate,
    scope: Scope = Depends(get_scope),
    db: Session = Depends(get_db),
    index: RecipeIndex = Depends(get_recipe_index),
    bus: EventBus = Depends(get_event_bus),
):
    try:
        change = record_cost_change(db, scope, item_id, payload.cost_per_unit, index=index, bus=bus)
    except (InventoryEngineError, ValueError, LookupError) as exc:
        raise http_error(exc) from exc
    item = get_inventory_item(db, scope, item_id)
    return {
        "item": _item_to_dict(item, scope),
        "changed": change is not None,
        "stale_menu_item_ids": change["menu_item_ids"] if change else [],
    }


@router.get("/movements")
def list_movements(
    item_id: Optional[str] = Query(None),
    order_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    scope: Scope = Depends(get_scope),
    db: Session = Depends(get_db),
):
    query = scoped_query(db, StockMovement, scope)
    if item_id:
        query = query.filter(StockMovement.inventory_item_id == item_id)
    if order_id:
        query = query.filter(StockMovement.order_id == order_id)
    movements = query.order_by(StockMovement.created_at.desc(), StockMovement.id.asc()).limit(limit).all()
    return [_movement_to_dict(movement) for movement in movements]
