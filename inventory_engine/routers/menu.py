from __future__ import annotations

import json

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from inventory_engine.core.database import get_db
from inventory_engine.core.exceptions import InventoryEngineError
from inventory_engine.deps import (
    get_cost_synchronizer,
    get_event_bus,
    get_recipe_index,
    get_scope,
    http_error,
)
from inventory_engine.models.menu_item import MenuItem
from inventory_engine.models.pos_item import POSItem
from inventory_engine.schemas.documents import MenuItemCreate, MenuItemUpdate, RecipeUpdate
from inventory_engine.services.cost_sync import CostSynchronizer
from inventory_engine.services.deductor import validate_deduction_setup
from inventory_engine.services.event_bus import EventBus
from inventory_engine.services.menu import (
    create_menu_item,
    delete_menu_item,
    get_menu_item,
    list_menu_items,
    set_recipe,
    update_menu_item,
)
from inventory_engine.services.pos_projection import cleanup_orphaned_pos_items
from inventory_engine.services.recipe_index import RecipeIndex
from inventory_engine.services.scope_resolver import Scope, document_path, scoped_query

router = APIRouter(prefix="/api/menu", tags=["menu"])


def _menu_item_to_dict(item: MenuItem, scope: Scope) -> dict:
    return {
        "id": item.id,
        "path": document_path(scope, "menuItems", item.id),
        "tenant_id": item.tenant_id,
        "location_id": item.location_id,
        "name": item.name,
        "category": item.category,
        "price": str(item.price),
        "cost": str(item.cost),
        "margin": str(item.margin) if item.margin is not None else None,
        "cost_stale": item.cost_stale,
        "cost_synced_at": item.cost_synced_at.isoformat() if item.cost_synced_at else None,
        "active": item.active,
        "recipe": [
            {
                "ingredient_id": line.ingredient_id,
                "ingredient_name": line.ingredient_name,
                "quantity": str(line.quantity),
                "unit": line.unit,
            }
            for line in item.recipe_lines
        ],
    }


def _pos_item_to_dict(pos_item: POSItem, scope: Scope) -> dict:
    return {
        "id": pos_item.id,
        "path": document_path(scope, "posItems", pos_item.id),
        "menu_item_id": pos_item.menu_item_id,
        "name": pos_item.name,
        "category": pos_item.category,
        "price": str(pos_item.price),
        "cost": str(pos_item.cost),
        "recipe": json.loads(pos_item.recipe_json or "[]"),
        "is_stale": pos_item.is_stale,
        "projected_at": pos_item.projected_at.isoformat() if pos_item.projected_at else None,
    }


@router.get("/items")
def list_items(
    include_inactive: bool = Query(False),
    scope: Scope = Depends(get_scope),
    db: Session = Depends(get_db),
):
    return [_menu_item_to_dict(item, scope) for item in list_menu_items(db, scope, include_inactive)]


@router.post("/items", status_code=201)
def create_item(
    payload: MenuItemCreate,
    scope: Scope = Depends(get_scope),
    db: Session = Depends(get_db),
    index: RecipeIndex = Depends(get_recipe_index),
    bus: EventBus = Depends(get_event_bus),
):
    try:
        item = create_menu_item(
            db,
            scope,
            name=payload.name,
            price=payload.price,
            category=payload.category,
            recipe=[line.model_dump() for line in payload.recipe],
            index=index,
            bus=bus,
        )
    except (InventoryEngineError, ValueError) as exc:
        raise http_error(exc) from exc
    return _menu_item_to_dict(item, scope)


@router.get("/items/{menu_item_id}")
def get_item(menu_item_id: str, scope: Scope = Depends(get_scope), db: Session = Depends(get_db)):
    item = get_menu_item(db, scope, menu_item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Menu item not found")
    return _menu_item_to_dict(item, scope)


@router.patch("/items/{menu_item_id}")
def update_item(
    menu_item_id: str,
    payload: MenuItemUpdate,
    scope: Scope = Depends(get_scope),
    db: Session = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    try:
        item = update_menu_item(db, scope, menu_item_id, **payload.model_dump(exclude_unset=True), bus=bus)
    except (InventoryEngineError, ValueError, LookupError) as exc:
        raise http_error(exc) from exc
    return _menu_item_to_dict(item, scope)


@router.put("/items/{menu_item_id}/recipe")
def replace_recipe(
    menu_item_id: str,
    payload: RecipeUpdate,
    scope: Scope = Depends(get_scope),
    db: Session = Depends(get_db),
    index: RecipeIndex = Depends(get_recipe_index),
    bus: EventBus = Depends(get_event_bus),
):
    try:
        item = set_recipe(
            db,
            scope,
            menu_item_id,
            [line.model_dump() for line in payload.recipe],
            index=index,
            bus=bus,
        )
    except (InventoryEngineError, ValueError, LookupError) as exc:
        raise http_error(exc) from exc
    return _menu_item_to_dict(item, scope)


@router.delete("/items/{menu_item_id}", status_code=204)
def delete_item(
    menu_item_id: str,
    scope: Scope = Depends(get_scope),
    db: Session = Depends(get_db),
    index: RecipeIndex = Depends(get_recipe_index),
    bus: EventBus = Depends(get_event_bus),
):
    try:
        delete_menu_item(db, scope, menu_item_id, index=index, bus=bus)
    except LookupError as exc:
        raise http_error(exc) from exc
    return None


@router.post("/costs/resync")
def resync_costs(
    scope: Scope = Depends(get_scope),
    db: Session = Depends(get_db),
    synchronizer: CostSynchronizer = Depends(get_cost_synchronizer),
):
    changes = synchronizer.resync_scope(db, scope)
    return {
        "changed": [
            {
                "menu_item_id": change["menu_item_id"],
                "old_cost": str(change["old_cost"]),
                "new_cost": str(change["new_cost"]),
            }
            for change in changes
        ]
    }


@router.get("/pos-items")
def list_pos_items(scope: Scope = Depends(get_scope), db: Session = Depends(get_db)):
    pos_items = scoped_query(db, POSItem, scope).order_by(POSItem.category.asc(), POSItem.name.asc()).all()
    return [_pos_item_to_dict(pos_item, scope) for pos_item in pos_items]


@router.post("/pos-items/cleanup")
def cleanup_pos_items(scope: Scope = Depends(get_scope), db: Session = Depends(get_db)):
    return {"removed": cleanup_orphaned_pos_items(db, scope)}


@router.get("/deduction-setup")
def deduction_setup(
    scope: Scope = Depends(get_scope),
    db: Session = Depends(get_db),
    index: RecipeIndex = Depends(get_recipe_index),
):
    return validate_deduction_setup(db, scope, index=index)
