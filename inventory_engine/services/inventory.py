from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import case, func, update
from sqlalchemy.orm import Session

from inventory_engine.core.config import (
    AUTO_CREATED_DEFAULT_STOCK,
    AUTO_CREATED_DEFAULT_UNIT,
    AUTO_CREATED_MIN_THRESHOLD,
    LOW_STOCK_RATIO,
    STOCK_NEGATIVE_POLICY,
)
from inventory_engine.core.exceptions import IngredientNotFoundError, InsufficientStockError
from inventory_engine.core.metrics import engine_metrics
from inventory_engine.models.inventory import (
    MOVEMENT_REASONS,
    STATUS_GOOD,
    STATUS_LOW_STOCK,
    STATUS_OUT_OF_STOCK,
    STATUS_WARNING,
    InventoryItem,
    StockMovement,
)
from inventory_engine.models.menu_item import MenuItem
from inventory_engine.services.event_bus import INVENTORY_COST_CHANGED, EventBus, event_bus
from inventory_engine.services.recipe_index import RecipeIndex, recipe_index
from inventory_engine.services.scope_resolver import Scope, scoped_query
from inventory_engine.services.store import run_atomic

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value if value is not None else 0))


def derive_status(quantity, min_threshold, low_ratio: Decimal = LOW_STOCK_RATIO) -> str:
    quantity = to_decimal(quantity)
    min_threshold = to_decimal(min_threshold)
    if quantity <= ZERO:
        return STATUS_OUT_OF_STOCK
    if quantity <= min_threshold * low_ratio:
        return STATUS_LOW_STOCK
    if quantity <= min_threshold:
        return STATUS_WARNING
    return STATUS_GOOD


def get_inventory_item(db: Session, scope: Scope, item_id: str, *, for_update: bool = False) -> InventoryItem | None:
    query = scoped_query(db, InventoryItem, scope).filter(InventoryItem.id == item_id)
    if for_update:
        # Locked reads must not be served from the identity map.
        query = query.with_for_update().populate_existing()
    return query.first()


def find_inventory_item_by_name(db: Session, scope: Scope, name: str | None) -> InventoryItem | None:
    normalized = (name or "").strip().lower()
    if not normalized:
        return None
    return (
        scoped_query(db, InventoryItem, scope)
        .filter(func.lower(func.trim(InventoryItem.name)) == normalized)
        .order_by(InventoryItem.created_at.asc(), InventoryItem.id.asc())
        .first()
    )


def resolve_ingredient(
    db: Session,
    scope: Scope,
    ingredient_id: str | None,
    ingredient_name: str | None,
) -> tuple[InventoryItem, str]:
    """Find the inventory record a recipe line points at.

    Tries the id, then the name, then a placeholder created earlier for the id.
    """
    if ingredient_id:
        item = get_inventory_item(db, scope, ingredient_id)
        if item is not None:
            return item, "id"
    item = find_inventory_item_by_name(db, scope, ingredient_name)
    if item is not None:
        logger.warning(
            "[INVENTORY] ingredient id=%s matched by name=%r -> %s",
            ingredient_id,
            ingredient_name,
            item.id,
        )
        engine_metrics.incr("ingredient.name_fallback")
        return item, "name"
    if ingredient_id:
        item = (
            scoped_query(db, InventoryItem, scope)
            .filter(InventoryItem.source_ingredient_id == ingredient_id)
            .order_by(InventoryItem.created_at.asc(), InventoryItem.id.asc())
            .first()
        )
        if item is not None:
            return item, "placeholder"
    raise IngredientNotFoundError(ingredient_id, ingredient_name)


def create_inventory_item(
    db: Session,
    scope: Scope,
    *,
    name: str,
    unit: str,
    quantity=ZERO,
    min_threshold=ZERO,
    cost_per_unit=ZERO,
    item_id: str | None = None,
    needs_review: bool = False,
    review_reason: str | None = None,
    source_ingredient_id: str | None = None,
) -> InventoryItem:
    quantity = to_decimal(quantity)
    if quantity < ZERO:
        raise ValueError("Quantity cannot be negative")
    item = InventoryItem(
        **scope.as_fields(),
        name=name.strip(),
        unit=unit.strip(),
        quantity=quantity,
        min_threshold=to_decimal(min_threshold),
        cost_per_unit=to_decimal(cost_per_unit),
        status=derive_status(quantity, min_threshold),
        needs_review=needs_review,
        review_reason=review_reason,
        source_ingredient_id=source_ingredient_id,
    )
    if item_id:
        item.id = item_id
    db.add(item)
    db.flush()
    return item


def create_placeholder_item(
    db: Session,
    scope: Scope,
    ingredient_id: str | None,
    ingredient_name: str | None,
    unit: str | None,
) -> InventoryItem:
    """Stand-in for an ingredient a recipe references but inventory never created."""
    item_id = ingredient_id
    source_ingredient_id = None
    # Document ids are global; never collide with another partition's record.
    if item_id and db.get(InventoryItem, item_id) is not None:
        item_id = None
        source_ingredient_id = ingredient_id
    name = (ingredient_name or "").strip() or f"Unknown ingredient {ingredient_id or ''}".strip()
    item = create_inventory_item(
        db,
        scope,
        name=name,
        unit=(unit or "").strip() or AUTO_CREATED_DEFAULT_UNIT,
        quantity=AUTO_CREATED_DEFAULT_STOCK,
        min_threshold=AUTO_CREATED_MIN_THRESHOLD,
        item_id=item_id,
        needs_review=True,
        review_reason=f"Auto-created from recipe reference id={ingredient_id!r} name={ingredient_name!r}",
        source_ingredient_id=source_ingredient_id,
    )
    logger.warning(
        "[INVENTORY] auto-created ingredient %s name=%r stock=%s; flagged for review",
        item.id,
        item.name,
        AUTO_CREATED_DEFAULT_STOCK,
    )
    engine_metrics.incr("ingredient.auto_created")
    return item


def apply_stock_delta(
    db: Session,
    scope: Scope,
    item_id: str,
    delta,
    *,
    reason: str,
    order_id: str | None = None,
    idempotency_key: str | None = None,
    note: str | None = None,
    policy: str | None = None,
) -> StockMovement:
    """Atomically add ``delta`` to an item's quantity and record the movement.

    The quantity is changed with ``quantity = quantity + delta`` in the store,
    never by writing back a value read earlier. Does not commit.
    """
    if reason not in MOVEMENT_REASONS:
        raise ValueError(f"Invalid movement reason: {reason}")
    policy = policy or STOCK_NEGATIVE_POLICY
    delta = to_decimal(delta)

    item = get_inventory_item(db, scope, item_id, for_update=True)
    if item is None:
        raise IngredientNotFoundError(item_id, None)
    previous = to_decimal(item.quantity)

    target = InventoryItem.quantity + delta
    stmt = update(InventoryItem).where(
        InventoryItem.id == item.id,
        InventoryItem.tenant_id == scope.tenant_id,
        InventoryItem.location_id == scope.location_id,
    )
    if policy == "reject":
        stmt = stmt.where(target >= 0).values(quantity=target)
    else:
        stmt = stmt.values(quantity=case((target < 0, 0), else_=target))
    row = db.execute(
        stmt.returning(InventoryItem.quantity, InventoryItem.min_threshold),
        execution_options={"synchronize_session": False},
    ).first()
    if row is None:
        raise InsufficientStockError(item.id, item.name, previous, -delta)

    new_quantity = to_decimal(row[0])
    db.execute(
        update(InventoryItem)
        .where(
            InventoryItem.id == item.id,
            InventoryItem.tenant_id == scope.tenant_id,
            InventoryItem.location_id == scope.location_id,
        )
        .values(status=derive_status(new_quantity, row[1])),
        execution_options={"synchronize_session": False},
    )
    db.expire(item)

    applied = new_quantity - previous
    if applied != delta:
        note = (note + "; " if note else "") + f"clamped at zero from requested {delta}"
        logger.warning("[INVENTORY] %s clamped at zero requested=%s applied=%s", item_id, delta, applied)

    movement = StockMovement(
        **scope.as_fields(),
        inventory_item_id=item.id,
        quantity_delta=applied,
        previous_quantity=previous,
        new_quantity=new_quantity,
        reason=reason,
        order_id=order_id,
        idempotency_key=idempotency_key,
        note=note,
    )
    db.add(movement)
    return movement


def receive_stock(
    db: Session,
    scope: Scope,
    item_id: str,
    quantity,
    *,
    unit_cost=None,
    idempotency_key: str | None = None,
    index: RecipeIndex = recipe_index,
    bus: EventBus = event_bus,
) -> StockMovement:
    quantity = to_decimal(quantity)
    if quantity <= ZERO:
        raise ValueError("Received quantity must be greater than zero")

    cost_change: dict | None = None

    def _receive(session: Session) -> StockMovement:
        nonlocal cost_change
        movement = apply_stock_delta(
            session,
            scope,
            item_id,
            quantity,
            reason="receiving",
            idempotency_key=idempotency_key,
        )
        if unit_cost is not None:
            cost_change = _change_cost(session, scope, item_id, unit_cost, index)
        return movement

    movement = run_atomic(db, _receive)
    if cost_change:
        bus.emit(INVENTORY_COST_CHANGED, cost_change)
    return movement


def adjust_stock(
    db: Session,
    scope: Scope,
    item_id: str,
    delta,
    *,
    reason: str = "adjustment",
    note: str | None = None,
    idempotency_key: str | None = None,
) -> StockMovement:
    delta = to_decimal(delta)
    if reason not in {"waste", "adjustment"}:
        raise ValueError("Adjustment reason must be 'waste' or 'adjustment'")
    if delta == ZERO:
        raise ValueError("Adjustment must change the quantity")
    if reason == "waste" and delta > ZERO:
        raise ValueError("Waste must reduce stock")
    if reason == "adjustment" and not note:
        raise ValueError("A note is required for manual adjustments")

    return run_atomic(
        db,
        lambda session: apply_stock_delta(
            session,
            scope,
            item_id,
            delta,
            reason=reason,
            note=note,
            idempotency_key=idempotency_key,
        ),
    )


def _change_cost(db: Session, scope: Scope, item_id: str, new_cost, index: RecipeIndex) -> dict | None:
    new_cost = to_decimal(new_cost)
    if new_cost < ZERO:
        raise ValueError("Cost per unit cannot be negative")
    item = get_inventory_item(db, scope, item_id, for_update=True)
    if item is None:
        raise IngredientNotFoundError(item_id, None)
    old_cost = to_decimal(item.cost_per_unit)
    if old_cost == new_cost:
        return None

    item.cost_per_unit = new_cost
    dependents = index.items_using_ingredient(db, item.id, scope) | index.items_using_name(db, item.name, scope)
    if dependents:
        # Readers see the staleness flag until the synchronizer recomputes.
        db.execute(
            update(MenuItem)
            .where(
                MenuItem.tenant_id == scope.tenant_id,
                MenuItem.location_id == scope.location_id,
                MenuItem.id.in_(sorted(dependents)),
            )
            .values(cost_stale=True),
            execution_options={"synchronize_session": False},
        )
    return {
        **scope.as_fields(),
        "ingredient_id": item.id,
        "ingredient_name": item.name,
        "old_cost": old_cost,
        "new_cost": new_cost,
        "menu_item_ids": sorted(dependents),
    }


def record_cost_change(
    db: Session,
    scope: Scope,
    item_id: str,
    new_cost,
    *,
    index: RecipeIndex = recipe_index,
    bus: EventBus = event_bus,
) -> dict | None:
    """Set a new unit cost and notify the cost synchronizer once committed."""
    change = run_atomic(db, lambda session: _change_cost(session, scope, item_id, new_cost, index))
    if change:
        logger.info(
            "[INVENTORY] cost %s %s -> %s dependents=%s",
            item_id,
            change["old_cost"],
            change["new_cost"],
            len(change["menu_item_ids"]),
        )
        bus.emit(INVENTORY_COST_CHANGED, change)
    return change
