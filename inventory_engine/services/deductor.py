"""Turns completed orders into ingredient stock deductions.

Every sold line is walked through the recipe index (or the POS copy of the
recipe when the index has nothing), deltas are summed per inventory record
and applied in one transaction keyed by the order's idempotency key. A key
that has already been applied is reported as a duplicate and changes nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from inventory_engine.core.exceptions import (
    ConcurrencyConflict,
    IngredientNotFoundError,
    RecipeNotFoundError,
    StoreUnavailableError,
)
from inventory_engine.core.metrics import engine_metrics
from inventory_engine.core.request_context import scope_context
from inventory_engine.models.inventory import InventoryItem, StockMovement
from inventory_engine.models.menu_item import MenuItem
from inventory_engine.models.order import Order, OrderLine
from inventory_engine.models.pos_item import POSItem
from inventory_engine.services.inventory import (
    apply_stock_delta,
    create_placeholder_item,
    resolve_ingredient,
    to_decimal,
)
from inventory_engine.services.pos_projection import find_pos_item, pos_recipe
from inventory_engine.services.recipe_index import RecipeEntry, RecipeIndex, recipe_index
from inventory_engine.services.scope_resolver import Scope, scoped_query
from inventory_engine.services.store import run_atomic

logger = logging.getLogger(__name__)

ORDER_FULFILLMENT = "order.fulfillment"

APPLIED = "applied"
DUPLICATE = "duplicate"
QUEUED = "queued"

CENT = Decimal("0.01")


@dataclass
class FulfillmentResult:
    idempotency_key: str
    status: str
    order_id: str | None = None
    movements: list[dict] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    entry_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "idempotency_key": self.idempotency_key,
            "status": self.status,
            "order_id": self.order_id,
            "movements": self.movements,
            "warnings": self.warnings,
            "entry_id": self.entry_id,
        }


@dataclass
class _Deduction:
    item: InventoryItem
    quantity: Decimal = Decimal("0")


def _movement_to_dict(movement: StockMovement) -> dict:
    return {
        "id": movement.id,
        "inventory_item_id": movement.inventory_item_id,
        "quantity_delta": str(movement.quantity_delta),
        "previous_quantity": str(movement.previous_quantity),
        "new_quantity": str(movement.new_quantity),
        "reason": movement.reason,
        "order_id": movement.order_id,
    }


def _line_recipe(
    db: Session,
    scope: Scope,
    line: OrderLine,
    index: RecipeIndex,
    warnings: list[str],
) -> list[RecipeEntry]:
    pos_item: POSItem | None = None
    menu_item_id = line.menu_item_id
    if not menu_item_id and line.pos_item_id:
        pos_item = find_pos_item(db, scope, pos_item_id=line.pos_item_id)
        menu_item_id = pos_item.menu_item_id if pos_item else None

    try:
        entries = index.get_recipe(db, menu_item_id, scope)
    except RecipeNotFoundError:
        if pos_item is None:
            pos_item = find_pos_item(
                db,
                scope,
                pos_item_id=line.pos_item_id,
                menu_item_id=None if line.pos_item_id else menu_item_id,
            )
        entries = pos_recipe(pos_item)
        if not entries:
            message = f"No recipe for line {line.position} ({line.name or menu_item_id}); nothing deducted"
            logger.warning("[DEDUCTION] %s", message)
            warnings.append(message)
            engine_metrics.incr("deduction.line_without_recipe")
            return []
        message = f"Recipe for {line.name or menu_item_id} taken from POS item {pos_item.id}"
        logger.warning("[DEDUCTION] %s", message)
        warnings.append(message)
        engine_metrics.incr("deduction.pos_recipe_fallback")
        return entries

    if not entries:
        message = f"Menu item {menu_item_id} has an empty recipe; nothing deducted"
        logger.warning("[DEDUCTION] %s", message)
        warnings.append(message)
    return entries


def _deduct(
    db: Session,
    scope: Scope,
    order: Order,
    index: RecipeIndex,
    policy: str | None,
    warnings: list[str],
) -> list[StockMovement]:
    # Aggregated per inventory record, in the order ingredients were first seen.
    deductions: dict[str, _Deduction] = {}
    for line in order.lines:
        sold = to_decimal(line.quantity)
        for entry in _line_recipe(db, scope, line, index, warnings):
            try:
                item, matched_by = resolve_ingredient(db, scope, entry.ingredient_id, entry.ingredient_name)
                if matched_by == "name":
                    warnings.append(f"Ingredient {entry.ingredient_id!r} matched by name {entry.ingredient_name!r}")
                elif matched_by == "placeholder":
                    warnings.append(f"Ingredient {entry.ingredient_id!r} resolved to placeholder {item.id} awaiting review")
            except IngredientNotFoundError:
                item = create_placeholder_item(db, scope, entry.ingredient_id, entry.ingredient_name, entry.unit)
                warnings.append(f"Ingredient {entry.ingredient_name or entry.ingredient_id!r} auto-created for review")
            deduction = deductions.setdefault(item.id, _Deduction(item=item))
            deduction.quantity += entry.quantity * sold

    movements: list[StockMovement] = []
    for item_id, deduction in deductions.items():
        movements.append(
            apply_stock_delta(
                db,
                scope,
                item_id,
                -deduction.quantity,
                reason="sale",
                order_id=order.id,
                idempotency_key=order.idempotency_key,
                policy=policy,
            )
        )
    order.stock_applied_at = datetime.now(timezone.utc)
    db.flush()
    return movements


def _find_order(db: Session, scope: Scope, idempotency_key: str) -> Order | None:
    return scoped_query(db, Order, scope).filter(Order.idempotency_key == idempotency_key).first()


def _already_applied(db: Session, scope: Scope, idempotency_key: str, order: Order | None) -> bool:
    if order is not None and order.stock_applied_at is not None:
        return True
    movement = (
        scoped_query(db, StockMovement, scope)
        .filter(StockMovement.idempotency_key == idempotency_key)
        .first()
    )
    return movement is not None


def _build_order(scope: Scope, order_doc: dict) -> Order:
    order = Order(**scope.as_fields(), idempotency_key=order_doc["idempotency_key"], status="completed")
    if order_doc.get("id"):
        order.id = order_doc["id"]
    total = Decimal("0")
    lines: list[OrderLine] = []
    for position, raw in enumerate(order_doc.get("lines") or []):
        quantity = to_decimal(raw.get("quantity"))
        if quantity <= 0:
            raise ValueError(f"Order line {position} must have a positive quantity")
        if not raw.get("menu_item_id") and not raw.get("pos_item_id"):
            raise ValueError(f"Order line {position} must reference a menu item or POS item")
        unit_price = to_decimal(raw.get("unit_price"))
        line_total = (unit_price * quantity).quantize(CENT, rounding=ROUND_HALF_UP)
        total += line_total
        lines.append(
            OrderLine(
                **scope.as_fields(),
                position=position,
                menu_item_id=raw.get("menu_item_id"),
                pos_item_id=raw.get("pos_item_id"),
                name=raw.get("name") or "",
                quantity=quantity,
                unit_price=unit_price,
                line_total=line_total,
            )
        )
    order.lines = lines
    order.total = total
    return order


def complete_order(
    db: Session,
    scope: Scope,
    order_doc: dict,
    *,
    index: RecipeIndex = recipe_index,
    policy: str | None = None,
) -> FulfillmentResult:
    """Record a completed order and deduct its ingredients, exactly once per key.

    ``order_doc`` carries ``idempotency_key`` and ``lines`` (``menu_item_id`` or
    ``pos_item_id``, ``quantity``, ``unit_price``, ``name``). Raises
    StoreUnavailableError / ConcurrencyConflict for transient store failures and
    InsufficientStockError under the reject policy; nothing is committed then.
    """
    idempotency_key = (order_doc.get("idempotency_key") or "").strip()
    if not idempotency_key:
        raise ValueError("Order idempotency_key is required")
    order_doc = {**order_doc, "idempotency_key": idempotency_key}

    with scope_context(scope.tenant_id, scope.location_id):
        for attempt in range(2):
            warnings: list[str] = []

            def _complete(session: Session) -> FulfillmentResult:
                warnings.clear()
                order = _find_order(session, scope, idempotency_key)
                if _already_applied(session, scope, idempotency_key, order):
                    return FulfillmentResult(idempotency_key, DUPLICATE, order_id=order.id if order else None)
                if order is None:
                    order = _build_order(scope, order_doc)
                    session.add(order)
                    session.flush()
                movements = _deduct(session, scope, order, index, policy, warnings)
                return FulfillmentResult(
                    idempotency_key,
                    APPLIED,
                    order_id=order.id,
                    movements=[_movement_to_dict(movement) for movement in movements],
                    warnings=warnings,
                )

            try:
                result = run_atomic(db, _complete)
                break
            except IntegrityError:
                # A concurrent submission with the same key committed first.
                if attempt:
                    raise
                logger.info("[DEDUCTION] idempotency race on %s; re-checking", idempotency_key)

        if result.status == DUPLICATE:
            engine_metrics.incr("deduction.duplicate")
            logger.info("[DEDUCTION] order %s already applied; skipped", idempotency_key)
        else:
            engine_metrics.incr("deduction.applied")
            logger.info(
                "[DEDUCTION] order %s applied movements=%s warnings=%s",
                idempotency_key,
                len(result.movements),
                len(result.warnings),
            )
        return result


def fulfill_order(
    db: Session,
    scope: Scope,
    order_id: str,
    *,
    index: RecipeIndex = recipe_index,
    policy: str | None = None,
) -> FulfillmentResult:
    """Deduct stock for an order that was stored without it."""
    order = scoped_query(db, Order, scope).filter(Order.id == order_id).first()
    if order is None:
        raise LookupError(f"Order {order_id} not found")
    if order.status != "completed":
        raise ValueError(f"Order {order_id} is {order.status}; only completed orders deduct stock")
    return complete_order(
        db,
        scope,
        {"idempotency_key": order.idempotency_key, "lines": []},
        index=index,
        policy=policy,
    )


def order_entry_id(scope: Scope, idempotency_key: str) -> str:
    return f"order:{scope.tenant_id}:{scope.location_id}:{idempotency_key}"


def complete_order_or_enqueue(
    db: Session,
    scope: Scope,
    order_doc: dict,
    queue,
    *,
    index: RecipeIndex = recipe_index,
    policy: str | None = None,
) -> FulfillmentResult:
    """Complete the order now, or hand it to the offline queue if the store is unreachable."""
    idempotency_key = (order_doc.get("idempotency_key") or "").strip()
    if not idempotency_key:
        raise ValueError("Order idempotency_key is required")

    if queue.is_online and queue.has_backlog(scope):
        # Earlier writes for this branch are still queued; the new order goes behind them.
        logger.info("[DEDUCTION] order %s queued behind pending branch writes", idempotency_key)
    elif queue.is_online:
        try:
            return complete_order(db, scope, order_doc, index=index, policy=policy)
        except (StoreUnavailableError, ConcurrencyConflict) as exc:
            logger.warning("[DEDUCTION] order %s deferred to sync queue: %s", idempotency_key, exc)

    entry = queue.enqueue(
        ORDER_FULFILLMENT,
        {**scope.as_fields(), "order": {**order_doc, "idempotency_key": idempotency_key}},
        entry_id=order_entry_id(scope, idempotency_key),
        scope=scope,
    )
    engine_metrics.incr("deduction.queued")
    return FulfillmentResult(idempotency_key, QUEUED, entry_id=entry["id"])


def make_order_replay_handler(
    session_factory: Callable[[], Session],
    index: RecipeIndex = recipe_index,
    policy: str | None = None,
) -> Callable[[dict], None]:
    """Queue handler that replays a deferred order through :func:`complete_order`."""

    def replay(payload: dict) -> None:
        scope = Scope.from_location(payload["tenant_id"], payload["location_id"])
        db = session_factory()
        try:
            complete_order(db, scope, payload["order"], index=index, policy=policy)
        finally:
            db.close()

    return replay


def validate_deduction_setup(db: Session, scope: Scope, *, index: RecipeIndex = recipe_index) -> dict:
    """Report the data that would make deductions fall back or skip."""
    menu_items = (
        scoped_query(db, MenuItem, scope)
        .filter(MenuItem.active.is_(True))
        .order_by(MenuItem.name.asc())
        .all()
    )
    without_recipe: list[str] = []
    without_ingredient_id: list[dict] = []
    unresolved: list[dict] = []
    for item in menu_items:
        if not item.recipe_lines:
            without_recipe.append(item.id)
        for line in item.recipe_lines:
            if not line.ingredient_id:
                without_ingredient_id.append({"menu_item_id": item.id, "ingredient_name": line.ingredient_name})
            try:
                resolve_ingredient(db, scope, line.ingredient_id, line.ingredient_name)
            except IngredientNotFoundError:
                unresolved.append(
                    {
                        "menu_item_id": item.id,
                        "ingredient_id": line.ingredient_id,
                        "ingredient_name": line.ingredient_name,
                    }
                )

    pos_without_recipe = [
        pos_item.id
        for pos_item in scoped_query(db, POSItem, scope).order_by(POSItem.name.asc()).all()
        if not pos_recipe(pos_item)
    ]
    index.ensure_current(db, scope)
    index_problems = index.check_consistency(scope)

    report = {
        **scope.as_fields(),
        "menu_items_checked": len(menu_items),
        "menu_items_without_recipe": without_recipe,
        "recipe_lines_without_ingredient_id": without_ingredient_id,
        "unresolved_ingredients": unresolved,
        "pos_items_without_recipe": pos_without_recipe,
        "index_problems": index_problems,
    }
    report["ok"] = not (without_recipe or without_ingredient_id or unresolved or pos_without_recipe or index_problems)
    if not report["ok"]:
        logger.warning(
            "[DEDUCTION] setup issues in %s/%s: no_recipe=%s no_id=%s unresolved=%s pos=%s index=%s",
            scope.tenant_id,
            scope.location_id,
            len(without_recipe),
            len(without_ingredient_id),
            len(unresolved),
            len(pos_without_recipe),
            len(index_problems),
        )
    return report
