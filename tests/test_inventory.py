from decimal import Decimal

import pytest
from sqlalchemy import event

from inventory_engine.core.exceptions import IngredientNotFoundError
from inventory_engine.models.inventory import InventoryItem, StockMovement
from inventory_engine.models.menu_item import MenuItem
from inventory_engine.services.event_bus import INVENTORY_COST_CHANGED, EventBus
from inventory_engine.services.inventory import (
    adjust_stock,
    apply_stock_delta,
    create_inventory_item,
    create_placeholder_item,
    record_cost_change,
    receive_stock,
    resolve_ingredient,
)
from inventory_engine.services.menu import create_menu_item
from inventory_engine.services.recipe_index import RecipeIndex
from inventory_engine.services.scope_resolver import scoped_query
from tests.fixtures_data import LATTE_INVENTORY, LATTE_RECIPE, SCOPE_B1, SCOPE_B2, build_session_factory


def _setup():
    SessionLocal = build_session_factory()
    db = SessionLocal()
    for seed in LATTE_INVENTORY:
        create_inventory_item(db, SCOPE_B1, **seed)
    db.commit()
    bus = EventBus()
    events = []
    bus.subscribe(INVENTORY_COST_CHANGED, events.append)
    return db, RecipeIndex(), bus, events


def _item(db, item_id, scope=SCOPE_B1):
    db.expire_all()
    return scoped_query(db, InventoryItem, scope).filter(InventoryItem.id == item_id).one()


def test_receive_stock_adds_quantity_and_records_the_movement():
    db, index, bus, events = _setup()

    movement = receive_stock(db, SCOPE_B1, "milk", "2.5", index=index, bus=bus)

    assert _item(db, "milk").quantity == Decimal("7.5")
    assert movement.reason == "receiving"
    assert movement.quantity_delta == Decimal("2.5")
    assert events == []


def test_receive_stock_with_a_new_unit_cost_emits_one_change():
    db, index, bus, events = _setup()
    latte = create_menu_item(db, SCOPE_B1, name="Latte", price="4.50", recipe=LATTE_RECIPE, index=index, bus=bus)

    receive_stock(db, SCOPE_B1, "milk", "1", unit_cost="1.50", index=index, bus=bus)

    assert _item(db, "milk").cost_per_unit == Decimal("1.50")
    assert len(events) == 1
    assert events[0]["ingredient_id"] == "milk"
    assert events[0]["old_cost"] == Decimal("1.20")
    assert events[0]["menu_item_ids"] == [latte.id]


@pytest.mark.parametrize("quantity", ["0", "-1"])
def test_receive_stock_requires_a_positive_quantity(quantity):
    db, index, bus, _ = _setup()

    with pytest.raises(ValueError):
        receive_stock(db, SCOPE_B1, "milk", quantity, index=index, bus=bus)


def test_waste_reduces_stock():
    db, _, _, _ = _setup()

    adjust_stock(db, SCOPE_B1, "coffee", "-0.25", reason="waste")

    coffee = _item(db, "coffee")
    assert coffee.quantity == Decimal("0.75")
    assert coffee.status == "good"


@pytest.mark.parametrize(
    ("delta", "reason", "note"),
    [
        ("0", "adjustment", "count"),
        ("1", "waste", None),
        ("1", "adjustment", None),
        ("-1", "sale", "manual"),
    ],
)
def test_adjust_stock_rejects_invalid_requests(delta, reason, note):
    db, _, _, _ = _setup()

    with pytest.raises(ValueError):
        adjust_stock(db, SCOPE_B1, "milk", delta, reason=reason, note=note)
    assert _item(db, "milk").quantity == Decimal("5")


def test_adjustment_below_zero_is_clamped_and_noted():
    db, _, _, _ = _setup()

    movement = adjust_stock(db, SCOPE_B1, "milk", "-8", note="stock count")

    milk = _item(db, "milk")
    assert milk.quantity == Decimal("0")
    assert milk.status == "out-of-stock"
    assert movement.quantity_delta == Decimal("-5")
    assert movement.note.startswith("stock count; clamped")


def test_status_follows_the_threshold_after_each_movement():
    db, _, _, _ = _setup()

    adjust_stock(db, SCOPE_B1, "milk", "-4", reason="waste")
    assert _item(db, "milk").status == "warning"
    adjust_stock(db, SCOPE_B1, "milk", "-0.5", reason="waste")
    assert _item(db, "milk").status == "low-stock"


def test_apply_stock_delta_validates_reason_and_item():
    db, _, _, _ = _setup()

    with pytest.raises(ValueError):
        apply_stock_delta(db, SCOPE_B1, "milk", "-1", reason="theft")
    with pytest.raises(IngredientNotFoundError):
        apply_stock_delta(db, SCOPE_B1, "saffron", "-1", reason="sale")
    with pytest.raises(IngredientNotFoundError):
        apply_stock_delta(db, SCOPE_B2, "milk", "-1", reason="sale")


def test_record_cost_change_marks_dependents_stale():
    db, index, bus, events = _setup()
    latte = create_menu_item(db, SCOPE_B1, name="Latte", price="4.50", recipe=LATTE_RECIPE, index=index, bus=bus)
    assert latte.cost_stale is False

    change = record_cost_change(db, SCOPE_B1, "coffee", "20.00", index=index, bus=bus)

    assert change["menu_item_ids"] == [latte.id]
    assert change["new_cost"] == Decimal("20.00")
    assert events == [change]
    db.expire_all()
    stored = scoped_query(db, MenuItem, SCOPE_B1).filter(MenuItem.id == latte.id).one()
    assert stored.cost_stale is True


def test_record_cost_change_is_a_no_op_for_the_same_cost():
    db, index, bus, events = _setup()

    assert record_cost_change(db, SCOPE_B1, "milk", "1.2", index=index, bus=bus) is None
    assert events == []


def test_negative_cost_is_rejected():
    db, index, bus, _ = _setup()

    with pytest.raises(ValueError):
        record_cost_change(db, SCOPE_B1, "milk", "-0.01", index=index, bus=bus)


def test_resolve_ingredient_prefers_id_then_name():
    db, _, _, _ = _setup()

    assert resolve_ingredient(db, SCOPE_B1, "milk", "whatever")[1] == "id"
    item, matched_by = resolve_ingredient(db, SCOPE_B1, "old-id", " COFFEE beans ")
    assert (item.id, matched_by) == ("coffee", "name")
    with pytest.raises(IngredientNotFoundError):
        resolve_ingredient(db, SCOPE_B1, "old-id", "Saffron")
    with pytest.raises(IngredientNotFoundError):
        resolve_ingredient(db, SCOPE_B2, "milk", "Milk")


def test_placeholder_never_reuses_an_id_owned_by_another_branch():
    db, _, _, _ = _setup()

    placeholder = create_placeholder_item(db, SCOPE_B2, "milk", "Milk", "L")
    db.commit()

    assert placeholder.id != "milk"
    assert placeholder.location_id == SCOPE_B2.location_id
    assert placeholder.needs_review is True
    assert placeholder.quantity == Decimal("100")
    assert _item(db, "milk").location_id == SCOPE_B1.location_id


def test_creating_with_negative_quantity_fails():
    db, _, _, _ = _setup()

    with pytest.raises(ValueError):
        create_inventory_item(db, SCOPE_B1, name="Ice", unit="kg", quantity="-1")
    assert scoped_query(db, StockMovement, SCOPE_B1).count() == 0


def test_stock_updates_are_restricted_to_the_partition():
    db, _, _, _ = _setup()
    engine = db.get_bind()
    statements = []

    def capture(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith("UPDATE INVENTORY_ITEMS"):
            statements.append(statement)

    event.listen(engine, "before_cursor_execute", capture)
    try:
        adjust_stock(db, SCOPE_B1, "milk", "-1", reason="waste")
    finally:
        event.remove(engine, "before_cursor_execute", capture)

    assert len(statements) >= 2
    for statement in statements:
        where = statement.split("WHERE", 1)[1]
        assert "tenant_id" in where
        assert "location_id" in where
