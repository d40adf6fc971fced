import json
from decimal import Decimal
from unittest.mock import patch

import pytest

from inventory_engine.core.exceptions import InsufficientStockError, StoreUnavailableError
from inventory_engine.models.inventory import InventoryItem, StockMovement
from inventory_engine.models.menu_item import MenuItem
from inventory_engine.models.order import Order, OrderLine
from inventory_engine.models.pos_item import POSItem
from inventory_engine.services.cost_sync import CostSynchronizer
from inventory_engine.services.deductor import (
    APPLIED,
    DUPLICATE,
    ORDER_FULFILLMENT,
    QUEUED,
    complete_order,
    complete_order_or_enqueue,
    fulfill_order,
    make_order_replay_handler,
    validate_deduction_setup,
)
from inventory_engine.services.event_bus import EventBus
from inventory_engine.services.inventory import (
    apply_stock_delta,
    create_inventory_item,
    derive_status,
    record_cost_change,
)
from inventory_engine.services.menu import create_menu_item, delete_menu_item, set_recipe
from inventory_engine.services.recipe_index import RecipeIndex
from inventory_engine.services.scope_resolver import scoped_query
from inventory_engine.services.sync_queue import SyncQueue
from tests.fixtures_data import (
    CAPPUCCINO_RECIPE,
    LATTE_INVENTORY,
    LATTE_RECIPE,
    SCOPE_B1,
    SCOPE_B2,
    build_local_session_factory,
    build_session_factory,
    latte_order,
)


def _seed(scope=SCOPE_B1, stock=None):
    SessionLocal = build_session_factory()
    db = SessionLocal()
    index = RecipeIndex()
    bus = EventBus()
    for seed in LATTE_INVENTORY:
        fields = dict(seed)
        if stock and fields["item_id"] in stock:
            fields["quantity"] = stock[fields["item_id"]]
        create_inventory_item(db, scope, **fields)
    db.commit()
    latte = create_menu_item(db, scope, name="Latte", price="4.50", recipe=LATTE_RECIPE, index=index, bus=bus)
    return SessionLocal, db, index, bus, latte


def _quantity(db, scope, item_id):
    db.expire_all()
    item = scoped_query(db, InventoryItem, scope).filter(InventoryItem.id == item_id).one()
    return item.quantity


def _movements(db, scope):
    return scoped_query(db, StockMovement, scope).order_by(StockMovement.inventory_item_id.asc()).all()


def test_latte_order_deducts_milk_and_coffee():
    _, db, index, _, latte = _seed()

    result = complete_order(db, SCOPE_B1, latte_order("order-1", latte.id, quantity=2), index=index)

    assert result.status == APPLIED
    assert _quantity(db, SCOPE_B1, "milk") == Decimal("4.6")
    assert _quantity(db, SCOPE_B1, "coffee") == Decimal("0.96")
    movements = _movements(db, SCOPE_B1)
    assert len(movements) == 2
    by_item = {movement.inventory_item_id: movement for movement in movements}
    assert by_item["milk"].quantity_delta == Decimal("-0.4")
    assert by_item["milk"].previous_quantity == Decimal("5")
    assert by_item["milk"].new_quantity == Decimal("4.6")
    assert by_item["coffee"].quantity_delta == Decimal("-0.04")
    assert {movement.order_id for movement in movements} == {result.order_id}
    assert {movement.reason for movement in movements} == {"sale"}


def test_replaying_the_same_key_deducts_once():
    _, db, index, _, latte = _seed()
    order = latte_order("order-replay", latte.id, quantity=2)

    results = [complete_order(db, SCOPE_B1, order, index=index) for _ in range(5)]

    assert [result.status for result in results] == [APPLIED] + [DUPLICATE] * 4
    assert len({result.order_id for result in results}) == 1
    assert _quantity(db, SCOPE_B1, "milk") == Decimal("4.6")
    assert len(_movements(db, SCOPE_B1)) == 2
    assert scoped_query(db, Order, SCOPE_B1).count() == 1


def test_ingredient_shared_by_two_lines_is_deducted_once_summed():
    _, db, index, bus, latte = _seed()
    cappuccino = create_menu_item(
        db, SCOPE_B1, name="Cappuccino", price="4.00", recipe=CAPPUCCINO_RECIPE, index=index, bus=bus
    )
    order = {
        "idempotency_key": "order-mixed",
        "lines": [
            {"menu_item_id": latte.id, "quantity": "1", "unit_price": "4.50"},
            {"menu_item_id": cappuccino.id, "quantity": "2", "unit_price": "4.00"},
        ],
    }

    result = complete_order(db, SCOPE_B1, order, index=index)

    milk_moves = [m for m in result.movements if m["inventory_item_id"] == "milk"]
    assert len(milk_moves) == 1
    assert Decimal(milk_moves[0]["quantity_delta"]) == Decimal("-0.5")
    assert _quantity(db, SCOPE_B1, "milk") == Decimal("4.5")
    assert _quantity(db, SCOPE_B1, "coffee") == Decimal("0.94")
    stored = scoped_query(db, Order, SCOPE_B1).one()
    assert stored.total == Decimal("12.50")


def test_missing_ingredient_id_falls_back_to_name_match():
    _, db, index, bus, _ = _seed()
    flat_white = create_menu_item(
        db,
        SCOPE_B1,
        name="Flat White",
        price="4.20",
        recipe=[{"ingredient_id": "legacy-milk-7", "ingredient_name": "  milk ", "quantity": "0.1", "unit": "L"}],
        index=index,
        bus=bus,
    )

    result = complete_order(
        db, SCOPE_B1, {"idempotency_key": "fw-1", "lines": [{"menu_item_id": flat_white.id, "quantity": "3"}]}, index=index
    )

    assert _quantity(db, SCOPE_B1, "milk") == Decimal("4.7")
    assert any("matched by name" in warning for warning in result.warnings)
    assert scoped_query(db, InventoryItem, SCOPE_B1).count() == 2


def test_unknown_ingredient_is_auto_created_for_review():
    _, db, index, bus, _ = _seed()
    vanilla_latte = create_menu_item(
        db,
        SCOPE_B1,
        name="Vanilla Latte",
        price="5.00",
        recipe=[{"ingredient_id": "vanilla", "ingredient_name": "Vanilla Syrup", "quantity": "2", "unit": "pump"}],
        index=index,
        bus=bus,
    )

    result = complete_order(
        db, SCOPE_B1, {"idempotency_key": "vl-1", "lines": [{"menu_item_id": vanilla_latte.id, "quantity": "1"}]}, index=index
    )

    assert result.status == APPLIED
    db.expire_all()
    vanilla = scoped_query(db, InventoryItem, SCOPE_B1).filter(InventoryItem.id == "vanilla").one()
    assert vanilla.needs_review is True
    assert vanilla.name == "Vanilla Syrup"
    assert vanilla.unit == "pump"
    assert vanilla.quantity == Decimal("98")
    assert vanilla.status == "good"


def test_pos_copy_is_used_when_the_index_has_no_recipe():
    _, db, index, bus, latte = _seed()
    db.add(
        POSItem(
            tenant_id=SCOPE_B1.tenant_id,
            location_id=SCOPE_B1.location_id,
            menu_item_id=latte.id,
            name="Latte",
            price=Decimal("4.50"),
            cost=Decimal("0"),
            recipe_json=json.dumps(LATTE_RECIPE),
        )
    )
    db.commit()
    delete_menu_item(db, SCOPE_B1, latte.id, index=index, bus=bus)

    result = complete_order(db, SCOPE_B1, latte_order("pos-1", latte.id, quantity=1), index=index)

    assert any("POS item" in warning for warning in result.warnings)
    assert _quantity(db, SCOPE_B1, "milk") == Decimal("4.8")


def test_line_without_any_recipe_is_recorded_without_deduction():
    _, db, index, _, _ = _seed()

    result = complete_order(
        db, SCOPE_B1, {"idempotency_key": "ghost-1", "lines": [{"menu_item_id": "ghost", "quantity": "1"}]}, index=index
    )

    assert result.status == APPLIED
    assert result.movements == []
    assert result.warnings
    assert scoped_query(db, Order, SCOPE_B1).one().stock_applied_at is not None


def test_clamp_policy_floors_stock_at_zero():
    _, db, index, _, latte = _seed(stock={"milk": Decimal("0.3")})

    result = complete_order(db, SCOPE_B1, latte_order("clamp-1", latte.id, quantity=2), index=index, policy="clamp")

    assert result.status == APPLIED
    assert _quantity(db, SCOPE_B1, "milk") == Decimal("0")
    milk_move = [m for m in _movements(db, SCOPE_B1) if m.inventory_item_id == "milk"][0]
    assert milk_move.quantity_delta == Decimal("-0.3")
    assert "clamped" in milk_move.note
    milk = scoped_query(db, InventoryItem, SCOPE_B1).filter(InventoryItem.id == "milk").one()
    assert milk.status == "out-of-stock"


def test_reject_policy_commits_nothing():
    _, db, index, _, latte = _seed(stock={"milk": Decimal("0.3")})

    with pytest.raises(InsufficientStockError) as excinfo:
        complete_order(db, SCOPE_B1, latte_order("reject-1", latte.id, quantity=2), index=index, policy="reject")

    assert excinfo.value.item_id == "milk"
    assert _quantity(db, SCOPE_B1, "milk") == Decimal("0.3")
    assert _quantity(db, SCOPE_B1, "coffee") == Decimal("1")
    assert _movements(db, SCOPE_B1) == []
    assert scoped_query(db, Order, SCOPE_B1).count() == 0


def test_orders_only_touch_their_own_branch():
    SessionLocal, db, index, bus, latte_b1 = _seed()
    for seed in LATTE_INVENTORY:
        create_inventory_item(db, SCOPE_B2, **{**seed, "item_id": f"{seed['item_id']}-b2"})
    db.commit()
    latte_b2 = create_menu_item(
        db,
        SCOPE_B2,
        name="Latte",
        price="4.50",
        recipe=[{**line, "ingredient_id": f"{line['ingredient_id']}-b2"} for line in LATTE_RECIPE],
        index=index,
        bus=bus,
    )

    complete_order(db, SCOPE_B2, latte_order("same-key", latte_b2.id, quantity=1), index=index)
    complete_order(db, SCOPE_B1, latte_order("same-key", latte_b1.id, quantity=2), index=index)

    assert _quantity(db, SCOPE_B1, "milk") == Decimal("4.6")
    assert _quantity(db, SCOPE_B2, "milk-b2") == Decimal("4.8")
    for scope in (SCOPE_B1, SCOPE_B2):
        for movement in _movements(db, scope):
            assert (movement.tenant_id, movement.location_id) == (scope.tenant_id, scope.location_id)


def test_delta_is_applied_in_the_store_not_from_a_stale_snapshot():
    SessionLocal, db, _, _, _ = _seed()
    stale_session = SessionLocal()
    stale_item = stale_session.query(InventoryItem).filter(InventoryItem.id == "milk").one()
    assert stale_item.quantity == Decimal("5")

    apply_stock_delta(db, SCOPE_B1, "milk", Decimal("-1"), reason="sale", idempotency_key="a")
    db.commit()
    apply_stock_delta(stale_session, SCOPE_B1, "milk", Decimal("-1"), reason="sale", idempotency_key="b")
    stale_session.commit()

    assert _quantity(db, SCOPE_B1, "milk") == Decimal("3")
    stale_session.close()


def test_fulfill_order_applies_stock_for_a_stored_order():
    _, db, index, _, latte = _seed()
    order = Order(
        tenant_id=SCOPE_B1.tenant_id,
        location_id=SCOPE_B1.location_id,
        idempotency_key="stored-1",
        status="completed",
        total=Decimal("4.50"),
    )
    order.lines = [
        OrderLine(
            tenant_id=SCOPE_B1.tenant_id,
            location_id=SCOPE_B1.location_id,
            position=0,
            menu_item_id=latte.id,
            name="Latte",
            quantity=Decimal("1"),
            unit_price=Decimal("4.50"),
            line_total=Decimal("4.50"),
        )
    ]
    db.add(order)
    db.commit()

    first = fulfill_order(db, SCOPE_B1, order.id, index=index)
    second = fulfill_order(db, SCOPE_B1, order.id, index=index)

    assert (first.status, second.status) == (APPLIED, DUPLICATE)
    assert _quantity(db, SCOPE_B1, "milk") == Decimal("4.8")


def test_store_outage_hands_the_order_to_the_queue():
    SessionLocal, db, index, _, latte = _seed()
    queue = SyncQueue(session_factory=build_local_session_factory(), bus=EventBus())
    queue.register_handler(ORDER_FULFILLMENT, make_order_replay_handler(SessionLocal, index))
    order = latte_order("offline-1", latte.id, quantity=2)

    with patch(
        "inventory_engine.services.deductor.complete_order",
        side_effect=StoreUnavailableError("connection refused"),
    ):
        first = complete_order_or_enqueue(db, SCOPE_B1, order, queue, index=index)
    queue.set_online(False)
    second = complete_order_or_enqueue(db, SCOPE_B1, order, queue, index=index)

    assert (first.status, second.status) == (QUEUED, QUEUED)
    assert first.entry_id == second.entry_id
    assert queue.status()["pending_count"] == 1
    assert _quantity(db, SCOPE_B1, "milk") == Decimal("5")

    queue.set_online(True)
    summary = queue.process_once()

    assert summary["committed"] == 1
    assert queue.status()["pending_count"] == 0
    assert _quantity(db, SCOPE_B1, "milk") == Decimal("4.6")

    # Same key enqueued again after the cycle: end state is unchanged.
    queue.set_online(False)
    complete_order_or_enqueue(db, SCOPE_B1, order, queue, index=index)
    queue.set_online(True)
    queue.process_once()
    assert _quantity(db, SCOPE_B1, "milk") == Decimal("4.6")
    assert len(_movements(db, SCOPE_B1)) == 2


def test_reject_policy_errors_are_not_queued():
    _, db, index, _, latte = _seed(stock={"milk": Decimal("0.1")})
    queue = SyncQueue(session_factory=build_local_session_factory(), bus=EventBus())

    with pytest.raises(InsufficientStockError):
        complete_order_or_enqueue(db, SCOPE_B1, latte_order("r-1", latte.id), queue, index=index, policy="reject")

    assert queue.status()["pending_count"] == 0


@pytest.mark.parametrize(
    ("quantity", "threshold", "expected"),
    [
        ("0", "10", "out-of-stock"),
        ("5", "10", "low-stock"),
        ("5.01", "10", "warning"),
        ("10", "10", "warning"),
        ("10.5", "10", "good"),
        ("1", "0", "good"),
    ],
)
def test_derive_status(quantity, threshold, expected):
    assert derive_status(Decimal(quantity), Decimal(threshold)) == expected


def test_validate_deduction_setup_reports_gaps():
    _, db, index, bus, _ = _seed()
    create_menu_item(db, SCOPE_B1, name="Water", price="1.00", recipe=[], index=index, bus=bus)
    create_menu_item(
        db,
        SCOPE_B1,
        name="Tea",
        price="2.00",
        recipe=[{"ingredient_name": "Earl Grey", "quantity": "1", "unit": "bag"}],
        index=index,
        bus=bus,
    )
    db.add(
        POSItem(
            tenant_id=SCOPE_B1.tenant_id,
            location_id=SCOPE_B1.location_id,
            menu_item_id=None,
            name="Cookie",
            recipe_json="[]",
        )
    )
    db.commit()

    report = validate_deduction_setup(db, SCOPE_B1, index=index)

    assert report["ok"] is False
    assert len(report["menu_items_without_recipe"]) == 1
    assert report["recipe_lines_without_ingredient_id"][0]["ingredient_name"] == "Earl Grey"
    assert report["unresolved_ingredients"][0]["ingredient_name"] == "Earl Grey"
    assert len(report["pos_items_without_recipe"]) == 1
    assert report["index_problems"] == []


def test_recipe_changed_by_another_client_drives_deduction_and_costing():
    SessionLocal, db, index, bus, latte = _seed()
    create_inventory_item(db, SCOPE_B1, item_id="oat", name="Oat Milk", unit="L", quantity="5", min_threshold="1", cost_per_unit="1.00")
    db.commit()
    index.get_recipe(db, latte.id, SCOPE_B1)

    other_db = SessionLocal()
    set_recipe(
        other_db,
        SCOPE_B1,
        latte.id,
        [
            {"ingredient_id": "oat", "ingredient_name": "Oat Milk", "quantity": "0.2", "unit": "L"},
            {"ingredient_id": "coffee", "ingredient_name": "Coffee Beans", "quantity": "0.02", "unit": "kg"},
        ],
        index=RecipeIndex(),
        bus=EventBus(),
    )
    other_db.close()

    complete_order(db, SCOPE_B1, latte_order("after-edit", latte.id, quantity=1), index=index)
    change = record_cost_change(db, SCOPE_B1, "oat", "3.00", index=index, bus=bus)
    synchronizer = CostSynchronizer(session_factory=SessionLocal, index=index, bus=bus, delay_seconds=0)
    synchronizer.notify(change)
    synchronizer.flush()

    assert _quantity(db, SCOPE_B1, "milk") == Decimal("5")
    assert _quantity(db, SCOPE_B1, "oat") == Decimal("4.8")
    assert change["menu_item_ids"] == [latte.id]
    stored = scoped_query(db, MenuItem, SCOPE_B1).filter(MenuItem.id == latte.id).one()
    assert stored.cost == Decimal("0.96")
    assert stored.cost_stale is False


def test_online_order_waits_behind_queued_orders_of_its_branch():
    SessionLocal, db, index, _, latte = _seed()
    queue = SyncQueue(session_factory=build_local_session_factory(), bus=EventBus())
    replayed = []
    replay = make_order_replay_handler(SessionLocal, index)

    def record_and_replay(payload):
        replayed.append(payload["order"]["idempotency_key"])
        replay(payload)

    queue.register_handler(ORDER_FULFILLMENT, record_and_replay)
    queue.set_online(False)
    complete_order_or_enqueue(db, SCOPE_B1, latte_order("device-1", latte.id, quantity=1), queue, index=index)
    queue.set_online(True)

    later = complete_order_or_enqueue(db, SCOPE_B1, latte_order("online-2", latte.id, quantity=1), queue, index=index)

    assert later.status == QUEUED
    assert _quantity(db, SCOPE_B1, "milk") == Decimal("5")
    assert queue.has_backlog(SCOPE_B2) is False

    assert queue.process_once()["committed"] == 2
    assert replayed == ["device-1", "online-2"]
    assert _quantity(db, SCOPE_B1, "milk") == Decimal("4.6")

    direct = complete_order_or_enqueue(db, SCOPE_B1, latte_order("online-3", latte.id, quantity=1), queue, index=index)
    assert direct.status == APPLIED


def test_placeholder_for_an_id_owned_elsewhere_is_reused():
    _, db, index, bus, _ = _seed()
    latte_b2 = create_menu_item(
        db,
        SCOPE_B2,
        name="Latte",
        price="4.50",
        recipe=[{"ingredient_id": "milk", "quantity": "0.2", "unit": "L"}],
        index=index,
        bus=bus,
    )

    first = complete_order(db, SCOPE_B2, latte_order("b2-1", latte_b2.id, quantity=1), index=index)
    second = complete_order(db, SCOPE_B2, latte_order("b2-2", latte_b2.id, quantity=1), index=index)

    db.expire_all()
    [placeholder] = scoped_query(db, InventoryItem, SCOPE_B2).all()
    assert placeholder.id != "milk"
    assert placeholder.source_ingredient_id == "milk"
    assert placeholder.quantity == Decimal("99.6")
    assert any("auto-created" in warning for warning in first.warnings)
    assert any("placeholder" in warning for warning in second.warnings)
    assert _quantity(db, SCOPE_B1, "milk") == Decimal("5")
