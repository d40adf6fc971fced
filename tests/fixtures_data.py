"""Reusable scenario data and store builders for engine tests."""

from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from inventory_engine.core.database import Base, LocalBase
import inventory_engine.models  # noqa: F401
from inventory_engine.services.scope_resolver import scope_for

TENANT_ID = "acme-coffee"
OTHER_TENANT_ID = "globex"

SCOPE_B1 = scope_for(TENANT_ID, "B1")
SCOPE_B2 = scope_for(TENANT_ID, "B2")
OTHER_TENANT_B1 = scope_for(OTHER_TENANT_ID, "B1")

LATTE_INVENTORY = [
    {"item_id": "milk", "name": "Milk", "unit": "L", "quantity": Decimal("5"), "min_threshold": Decimal("1"), "cost_per_unit": Decimal("1.20")},
    {"item_id": "coffee", "name": "Coffee Beans", "unit": "kg", "quantity": Decimal("1"), "min_threshold": Decimal("0.2"), "cost_per_unit": Decimal("18.00")},
]

LATTE_RECIPE = [
    {"ingredient_id": "milk", "ingredient_name": "Milk", "quantity": "0.2", "unit": "L"},
    {"ingredient_id": "coffee", "ingredient_name": "Coffee Beans", "quantity": "0.02", "unit": "kg"},
]

CAPPUCCINO_RECIPE = [
    {"ingredient_id": "milk", "ingredient_name": "Milk", "quantity": "0.15", "unit": "L"},
    {"ingredient_id": "coffee", "ingredient_name": "Coffee Beans", "quantity": "0.02", "unit": "kg"},
]

SUGAR_INVENTORY = {"item_id": "sugar", "name": "Sugar", "unit": "unit", "quantity": Decimal("500"), "min_threshold": Decimal("50"), "cost_per_unit": Decimal("0.50")}


def latte_order(idempotency_key: str, menu_item_id: str, quantity: int = 2) -> dict:
    return {
        "idempotency_key": idempotency_key,
        "lines": [{"menu_item_id": menu_item_id, "name": "Latte", "quantity": str(quantity), "unit_price": "4.50"}],
    }


def build_session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def build_local_session_factory(url: str = "sqlite+pysqlite:///:memory:"):
    if url.endswith(":memory:"):
        engine = create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    else:
        engine = create_engine(url, connect_args={"check_same_thread": False})
    LocalBase.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
