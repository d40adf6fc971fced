from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from inventory_engine.core.database import Base
from inventory_engine.models.scoped import ScopedColumns, new_document_id

STATUS_OUT_OF_STOCK = "out-of-stock"
STATUS_LOW_STOCK = "low-stock"
STATUS_WARNING = "warning"
STATUS_GOOD = "good"

MOVEMENT_REASONS = {"sale", "receiving", "waste", "adjustment"}


class InventoryItem(ScopedColumns, Base):
    __tablename__ = "inventory_items"
    __table_args__ = (
        Index("ix_inventory_items_scope_name", "tenant_id", "location_id", "name"),
        Index("ix_inventory_items_scope_source", "tenant_id", "location_id", "source_ingredient_id"),
    )

    id = Column(String(64), primary_key=True, default=new_document_id)
    name = Column(String, nullable=False)
    unit = Column(String(32), nullable=False)
    quantity = Column(Numeric(14, 4), nullable=False, default=0)
    min_threshold = Column(Numeric(14, 4), nullable=False, default=0)
    cost_per_unit = Column(Numeric(12, 4), nullable=False, default=0)
    status = Column(String(16), nullable=False, default=STATUS_OUT_OF_STOCK)
    needs_review = Column(Boolean, nullable=False, default=False)
    review_reason = Column(Text, nullable=True)
    # Recipe id an auto-created placeholder stands in for when that id is taken elsewhere.
    source_ingredient_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class StockMovement(ScopedColumns, Base):
    __tablename__ = "stock_movements"
    __table_args__ = (
        # One row per (operation, ingredient): a replayed operation cannot deduct twice.
        UniqueConstraint(
            "tenant_id",
            "location_id",
            "idempotency_key",
            "inventory_item_id",
            name="uq_stock_movements_idempotency",
        ),
    )

    id = Column(String(64), primary_key=True, default=new_document_id)
    inventory_item_id = Column(String(64), ForeignKey("inventory_items.id"), index=True, nullable=False)
    quantity_delta = Column(Numeric(14, 4), nullable=False)
    previous_quantity = Column(Numeric(14, 4), nullable=False)
    new_quantity = Column(Numeric(14, 4), nullable=False)
    reason = Column(String(16), nullable=False)
    order_id = Column(String(64), ForeignKey("orders.id"), index=True, nullable=True)
    idempotency_key = Column(String(128), index=True, nullable=True)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    inventory_item = relationship("InventoryItem")
