from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from inventory_engine.core.database import Base
from inventory_engine.models.scoped import ScopedColumns, new_document_id

ORDER_STATUSES = {"completed", "voided"}


class Order(ScopedColumns, Base):
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("tenant_id", "location_id", "idempotency_key", name="uq_orders_idempotency_key"),
    )

    id = Column(String(64), primary_key=True, default=new_document_id)
    # Generated by the client per submission; retries and replays carry the same key.
    idempotency_key = Column(String(128), nullable=False)
    status = Column(String(16), nullable=False, default="completed")
    total = Column(Numeric(12, 2), nullable=False, default=0)
    stock_applied_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    lines = relationship(
        "OrderLine",
        back_populates="order",
        order_by="OrderLine.position",
        cascade="all, delete-orphan",
    )


class OrderLine(ScopedColumns, Base):
    __tablename__ = "order_lines"

    id = Column(Integer, primary_key=True)
    order_id = Column(String(64), ForeignKey("orders.id"), index=True, nullable=False)
    position = Column(Integer, nullable=False, default=0)
    menu_item_id = Column(String(64), nullable=True)
    pos_item_id = Column(String(64), nullable=True)
    name = Column(String, nullable=False, default="")
    quantity = Column(Numeric(14, 4), nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False, default=0)
    line_total = Column(Numeric(12, 2), nullable=False, default=0)

    order = relationship("Order", back_populates="lines")
