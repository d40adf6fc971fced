from sqlalchemy import Boolean, Column, DateTime, Numeric, String, Text, UniqueConstraint, func

from inventory_engine.core.database import Base
from inventory_engine.models.scoped import ScopedColumns, new_document_id


class POSItem(ScopedColumns, Base):
    """Read-optimized copy of a MenuItem for the register. Never a source of truth."""

    __tablename__ = "pos_items"
    __table_args__ = (UniqueConstraint("tenant_id", "location_id", "menu_item_id", name="uq_pos_items_menu_item"),)

    id = Column(String(64), primary_key=True, default=new_document_id)
    menu_item_id = Column(String(64), index=True, nullable=True)
    name = Column(String, nullable=False)
    category = Column(String, nullable=False, default="")
    price = Column(Numeric(12, 2), nullable=False, default=0)
    cost = Column(Numeric(12, 2), nullable=False, default=0)
    recipe_json = Column(Text, nullable=False, default="[]")
    is_stale = Column(Boolean, nullable=False, default=False)
    projected_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
