from sqlalchemy import Boolean, Column, DateTime, Integer, String, UniqueConstraint, func

from inventory_engine.core.database import Base
from inventory_engine.models.scoped import ScopedColumns


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(String(128), primary_key=True)
    name = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Branch(ScopedColumns, Base):
    __tablename__ = "branches"
    __table_args__ = (UniqueConstraint("tenant_id", "location_id", name="uq_branches_tenant_location"),)

    id = Column(Integer, primary_key=True)
    # Human-facing identifier as typed at branch setup; location_id is derived from it.
    branch_code = Column(String(80), nullable=False)
    name = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    deactivated_at = Column(DateTime(timezone=True), nullable=True)
