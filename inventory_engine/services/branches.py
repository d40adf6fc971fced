from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from inventory_engine.models.tenant import Branch, Tenant
from inventory_engine.services.scope_resolver import Scope, normalize_tenant_id, scope_for

logger = logging.getLogger(__name__)


class BranchAlreadyExistsError(ValueError):
    pass


def ensure_tenant(db: Session, tenant_id: str, name: str | None = None) -> Tenant:
    tenant_id = normalize_tenant_id(tenant_id)
    tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
    if tenant is None:
        tenant = Tenant(id=tenant_id, name=name or tenant_id, is_active=True)
        db.add(tenant)
        db.flush()
    return tenant


def create_branch(db: Session, tenant_id: str, branch_code: str, name: str | None = None) -> Branch:
    """Register a branch; its location id comes from the scope resolver."""
    scope = scope_for(tenant_id, branch_code)
    existing = (
        db.query(Branch)
        .filter(Branch.tenant_id == scope.tenant_id, Branch.location_id == scope.location_id)
        .first()
    )
    if existing is not None:
        raise BranchAlreadyExistsError(f"Branch {scope.location_id} already exists for tenant {scope.tenant_id}")

    ensure_tenant(db, scope.tenant_id)
    branch = Branch(
        **scope.as_fields(),
        branch_code=branch_code.strip(),
        name=(name or "").strip() or branch_code.strip(),
        is_active=True,
    )
    db.add(branch)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise BranchAlreadyExistsError(
            f"Branch {scope.location_id} already exists for tenant {scope.tenant_id}"
        ) from exc
    db.refresh(branch)
    logger.info("[BRANCH] created %s/%s code=%r", scope.tenant_id, scope.location_id, branch.branch_code)
    return branch


def get_branch(db: Session, scope: Scope) -> Branch | None:
    return (
        db.query(Branch)
        .filter(Branch.tenant_id == scope.tenant_id, Branch.location_id == scope.location_id)
        .first()
    )


def deactivate_branch(db: Session, scope: Scope) -> Branch:
    """Soft-deactivate; historical orders and stock keep pointing at the location."""
    branch = get_branch(db, scope)
    if branch is None:
        raise LookupError(f"Branch {scope.location_id} not found")
    if branch.is_active:
        branch.is_active = False
        branch.deactivated_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(branch)
        logger.info("[BRANCH] deactivated %s/%s", scope.tenant_id, scope.location_id)
    return branch


def list_branches(db: Session, tenant_id: str, include_inactive: bool = False) -> list[Branch]:
    query = db.query(Branch).filter(Branch.tenant_id == normalize_tenant_id(tenant_id))
    if not include_inactive:
        query = query.filter(Branch.is_active.is_(True))
    return query.order_by(Branch.location_id.asc()).all()
