from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from inventory_engine.core.database import get_db
from inventory_engine.core.exceptions import InvalidScopeError
from inventory_engine.deps import get_scope, get_tenant_id, http_error
from inventory_engine.models.tenant import Branch
from inventory_engine.schemas.documents import BranchCreate
from inventory_engine.services.branches import (
    BranchAlreadyExistsError,
    create_branch,
    deactivate_branch,
    list_branches,
)
from inventory_engine.services.scope_resolver import Scope

router = APIRouter(prefix="/api/branches", tags=["branches"])


def _branch_to_dict(branch: Branch) -> dict:
    return {
        "id": branch.id,
        "tenant_id": branch.tenant_id,
        "location_id": branch.location_id,
        "branch_code": branch.branch_code,
        "name": branch.name,
        "is_active": branch.is_active,
        "created_at": branch.created_at.isoformat() if branch.created_at else None,
        "deactivated_at": branch.deactivated_at.isoformat() if branch.deactivated_at else None,
    }


@router.get("")
def get_branches(
    include_inactive: bool = Query(False),
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    return [_branch_to_dict(branch) for branch in list_branches(db, tenant_id, include_inactive)]


@router.post("", status_code=201)
def post_branch(
    payload: BranchCreate,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    try:
        branch = create_branch(db, tenant_id, payload.branch_code, payload.name)
    except BranchAlreadyExistsError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except InvalidScopeError as exc:
        raise http_error(exc) from exc
    return _branch_to_dict(branch)


@router.post("/current/deactivate")
def deactivate_current(scope: Scope = Depends(get_scope), db: Session = Depends(get_db)):
    try:
        branch = deactivate_branch(db, scope)
    except LookupError as exc:
        raise http_error(exc) from exc
    return _branch_to_dict(branch)
