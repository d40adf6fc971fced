from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from inventory_engine.deps import get_scope, get_sync_queue, http_error
from inventory_engine.models.sync_queue import ENTRY_FAILED, ENTRY_IN_FLIGHT, ENTRY_PENDING
from inventory_engine.schemas.documents import OnlineToggle
from inventory_engine.services.scope_resolver import Scope
from inventory_engine.services.sync_queue import SyncQueue

router = APIRouter(prefix="/api/sync", tags=["sync"])

_ENTRY_STATUSES = {ENTRY_PENDING, ENTRY_IN_FLIGHT, ENTRY_FAILED}


@router.get("/status")
def queue_status(
    scope: Scope = Depends(get_scope),
    queue: SyncQueue = Depends(get_sync_queue),
):
    return queue.status(scope)


@router.get("/entries")
def list_entries(
    status: Optional[str] = Query(None),
    scope: Scope = Depends(get_scope),
    queue: SyncQueue = Depends(get_sync_queue),
):
    if status is not None and status not in _ENTRY_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid entry status")
    return queue.list_entries(status, scope)


@router.get("/failed")
def list_failed(
    scope: Scope = Depends(get_scope),
    queue: SyncQueue = Depends(get_sync_queue),
):
    return queue.list_failed(scope)


@router.post("/failed/retry")
def retry_all(
    scope: Scope = Depends(get_scope),
    queue: SyncQueue = Depends(get_sync_queue),
):
    return {"retried": queue.retry_failed(scope=scope)}


@router.post("/failed/{entry_id}/retry")
def retry_entry(
    entry_id: str,
    scope: Scope = Depends(get_scope),
    queue: SyncQueue = Depends(get_sync_queue),
):
    retried = queue.retry_failed(entry_id, scope=scope)
    if not retried:
        raise HTTPException(status_code=404, detail="Failed entry not found")
    return {"retried": retried}


@router.delete("/failed/{entry_id}")
def discard_entry(
    entry_id: str,
    scope: Scope = Depends(get_scope),
    queue: SyncQueue = Depends(get_sync_queue),
):
    try:
        return queue.discard(entry_id, scope=scope)
    except (LookupError, ValueError) as exc:
        raise http_error(exc) from exc


# Connectivity and draining act on the whole device queue.
@router.post("/online")
def set_online(
    payload: OnlineToggle,
    scope: Scope = Depends(get_scope),
    queue: SyncQueue = Depends(get_sync_queue),
):
    queue.set_online(payload.online)
    return queue.status(scope)


@router.post("/process")
def process_now(
    scope: Scope = Depends(get_scope),
    queue: SyncQueue = Depends(get_sync_queue),
):
    return queue.process_once()
