from __future__ import annotations

from fastapi import APIRouter, Depends

from inventory_engine.core.metrics import engine_metrics
from inventory_engine.deps import get_cost_synchronizer, get_sync_queue
from inventory_engine.services.cost_sync import CostSynchronizer
from inventory_engine.services.sync_queue import SyncQueue

router = APIRouter(prefix="/api/internal/metrics", tags=["internal-metrics"])


@router.get("")
def metrics(
    queue: SyncQueue = Depends(get_sync_queue),
    synchronizer: CostSynchronizer = Depends(get_cost_synchronizer),
):
    return {
        **engine_metrics.snapshot(),
        "sync_queue": queue.status(),
        "cost_sync_pending": synchronizer.pending_count,
    }
