import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from inventory_engine.core.config import BACKGROUND_WORKERS_ENABLED, DATABASE_URL, ENV
from inventory_engine.core.database import Base, LocalBase, SessionLocal, engine, local_engine
from inventory_engine.core.logging_setup import configure_logging
from inventory_engine.core.startup_checks import ensure_migrations_applied, validate_database_environment
from inventory_engine.middleware.observability import ObservabilityMiddleware
import inventory_engine.models  # noqa: F401  models must be registered before create_all
import inventory_engine.services.event_handlers  # noqa: F401  subscribes event bus handlers

from inventory_engine.services.cost_sync import cost_synchronizer
from inventory_engine.services.deductor import ORDER_FULFILLMENT, make_order_replay_handler
from inventory_engine.services.sync_queue import sync_queue
from inventory_engine.routers.branches import router as branches_router
from inventory_engine.routers.inventory import router as inventory_router
from inventory_engine.routers.menu import router as menu_router
from inventory_engine.routers.orders import router as orders_router
from inventory_engine.routers.sync import router as sync_router
from inventory_engine.routers.internal_metrics import router as internal_metrics_router

configure_logging()

logger = logging.getLogger(__name__)
STARTUP_PREFIX = "[STARTUP]"
REPO_ROOT = Path(__file__).resolve().parents[1]
ALEMBIC_CONFIG_PATH = Path(
    os.getenv("ALEMBIC_CONFIG", str(REPO_ROOT / "alembic.ini"))
)

sync_queue.register_handler(ORDER_FULFILLMENT, make_order_replay_handler(SessionLocal))


def _startup_tasks() -> None:
    try:
        validate_database_environment()
        if DATABASE_URL.startswith("sqlite"):
            Base.metadata.create_all(bind=engine)
        LocalBase.metadata.create_all(bind=local_engine)
        ensure_migrations_applied(engine=engine, alembic_config_path=ALEMBIC_CONFIG_PATH)
        recovered = sync_queue.recover_in_flight()
        logger.info("%s env=%s recovered_in_flight=%s", STARTUP_PREFIX, ENV, recovered)
    except Exception:
        logger.exception("%s ERROR startup failed", STARTUP_PREFIX)
        raise


@asynccontextmanager
async def lifespan(_: FastAPI):
    _startup_tasks()
    stop_event = asyncio.Event()
    tasks: list[asyncio.Task] = []
    if BACKGROUND_WORKERS_ENABLED:
        tasks.append(asyncio.create_task(sync_queue.run(stop_event)))
        tasks.append(asyncio.create_task(cost_synchronizer.run(stop_event)))
    else:
        logger.info("%s background workers disabled", STARTUP_PREFIX)
    try:
        yield
    finally:
        stop_event.set()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


app = FastAPI(
    title="Inventory Consistency Engine",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(ObservabilityMiddleware)

app.include_router(branches_router)
app.include_router(inventory_router)
app.include_router(menu_router)
app.include_router(orders_router)
app.include_router(sync_router)
app.include_router(internal_metrics_router)


@app.get("/")
def root():
    return {"status": "ok"}


@app.get("/health")
def health():
    return {"status": "healthy", "sync_queue_online": sync_queue.is_online}
