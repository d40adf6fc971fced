import os
from decimal import Decimal

from dotenv import load_dotenv

# Load .env from the project root
load_dotenv()

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUE_VALUES


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./inventory_engine.db")
# Client-local durable storage for the offline sync queue.
LOCAL_QUEUE_URL = os.getenv("LOCAL_QUEUE_URL", "sqlite:///./sync_queue.db")

ENV = os.getenv("ENV", "dev")
ENV_NORMALIZED = ENV.lower()
IS_DEV = ENV_NORMALIZED in {"dev", "development", "local"}
IS_TEST = ENV_NORMALIZED == "test"
IS_PROD = ENV_NORMALIZED in {"prod", "production"}

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Scope
LOCATION_ID_PREFIX = "loc_"

# Inventory policy
STOCK_NEGATIVE_POLICY = os.getenv("STOCK_NEGATIVE_POLICY", "clamp").strip().lower()
if STOCK_NEGATIVE_POLICY not in {"clamp", "reject"}:
    STOCK_NEGATIVE_POLICY = "clamp"
LOW_STOCK_RATIO = Decimal(os.getenv("LOW_STOCK_RATIO", "0.5"))
AUTO_CREATED_DEFAULT_STOCK = Decimal(os.getenv("AUTO_CREATED_DEFAULT_STOCK", "100"))
AUTO_CREATED_MIN_THRESHOLD = Decimal(os.getenv("AUTO_CREATED_MIN_THRESHOLD", "10"))
AUTO_CREATED_DEFAULT_UNIT = os.getenv("AUTO_CREATED_DEFAULT_UNIT", "unit")

# Atomic writer / sync queue retry policy
ATOMIC_WRITE_MAX_RETRIES = int(os.getenv("ATOMIC_WRITE_MAX_RETRIES", "3"))
SYNC_MAX_RETRIES = int(os.getenv("SYNC_MAX_RETRIES", "5"))
SYNC_BACKOFF_BASE_SECONDS = float(os.getenv("SYNC_BACKOFF_BASE_SECONDS", "1"))
SYNC_BACKOFF_MAX_SECONDS = float(os.getenv("SYNC_BACKOFF_MAX_SECONDS", "30"))
SYNC_POLL_INTERVAL_SECONDS = float(os.getenv("SYNC_POLL_INTERVAL_SECONDS", "30"))

# Cost synchronizer
COST_SYNC_DELAY_SECONDS = float(os.getenv("COST_SYNC_DELAY_SECONDS", "2"))

BACKGROUND_WORKERS_ENABLED = _flag("BACKGROUND_WORKERS_ENABLED", "0" if IS_TEST else "1")
