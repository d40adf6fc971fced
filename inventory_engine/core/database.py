from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from inventory_engine.core.config import DATABASE_URL, LOCAL_QUEUE_URL


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(DATABASE_URL, connect_args=_connect_args(DATABASE_URL), pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

# Client-local storage lives in its own metadata so it never migrates with the shared store.
local_engine = create_engine(LOCAL_QUEUE_URL, connect_args=_connect_args(LOCAL_QUEUE_URL))
LocalSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=local_engine)

LocalBase = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
