from sqlalchemy import Column, DateTime, Integer, String, Text

from inventory_engine.core.database import LocalBase

ENTRY_PENDING = "pending"
ENTRY_IN_FLIGHT = "in_flight"
ENTRY_FAILED = "failed"


class SyncQueueEntry(LocalBase):
    """Durable client-local record of a write waiting for the store.

    Committed entries are deleted; failed entries stay until an operator
    retries or discards them.
    """

    __tablename__ = "sync_queue_entries"

    # Insertion order; FIFO replay follows it.
    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(128), unique=True, nullable=False, index=True)
    queue_name = Column(String(64), nullable=False, default="default", index=True)
    # Partition the entry was written for; operator views are filtered on it.
    tenant_id = Column(String(128), nullable=True, index=True)
    location_id = Column(String(80), nullable=True)
    type = Column(String(64), nullable=False)
    payload_json = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default=ENTRY_PENDING, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False)
    last_error = Column(Text, nullable=True)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
