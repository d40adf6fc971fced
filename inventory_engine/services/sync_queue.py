"""Durable FIFO buffer for writes made while the store is unreachable.

Entry lifecycle::

    pending -> in_flight -> (deleted)            committed
    pending -> in_flight -> pending              failed attempt, retried after backoff
    pending -> in_flight -> failed               retries exhausted; kept for an operator

Entries live in the client-local database behind ``LOCAL_QUEUE_URL`` so they
survive a restart. Entry ids double as the downstream idempotency key, which
makes re-attempting an entry that was in flight during a crash safe.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable

from sqlalchemy.orm import Session

from inventory_engine.core.config import SYNC_POLL_INTERVAL_SECONDS
from inventory_engine.core.database import LocalSessionLocal
from inventory_engine.core.exceptions import SyncExhaustedError
from inventory_engine.core.metrics import engine_metrics
from inventory_engine.models.sync_queue import (
    ENTRY_FAILED,
    ENTRY_IN_FLIGHT,
    ENTRY_PENDING,
    SyncQueueEntry,
)
from inventory_engine.services.backoff import SYNC_RETRY_POLICY, RetryPolicy
from inventory_engine.services.event_bus import SYNC_ENTRY_FAILED, EventBus, event_bus
from inventory_engine.services.scope_resolver import Scope

logger = logging.getLogger(__name__)

Handler = Callable[[dict], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything stored here is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _entry_to_dict(entry: SyncQueueEntry) -> dict:
    next_attempt_at = _aware(entry.next_attempt_at)
    created_at = _aware(entry.created_at)
    return {
        "id": entry.id,
        "queue_name": entry.queue_name,
        "tenant_id": entry.tenant_id,
        "location_id": entry.location_id,
        "type": entry.type,
        "payload": json.loads(entry.payload_json),
        "status": entry.status,
        "attempts": entry.attempts,
        "max_retries": entry.max_retries,
        "last_error": entry.last_error,
        "next_attempt_at": next_attempt_at.isoformat() if next_attempt_at else None,
        "created_at": created_at.isoformat() if created_at else None,
    }


class SyncQueue:
    def __init__(
        self,
        session_factory: Callable[[], Session] = LocalSessionLocal,
        queue_name: str = "default",
        policy: RetryPolicy = SYNC_RETRY_POLICY,
        bus: EventBus = event_bus,
        poll_interval_seconds: float = SYNC_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._session_factory = session_factory
        self.queue_name = queue_name
        self._policy = policy
        self._bus = bus
        self._poll_interval_seconds = poll_interval_seconds
        self._handlers: dict[str, Handler] = {}
        self._online = True
        self._syncing = False
        self._pass_lock = Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wakeup: asyncio.Event | None = None

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    def register_handler(self, entry_type: str, handler: Handler) -> None:
        self._handlers[entry_type] = handler

    def _query(self, db: Session, scope: Scope | None = None):
        query = db.query(SyncQueueEntry).filter(SyncQueueEntry.queue_name == self.queue_name)
        if scope is not None:
            query = query.filter(
                SyncQueueEntry.tenant_id == scope.tenant_id,
                SyncQueueEntry.location_id == scope.location_id,
            )
        return query

    def enqueue(
        self,
        entry_type: str,
        payload: dict,
        max_retries: int | None = None,
        entry_id: str | None = None,
        scope: Scope | None = None,
    ) -> dict:
        """Append a pending entry. Re-enqueueing an existing ``entry_id`` is a no-op."""
        entry_id = entry_id or uuid.uuid4().hex
        now = _utcnow()
        with self._session_factory() as db:
            existing = self._query(db).filter(SyncQueueEntry.id == entry_id).first()
            if existing is not None:
                logger.info("[SYNC_QUEUE] entry %s already queued status=%s", entry_id, existing.status)
                return _entry_to_dict(existing)
            entry = SyncQueueEntry(
                id=entry_id,
                queue_name=self.queue_name,
                tenant_id=scope.tenant_id if scope else None,
                location_id=scope.location_id if scope else None,
                type=entry_type,
                payload_json=json.dumps(payload, default=str),
                status=ENTRY_PENDING,
                attempts=0,
                max_retries=self._policy.max_retries if max_retries is None else max_retries,
                created_at=now,
                updated_at=now,
            )
            db.add(entry)
            db.commit()
            db.refresh(entry)
            snapshot = _entry_to_dict(entry)
        engine_metrics.incr("sync.enqueued")
        logger.info("[SYNC_QUEUE] enqueued %s type=%s", entry_id, entry_type)
        self._wake()
        return snapshot

    def status(self, scope: Scope | None = None) -> dict:
        """Entry counts, for one partition when ``scope`` is given."""
        with self._session_factory() as db:
            counts = {
                status: self._query(db, scope).filter(SyncQueueEntry.status == status).count()
                for status in (ENTRY_PENDING, ENTRY_IN_FLIGHT, ENTRY_FAILED)
            }
        return {
            "queue_name": self.queue_name,
            "pending_count": counts[ENTRY_PENDING],
            "in_flight_count": counts[ENTRY_IN_FLIGHT],
            "failed_count": counts[ENTRY_FAILED],
            "total_count": sum(counts.values()),
            "is_online": self._online,
            "is_syncing": self._syncing,
        }

    def has_backlog(self, scope: Scope) -> bool:
        """True while ``scope`` has entries waiting to be written or being written."""
        with self._session_factory() as db:
            return (
                self._query(db, scope)
                .filter(SyncQueueEntry.status.in_((ENTRY_PENDING, ENTRY_IN_FLIGHT)))
                .first()
                is not None
            )

    def list_entries(self, status: str | None = None, scope: Scope | None = None) -> list[dict]:
        with self._session_factory() as db:
            query = self._query(db, scope)
            if status:
                query = query.filter(SyncQueueEntry.status == status)
            return [_entry_to_dict(entry) for entry in query.order_by(SyncQueueEntry.seq.asc()).all()]

    def list_failed(self, scope: Scope | None = None) -> list[dict]:
        return self.list_entries(ENTRY_FAILED, scope)

    def retry_failed(self, entry_id: str | None = None, scope: Scope | None = None) -> int:
        """Return failed entries (one, or all) to pending with a fresh attempt budget."""
        with self._session_factory() as db:
            query = self._query(db, scope).filter(SyncQueueEntry.status == ENTRY_FAILED)
            if entry_id:
                query = query.filter(SyncQueueEntry.id == entry_id)
            entries = query.all()
            now = _utcnow()
            for entry in entries:
                entry.status = ENTRY_PENDING
                entry.attempts = 0
                entry.next_attempt_at = None
                entry.updated_at = now
            db.commit()
        if entries:
            logger.info("[SYNC_QUEUE] %s failed entries returned to pending", len(entries))
            self._wake()
        return len(entries)

    def discard(self, entry_id: str, scope: Scope | None = None) -> dict:
        with self._session_factory() as db:
            entry = self._query(db, scope).filter(SyncQueueEntry.id == entry_id).first()
            if entry is None:
                raise LookupError(f"Sync entry {entry_id} not found")
            if entry.status != ENTRY_FAILED:
                raise ValueError(f"Only failed entries can be discarded; {entry_id} is {entry.status}")
            snapshot = _entry_to_dict(entry)
            db.delete(entry)
            db.commit()
        logger.warning("[SYNC_QUEUE] discarded failed entry %s type=%s", entry_id, snapshot["type"])
        engine_metrics.incr("sync.discarded")
        return snapshot

    def set_online(self, online: bool) -> None:
        was_online = self._online
        self._online = bool(online)
        if self._online != was_online:
            logger.info("[SYNC_QUEUE] %s", "online" if self._online else "offline")
        if self._online and not was_online:
            self._wake()

    def recover_in_flight(self) -> int:
        """Return entries left in flight by an interrupted process to pending."""
        with self._session_factory() as db:
            entries = self._query(db).filter(SyncQueueEntry.status == ENTRY_IN_FLIGHT).all()
            now = _utcnow()
            for entry in entries:
                entry.status = ENTRY_PENDING
                entry.updated_at = now
            db.commit()
        if entries:
            logger.warning("[SYNC_QUEUE] recovered %s in-flight entries", len(entries))
        return len(entries)

    def process_once(self, now: datetime | None = None) -> dict:
        """Drain due entries in FIFO order.

        A pass stops at the first entry that fails and is still retryable, so
        later entries never overtake it. Exhausted entries become ``failed``
        and the pass moves on.
        """
        summary = {"committed": 0, "retried": 0, "failed": 0, "skipped": False}
        if not self._online or not self._pass_lock.acquire(blocking=False):
            summary["skipped"] = True
            return summary

        self._syncing = True
        try:
            with self._session_factory() as db:
                while self._online:
                    entry = (
                        self._query(db)
                        .filter(SyncQueueEntry.status == ENTRY_PENDING)
                        .order_by(SyncQueueEntry.seq.asc())
                        .first()
                    )
                    if entry is None:
                        break
                    current = now or _utcnow()
                    due_at = _aware(entry.next_attempt_at)
                    if due_at is not None and due_at > current:
                        break

                    entry.status = ENTRY_IN_FLIGHT
                    entry.updated_at = current
                    db.commit()

                    outcome = self._attempt(db, entry, current)
                    summary[outcome] += 1
                    if outcome == "retried":
                        break
        finally:
            self._syncing = False
            self._pass_lock.release()

        if summary["committed"] or summary["retried"] or summary["failed"]:
            logger.info(
                "[SYNC_QUEUE] pass committed=%s retried=%s failed=%s",
                summary["committed"],
                summary["retried"],
                summary["failed"],
            )
        return summary

    def _attempt(self, db: Session, entry: SyncQueueEntry, now: datetime) -> str:
        handler = self._handlers.get(entry.type)
        try:
            if handler is None:
                raise LookupError(f"No handler registered for {entry.type}")
            handler(json.loads(entry.payload_json))
        except Exception as exc:
            return self._record_failure(db, entry, exc, now)

        entry_id = entry.id
        db.delete(entry)
        db.commit()
        engine_metrics.incr("sync.committed")
        logger.info("[SYNC_QUEUE] committed %s", entry_id)
        return "committed"

    def _record_failure(self, db: Session, entry: SyncQueueEntry, exc: Exception, now: datetime) -> str:
        entry.attempts += 1
        entry.last_error = f"{type(exc).__name__}: {exc}"
        entry.updated_at = now
        if self._policy.exhausted(entry.attempts, entry.max_retries):
            entry.status = ENTRY_FAILED
            entry.next_attempt_at = None
            db.commit()
            error = SyncExhaustedError(entry.id, entry.attempts, entry.last_error)
            logger.error("[SYNC_QUEUE] %s", error)
            engine_metrics.incr("sync.failed")
            self._bus.emit(SYNC_ENTRY_FAILED, _entry_to_dict(entry))
            return "failed"

        delay = self._policy.delay_for(entry.attempts)
        entry.status = ENTRY_PENDING
        entry.next_attempt_at = now + timedelta(seconds=delay)
        db.commit()
        engine_metrics.incr("sync.retried")
        logger.warning(
            "[SYNC_QUEUE] attempt %s/%s failed for %s: %s; retry in %.1fs",
            entry.attempts,
            entry.max_retries,
            entry.id,
            entry.last_error,
            delay,
        )
        return "retried"

    def seconds_until_due(self, now: datetime | None = None) -> float | None:
        """Time until the head pending entry may be attempted; None when empty."""
        with self._session_factory() as db:
            entry = (
                self._query(db)
                .filter(SyncQueueEntry.status == ENTRY_PENDING)
                .order_by(SyncQueueEntry.seq.asc())
                .first()
            )
            if entry is None:
                return None
            due_at = _aware(entry.next_attempt_at)
        if due_at is None:
            return 0.0
        return max((due_at - (now or _utcnow())).total_seconds(), 0.0)

    def _wake(self) -> None:
        if self._loop is not None and self._wakeup is not None:
            self._loop.call_soon_threadsafe(self._wakeup.set)

    async def run(self, stop_event: asyncio.Event) -> None:
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        await asyncio.to_thread(self.recover_in_flight)
        logger.info("[SYNC_QUEUE] driver started queue=%s", self.queue_name)
        try:
            while not stop_event.is_set():
                timeout = self._poll_interval_seconds
                self._wakeup.clear()
                if self._online:
                    try:
                        await asyncio.to_thread(self.process_once)
                        due_in = await asyncio.to_thread(self.seconds_until_due)
                    except Exception:
                        logger.exception("[SYNC_QUEUE] pass failed")
                        due_in = None
                    if due_in is not None:
                        timeout = min(timeout, max(due_in, 0.05))

                waiters = [
                    asyncio.ensure_future(stop_event.wait()),
                    asyncio.ensure_future(self._wakeup.wait()),
                ]
                try:
                    await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    for waiter in waiters:
                        waiter.cancel()
        finally:
            self._loop = None
            self._wakeup = None
            logger.info("[SYNC_QUEUE] driver stopped queue=%s", self.queue_name)


sync_queue = SyncQueue()
