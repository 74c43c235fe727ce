"""
Debounced, retried and conflict-checked session writes.

Per session id a write is UNSCHEDULED, PENDING (debounce timer armed) or
IN_FLIGHT. A newer schedule_write/write_now always replaces a pending one,
and writes for one id are serialized by a per-id lock; distinct ids never
wait on each other.

Store failures never reach the caller as exceptions. They come back as a
failed SaveResult and, when configured, through the on_save_failed callback.
"""

from typing import Any, Callable, Dict, Optional, Set, Tuple
from enum import Enum
import asyncio
import inspect
import time

from pydantic import BaseModel
import structlog

from storyloom.domain.errors import SessionStoreError
from storyloom.domain.models.session import Session, utcnow
from storyloom.infrastructure.observability.logging import session_logger, metrics
from .session_store import SessionStore
from .validation import ValidationResult, validate_session

logger = structlog.get_logger(__name__)


class WriteState(str, Enum):
    UNSCHEDULED = "unscheduled"
    PENDING = "pending"
    IN_FLIGHT = "in_flight"


class SaveResult(BaseModel):
    """Outcome of one write request"""
    session_id: str
    success: bool
    attempts: int = 0
    conflict_detected: bool = False
    resolution: Optional[str] = None
    error: Optional[str] = None


class PersistenceCoordinator:
    """Owns pending-write timers and performs snapshot writes against a SessionStore"""

    def __init__(
        self,
        store: SessionStore,
        validator: Callable[[Session], ValidationResult] = validate_session,
        debounce_seconds: float = 1.0,
        max_attempts: int = 3,
        backoff_base_seconds: float = 1.0,
        conflict_tolerance_seconds: float = 5.0,
        on_save_failed: Optional[Callable[[SaveResult], Any]] = None
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.store = store
        self.validator = validator
        self.debounce_seconds = debounce_seconds
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.conflict_tolerance_seconds = conflict_tolerance_seconds
        self.on_save_failed = on_save_failed

        self._pending: Dict[str, asyncio.TimerHandle] = {}
        self._in_flight: Dict[str, int] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._stats = {"writes": 0, "failures": 0, "conflicts": 0, "invalid": 0, "coalesced": 0}

    def schedule_write(self, session: Session) -> None:
        """Arm (or re-arm) the debounce timer for this session. Needs a running loop."""

        loop = asyncio.get_running_loop()
        session_id = session.session_id

        if self._cancel_pending(session_id):
            self._stats["coalesced"] += 1

        snapshot = session.model_copy(deep=True)
        self._pending[session_id] = loop.call_later(self.debounce_seconds, self._fire, session_id, snapshot)

        logger.debug("Write scheduled", session_id=session_id, debounce_seconds=self.debounce_seconds)

    async def write_now(self, session: Session, overwrite: bool = False) -> SaveResult:
        """Cancel any pending write and persist immediately.

        `overwrite` skips conflict resolution, for deliberate history rewrites
        such as a rollback.
        """

        self._cancel_pending(session.session_id)
        task = self._track(self._write(session.model_copy(deep=True), overwrite))

        # A cancelled caller does not cancel the write itself
        return await asyncio.shield(task)

    def cancel(self, session_id: str) -> bool:
        """Drop the pending write for one session, if any"""
        return self._cancel_pending(session_id)

    def cleanup(self) -> None:
        """Cancel every pending write; in-flight writes run to completion"""

        count = len(self._pending)
        for handle in self._pending.values():
            handle.cancel()
        self._pending.clear()

        if count:
            logger.info("Pending writes cancelled", count=count)

    async def wait_idle(self) -> None:
        """Wait until no write started by this coordinator is still running"""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def get_write_state(self, session_id: str) -> WriteState:
        if session_id in self._pending:
            return WriteState.PENDING
        if self._in_flight.get(session_id):
            return WriteState.IN_FLIGHT
        return WriteState.UNSCHEDULED

    def get_save_stats(self) -> Dict[str, Any]:
        """Get save statistics for debugging"""
        return {
            "pending_saves": len(self._pending),
            "queued_sessions": list(self._pending.keys()),
            "in_flight": sum(self._in_flight.values()),
            **self._stats
        }

    def _cancel_pending(self, session_id: str) -> bool:
        handle = self._pending.pop(session_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _fire(self, session_id: str, snapshot: Session) -> None:
        """Timer callback: the debounce window closed"""

        self._pending.pop(session_id, None)
        self._track(self._write(snapshot, False))

    async def _write(self, session: Session, overwrite: bool) -> SaveResult:
        session_id = session.session_id

        validation = self.validator(session)
        if not validation.is_valid:
            # A malformed in-memory session must never reach durable state
            self._stats["invalid"] += 1
            session_logger.log_persistence_event(
                session_id, "validation_failed", success=False, error="; ".join(validation.errors)
            )
            return await self._report_failure(SaveResult(
                session_id=session_id,
                success=False,
                error=f"Invalid session: {'; '.join(validation.errors)}"
            ))

        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._in_flight[session_id] = self._in_flight.get(session_id, 0) + 1
        start = time.perf_counter()
        try:
            async with lock:
                result = await self._write_with_retry(session, overwrite)
        finally:
            self._in_flight[session_id] -= 1
            # Every lock user is counted in _in_flight, so at zero nobody holds or waits on it
            if not self._in_flight[session_id]:
                del self._in_flight[session_id]
                self._locks.pop(session_id, None)

        metrics.record_latency("session_write", (time.perf_counter() - start) * 1000, {"success": str(result.success)})

        if not result.success:
            return await self._report_failure(result)
        return result

    async def _write_with_retry(self, session: Session, overwrite: bool) -> SaveResult:
        session_id = session.session_id
        last_error: Optional[SessionStoreError] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                snapshot, conflict, resolution = session, False, None
                if not overwrite:
                    existing = await self._read_stored(session_id)
                    if existing is not None and self.has_conflict(session, existing):
                        conflict = True
                        snapshot, resolution = self.resolve_conflict(session, existing)

                await self.store.set(session_id, snapshot)

                self._stats["writes"] += 1
                if conflict:
                    self._stats["conflicts"] += 1
                    metrics.increment_counter("session_write_conflicts")
                session_logger.log_persistence_event(
                    session_id,
                    "saved",
                    attempt=attempt,
                    details={"conflict": conflict, "resolution": resolution, "actions": snapshot.turn}
                )
                return SaveResult(
                    session_id=session_id,
                    success=True,
                    attempts=attempt,
                    conflict_detected=conflict,
                    resolution=resolution
                )

            except SessionStoreError as e:
                last_error = e
                session_logger.log_persistence_event(
                    session_id, "write_failed", attempt=attempt, success=False, error=str(e),
                    details={"retryable": e.retryable}
                )
                if not e.retryable or attempt == self.max_attempts:
                    break
                await asyncio.sleep(self.backoff_base_seconds * 2 ** attempt)

        self._stats["failures"] += 1
        metrics.increment_counter("session_write_failures")
        return SaveResult(
            session_id=session_id,
            success=False,
            attempts=attempt,
            error=str(last_error) if last_error else "Unknown storage error"
        )

    async def _read_stored(self, session_id: str) -> Optional[Session]:
        """Stored copy for conflict checks; an unreadable one counts as absent"""

        try:
            return await self.store.get(session_id)
        except SessionStoreError as e:
            if e.retryable:
                raise
            # The in-memory session is authoritative; overwrite the bad snapshot
            logger.warning("Stored snapshot unreadable, overwriting", session_id=session_id, error=str(e))
            return None

    async def _report_failure(self, result: SaveResult) -> SaveResult:
        logger.warning("Auto-save failed", session_id=result.session_id, attempts=result.attempts, error=result.error)

        if self.on_save_failed is not None:
            outcome = self.on_save_failed(result)
            if inspect.isawaitable(outcome):
                await outcome
        return result

    def has_conflict(self, incoming: Session, stored: Session) -> bool:
        """Stored copy is newer beyond the tolerance, or holds more progress"""

        newer = (stored.last_updated - incoming.last_updated).total_seconds() > self.conflict_tolerance_seconds
        regressed = len(stored.action_history) > len(incoming.action_history)
        return newer or regressed

    @staticmethod
    def resolve_conflict(incoming: Session, stored: Session) -> Tuple[Session, str]:
        """More actions wins; on a tie the later last_updated wins"""

        if len(stored.action_history) > len(incoming.action_history):
            logger.info("Conflict resolved: keeping stored snapshot (more progress)", session_id=incoming.session_id)
            return stored.model_copy(update={"last_updated": utcnow()}), "stored"

        if len(stored.action_history) == len(incoming.action_history) and stored.last_updated > incoming.last_updated:
            logger.info("Conflict resolved: keeping stored snapshot (same progress, newer)", session_id=incoming.session_id)
            return stored, "stored"

        logger.info("Conflict resolved: using incoming snapshot", session_id=incoming.session_id)
        return incoming, "incoming"
