from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable

from icu_handoff.errors import ConflictError, NotFoundError, PermissionDeniedError, StaleSessionError
from icu_handoff.services.expiry_policy import INACTIVITY_THRESHOLD_SEC, as_utc, is_stale, utcnow
from icu_handoff.services.session_store import InMemorySessionStore


class ActivityHeartbeat:
    """Debounced "still here" writes to ``last_activity``, keyed by session id.

    A row already past the inactivity threshold is never refreshed: once
    expired it stays expired, and the clinician has to ``start`` again.
    """

    def __init__(
        self,
        store: InMemorySessionStore,
        *,
        debounce_sec: int = 60,
        inactivity_timeout_sec: int = INACTIVITY_THRESHOLD_SEC,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.debounce_sec = debounce_sec
        self.inactivity_timeout_sec = inactivity_timeout_sec
        self.now_fn = now_fn
        self._lock = threading.Lock()
        self._last_write: dict[str, datetime] = {}
        self._metrics = {
            "touches": 0,
            "writes": 0,
            "debounced": 0,
            "expired": 0,
        }

    def prime(self, session_id: str, at: datetime | None = None) -> None:
        with self._lock:
            self._last_write[session_id] = as_utc(at or self.now_fn())

    def forget(self, session_id: str) -> None:
        with self._lock:
            self._last_write.pop(session_id, None)

    def _within_window(self, session_id: str, now: datetime) -> bool:
        last = self._last_write.get(session_id)
        if last is None:
            return False
        return (now - last).total_seconds() < self.debounce_sec

    def _expired(self, session_id: str) -> StaleSessionError:
        self._metrics["expired"] += 1
        self._last_write.pop(session_id, None)
        return StaleSessionError(f"session {session_id} expired")

    def touch(self, session_id: str, *, user_id: str | None = None) -> bool:
        """Refresh ``last_activity``; returns False when the write was debounced."""
        row = self.store.get(session_id)
        if row is None:
            self.forget(session_id)
            raise StaleSessionError(f"session {session_id} no longer exists")
        if user_id is not None and row.user_id != user_id:
            raise PermissionDeniedError('NOT_SESSION_OWNER')

        now = as_utc(self.now_fn())
        with self._lock:
            self._metrics["touches"] += 1
            if is_stale(row.last_activity, now, threshold_sec=self.inactivity_timeout_sec):
                raise self._expired(session_id)
            if self._within_window(session_id, now):
                self._metrics["debounced"] += 1
                return False

            def _still_live_and_owned(current) -> bool:
                if user_id is not None and current.user_id != user_id:
                    return False
                return not is_stale(current.last_activity, now, threshold_sec=self.inactivity_timeout_sec)

            try:
                self.store.update_if(session_id, _still_live_and_owned, {"last_activity": now})
            except NotFoundError as exc:
                self._last_write.pop(session_id, None)
                raise StaleSessionError(f"session {session_id} no longer exists") from exc
            except ConflictError as exc:
                current = self.store.get(session_id)
                if current is not None and (user_id is None or current.user_id == user_id):
                    raise self._expired(session_id) from exc
                raise PermissionDeniedError('NOT_SESSION_OWNER') from exc

            self._last_write[session_id] = now
            self._metrics["writes"] += 1
            return True

    def metrics(self) -> dict:
        with self._lock:
            return {**self._metrics, "tracked_sessions": len(self._last_write)}
