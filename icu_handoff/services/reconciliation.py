from __future__ import annotations

import json
import threading
import time
from collections import deque
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

from icu_handoff.schemas.session import SessionFilter
from icu_handoff.services.activity_heartbeat import ActivityHeartbeat
from icu_handoff.services.expiry_policy import as_utc, utcnow
from icu_handoff.services.session_coordinator import demote_receivers
from icu_handoff.services.session_store import InMemorySessionStore, SessionStoreTransaction

RECENT_EVENTS_LIMIT = 100


class SessionReconciler:
    """Periodic sweep that deletes long-dead rows and repairs flag combinations.

    Staleness on the hot path is a read-time filter only; this sweep is the
    one place rows are removed for inactivity, and only after the grace
    period, which is much longer than the inactivity threshold.
    """

    def __init__(
        self,
        *,
        store: InMemorySessionStore,
        grace_sec: int = 12 * 60 * 60,
        interval_sec: float = 300.0,
        event_log_path: str | Path | None = None,
        heartbeat: ActivityHeartbeat | None = None,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.grace_sec = grace_sec
        self.interval_sec = interval_sec
        self.heartbeat = heartbeat
        self.now_fn = now_fn
        self._wake = threading.Event()
        self._worker: threading.Thread | None = None
        self._metrics = {
            "runs": 0,
            "checked": 0,
            "purged": 0,
            "repaired": 0,
        }
        self._recent: deque[dict] = deque(maxlen=RECENT_EVENTS_LIMIT)
        self._log_path = Path(event_log_path) if event_log_path else None
        self._persisted_count = self._replay_log()

    def _replay_log(self) -> int:
        """Seed the recent-events window from the JSONL log; returns lines read."""
        if self._log_path is None or not self._log_path.exists():
            return 0

        count = 0
        with self._log_path.open(encoding="utf-8") as f:
            for line in f:
                try:
                    self._recent.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
                count += 1
        return count

    def _append_to_log(self, events: list[dict]) -> None:
        self._recent.extend(events)
        if self._log_path is None or not events:
            return

        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        with self._log_path.open("a", encoding="utf-8") as f:
            f.writelines(json.dumps(e, ensure_ascii=False) + "\n" for e in events)
        self._persisted_count += len(events)

    @staticmethod
    def _event(action: str, reason: str, row) -> dict:
        return {
            "action": action,
            "reason": reason,
            "session_id": row.id,
            "unit_id": row.unit_id,
            "user_id": row.user_id,
            "ts": int(time.time()),
        }

    def _repair_unit(self, tx: SessionStoreTransaction, unit_id: str) -> list[dict]:
        events: list[dict] = []

        blocking = tx.list(SessionFilter(unit_id=unit_id, is_blocking=True))
        holder = max(blocking, key=lambda r: as_utc(r.last_activity)) if blocking else None
        for row in blocking:
            if row.id == holder.id:
                continue
            tx.update(row.id, is_blocking=False, handover_mode=False, is_handover_receiver=False)
            events.append(self._event("DEMOTED", "DUPLICATE_BLOCKING", row))

        for row in tx.list(SessionFilter(unit_id=unit_id, is_blocking=False)):
            if row.handover_mode:
                tx.update(row.id, handover_mode=False)
                events.append(self._event("DEMOTED", "HANDOVER_FLAG_WITHOUT_SLOT", row))

        if holder is not None and holder.is_handover_receiver:
            tx.update(holder.id, is_handover_receiver=False)
            events.append(self._event("DEMOTED", "BLOCKING_RECEIVER", holder))

        receivers = tx.list(SessionFilter(unit_id=unit_id, is_handover_receiver=True))
        if not receivers:
            return events

        if holder is None or not holder.handover_mode:
            by_id = {r.id: r for r in receivers}
            for session_id in demote_receivers(tx, unit_id):
                events.append(self._event("DEMOTED", "ORPHAN_RECEIVER", by_id[session_id]))
            return events

        keep = min(receivers, key=lambda r: r.started_at)
        for row in receivers:
            if row.id == keep.id:
                continue
            tx.update(row.id, is_handover_receiver=False)
            events.append(self._event("DEMOTED", "EXTRA_RECEIVER", row))
        return events

    def reconcile_once(self) -> dict:
        now = as_utc(self.now_fn())
        cutoff = now - timedelta(seconds=self.grace_sec)
        events: list[dict] = []
        purged_ids: list[str] = []

        with self.store.transaction() as tx:
            rows = tx.list()
            checked = len(rows)

            for row in rows:
                if as_utc(row.last_activity) <= cutoff:
                    tx.delete(row.id)
                    purged_ids.append(row.id)
                    events.append(self._event("PURGED", "INACTIVE_PAST_GRACE", row))

            for unit_id in sorted({r.unit_id for r in rows}):
                events.extend(self._repair_unit(tx, unit_id))

        if self.heartbeat is not None:
            for session_id in purged_ids:
                self.heartbeat.forget(session_id)

        self._append_to_log(events)

        purged = len(purged_ids)
        repaired = len(events) - purged
        self._metrics["runs"] += 1
        self._metrics["checked"] += checked
        self._metrics["purged"] += purged
        self._metrics["repaired"] += repaired
        if events:
            print(f"[RECONCILE][sweep] checked={checked} purged={purged} repaired={repaired}", flush=True)

        return {
            "checked": checked,
            "purged": purged,
            "repaired": repaired,
            "events": events,
        }

    def trigger(self) -> dict:
        return self.reconcile_once()

    def _run(self) -> None:
        while not self._wake.wait(self.interval_sec):
            try:
                self.reconcile_once()
            except Exception as exc:  # pragma: no cover
                print(f"[RECONCILE][sweep_error] reason={exc!r}", flush=True)

    def start(self) -> None:
        if self.running:
            return
        self._wake.clear()
        self._worker = threading.Thread(target=self._run, daemon=True, name="session-reconciler")
        self._worker.start()

    def stop(self, timeout: float = 1.0) -> None:
        self._wake.set()
        if self._worker is not None:
            self._worker.join(timeout=timeout)
            self._worker = None

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def metrics(self) -> dict:
        return {
            **self._metrics,
            "persisted_count": self._persisted_count,
            "recent_events": list(self._recent),
        }
