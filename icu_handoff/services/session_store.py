from __future__ import annotations

import json
import os
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator

from icu_handoff.errors import ConflictError, NotFoundError, StoreUnavailableError
from icu_handoff.schemas.session import SessionChangeEvent, SessionFilter, UnitSession
from icu_handoff.services.expiry_policy import utcnow

ChangeListener = Callable[[SessionChangeEvent], None]


class SessionStoreTransaction:
    """Staged view of the session table; nothing is visible to others until commit."""

    def __init__(self, rows: dict[str, UnitSession]) -> None:
        self._rows = rows
        self.changes: list[tuple[str, UnitSession | None, UnitSession | None]] = []

    def get(self, session_id: str) -> UnitSession | None:
        row = self._rows.get(session_id)
        return row.model_copy() if row is not None else None

    def list(self, filter: SessionFilter | None = None) -> list[UnitSession]:
        rows = [r for r in self._rows.values() if filter is None or filter.matches(r)]
        rows.sort(key=lambda r: (r.started_at, r.id))
        return [r.model_copy() for r in rows]

    def insert(self, row: UnitSession) -> UnitSession:
        if row.id in self._rows:
            raise ConflictError(f"session {row.id} already exists")
        stored = row.model_copy()
        self._rows[stored.id] = stored
        self.changes.append(("INSERT", None, stored))
        return stored.model_copy()

    def update(self, session_id: str, **patch) -> UnitSession:
        current = self._rows.get(session_id)
        if current is None:
            raise NotFoundError(session_id)
        if "id" in patch or "started_at" in patch:
            raise ValueError("id and started_at are immutable")
        updated = current.model_copy(update=patch)
        self._rows[session_id] = updated
        self.changes.append(("UPDATE", current, updated))
        return updated.model_copy()

    def delete(self, session_id: str) -> bool:
        current = self._rows.pop(session_id, None)
        if current is None:
            return False
        self.changes.append(("DELETE", current, None))
        return True

    @property
    def rows(self) -> dict[str, UnitSession]:
        return self._rows


class InMemorySessionStore:
    """Session table with conditional writes, atomic multi-row commits and a change feed.

    Every commit is serialized by a single re-entrant lock, so conditional
    writes are compare-and-set against the latest committed state. Change
    events are delivered synchronously in commit order.
    """

    def __init__(
        self,
        *,
        snapshot_path: str | Path | None = None,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        self._lock = threading.RLock()
        self._rows: dict[str, UnitSession] = {}
        self._subscribers: dict[int, ChangeListener] = {}
        self._next_subscriber_id = 0
        self._seq = 0
        self._now_fn = now_fn
        self._snapshot_path = Path(snapshot_path) if snapshot_path else None
        self._metrics = {
            "commits": 0,
            "events": 0,
            "conflicts": 0,
            "subscriber_errors": 0,
        }
        self._load_snapshot()

    def _load_snapshot(self) -> None:
        if not self._snapshot_path or not self._snapshot_path.exists():
            return

        payload = json.loads(self._snapshot_path.read_text(encoding="utf-8") or "{}")
        for raw in payload.get("rows", []):
            row = UnitSession.model_validate(raw)
            self._rows[row.id] = row
        self._seq = int(payload.get("seq", 0))
        print(f"[STORE][snapshot_load] rows={len(self._rows)} seq={self._seq}", flush=True)

    def _write_snapshot(self, rows: dict[str, UnitSession], seq: int) -> None:
        if not self._snapshot_path:
            return

        payload = {
            "seq": seq,
            "rows": [r.model_dump(mode="json") for r in rows.values()],
        }
        tmp_path = self._snapshot_path.with_suffix(self._snapshot_path.suffix + ".tmp")
        try:
            self._snapshot_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, self._snapshot_path)
        except OSError as exc:
            raise StoreUnavailableError(f"snapshot write failed: {exc}") from exc

    @contextmanager
    def transaction(self) -> Iterator[SessionStoreTransaction]:
        """All-or-nothing commit; an exception inside the block discards every staged change."""
        with self._lock:
            tx = SessionStoreTransaction(dict(self._rows))
            yield tx
            if not tx.changes:
                return

            committed_at = self._now_fn()
            events = []
            seq = self._seq
            for change_type, old, new in tx.changes:
                seq += 1
                ref = new or old
                events.append(
                    SessionChangeEvent(
                        seq=seq,
                        type=change_type,
                        session_id=ref.id,
                        unit_id=ref.unit_id,
                        new=new.model_copy() if new is not None else None,
                        old=old.model_copy() if old is not None else None,
                        committed_at=committed_at,
                    )
                )

            # durable first: a failed snapshot leaves the committed state untouched
            self._write_snapshot(tx.rows, seq)
            self._rows = tx.rows
            self._seq = seq
            self._metrics["commits"] += 1
            self._metrics["events"] += len(events)
            self._deliver(events)

    def _deliver(self, events: list[SessionChangeEvent]) -> None:
        listeners = list(self._subscribers.items())
        for event in events:
            for subscriber_id, listener in listeners:
                try:
                    listener(event.model_copy(deep=True))
                except Exception as exc:
                    # one broken subscriber must not hide the event from the others
                    self._metrics["subscriber_errors"] += 1
                    print(
                        f"[STORE][subscriber_error] subscriber={subscriber_id} seq={event.seq} reason={exc!r}",
                        flush=True,
                    )

    def create_if(
        self,
        unit_id: str,
        predicate: Callable[[list[UnitSession]], bool],
        row: UnitSession,
    ) -> UnitSession:
        """Insert ``row`` only if ``predicate`` accepts the unit's committed rows."""
        if row.unit_id != unit_id:
            raise ValueError("row.unit_id does not match unit_id")
        with self.transaction() as tx:
            if not predicate(tx.list(SessionFilter(unit_id=unit_id))):
                self._metrics["conflicts"] += 1
                raise ConflictError(f"create rejected for unit {unit_id}")
            return tx.insert(row)

    def update_if(
        self,
        session_id: str,
        predicate: Callable[[UnitSession], bool],
        patch: dict,
    ) -> UnitSession:
        with self.transaction() as tx:
            current = tx.get(session_id)
            if current is None:
                raise NotFoundError(session_id)
            if not predicate(current):
                self._metrics["conflicts"] += 1
                raise ConflictError(f"update rejected for session {session_id}")
            return tx.update(session_id, **patch)

    def delete_if_exists(self, session_id: str) -> bool:
        with self.transaction() as tx:
            return tx.delete(session_id)

    def get(self, session_id: str) -> UnitSession | None:
        with self._lock:
            row = self._rows.get(session_id)
            return row.model_copy() if row is not None else None

    def list_by_filter(self, filter: SessionFilter | None = None) -> list[UnitSession]:
        with self._lock:
            return SessionStoreTransaction(self._rows).list(filter)

    def subscribe(self, on_change: ChangeListener) -> Callable[[], None]:
        with self._lock:
            subscriber_id = self._next_subscriber_id
            self._next_subscriber_id += 1
            self._subscribers[subscriber_id] = on_change

        def _unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(subscriber_id, None)

        return _unsubscribe

    @property
    def last_seq(self) -> int:
        with self._lock:
            return self._seq

    def clear(self) -> None:
        with self.transaction() as tx:
            for session_id in list(tx.rows):
                tx.delete(session_id)

    def metrics(self) -> dict:
        with self._lock:
            return {
                "rows": len(self._rows),
                "subscribers": len(self._subscribers),
                "last_seq": self._seq,
                **self._metrics,
            }
