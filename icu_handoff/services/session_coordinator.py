from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable

from icu_handoff.errors import (
    HandoverNotOpenError,
    PermissionDeniedError,
    SlotTakenError,
    StaleSessionError,
    UnitOccupiedError,
)
from icu_handoff.schemas.session import (
    AccessDecision,
    ActiveSessionRow,
    Caller,
    CurrentSessionView,
    SessionFilter,
    TimeRemaining,
    UnitSession,
    UnitStatus,
)
from icu_handoff.schemas.unit import Unit
from icu_handoff.services.access_policy import AccessPolicy
from icu_handoff.services.activity_heartbeat import ActivityHeartbeat
from icu_handoff.services.expiry_policy import (
    INACTIVITY_THRESHOLD_SEC,
    URGENT_THRESHOLD_SEC,
    as_utc,
    describe_remaining,
    is_stale,
    utcnow,
)
from icu_handoff.services.session_store import InMemorySessionStore, SessionStoreTransaction
from icu_handoff.services.unit_state import (
    UnitState,
    derive_unit_state,
    find_holder,
    find_receiver,
    validate_unit_transition,
)


def demote_receivers(tx: SessionStoreTransaction, unit_id: str) -> list[str]:
    """Turn the unit's receiver rows into plain viewers."""
    demoted = []
    for row in tx.list(SessionFilter(unit_id=unit_id, is_handover_receiver=True)):
        tx.update(row.id, is_handover_receiver=False, is_blocking=False, handover_mode=False)
        demoted.append(row.id)
    return demoted


def _status_label(session: UnitSession) -> str:
    if session.is_handover_receiver:
        return "RECEIVING"
    if session.is_blocking and session.handover_mode:
        return "HANDING_OVER"
    if session.is_blocking:
        return "ACTIVE"
    return "VIEWING"


class SessionCoordinator:
    """Acquisition, handover, assumption and release of a unit's blocking slot.

    Holds no unit state between calls: every decision is taken inside a single
    store transaction over freshly read rows, so any number of coordinator
    instances sharing one store agree with each other.
    """

    def __init__(
        self,
        store: InMemorySessionStore,
        *,
        access_policy: AccessPolicy | None = None,
        heartbeat: ActivityHeartbeat | None = None,
        inactivity_timeout_sec: int = INACTIVITY_THRESHOLD_SEC,
        urgent_threshold_sec: int = URGENT_THRESHOLD_SEC,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.access_policy = access_policy or AccessPolicy(inactivity_timeout_sec=inactivity_timeout_sec)
        self.now_fn = now_fn
        self.heartbeat = heartbeat or ActivityHeartbeat(
            store, inactivity_timeout_sec=inactivity_timeout_sec, now_fn=now_fn
        )
        self.inactivity_timeout_sec = inactivity_timeout_sec
        self.urgent_threshold_sec = urgent_threshold_sec

    def _now(self) -> datetime:
        return as_utc(self.now_fn())

    def _is_live(self, session: UnitSession, now: datetime) -> bool:
        return not is_stale(session.last_activity, now, threshold_sec=self.inactivity_timeout_sec)

    def _bypass(self, caller: Caller) -> bool:
        return self.access_policy.can_bypass_exclusivity(caller.roles)

    def _unit_state(self, rows: Iterable[UnitSession], now: datetime) -> UnitState:
        return derive_unit_state(rows, now, threshold_sec=self.inactivity_timeout_sec)

    def _owned_holder_row(self, tx: SessionStoreTransaction, session_id: str, caller: Caller, now: datetime) -> UnitSession:
        row = tx.get(session_id)
        if row is None:
            raise StaleSessionError(f"session {session_id} no longer exists")
        if row.user_id != caller.user_id:
            raise PermissionDeniedError('NOT_SESSION_OWNER')
        if not self._is_live(row, now):
            raise StaleSessionError(f"session {session_id} expired")
        if not row.is_blocking:
            raise PermissionDeniedError('NOT_BLOCKING_HOLDER')
        blocking = tx.list(SessionFilter(unit_id=row.unit_id, is_blocking=True))
        if len(blocking) != 1:
            raise PermissionDeniedError('NOT_SOLE_HOLDER')
        return row

    # -- writes -----------------------------------------------------------

    def start(self, unit_id: str, caller: Caller) -> UnitSession | None:
        if self._bypass(caller):
            print(f"[SESSION][start_bypass] unit={unit_id} user={caller.user_id}", flush=True)
            return None

        now = self._now()
        with self.store.transaction() as tx:
            own_holding = [
                s
                for s in tx.list(SessionFilter(user_id=caller.user_id, is_blocking=True))
                if self._is_live(s, now)
            ]
            for s in own_holding:
                if s.unit_id == unit_id:
                    return s
            if own_holding:
                raise PermissionDeniedError('SESSION_ALREADY_ACTIVE')

            unit_rows = tx.list(SessionFilter(unit_id=unit_id))
            state = self._unit_state(unit_rows, now)
            if not validate_unit_transition(action='start', current_state=state)['ok']:
                raise UnitOccupiedError(f"unit {unit_id} is occupied")

            # anything still flagged here is stale: step it down to a viewer
            superseded = []
            for row in unit_rows:
                if row.is_blocking or row.handover_mode or row.is_handover_receiver:
                    tx.update(row.id, is_blocking=False, handover_mode=False, is_handover_receiver=False)
                    superseded.append(row.id)

            session = tx.insert(
                UnitSession(
                    user_id=caller.user_id,
                    unit_id=unit_id,
                    started_at=now,
                    last_activity=now,
                    is_blocking=True,
                    handover_mode=False,
                    is_handover_receiver=False,
                )
            )

        self.heartbeat.prime(session.id, now)
        print(
            f"[SESSION][session_start] unit={unit_id} user={caller.user_id} session={session.id} "
            f"superseded={len(superseded)}",
            flush=True,
        )
        return session

    def open_handover(self, session_id: str, caller: Caller) -> UnitSession | None:
        if self._bypass(caller):
            return None

        now = self._now()
        with self.store.transaction() as tx:
            row = self._owned_holder_row(tx, session_id, caller, now)
            if row.handover_mode:
                return row
            state = self._unit_state(tx.list(SessionFilter(unit_id=row.unit_id)), now)
            if not validate_unit_transition(action='open_handover', current_state=state)['ok']:
                raise PermissionDeniedError('INVALID_TRANSITION')
            updated = tx.update(session_id, handover_mode=True)

        print(f"[SESSION][handover_open] unit={updated.unit_id} session={session_id}", flush=True)
        return updated

    def close_handover(self, session_id: str, caller: Caller) -> UnitSession | None:
        if self._bypass(caller):
            return None

        now = self._now()
        with self.store.transaction() as tx:
            row = self._owned_holder_row(tx, session_id, caller, now)
            if not row.handover_mode:
                return row
            unit_rows = tx.list(SessionFilter(unit_id=row.unit_id))
            if find_receiver(unit_rows, now, threshold_sec=self.inactivity_timeout_sec) is not None:
                raise PermissionDeniedError('HANDOVER_RECEIVER_PRESENT')
            # only stale receivers can be left at this point
            demote_receivers(tx, row.unit_id)
            updated = tx.update(session_id, handover_mode=False)

        print(f"[SESSION][handover_close] unit={updated.unit_id} session={session_id}", flush=True)
        return updated

    def join_as_receiver(self, unit_id: str, caller: Caller) -> UnitSession | None:
        if self._bypass(caller):
            return None
        if not self.access_policy.can_join_handover(caller.roles):
            raise PermissionDeniedError('HANDOVER_ROLE_REQUIRED')

        now = self._now()
        with self.store.transaction() as tx:
            own_live = [s for s in tx.list(SessionFilter(user_id=caller.user_id)) if self._is_live(s, now)]
            for s in own_live:
                if s.unit_id == unit_id and s.is_handover_receiver:
                    return s
            if any(s.is_blocking or s.is_handover_receiver for s in own_live):
                raise PermissionDeniedError('SESSION_ALREADY_ACTIVE')

            unit_rows = tx.list(SessionFilter(unit_id=unit_id))
            state = self._unit_state(unit_rows, now)
            if state is UnitState.HANDOVER_PENDING:
                raise SlotTakenError(f"unit {unit_id} already has a handover receiver")
            if not validate_unit_transition(action='join_as_receiver', current_state=state)['ok']:
                raise HandoverNotOpenError(f"unit {unit_id} is not in handover")

            demote_receivers(tx, unit_id)
            session = tx.insert(
                UnitSession(
                    user_id=caller.user_id,
                    unit_id=unit_id,
                    started_at=now,
                    last_activity=now,
                    is_blocking=False,
                    handover_mode=False,
                    is_handover_receiver=True,
                )
            )

        self.heartbeat.prime(session.id, now)
        print(f"[SESSION][handover_join] unit={unit_id} user={caller.user_id} session={session.id}", flush=True)
        return session

    def confirm_assumption(self, receiver_session_id: str, caller: Caller) -> UnitSession | None:
        if self._bypass(caller):
            return None

        now = self._now()
        with self.store.transaction() as tx:
            receiver = tx.get(receiver_session_id)
            if receiver is None:
                raise StaleSessionError(f"session {receiver_session_id} no longer exists")
            if receiver.user_id != caller.user_id:
                raise PermissionDeniedError('NOT_SESSION_OWNER')
            if not self._is_live(receiver, now):
                raise StaleSessionError(f"session {receiver_session_id} expired")
            if not receiver.is_handover_receiver:
                raise StaleSessionError(f"session {receiver_session_id} is no longer a handover receiver")

            outgoing = [
                s
                for s in tx.list(SessionFilter(unit_id=receiver.unit_id, is_blocking=True))
                if s.handover_mode
            ]
            if not outgoing:
                raise StaleSessionError(f"outgoing session for unit {receiver.unit_id} no longer exists")

            for s in outgoing:
                tx.delete(s.id)
            for s in tx.list(SessionFilter(unit_id=receiver.unit_id)):
                if s.id != receiver.id and (s.is_blocking or s.is_handover_receiver):
                    tx.update(s.id, is_blocking=False, handover_mode=False, is_handover_receiver=False)
            promoted = tx.update(
                receiver.id,
                is_blocking=True,
                is_handover_receiver=False,
                handover_mode=False,
                last_activity=now,
            )

        for s in outgoing:
            self.heartbeat.forget(s.id)
        self.heartbeat.prime(promoted.id, now)
        print(
            f"[SESSION][assumption] unit={promoted.unit_id} outgoing={','.join(s.id for s in outgoing)} "
            f"incoming={promoted.id}",
            flush=True,
        )
        return promoted

    def _remove(self, session_id: str, caller: Caller, *, force: bool) -> UnitSession | None:
        with self.store.transaction() as tx:
            row = tx.get(session_id)
            if row is None:
                return None
            if row.user_id != caller.user_id and not force:
                raise PermissionDeniedError('NOT_SESSION_OWNER')
            # leaving a unit also drops leftover viewer rows of the same user there
            removed = tx.list(SessionFilter(unit_id=row.unit_id, user_id=row.user_id))
            for s in removed:
                tx.delete(s.id)
            if any(s.is_blocking for s in removed):
                demote_receivers(tx, row.unit_id)

        for s in removed:
            self.heartbeat.forget(s.id)
        return row

    def release(self, session_id: str, caller: Caller) -> None:
        """Stop occupying; releasing a row that is already gone is a no-op."""
        force = self.access_policy.can_force_release(caller.roles)
        removed = self._remove(session_id, caller, force=force)
        if removed is None:
            print(f"[SESSION][release_noop] session={session_id}", flush=True)
            return
        print(
            f"[SESSION][release] unit={removed.unit_id} session={session_id} by={caller.user_id}",
            flush=True,
        )

    def force_disconnect(self, session_id: str, caller: Caller) -> None:
        if not self.access_policy.can_force_release(caller.roles):
            raise PermissionDeniedError('FORCE_RELEASE_ROLE_REQUIRED')
        removed = self._remove(session_id, caller, force=True)
        if removed is None:
            print(f"[SESSION][force_disconnect_noop] session={session_id}", flush=True)
            return
        print(
            f"[SESSION][force_disconnect] unit={removed.unit_id} session={session_id} "
            f"user={removed.user_id} by={caller.user_id}",
            flush=True,
        )

    def release_all(self, caller: Caller) -> int:
        """Logout: drop every row the caller holds."""
        with self.store.transaction() as tx:
            rows = tx.list(SessionFilter(user_id=caller.user_id))
            for row in rows:
                tx.delete(row.id)
            for unit_id in {r.unit_id for r in rows if r.is_blocking}:
                demote_receivers(tx, unit_id)

        for row in rows:
            self.heartbeat.forget(row.id)
        print(f"[SESSION][release_all] user={caller.user_id} removed={len(rows)}", flush=True)
        return len(rows)

    def touch(self, session_id: str, caller: Caller) -> bool:
        if self._bypass(caller):
            return False
        return self.heartbeat.touch(session_id, user_id=caller.user_id)

    # -- reads ------------------------------------------------------------

    def can_bypass_exclusivity(self, caller: Caller) -> bool:
        return self._bypass(caller)

    def current_session(self, caller: Caller) -> UnitSession | None:
        rows = self.store.list_by_filter(SessionFilter(user_id=caller.user_id))
        if not rows:
            return None
        return max(
            rows,
            key=lambda s: (s.is_blocking, s.is_handover_receiver, as_utc(s.last_activity)),
        )

    def current_session_view(self, caller: Caller) -> CurrentSessionView:
        session = self.current_session(caller)
        return CurrentSessionView(
            session=session,
            remaining=self.remaining_time(session) if session is not None else None,
            can_bypass_exclusivity=self.can_bypass_exclusivity(caller),
        )

    def remaining_time(self, session: UnitSession) -> TimeRemaining:
        return describe_remaining(
            session.last_activity,
            self._now(),
            threshold_sec=self.inactivity_timeout_sec,
            urgent_sec=self.urgent_threshold_sec,
        )

    def unit_state(self, unit_id: str) -> UnitState:
        return self._unit_state(self.store.list_by_filter(SessionFilter(unit_id=unit_id)), self._now())

    def is_unit_in_handover(self, unit_id: str) -> bool:
        return self.unit_state(unit_id) in {UnitState.HANDOVER_OPEN, UnitState.HANDOVER_PENDING}

    def _status_for(self, unit: Unit, rows: list[UnitSession], now: datetime) -> UnitStatus:
        state = self._unit_state(rows, now)
        holder = find_holder(rows, now, threshold_sec=self.inactivity_timeout_sec)
        receiver = find_receiver(rows, now, threshold_sec=self.inactivity_timeout_sec) if holder else None
        return UnitStatus(
            unit_id=unit.id,
            name=unit.name,
            bed_count=unit.bed_count,
            state=state.value,
            is_occupied=holder is not None,
            is_in_handover=state in {UnitState.HANDOVER_OPEN, UnitState.HANDOVER_PENDING},
            occupied_by=holder.user_id if holder else None,
            occupied_since=holder.started_at if holder else None,
            session_id=holder.id if holder else None,
            receiver_id=receiver.user_id if receiver else None,
        )

    def unit_status(self, unit: Unit) -> UnitStatus:
        return self._status_for(unit, self.store.list_by_filter(SessionFilter(unit_id=unit.id)), self._now())

    def list_unit_status(self, units: Iterable[Unit]) -> list[UnitStatus]:
        """Unit picker view from a single fresh read of the session table."""
        now = self._now()
        by_unit: dict[str, list[UnitSession]] = {}
        for row in self.store.list_by_filter():
            by_unit.setdefault(row.unit_id, []).append(row)
        return [self._status_for(u, by_unit.get(u.id, []), now) for u in units]

    def active_sessions(self) -> list[UnitSession]:
        now = self._now()
        return [s for s in self.store.list_by_filter() if self._is_live(s, now)]

    def session_monitor(self, unit_names: dict[str, str]) -> list[ActiveSessionRow]:
        rows = [
            ActiveSessionRow(
                session=s,
                unit_name=unit_names.get(s.unit_id, s.unit_id),
                status=_status_label(s),
                remaining=self.remaining_time(s),
            )
            for s in self.active_sessions()
        ]
        rows.sort(key=lambda r: (r.unit_name, r.session.started_at))
        return rows

    def check_access(self, unit_id: str, caller: Caller) -> AccessDecision:
        return self.access_policy.evaluate_unit_access(
            caller,
            unit_id,
            self.store.list_by_filter(SessionFilter(unit_id=unit_id, user_id=caller.user_id)),
            self._now(),
        )
