from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Iterable

from icu_handoff.schemas.session import UnitSession
from icu_handoff.services.expiry_policy import INACTIVITY_THRESHOLD_SEC, is_stale


class UnitState(str, Enum):
    FREE = "FREE"
    OCCUPIED = "OCCUPIED"
    HANDOVER_OPEN = "HANDOVER_OPEN"
    HANDOVER_PENDING = "HANDOVER_PENDING"


def live_sessions(
    sessions: Iterable[UnitSession],
    now: datetime,
    *,
    threshold_sec: int = INACTIVITY_THRESHOLD_SEC,
) -> list[UnitSession]:
    return [s for s in sessions if not is_stale(s.last_activity, now, threshold_sec=threshold_sec)]


def find_holder(
    sessions: Iterable[UnitSession],
    now: datetime,
    *,
    threshold_sec: int = INACTIVITY_THRESHOLD_SEC,
) -> UnitSession | None:
    """Live blocking session; the most recently active one wins if rows disagree."""
    holders = [s for s in live_sessions(sessions, now, threshold_sec=threshold_sec) if s.is_blocking]
    if not holders:
        return None
    return max(holders, key=lambda s: s.last_activity)


def find_receiver(
    sessions: Iterable[UnitSession],
    now: datetime,
    *,
    threshold_sec: int = INACTIVITY_THRESHOLD_SEC,
) -> UnitSession | None:
    receivers = [
        s for s in live_sessions(sessions, now, threshold_sec=threshold_sec) if s.is_handover_receiver
    ]
    if not receivers:
        return None
    return min(receivers, key=lambda s: s.started_at)


def derive_unit_state(
    sessions: Iterable[UnitSession],
    now: datetime,
    *,
    threshold_sec: int = INACTIVITY_THRESHOLD_SEC,
) -> UnitState:
    rows = list(sessions)
    holder = find_holder(rows, now, threshold_sec=threshold_sec)
    if holder is None:
        return UnitState.FREE
    if not holder.handover_mode:
        return UnitState.OCCUPIED
    if find_receiver(rows, now, threshold_sec=threshold_sec) is not None:
        return UnitState.HANDOVER_PENDING
    return UnitState.HANDOVER_OPEN


_ALLOWED_TRANSITIONS = {
    "start": {UnitState.FREE},
    "open_handover": {UnitState.OCCUPIED},
    "close_handover": {UnitState.HANDOVER_OPEN},
    "join_as_receiver": {UnitState.HANDOVER_OPEN},
    "confirm_assumption": {UnitState.HANDOVER_PENDING},
}


def validate_unit_transition(*, action: str, current_state: UnitState) -> dict[str, bool | str | None]:
    allowed = _ALLOWED_TRANSITIONS.get(action.lower(), set())
    if current_state not in allowed:
        return {'ok': False, 'reason': 'INVALID_TRANSITION'}
    return {'ok': True, 'reason': None}
