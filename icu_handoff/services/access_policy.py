from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Iterable

from icu_handoff.schemas.session import AccessDecision, Caller, UnitSession
from icu_handoff.services.expiry_policy import INACTIVITY_THRESHOLD_SEC, is_stale

_DEFAULT_BYPASS_ROLES = ("admin", "coordenador", "diarista")
_DEFAULT_FORCE_RELEASE_ROLES = ("admin", "coordenador")
_DEFAULT_HANDOVER_ROLES = ("plantonista",)


class AccessRegime(str, Enum):
    EXCLUSIVE = "EXCLUSIVE"
    BYPASS = "BYPASS"


def _normalize(roles: Iterable[str]) -> set[str]:
    return {str(r).strip().lower() for r in roles if r and str(r).strip()}


class AccessPolicy:
    """Maps a caller's role set to the exclusivity regime they operate under."""

    def __init__(
        self,
        *,
        bypass_roles: Iterable[str] = _DEFAULT_BYPASS_ROLES,
        force_release_roles: Iterable[str] = _DEFAULT_FORCE_RELEASE_ROLES,
        handover_roles: Iterable[str] = _DEFAULT_HANDOVER_ROLES,
        inactivity_timeout_sec: int = INACTIVITY_THRESHOLD_SEC,
    ) -> None:
        self.bypass_roles = frozenset(_normalize(bypass_roles))
        self.force_release_roles = frozenset(_normalize(force_release_roles))
        self.handover_roles = frozenset(_normalize(handover_roles))
        self.inactivity_timeout_sec = inactivity_timeout_sec

    def regime(self, roles: Iterable[str]) -> AccessRegime:
        if _normalize(roles) & self.bypass_roles:
            return AccessRegime.BYPASS
        return AccessRegime.EXCLUSIVE

    def can_bypass_exclusivity(self, roles: Iterable[str]) -> bool:
        return self.regime(roles) is AccessRegime.BYPASS

    def can_force_release(self, roles: Iterable[str]) -> bool:
        return bool(_normalize(roles) & self.force_release_roles)

    def can_join_handover(self, roles: Iterable[str]) -> bool:
        normalized = _normalize(roles)
        if normalized & self.bypass_roles:
            return False
        return bool(normalized & self.handover_roles)

    def evaluate_unit_access(
        self,
        caller: Caller,
        unit_id: str,
        sessions: Iterable[UnitSession],
        now: datetime,
    ) -> AccessDecision:
        regime = self.regime(caller.roles)
        if regime is AccessRegime.BYPASS:
            return AccessDecision(unit_id=unit_id, regime=regime.value, can_read=True, can_write=True)

        own = [s for s in sessions if s.unit_id == unit_id and s.user_id == caller.user_id]
        if not own:
            return AccessDecision(
                unit_id=unit_id, regime=regime.value, can_read=False, can_write=False, reason='NO_SESSION'
            )

        live = [s for s in own if not is_stale(s.last_activity, now, threshold_sec=self.inactivity_timeout_sec)]
        if not live:
            return AccessDecision(
                unit_id=unit_id, regime=regime.value, can_read=False, can_write=False, reason='SESSION_EXPIRED'
            )

        if any(s.is_blocking for s in live):
            return AccessDecision(unit_id=unit_id, regime=regime.value, can_read=True, can_write=True)

        if any(s.is_handover_receiver for s in live):
            return AccessDecision(
                unit_id=unit_id, regime=regime.value, can_read=True, can_write=False, reason='VIEW_ONLY'
            )

        return AccessDecision(
            unit_id=unit_id, regime=regime.value, can_read=False, can_write=False, reason='NOT_HOLDING_UNIT'
        )
