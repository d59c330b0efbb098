from __future__ import annotations

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator


def new_session_id() -> str:
    return f"ses_{uuid.uuid4().hex}"


class UnitSession(BaseModel):
    """One clinician's claim on one ICU unit."""

    id: str = Field(default_factory=new_session_id)
    user_id: str
    unit_id: str
    started_at: datetime
    last_activity: datetime
    is_blocking: bool = True
    handover_mode: bool = False
    is_handover_receiver: bool = False


class SessionFilter(BaseModel):
    unit_id: str | None = None
    user_id: str | None = None
    is_blocking: bool | None = None
    is_handover_receiver: bool | None = None
    # last_activity > active_since
    active_since: datetime | None = None
    # last_activity <= inactive_before
    inactive_before: datetime | None = None

    def matches(self, row: UnitSession) -> bool:
        if self.unit_id is not None and row.unit_id != self.unit_id:
            return False
        if self.user_id is not None and row.user_id != self.user_id:
            return False
        if self.is_blocking is not None and row.is_blocking != self.is_blocking:
            return False
        if self.is_handover_receiver is not None and row.is_handover_receiver != self.is_handover_receiver:
            return False
        if self.active_since is not None and not row.last_activity > self.active_since:
            return False
        if self.inactive_before is not None and not row.last_activity <= self.inactive_before:
            return False
        return True


class SessionChangeEvent(BaseModel):
    seq: int
    type: Literal["INSERT", "UPDATE", "DELETE"]
    session_id: str
    unit_id: str
    new: UnitSession | None = None
    old: UnitSession | None = None
    committed_at: datetime


class Caller(BaseModel):
    user_id: str
    roles: list[str] = Field(default_factory=list)

    @field_validator("roles")
    @classmethod
    def normalize_roles(cls, value: list[str]) -> list[str]:
        return [r.strip().lower() for r in value if r and r.strip()]


class TimeRemaining(BaseModel):
    text: str
    is_urgent: bool
    is_expired: bool
    remaining_sec: int


class AccessDecision(BaseModel):
    unit_id: str
    regime: str
    can_read: bool
    can_write: bool
    reason: str | None = None


class CurrentSessionView(BaseModel):
    session: UnitSession | None = None
    remaining: TimeRemaining | None = None
    can_bypass_exclusivity: bool


class UnitStatus(BaseModel):
    unit_id: str
    name: str
    bed_count: int
    state: str
    is_occupied: bool
    is_in_handover: bool
    occupied_by: str | None = None
    occupied_since: datetime | None = None
    session_id: str | None = None
    receiver_id: str | None = None


class ActiveSessionRow(BaseModel):
    session: UnitSession
    unit_name: str
    status: Literal["ACTIVE", "HANDING_OVER", "RECEIVING", "VIEWING"]
    remaining: TimeRemaining
