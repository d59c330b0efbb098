import os
from functools import lru_cache

from pydantic import BaseModel, field_validator

from icu_handoff.schemas.unit import Unit

_DEFAULT_UNITS = "uti-1:UTI 1:10,uti-2:UTI 2:10,uti-3:UTI 3:8"


def _split_csv(raw: str | None, default: str) -> list[str]:
    value = default if raw is None else raw
    return [s.strip().lower() for s in value.split(",") if s.strip()]


def _parse_units(raw: str | None) -> list[dict]:
    units = []
    for entry in (raw or _DEFAULT_UNITS).split(","):
        parts = [p.strip() for p in entry.split(":")]
        if not parts or not parts[0]:
            continue
        unit_id = parts[0]
        name = parts[1] if len(parts) > 1 and parts[1] else unit_id
        bed_count = parts[2] if len(parts) > 2 and parts[2] else 0
        units.append({"id": unit_id, "name": name, "bed_count": bed_count})
    return units


def _parse_bool(raw: str | None, default: bool) -> bool:
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    SESSION_INACTIVITY_TIMEOUT_SEC: int = 30 * 60
    SESSION_URGENT_THRESHOLD_SEC: int = 5 * 60
    HEARTBEAT_DEBOUNCE_SEC: int = 60
    STALE_SESSION_GRACE_SEC: int = 12 * 60 * 60
    RECONCILE_INTERVAL_SEC: float = 300.0
    RECONCILE_ENABLED: bool = True
    RECONCILE_EVENT_LOG_PATH: str | None = None
    SESSION_STORE_PATH: str | None = None
    BYPASS_ROLES: list[str] = ["admin", "coordenador", "diarista"]
    FORCE_RELEASE_ROLES: list[str] = ["admin", "coordenador"]
    HANDOVER_ROLES: list[str] = ["plantonista"]
    ICU_UNITS: list[Unit] = []

    @field_validator(
        "SESSION_INACTIVITY_TIMEOUT_SEC",
        "SESSION_URGENT_THRESHOLD_SEC",
        "HEARTBEAT_DEBOUNCE_SEC",
        "STALE_SESSION_GRACE_SEC",
        "RECONCILE_INTERVAL_SEC",
    )
    @classmethod
    def require_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @classmethod
    def from_env(cls) -> "Settings":
        return cls.model_validate(
            {
                "SESSION_INACTIVITY_TIMEOUT_SEC": os.getenv("SESSION_INACTIVITY_TIMEOUT_SEC", 30 * 60),
                "SESSION_URGENT_THRESHOLD_SEC": os.getenv("SESSION_URGENT_THRESHOLD_SEC", 5 * 60),
                "HEARTBEAT_DEBOUNCE_SEC": os.getenv("HEARTBEAT_DEBOUNCE_SEC", 60),
                "STALE_SESSION_GRACE_SEC": os.getenv("STALE_SESSION_GRACE_SEC", 12 * 60 * 60),
                "RECONCILE_INTERVAL_SEC": os.getenv("RECONCILE_INTERVAL_SEC", 300.0),
                "RECONCILE_ENABLED": _parse_bool(os.getenv("RECONCILE_ENABLED"), True),
                "RECONCILE_EVENT_LOG_PATH": os.getenv("RECONCILE_EVENT_LOG_PATH") or None,
                "SESSION_STORE_PATH": os.getenv("SESSION_STORE_PATH") or None,
                "BYPASS_ROLES": _split_csv(os.getenv("BYPASS_ROLES"), "admin,coordenador,diarista"),
                "FORCE_RELEASE_ROLES": _split_csv(os.getenv("FORCE_RELEASE_ROLES"), "admin,coordenador"),
                "HANDOVER_ROLES": _split_csv(os.getenv("HANDOVER_ROLES"), "plantonista"),
                "ICU_UNITS": _parse_units(os.getenv("ICU_UNITS")),
            }
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
