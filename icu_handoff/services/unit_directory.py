from __future__ import annotations

from typing import Iterable

from icu_handoff.schemas.unit import Unit


class UnitDirectory:
    """Read-only unit lookup; unit CRUD lives outside this service."""

    def __init__(self, units: Iterable[Unit] = ()) -> None:
        self._rows: dict[str, Unit] = {u.id: u for u in units}

    def get(self, unit_id: str) -> Unit | None:
        return self._rows.get(unit_id)

    def list_all(self) -> list[Unit]:
        return sorted(self._rows.values(), key=lambda u: (u.name, u.id))

    def names(self) -> dict[str, str]:
        return {u.id: u.name for u in self._rows.values()}
