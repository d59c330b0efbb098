from __future__ import annotations

from typing import Any, Dict, List, Optional

import requests

from icu_handoff.errors import (
    HandoverNotOpenError,
    PermissionDeniedError,
    SessionCoordinationError,
    SlotTakenError,
    StaleSessionError,
    StoreUnavailableError,
    UnitOccupiedError,
)

_DETAIL_ERRORS = {
    UnitOccupiedError.code: UnitOccupiedError,
    HandoverNotOpenError.code: HandoverNotOpenError,
    SlotTakenError.code: SlotTakenError,
    StaleSessionError.code: StaleSessionError,
    StoreUnavailableError.code: StoreUnavailableError,
}


class SessionApiClient:
    """HTTP client for the unit-session API, one method per coordinator operation."""

    def __init__(
        self,
        base_url: str,
        user_id: str,
        roles: Optional[List[str]] = None,
        session: Optional[Any] = None,
        timeout: float = 5,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.roles = list(roles or [])
        self.session = session or requests
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {
            "X-User-Id": self.user_id,
            "X-User-Roles": ",".join(self.roles),
        }

    @staticmethod
    def _detail(response: Any) -> str:
        try:
            payload = response.json()
        except ValueError:
            return ""
        if isinstance(payload, dict):
            return str(payload.get("detail") or "")
        return ""

    def _raise_for_error(self, response: Any) -> None:
        status = int(getattr(response, "status_code", 200))
        if status < 400:
            return

        detail = self._detail(response)
        if status >= 500:
            raise StoreUnavailableError(detail or f"http {status}")
        if status == 403:
            raise PermissionDeniedError(detail or "PERMISSION_DENIED")
        if status == 410:
            raise StaleSessionError(detail)
        error_cls = _DETAIL_ERRORS.get(detail)
        if error_cls is not None:
            raise error_cls(detail)
        response.raise_for_status()
        raise SessionCoordinationError(detail or f"http {status}")

    def _request(self, method: str, path: str) -> Any:
        try:
            response = self.session.request(
                method,
                f"{self.base_url}/v1{path}",
                headers=self._headers(),
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise StoreUnavailableError(str(exc)) from exc
        self._raise_for_error(response)
        return response.json()

    def list_units(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/units")

    def unit_status(self, unit_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/units/{unit_id}/status")

    def check_access(self, unit_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/units/{unit_id}/access")

    def start(self, unit_id: str) -> Optional[Dict[str, Any]]:
        return self._request("POST", f"/units/{unit_id}/sessions")["session"]

    def join_as_receiver(self, unit_id: str) -> Optional[Dict[str, Any]]:
        return self._request("POST", f"/units/{unit_id}/handover/receiver")["session"]

    def open_handover(self, session_id: str) -> Optional[Dict[str, Any]]:
        return self._request("POST", f"/sessions/{session_id}/handover/open")["session"]

    def close_handover(self, session_id: str) -> Optional[Dict[str, Any]]:
        return self._request("POST", f"/sessions/{session_id}/handover/close")["session"]

    def confirm_assumption(self, session_id: str) -> Optional[Dict[str, Any]]:
        return self._request("POST", f"/sessions/{session_id}/assume")["session"]

    def touch(self, session_id: str) -> bool:
        return bool(self._request("POST", f"/sessions/{session_id}/touch")["written"])

    def release(self, session_id: str) -> None:
        self._request("DELETE", f"/sessions/{session_id}")

    def logout(self) -> int:
        return int(self._request("DELETE", "/sessions/me")["released"])

    def current_session(self) -> Dict[str, Any]:
        return self._request("GET", "/sessions/me")

    def active_sessions(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/admin/sessions")

    def force_disconnect(self, session_id: str) -> None:
        self._request("POST", f"/admin/sessions/{session_id}/disconnect")
