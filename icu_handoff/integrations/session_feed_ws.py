from __future__ import annotations

import json
import time
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from icu_handoff.schemas.session import SessionChangeEvent


def _decode(payload: dict | str | bytes) -> Dict[str, Any]:
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8")
    if isinstance(payload, str):
        try:
            decoded = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ValueError("payload must be valid JSON string or dict") from exc
        if not isinstance(decoded, dict):
            raise ValueError("decoded payload must be an object")
        return decoded
    if isinstance(payload, dict):
        return payload
    raise ValueError("payload must be dict or JSON string")


def parse_event(payload: dict | str | bytes) -> Optional[SessionChangeEvent]:
    """Parse one feed frame; control frames (``HELLO``) yield None."""
    raw = _decode(payload)
    if raw.get("type") == "HELLO":
        return None

    try:
        return SessionChangeEvent.model_validate(raw)
    except ValidationError as exc:
        raise ValueError(f"invalid session change event: {exc.error_count()} errors") from exc


class SessionFeedClient:
    """Subscribes to the session change feed and hands each event to a callback.

    ``on_resync`` fires on every ``HELLO`` frame, i.e. on each (re)connect,
    because changes committed while disconnected are never replayed.
    """

    def __init__(
        self,
        on_event: Optional[Callable[[SessionChangeEvent], None]] = None,
        *,
        base_url: str = "ws://localhost:8000",
        websocket_app_factory: Optional[Callable[..., Any]] = None,
        on_state_change: Optional[Callable[..., None]] = None,
        on_resync: Optional[Callable[[int], None]] = None,
    ) -> None:
        self._on_event = on_event
        self._on_resync = on_resync
        self.base_url = base_url.rstrip("/")
        self.running = False
        self.last_error: str | None = None
        self.last_seq: int | None = None
        self.reconnect_count = 0
        self._websocket_app_factory = websocket_app_factory or self._default_websocket_app_factory
        self._on_state_change = on_state_change

    def _emit_state(self, *, connected: bool) -> None:
        if self._on_state_change is None:
            return
        self._on_state_change(
            connected=connected,
            reconnect_count=self.reconnect_count,
            last_error=self.last_error,
            last_seq=self.last_seq,
        )

    @property
    def feed_url(self) -> str:
        return f"{self.base_url}/v1/sessions/feed"

    def _default_websocket_app_factory(self, *args: Any, **kwargs: Any) -> Any:
        from websocket import WebSocketApp

        return WebSocketApp(*args, **kwargs)

    def start(self) -> None:
        self.running = True
        self._emit_state(connected=False)

    def stop(self) -> None:
        self.running = False
        self._emit_state(connected=False)

    def handle_raw_message(self, payload: dict | str | bytes) -> Optional[SessionChangeEvent]:
        raw = _decode(payload)
        if raw.get("type") == "HELLO":
            self.last_seq = int(raw.get("seq") or 0)
            if self._on_resync is not None:
                self._on_resync(self.last_seq)
            return None

        event = parse_event(raw)
        self.last_seq = event.seq
        if self._on_event is not None:
            self._on_event(event)
        return event

    def connect_and_listen(self, *, run_forever: bool = True) -> Any:
        print(f"[FEED][client_connect] url={self.feed_url}", flush=True)
        state = {"opened": False}

        def _on_open(_: Any) -> None:
            state["opened"] = True
            print("[FEED][client_connect_result] status=open", flush=True)
            self._emit_state(connected=True)

        def _on_message(_: Any, raw_message: Any) -> None:
            try:
                self.handle_raw_message(raw_message)
            except ValueError as exc:
                print(f"[FEED][client_message_skip] reason={exc}", flush=True)

        def _on_error(_: Any, error: Any) -> None:
            self.last_error = str(error)
            print(f"[FEED][client_error] {self.last_error}", flush=True)
            self._emit_state(connected=False)

        def _on_close(_: Any, code: Any, reason: Any) -> None:
            print(f"[FEED][client_close] code={code} reason={reason}", flush=True)
            self._emit_state(connected=False)

        ws_app = self._websocket_app_factory(
            self.feed_url,
            on_open=_on_open,
            on_message=_on_message,
            on_error=_on_error,
            on_close=_on_close,
        )

        if run_forever:
            ws_app.run_forever()
            if not state["opened"]:
                raise RuntimeError("feed_open_not_confirmed")

        return ws_app

    def run_with_reconnect(
        self,
        *,
        connect_once: Callable[[], None],
        sleep_fn: Callable[[float], None] = time.sleep,
        max_retries: int = 5,
        backoff_base_sec: float = 1.0,
        backoff_cap_sec: float = 30.0,
    ) -> bool:
        """Keep the feed connected until ``stop()``.

        A connection that closes normally is reopened after ``backoff_base_sec``;
        ``max_retries`` bounds consecutive failed attempts, with exponential
        backoff between them. Returns True when stopped after at least one
        successful connection, False when retries ran out or nothing connected.
        """
        if max_retries < 1:
            return False

        self.running = True
        self.last_error = None
        self.reconnect_count = 0
        self._emit_state(connected=False)

        connected_once = False
        failures = 0
        while self.running:
            try:
                connect_once()
            except Exception as exc:
                self.last_error = str(exc)
                self.reconnect_count += 1
                failures += 1
                self._emit_state(connected=False)

                if not self.running or failures >= max_retries:
                    return False

                sleep_fn(min(backoff_base_sec * (2 ** (failures - 1)), backoff_cap_sec))
                continue

            connected_once = True
            failures = 0
            self.last_error = None
            if self.running:
                print("[FEED][client_reconnect] reason=closed", flush=True)
                sleep_fn(backoff_base_sec)

        return connected_once


class OccupancyWatcher:
    """Re-derives unit occupancy from a fresh read whenever the feed reports a change.

    The event payload only says *that* something changed; the unit list is
    always re-fetched so a client that missed events still converges.
    """

    def __init__(
        self,
        fetch_units: Callable[[], List[Dict[str, Any]]],
        on_update: Callable[[List[Dict[str, Any]]], None],
    ) -> None:
        self.fetch_units = fetch_units
        self.on_update = on_update
        self.refreshes = 0
        self.units: List[Dict[str, Any]] = []

    def refresh(self) -> List[Dict[str, Any]]:
        self.units = self.fetch_units()
        self.refreshes += 1
        self.on_update(self.units)
        return self.units

    def on_event(self, _event: SessionChangeEvent) -> None:
        self.refresh()

    def on_resync(self, _seq: int) -> None:
        self.refresh()
