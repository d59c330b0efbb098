from fastapi import APIRouter, Header, HTTPException, Request, WebSocket

from icu_handoff.errors import (
    HandoverNotOpenError,
    PermissionDeniedError,
    SessionCoordinationError,
    SlotTakenError,
    StaleSessionError,
    StoreUnavailableError,
    UnitOccupiedError,
)
from icu_handoff.schemas.session import Caller
from icu_handoff.schemas.unit import Unit
from icu_handoff.services.session_coordinator import SessionCoordinator

router = APIRouter()

_ERROR_STATUS = {
    UnitOccupiedError: 409,
    HandoverNotOpenError: 409,
    SlotTakenError: 409,
    PermissionDeniedError: 403,
    StaleSessionError: 410,
    StoreUnavailableError: 503,
}


def _to_http(exc: SessionCoordinationError) -> HTTPException:
    status = _ERROR_STATUS.get(type(exc), 400)
    detail = exc.reason if isinstance(exc, PermissionDeniedError) else exc.code
    return HTTPException(status_code=status, detail=detail)


def _caller(x_user_id: str | None, x_user_roles: str | None) -> Caller:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail='X-User-Id header required')
    roles = [r for r in (x_user_roles or '').split(',') if r.strip()]
    return Caller(user_id=x_user_id.strip(), roles=roles)


def _coordinator(request: Request) -> SessionCoordinator:
    return request.app.state.coordinator


def _unit_or_404(request: Request, unit_id: str) -> Unit:
    unit = request.app.state.unit_directory.get(unit_id)
    if unit is None:
        raise HTTPException(status_code=404, detail='unit not found')
    return unit


def _require_privileged(request: Request, caller: Caller) -> None:
    if not _coordinator(request).access_policy.can_force_release(caller.roles):
        raise HTTPException(status_code=403, detail='FORCE_RELEASE_ROLE_REQUIRED')


@router.get('/units')
def list_units(request: Request):
    units = request.app.state.unit_directory.list_all()
    return [s.model_dump(mode='json') for s in _coordinator(request).list_unit_status(units)]


@router.get('/units/{unit_id}/status')
def get_unit_status(unit_id: str, request: Request):
    unit = _unit_or_404(request, unit_id)
    return _coordinator(request).unit_status(unit).model_dump(mode='json')


@router.get('/units/{unit_id}/access')
def get_unit_access(
    unit_id: str,
    request: Request,
    x_user_id: str | None = Header(default=None, alias='X-User-Id'),
    x_user_roles: str | None = Header(default=None, alias='X-User-Roles'),
):
    caller = _caller(x_user_id, x_user_roles)
    _unit_or_404(request, unit_id)
    return _coordinator(request).check_access(unit_id, caller).model_dump()


@router.post('/units/{unit_id}/sessions')
def start_session(
    unit_id: str,
    request: Request,
    x_user_id: str | None = Header(default=None, alias='X-User-Id'),
    x_user_roles: str | None = Header(default=None, alias='X-User-Roles'),
):
    caller = _caller(x_user_id, x_user_roles)
    _unit_or_404(request, unit_id)
    coordinator = _coordinator(request)
    try:
        session = coordinator.start(unit_id, caller)
    except SessionCoordinationError as exc:
        raise _to_http(exc) from exc
    return {
        'session': session.model_dump(mode='json') if session else None,
        'bypass': coordinator.can_bypass_exclusivity(caller),
    }


@router.post('/units/{unit_id}/handover/receiver')
def join_handover(
    unit_id: str,
    request: Request,
    x_user_id: str | None = Header(default=None, alias='X-User-Id'),
    x_user_roles: str | None = Header(default=None, alias='X-User-Roles'),
):
    caller = _caller(x_user_id, x_user_roles)
    _unit_or_404(request, unit_id)
    try:
        session = _coordinator(request).join_as_receiver(unit_id, caller)
    except SessionCoordinationError as exc:
        raise _to_http(exc) from exc
    return {'session': session.model_dump(mode='json') if session else None}


@router.get('/sessions/me')
def get_current_session(
    request: Request,
    x_user_id: str | None = Header(default=None, alias='X-User-Id'),
    x_user_roles: str | None = Header(default=None, alias='X-User-Roles'),
):
    caller = _caller(x_user_id, x_user_roles)
    return _coordinator(request).current_session_view(caller).model_dump(mode='json')


@router.delete('/sessions/me')
def logout_sessions(
    request: Request,
    x_user_id: str | None = Header(default=None, alias='X-User-Id'),
    x_user_roles: str | None = Header(default=None, alias='X-User-Roles'),
):
    caller = _caller(x_user_id, x_user_roles)
    return {'released': _coordinator(request).release_all(caller)}


def _session_action(request: Request, action: str, session_id: str, caller: Caller):
    coordinator = _coordinator(request)
    try:
        session = getattr(coordinator, action)(session_id, caller)
    except SessionCoordinationError as exc:
        raise _to_http(exc) from exc
    return {'session': session.model_dump(mode='json') if session else None}


@router.post('/sessions/{session_id}/handover/open')
def open_handover(
    session_id: str,
    request: Request,
    x_user_id: str | None = Header(default=None, alias='X-User-Id'),
    x_user_roles: str | None = Header(default=None, alias='X-User-Roles'),
):
    return _session_action(request, 'open_handover', session_id, _caller(x_user_id, x_user_roles))


@router.post('/sessions/{session_id}/handover/close')
def close_handover(
    session_id: str,
    request: Request,
    x_user_id: str | None = Header(default=None, alias='X-User-Id'),
    x_user_roles: str | None = Header(default=None, alias='X-User-Roles'),
):
    return _session_action(request, 'close_handover', session_id, _caller(x_user_id, x_user_roles))


@router.post('/sessions/{session_id}/assume')
def confirm_assumption(
    session_id: str,
    request: Request,
    x_user_id: str | None = Header(default=None, alias='X-User-Id'),
    x_user_roles: str | None = Header(default=None, alias='X-User-Roles'),
):
    return _session_action(request, 'confirm_assumption', session_id, _caller(x_user_id, x_user_roles))


@router.post('/sessions/{session_id}/touch')
def touch_session(
    session_id: str,
    request: Request,
    x_user_id: str | None = Header(default=None, alias='X-User-Id'),
    x_user_roles: str | None = Header(default=None, alias='X-User-Roles'),
):
    caller = _caller(x_user_id, x_user_roles)
    try:
        written = _coordinator(request).touch(session_id, caller)
    except SessionCoordinationError as exc:
        raise _to_http(exc) from exc
    return {'session_id': session_id, 'written': written}


@router.delete('/sessions/{session_id}')
def release_session(
    session_id: str,
    request: Request,
    x_user_id: str | None = Header(default=None, alias='X-User-Id'),
    x_user_roles: str | None = Header(default=None, alias='X-User-Roles'),
):
    caller = _caller(x_user_id, x_user_roles)
    try:
        _coordinator(request).release(session_id, caller)
    except SessionCoordinationError as exc:
        raise _to_http(exc) from exc
    return {'session_id': session_id, 'released': True}


@router.get('/sessions/{session_id}/remaining')
def get_remaining(session_id: str, request: Request):
    session = _coordinator(request).store.get(session_id)
    if session is None:
        raise HTTPException(status_code=410, detail='STALE_SESSION')
    return _coordinator(request).remaining_time(session).model_dump()


@router.websocket('/sessions/feed')
async def session_feed(websocket: WebSocket):
    await websocket.app.state.feed_hub.serve(websocket)


@router.get('/admin/sessions')
def list_active_sessions(
    request: Request,
    x_user_id: str | None = Header(default=None, alias='X-User-Id'),
    x_user_roles: str | None = Header(default=None, alias='X-User-Roles'),
):
    caller = _caller(x_user_id, x_user_roles)
    _require_privileged(request, caller)
    names = request.app.state.unit_directory.names()
    return [r.model_dump(mode='json') for r in _coordinator(request).session_monitor(names)]


@router.post('/admin/sessions/{session_id}/disconnect')
def force_disconnect(
    session_id: str,
    request: Request,
    x_user_id: str | None = Header(default=None, alias='X-User-Id'),
    x_user_roles: str | None = Header(default=None, alias='X-User-Roles'),
):
    caller = _caller(x_user_id, x_user_roles)
    try:
        _coordinator(request).force_disconnect(session_id, caller)
    except SessionCoordinationError as exc:
        raise _to_http(exc) from exc
    return {'session_id': session_id, 'disconnected': True}


@router.post('/admin/reconcile')
def trigger_reconcile(
    request: Request,
    x_user_id: str | None = Header(default=None, alias='X-User-Id'),
    x_user_roles: str | None = Header(default=None, alias='X-User-Roles'),
):
    caller = _caller(x_user_id, x_user_roles)
    _require_privileged(request, caller)
    return request.app.state.reconciler.trigger()


@router.get('/metrics/sessions')
def session_metrics(request: Request):
    coordinator = _coordinator(request)
    return {
        'store': coordinator.store.metrics(),
        'heartbeat': coordinator.heartbeat.metrics(),
        'feed': request.app.state.feed_hub.metrics(),
        'reconcile': {k: v for k, v in request.app.state.reconciler.metrics().items() if k != 'recent_events'},
    }
