from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from icu_handoff.api.routes import router
from icu_handoff.config.settings import Settings, get_settings
from icu_handoff.services.access_policy import AccessPolicy
from icu_handoff.services.activity_heartbeat import ActivityHeartbeat
from icu_handoff.services.change_feed import SessionFeedHub
from icu_handoff.services.reconciliation import SessionReconciler
from icu_handoff.services.session_coordinator import SessionCoordinator
from icu_handoff.services.session_store import InMemorySessionStore
from icu_handoff.services.unit_directory import UnitDirectory


@asynccontextmanager
async def lifespan(app: FastAPI):
    reconciler: SessionReconciler = app.state.reconciler
    if app.state.settings.RECONCILE_ENABLED:
        reconciler.start()
        print(f"[APP][reconciler_start] interval_sec={reconciler.interval_sec}", flush=True)

    try:
        yield
    finally:
        if reconciler.running:
            reconciler.stop()
            print("[APP][reconciler_stop] thread=session-reconciler", flush=True)


def create_app(settings: Settings | None = None, *, store: InMemorySessionStore | None = None) -> FastAPI:
    settings = settings or get_settings()
    store = store or InMemorySessionStore(snapshot_path=settings.SESSION_STORE_PATH)

    heartbeat = ActivityHeartbeat(
        store,
        debounce_sec=settings.HEARTBEAT_DEBOUNCE_SEC,
        inactivity_timeout_sec=settings.SESSION_INACTIVITY_TIMEOUT_SEC,
    )
    coordinator = SessionCoordinator(
        store,
        access_policy=AccessPolicy(
            bypass_roles=settings.BYPASS_ROLES,
            force_release_roles=settings.FORCE_RELEASE_ROLES,
            handover_roles=settings.HANDOVER_ROLES,
            inactivity_timeout_sec=settings.SESSION_INACTIVITY_TIMEOUT_SEC,
        ),
        heartbeat=heartbeat,
        inactivity_timeout_sec=settings.SESSION_INACTIVITY_TIMEOUT_SEC,
        urgent_threshold_sec=settings.SESSION_URGENT_THRESHOLD_SEC,
    )

    app = FastAPI(title="ICU Unit Session Coordinator", version="0.1.0", lifespan=lifespan)
    app.include_router(router, prefix="/v1")

    app.state.settings = settings
    app.state.session_store = store
    app.state.unit_directory = UnitDirectory(settings.ICU_UNITS)
    app.state.coordinator = coordinator
    app.state.feed_hub = SessionFeedHub(store)
    app.state.reconciler = SessionReconciler(
        store=store,
        grace_sec=settings.STALE_SESSION_GRACE_SEC,
        interval_sec=settings.RECONCILE_INTERVAL_SEC,
        event_log_path=settings.RECONCILE_EVENT_LOG_PATH,
        heartbeat=heartbeat,
    )
    return app


app = create_app()
