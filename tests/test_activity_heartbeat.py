import unittest
from datetime import datetime, timedelta, timezone

from icu_handoff.errors import PermissionDeniedError, StaleSessionError
from icu_handoff.schemas.session import UnitSession
from icu_handoff.services.activity_heartbeat import ActivityHeartbeat
from icu_handoff.services.session_store import InMemorySessionStore

T0 = datetime(2026, 3, 2, 7, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class TestActivityHeartbeat(unittest.TestCase):
    def setUp(self):
        self.clock = _Clock(T0)
        self.store = InMemorySessionStore(now_fn=self.clock)
        self.session = self.store.create_if(
            "uti-1",
            lambda rows: True,
            UnitSession(user_id="a", unit_id="uti-1", started_at=T0, last_activity=T0),
        )
        self.heartbeat = ActivityHeartbeat(self.store, debounce_sec=60, now_fn=self.clock)

    def test_first_touch_writes(self):
        self.clock.advance(seconds=5)

        self.assertTrue(self.heartbeat.touch(self.session.id, user_id="a"))
        self.assertEqual(self.store.get(self.session.id).last_activity, T0 + timedelta(seconds=5))

    def test_touches_inside_window_are_debounced(self):
        self.heartbeat.prime(self.session.id, T0)
        events = []
        self.store.subscribe(events.append)

        self.clock.advance(seconds=30)
        self.assertFalse(self.heartbeat.touch(self.session.id))
        self.clock.advance(seconds=31)
        self.assertTrue(self.heartbeat.touch(self.session.id))

        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].type, "UPDATE")
        metrics = self.heartbeat.metrics()
        self.assertEqual(metrics["touches"], 2)
        self.assertEqual(metrics["writes"], 1)
        self.assertEqual(metrics["debounced"], 1)

    def test_touch_on_deleted_session_is_stale(self):
        self.store.delete_if_exists(self.session.id)

        with self.assertRaises(StaleSessionError):
            self.heartbeat.touch(self.session.id)
        self.assertEqual(self.heartbeat.metrics()["tracked_sessions"], 0)

    def test_touch_by_other_user_is_denied(self):
        with self.assertRaises(PermissionDeniedError) as ctx:
            self.heartbeat.touch(self.session.id, user_id="b")
        self.assertEqual(ctx.exception.reason, "NOT_SESSION_OWNER")
        self.assertEqual(self.store.get(self.session.id).last_activity, T0)

    def test_expired_row_is_not_refreshed(self):
        events = []
        self.store.subscribe(events.append)
        self.clock.advance(minutes=30)

        with self.assertRaises(StaleSessionError):
            self.heartbeat.touch(self.session.id, user_id="a")

        self.assertEqual(self.store.get(self.session.id).last_activity, T0)
        self.assertEqual(events, [])
        self.assertEqual(self.heartbeat.metrics()["expired"], 1)

    def test_custom_inactivity_threshold(self):
        heartbeat = ActivityHeartbeat(self.store, inactivity_timeout_sec=120, now_fn=self.clock)
        self.clock.advance(seconds=90)
        self.assertTrue(heartbeat.touch(self.session.id))

        self.clock.advance(seconds=121)
        with self.assertRaises(StaleSessionError):
            heartbeat.touch(self.session.id)

    def test_forget_resets_debounce(self):
        self.heartbeat.prime(self.session.id, T0)
        self.heartbeat.forget(self.session.id)
        self.clock.advance(seconds=1)

        self.assertTrue(self.heartbeat.touch(self.session.id))


if __name__ == "__main__":
    unittest.main()
