import json
import unittest
from unittest.mock import Mock

from icu_handoff.integrations.session_feed_ws import OccupancyWatcher, SessionFeedClient, parse_event

EVENT = {
    "seq": 7,
    "type": "UPDATE",
    "session_id": "ses_1",
    "unit_id": "uti-1",
    "new": {
        "id": "ses_1",
        "user_id": "alice",
        "unit_id": "uti-1",
        "started_at": "2026-03-02T07:00:00Z",
        "last_activity": "2026-03-02T07:10:00Z",
        "is_blocking": True,
        "handover_mode": True,
        "is_handover_receiver": False,
    },
    "old": None,
    "committed_at": "2026-03-02T07:10:00Z",
}


class TestParseEvent(unittest.TestCase):
    def test_parses_dict_str_and_bytes(self):
        for payload in (EVENT, json.dumps(EVENT), json.dumps(EVENT).encode("utf-8")):
            event = parse_event(payload)
            self.assertEqual(event.seq, 7)
            self.assertTrue(event.new.handover_mode)

    def test_hello_frame_is_ignored(self):
        self.assertIsNone(parse_event('{"type": "HELLO", "seq": 3}'))

    def test_rejects_bad_payloads(self):
        for payload in ("not-json", "[1, 2]", {"seq": 1, "type": "UPSERT"}, 42):
            with self.assertRaises(ValueError):
                parse_event(payload)


class TestSessionFeedClient(unittest.TestCase):
    def test_handle_raw_message_tracks_seq_and_dispatches(self):
        received = []
        client = SessionFeedClient(on_event=received.append)

        client.handle_raw_message('{"type": "HELLO", "seq": 6}')
        client.handle_raw_message(json.dumps(EVENT))

        self.assertEqual(client.last_seq, 7)
        self.assertEqual([e.session_id for e in received], ["ses_1"])

    def test_connect_and_listen_wires_websocket_app(self):
        ws_app = Mock()
        factory = Mock(return_value=ws_app)
        received = []
        client = SessionFeedClient(
            on_event=received.append,
            base_url="ws://icu.example.test/",
            websocket_app_factory=factory,
        )

        result = client.connect_and_listen(run_forever=False)

        self.assertIs(result, ws_app)
        args, kwargs = factory.call_args
        self.assertEqual(args[0], "ws://icu.example.test/v1/sessions/feed")

        kwargs["on_message"](ws_app, json.dumps(EVENT))
        kwargs["on_message"](ws_app, "garbage")
        self.assertEqual(len(received), 1)

    def test_run_forever_without_open_raises(self):
        client = SessionFeedClient(websocket_app_factory=Mock(return_value=Mock()))

        with self.assertRaises(RuntimeError):
            client.connect_and_listen()

    def test_reconnect_uses_exponential_backoff_sequence(self):
        states = []
        client = SessionFeedClient(on_state_change=lambda **kw: states.append(kw))
        sleeps = []
        attempts = []

        def connect_once():
            attempts.append("x")
            raise RuntimeError("feed dropped")

        result = client.run_with_reconnect(
            connect_once=connect_once,
            sleep_fn=lambda sec: sleeps.append(sec),
            max_retries=3,
            backoff_base_sec=1.0,
            backoff_cap_sec=10.0,
        )

        self.assertFalse(result)
        self.assertEqual(len(attempts), 3)
        self.assertEqual(sleeps, [1.0, 2.0])
        self.assertEqual(client.reconnect_count, 3)
        self.assertEqual(states[-1]["last_error"], "feed dropped")
        self.assertFalse(states[-1]["connected"])

    def test_stop_signal_exits_reconnect_loop_immediately(self):
        client = SessionFeedClient()
        client.start()
        calls = {"count": 0}

        def connect_once():
            calls["count"] += 1
            client.stop()
            raise RuntimeError("disconnect")

        sleeps = []
        result = client.run_with_reconnect(connect_once=connect_once, sleep_fn=sleeps.append, max_retries=5)

        self.assertFalse(result)
        self.assertEqual(calls["count"], 1)
        self.assertEqual(sleeps, [])

    def test_reconnect_succeeds_after_failure(self):
        client = SessionFeedClient()
        outcomes = [RuntimeError("first"), None]

        def connect_once():
            outcome = outcomes.pop(0)
            if outcome is not None:
                raise outcome
            client.stop()

        self.assertTrue(client.run_with_reconnect(connect_once=connect_once, sleep_fn=lambda _sec: None))
        self.assertIsNone(client.last_error)

    def test_closed_feed_is_reopened_until_stopped(self):
        client = SessionFeedClient()
        sleeps = []
        calls = {"count": 0}

        def connect_once():
            calls["count"] += 1
            if calls["count"] == 3:
                client.stop()

        result = client.run_with_reconnect(connect_once=connect_once, sleep_fn=sleeps.append, backoff_base_sec=1.0)

        self.assertTrue(result)
        self.assertEqual(calls["count"], 3)
        self.assertEqual(sleeps, [1.0, 1.0])

    def test_clean_close_resets_failure_budget(self):
        client = SessionFeedClient()
        outcomes = [RuntimeError("a"), RuntimeError("b"), None, RuntimeError("c"), RuntimeError("d"), None]
        sleeps = []

        def connect_once():
            outcome = outcomes.pop(0)
            if not outcomes:
                client.stop()
            if outcome is not None:
                raise outcome

        result = client.run_with_reconnect(
            connect_once=connect_once,
            sleep_fn=sleeps.append,
            max_retries=3,
            backoff_base_sec=1.0,
        )

        self.assertTrue(result)
        self.assertEqual(sleeps, [1.0, 2.0, 1.0, 1.0, 2.0])

    def test_hello_frame_triggers_resync(self):
        resyncs = []
        client = SessionFeedClient(on_resync=resyncs.append)

        self.assertIsNone(client.handle_raw_message('{"type": "HELLO", "seq": 12}'))

        self.assertEqual(resyncs, [12])
        self.assertEqual(client.last_seq, 12)


class TestOccupancyWatcher(unittest.TestCase):
    def test_every_event_triggers_fresh_read(self):
        snapshots = [
            [{"unit_id": "uti-1", "state": "FREE"}],
            [{"unit_id": "uti-1", "state": "OCCUPIED"}],
        ]
        fetch = Mock(side_effect=snapshots)
        updates = []
        watcher = OccupancyWatcher(fetch_units=fetch, on_update=updates.append)
        client = SessionFeedClient(on_event=watcher.on_event)

        watcher.refresh()
        client.handle_raw_message(EVENT)

        self.assertEqual(watcher.refreshes, 2)
        self.assertEqual(watcher.units[0]["state"], "OCCUPIED")
        self.assertEqual(updates, snapshots)

    def test_reconnect_refetches_units_missed_while_offline(self):
        snapshots = [
            [{"unit_id": "uti-1", "state": "OCCUPIED"}],
            [{"unit_id": "uti-1", "state": "FREE"}],
        ]
        watcher = OccupancyWatcher(fetch_units=Mock(side_effect=snapshots), on_update=lambda _units: None)
        client = SessionFeedClient(on_event=watcher.on_event, on_resync=watcher.on_resync)

        client.handle_raw_message('{"type": "HELLO", "seq": 4}')
        # the release at seq 5 happened while the socket was down
        client.handle_raw_message('{"type": "HELLO", "seq": 5}')

        self.assertEqual(watcher.refreshes, 2)
        self.assertEqual(watcher.units[0]["state"], "FREE")


if __name__ == "__main__":
    unittest.main()
