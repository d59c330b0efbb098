import unittest
from datetime import datetime, timedelta, timezone

from icu_handoff.schemas.session import UnitSession
from icu_handoff.services.unit_state import (
    UnitState,
    derive_unit_state,
    find_holder,
    validate_unit_transition,
)

T0 = datetime(2026, 3, 2, 7, 0, tzinfo=timezone.utc)


def _row(user_id, *, blocking=True, handover=False, receiver=False, last_activity=T0):
    return UnitSession(
        user_id=user_id,
        unit_id="uti-1",
        started_at=T0,
        last_activity=last_activity,
        is_blocking=blocking,
        handover_mode=handover,
        is_handover_receiver=receiver,
    )


class TestUnitState(unittest.TestCase):
    def test_no_rows_is_free(self):
        self.assertEqual(derive_unit_state([], T0), UnitState.FREE)

    def test_states_follow_flags(self):
        self.assertEqual(derive_unit_state([_row("a")], T0), UnitState.OCCUPIED)
        self.assertEqual(derive_unit_state([_row("a", handover=True)], T0), UnitState.HANDOVER_OPEN)
        rows = [_row("a", handover=True), _row("b", blocking=False, receiver=True)]
        self.assertEqual(derive_unit_state(rows, T0), UnitState.HANDOVER_PENDING)

    def test_stale_holder_leaves_unit_free(self):
        rows = [_row("a", last_activity=T0 - timedelta(minutes=31))]
        self.assertEqual(derive_unit_state(rows, T0), UnitState.FREE)
        self.assertIsNone(find_holder(rows, T0))

    def test_stale_receiver_reopens_slot(self):
        rows = [
            _row("a", handover=True),
            _row("b", blocking=False, receiver=True, last_activity=T0 - timedelta(minutes=40)),
        ]
        self.assertEqual(derive_unit_state(rows, T0), UnitState.HANDOVER_OPEN)

    def test_viewer_rows_do_not_occupy(self):
        self.assertEqual(derive_unit_state([_row("a", blocking=False)], T0), UnitState.FREE)

    def test_transition_table(self):
        self.assertEqual(
            validate_unit_transition(action="start", current_state=UnitState.FREE),
            {'ok': True, 'reason': None},
        )
        self.assertEqual(
            validate_unit_transition(action="start", current_state=UnitState.OCCUPIED),
            {'ok': False, 'reason': 'INVALID_TRANSITION'},
        )
        self.assertTrue(validate_unit_transition(action="JOIN_AS_RECEIVER", current_state=UnitState.HANDOVER_OPEN)['ok'])
        self.assertFalse(validate_unit_transition(action="close_handover", current_state=UnitState.HANDOVER_PENDING)['ok'])
        self.assertFalse(validate_unit_transition(action="unknown", current_state=UnitState.FREE)['ok'])


if __name__ == "__main__":
    unittest.main()
