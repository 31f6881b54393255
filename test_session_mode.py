"""Tests for the OFF/DETECT/ACTIVE session mode machine and target selection."""

import unittest

from session_mode import ACTIVE, DETECT, OFF, SessionModeMachine, format_remaining


class FakeHandle:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Records call_later requests; tests fire them by hand."""

    def __init__(self):
        self.handles = []

    def call_later(self, delay, callback):
        handle = FakeHandle(delay, callback)
        self.handles.append(handle)
        return handle

    def active(self):
        return [h for h in self.handles if not h.cancelled]

    def fire(self, delay):
        for handle in self.active():
            if handle.delay == delay:
                handle.cancelled = True
                handle.callback()
                return
        raise AssertionError(f"no active timer with delay {delay}")


TARGETS = [('obsidian', 'Obsidian'), ('terminal_claude', 'Terminal claude'), ('terminal_frontmost', 'Terminal frontmost')]


class SessionTestCase(unittest.TestCase):
    def setUp(self):
        self.scheduler = FakeScheduler()
        self.changes = []
        self.messages = []
        self.now = 1000.0
        self.session = SessionModeMachine(
            self.scheduler,
            detect_timeout=180,
            transcript_timeout=300,
            on_mode_change=lambda old, new: self.changes.append((old, new)),
            on_message=self.messages.append,
            clock=lambda: self.now,
        )


class TestAdvance(SessionTestCase):
    def test_off_to_detect_starts_both_timers(self):
        self.assertEqual(self.session.advance(), DETECT)
        self.assertEqual(self.changes, [(OFF, DETECT)])
        self.assertEqual(sorted(h.delay for h in self.scheduler.active()), [180, 300])
        self.assertTrue(self.session.can_forward_audio())
        self.assertFalse(self.session.should_dispatch())

    def test_active_without_targets_falls_back_to_off(self):
        self.session.advance()
        self.assertEqual(self.session.advance(), OFF)
        self.assertIn("No dispatch targets", self.messages[-1])
        self.assertEqual(self.scheduler.active(), [])

    def test_active_without_selection_falls_back_to_off(self):
        self.session.update_targets(TARGETS)
        self.session.advance()
        self.assertEqual(self.session.advance(), OFF)
        self.assertIn("Select a dispatch target", self.messages[-1])

    def test_active_with_selection(self):
        self.session.update_targets(TARGETS)
        self.session.move_target(1)
        self.session.advance()
        self.assertEqual(self.session.advance(), ACTIVE)
        self.assertTrue(self.session.should_dispatch())
        # Detect timer gone, inactivity timer remains
        self.assertEqual([h.delay for h in self.scheduler.active()], [300])
        self.assertIn("Obsidian", self.messages[-1])

    def test_active_to_off_resets_counters(self):
        self.session.update_targets(TARGETS)
        self.session.move_target(1)
        self.session.advance()
        self.session.advance()
        self.session.note_audio_sent()
        self.assertEqual(self.session.advance(), OFF)
        self.assertEqual(self.session.send_count, 0)
        self.assertFalse(self.session.can_forward_audio())
        self.assertEqual(self.scheduler.active(), [])

    def test_apply_mode_rejects_invalid(self):
        self.assertFalse(self.session.apply_mode('bogus'))
        self.assertFalse(self.session.apply_mode(ACTIVE))
        self.assertEqual(self.session.mode, OFF)


class TestTimeouts(SessionTestCase):
    def test_detect_expires_to_off(self):
        self.session.advance()
        self.scheduler.fire(180)
        self.assertEqual(self.session.mode, OFF)
        self.assertEqual(self.changes[-1], (DETECT, OFF))
        self.assertEqual(self.scheduler.active(), [])

    def test_inactivity_expires_active_to_off(self):
        self.session.update_targets(TARGETS)
        self.session.move_target(1)
        self.session.advance()
        self.session.advance()
        self.scheduler.fire(300)
        self.assertEqual(self.session.mode, OFF)

    def test_activity_reschedules_inactivity_timer(self):
        self.session.advance()
        first = [h for h in self.scheduler.active() if h.delay == 300][0]
        self.session.note_transcript_activity()
        self.assertTrue(first.cancelled)
        self.assertEqual(len([h for h in self.scheduler.active() if h.delay == 300]), 1)

    def test_activity_ignored_when_off(self):
        self.session.note_transcript_activity()
        self.assertEqual(self.scheduler.handles, [])

    def test_status_countdowns(self):
        self.assertEqual(self.session.status_text(), 'OFF')
        self.session.advance()
        self.assertEqual(self.session.status_text(), 'DETECT (detect 3:00 / idle 5:00)')
        self.now += 61.5
        self.assertEqual(self.session.status_text(), 'DETECT (detect 1:59 / idle 3:59)')

    def test_format_remaining_never_negative(self):
        self.assertEqual(format_remaining(10.0, 20.0), '0:00')
        self.assertEqual(format_remaining(100.0, 0.0), '1:40')

    def test_shutdown_cancels_timers(self):
        self.session.advance()
        self.session.shutdown()
        self.assertEqual(self.scheduler.active(), [])


class TestTargets(SessionTestCase):
    def test_move_from_unselected(self):
        self.session.update_targets(TARGETS)
        self.assertEqual(self.session.move_target(-1)[0], 'terminal_frontmost')
        self.session.target_index = -1
        self.assertEqual(self.session.move_target(1)[0], 'obsidian')

    def test_move_wraps(self):
        self.session.update_targets(TARGETS)
        self.session.move_target(-1)
        self.assertEqual(self.session.move_target(1)[0], 'obsidian')
        self.assertEqual(self.session.move_target(-1)[0], 'terminal_frontmost')

    def test_move_without_targets(self):
        self.assertIsNone(self.session.move_target(1))
        self.assertEqual(self.session.target_index, -1)

    def test_selection_kept_by_id(self):
        self.session.update_targets(TARGETS)
        self.session.move_target(1)
        self.session.move_target(1)   # terminal_claude
        self.session.update_targets([('terminal_frontmost', 'Front'), ('terminal_claude', 'Terminal claude')])
        self.assertEqual(self.session.selected_target()[0], 'terminal_claude')
        self.assertEqual(self.session.target_index, 1)

    def test_unchanged_list_reports_false(self):
        self.session.update_targets(TARGETS)
        self.assertFalse(self.session.update_targets(list(TARGETS), announce=True))
        self.assertEqual(self.messages[-1], "Targets unchanged")

    def test_losing_selected_target_in_active_drops_to_detect(self):
        self.session.update_targets(TARGETS)
        self.session.move_target(1)
        self.session.advance()
        self.session.advance()
        self.assertEqual(self.session.mode, ACTIVE)

        self.session.update_targets(TARGETS[1:])
        self.assertEqual(self.session.mode, DETECT)
        self.assertEqual(self.session.target_index, -1)
        self.assertIsNone(self.session.selected_target())
        self.assertIn("DETECT", self.messages[-1])

    def test_unselected_index_reset_when_out_of_range(self):
        self.session.update_targets(TARGETS)
        self.session.target_index = 5
        self.session.update_targets(TARGETS[:1])
        self.assertEqual(self.session.target_index, -1)


if __name__ == '__main__':
    unittest.main()
