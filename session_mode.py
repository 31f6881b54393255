"""Voice Bridge session mode — OFF/DETECT/ACTIVE state machine and dispatch target selection."""

import math
import time

from logging_utils import log_debug, log_info

OFF = "off"
DETECT = "detect"
ACTIVE = "active"

MODE_SEQUENCE = (OFF, DETECT, ACTIVE)


def format_remaining(expires_at, now):
    """m:ss until expires_at, rounded up, never negative."""
    remaining = max(0.0, expires_at - now)
    seconds = int(math.ceil(remaining))
    return f"{seconds // 60}:{seconds % 60:02d}"


class SessionModeMachine:
    """
    Process-wide session mode with auto-expiry.

    OFF -> DETECT -> ACTIVE -> OFF via advance(). ACTIVE needs a selected
    target; otherwise the advance falls back to OFF with a reason. DETECT
    expires to OFF after detect_timeout; any non-OFF mode expires to OFF when
    no transcript activity is seen for transcript_timeout. Losing the selected
    target while ACTIVE drops back to DETECT.

    Timers come from ``scheduler.call_later(delay, callback)`` and must fire
    on the same thread that calls the methods here. Nothing here is locked.

    Callbacks:
        on_mode_change(old, new): start/stop capture, clear displays
        on_message(text): user-visible status line
    """

    def __init__(self, scheduler, detect_timeout=180.0, transcript_timeout=300.0,
                 on_mode_change=None, on_message=None, clock=time.time):
        self.scheduler = scheduler
        self.detect_timeout = detect_timeout
        self.transcript_timeout = transcript_timeout
        self.on_mode_change = on_mode_change
        self.on_message = on_message
        self.clock = clock

        self.mode = OFF
        self.targets = []         # [(id, label)]
        self.target_index = -1
        self.send_count = 0
        self.detect_expires_at = None
        self.transcript_expires_at = None
        self._detect_timer = None
        self._transcript_timer = None

    # ------------------------------------------------------------------
    # Queries

    def selected_target(self):
        if 0 <= self.target_index < len(self.targets):
            return self.targets[self.target_index]
        return None

    def can_forward_audio(self):
        return self.mode != OFF

    def should_dispatch(self):
        return self.mode == ACTIVE and self.selected_target() is not None

    def status_text(self):
        now = self.clock()
        extras = []
        if self.mode == DETECT and self.detect_expires_at is not None:
            extras.append(f"detect {format_remaining(self.detect_expires_at, now)}")
        if self.mode != OFF and self.transcript_expires_at is not None:
            extras.append(f"idle {format_remaining(self.transcript_expires_at, now)}")
        label = self.mode.upper()
        return f"{label} ({' / '.join(extras)})" if extras else label

    # ------------------------------------------------------------------
    # Transitions

    def advance(self):
        """Cycle OFF -> DETECT -> ACTIVE -> OFF. Returns the resulting mode."""
        next_mode = MODE_SEQUENCE[(MODE_SEQUENCE.index(self.mode) + 1) % len(MODE_SEQUENCE)]
        if next_mode == ACTIVE:
            if not self.targets:
                next_mode, message = OFF, "No dispatch targets available, back to OFF"
            elif self.selected_target() is None:
                next_mode, message = OFF, "Select a dispatch target first, back to OFF"
            else:
                message = f"Dispatching to: {self.selected_target()[1]}"
        elif next_mode == DETECT:
            message = "Detect mode (transcripts shown, not sent)"
        else:
            message = "Dispatch stopped"
        self.apply_mode(next_mode, message)
        return self.mode

    def apply_mode(self, new_mode, message=None):
        """Enter new_mode, resetting timers. Returns False if the mode is unknown or not allowed."""
        if new_mode not in MODE_SEQUENCE:
            return False
        if new_mode == ACTIVE and self.selected_target() is None:
            return False
        if new_mode == self.mode:
            self._message(message)
            return True

        previous = self.mode
        self.mode = new_mode
        log_info(f"[MODE] {previous.upper()} -> {new_mode.upper()}")

        if new_mode == OFF:
            self._clear_detect_timer()
            self._clear_transcript_timer()
            self.send_count = 0
        else:
            self._schedule_transcript_timeout()
        if new_mode == DETECT:
            self._schedule_detect_timeout()
        else:
            self._clear_detect_timer()

        if self.on_mode_change is not None:
            self.on_mode_change(previous, new_mode)
        self._message(message)
        return True

    def note_transcript_activity(self):
        """Any partial or final transcript restarts the inactivity countdown."""
        if self.mode == OFF:
            return
        self._schedule_transcript_timeout()

    def note_audio_sent(self):
        self.send_count += 1

    # ------------------------------------------------------------------
    # Targets

    def update_targets(self, new_targets, announce=False):
        """Replace the target list, keeping the selection by id. Returns True if the list changed."""
        new_targets = [tuple(t) for t in new_targets]
        previous = self.selected_target()
        changed = (len(new_targets) != len(self.targets)
                   or any(t[0] != old[0] for t, old in zip(new_targets, self.targets)))
        if not changed:
            if announce:
                self._message("Targets unchanged")
            return False

        self.targets = new_targets
        message = None
        if previous is not None:
            ids = [t[0] for t in new_targets]
            self.target_index = ids.index(previous[0]) if previous[0] in ids else -1
            if self.target_index == -1:
                message = "Selected target disappeared"
        elif self.target_index >= len(new_targets):
            self.target_index = -1

        if self.target_index == -1 and self.mode == ACTIVE:
            self.apply_mode(DETECT)
            message = "Target lost, back to DETECT"

        if message is None and announce:
            labels = ', '.join(t[1] for t in new_targets)
            message = f"Targets: {labels}" if new_targets else "No targets"
        self._message(message)
        log_debug(f"[MODE] Targets refreshed: {[t[0] for t in new_targets]}")
        return True

    def move_target(self, direction):
        if not self.targets:
            self._message("No dispatch targets available")
            return None
        if self.target_index == -1:
            self.target_index = 0 if direction > 0 else len(self.targets) - 1
        else:
            self.target_index = (self.target_index + direction) % len(self.targets)
        target = self.targets[self.target_index]
        self._message(f"Selected: {target[1]}")
        return target

    def shutdown(self):
        self._clear_detect_timer()
        self._clear_transcript_timer()

    # ------------------------------------------------------------------
    # Timers

    def _schedule_detect_timeout(self):
        self._clear_detect_timer()
        self.detect_expires_at = self.clock() + self.detect_timeout
        self._detect_timer = self.scheduler.call_later(self.detect_timeout, self._on_detect_timeout)

    def _on_detect_timeout(self):
        self._detect_timer = None
        if self.mode == DETECT:
            minutes = self.detect_timeout / 60
            self.apply_mode(OFF, f"DETECT expired after {minutes:g} min, back to OFF")

    def _clear_detect_timer(self):
        if self._detect_timer is not None:
            self._detect_timer.cancel()
            self._detect_timer = None
        self.detect_expires_at = None

    def _schedule_transcript_timeout(self):
        self._clear_transcript_timer()
        if self.mode == OFF:
            return
        self.transcript_expires_at = self.clock() + self.transcript_timeout
        self._transcript_timer = self.scheduler.call_later(self.transcript_timeout, self._on_transcript_timeout)

    def _on_transcript_timeout(self):
        self._transcript_timer = None
        if self.mode != OFF:
            minutes = self.transcript_timeout / 60
            self.apply_mode(OFF, f"No transcripts for {minutes:g} min, back to OFF")

    def _clear_transcript_timer(self):
        if self._transcript_timer is not None:
            self._transcript_timer.cancel()
            self._transcript_timer = None
        self.transcript_expires_at = None

    def _message(self, message):
        if message and self.on_message is not None:
            self.on_message(message)
