"""Voice Bridge mailbox — thread-safe event FIFO consumed by the dispatch loop."""

import threading
from collections import deque

from logging_utils import log_debug


class Mailbox:
    # User requests
    ADVANCE_MODE = "advance_mode"
    NEXT_TARGET = "next_target"
    PREV_TARGET = "prev_target"
    REFRESH_TARGETS = "refresh_targets"
    QUIT = "quit"

    # Internal events (payload carries the data)
    SOCKET_MESSAGE = "socket_message"
    SOCKET_CLOSED = "socket_closed"
    TIMER = "timer"
    PLAYBACK_STATE = "playback_state"

    def __init__(self):
        self._events = deque()
        self._quit_posted = False
        self._lock = threading.Lock()
        self._wakeup = threading.Event()  # Event-driven waiting instead of polling

    def post(self, kind, payload=None):
        with self._lock:
            # QUIT is sticky: once posted, nothing else is accepted
            if self._quit_posted:
                return
            if kind == Mailbox.QUIT:
                self._quit_posted = True
                self._events.clear()
            self._events.append((kind, payload))
            self._wakeup.set()
        if kind not in (Mailbox.SOCKET_MESSAGE, Mailbox.TIMER):
            log_debug(f"[MAILBOX] Posted: {kind}")

    def check(self):
        """Non-blocking check. Returns (kind, payload) or None."""
        with self._lock:
            if not self._events:
                self._wakeup.clear()
                return None
            event = self._events.popleft()
            if not self._events:
                self._wakeup.clear()
            return event

    def wait(self, timeout):
        """Block until an event is posted or timeout. Returns (kind, payload) or None."""
        self._wakeup.wait(timeout)
        return self.check()

    @property
    def quit_posted(self):
        with self._lock:
            return self._quit_posted
