"""Voice Bridge console input — line commands from stdin, posts to mailbox only."""

import sys
import threading

from logging_utils import log_info, log_error
from event_mailbox import Mailbox

# Empty line (Enter) advances the mode
COMMANDS = {
    '': Mailbox.ADVANCE_MODE,
    'm': Mailbox.ADVANCE_MODE,
    'n': Mailbox.NEXT_TARGET,
    'p': Mailbox.PREV_TARGET,
    'r': Mailbox.REFRESH_TARGETS,
    'q': Mailbox.QUIT,
}

HELP = "[Enter] mode  [n]/[p] next/previous target  [r] refresh targets  [q] quit"


class ConsoleInput:
    def __init__(self, mailbox, stream=None):
        self.mailbox = mailbox
        self.stream = stream or sys.stdin
        self._stopped = threading.Event()
        self._thread = None

    def start(self):
        log_info(HELP)
        self._thread = threading.Thread(target=self._run, name="console-input", daemon=True)
        self._thread.start()
        return self

    def stop(self):
        # readline() cannot be interrupted; the daemon thread dies with the process
        self._stopped.set()

    def handle_line(self, line):
        """Post the command for one input line. Returns the mailbox kind or None."""
        kind = COMMANDS.get(line.strip().lower())
        if kind is None:
            log_info(HELP)
            return None
        self.mailbox.post(kind)
        return kind

    def _run(self):
        try:
            while not self._stopped.is_set():
                line = self.stream.readline()
                if not line:
                    # stdin closed; keep running, controls come from signals/tray
                    return
                if self._stopped.is_set():
                    return
                self.handle_line(line)
        except Exception as e:
            log_error(f"[CONSOLE] Input failed: {e}")
