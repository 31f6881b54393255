"""Voice Bridge worker primitives — serial FIFO worker, periodic ticker, mailbox-backed timers."""

import queue
import threading
import time

from logging_utils import log_debug, log_error
from event_mailbox import Mailbox


class SerialWorker:
    """
    One background thread draining a FIFO of items through a handler.

    Exactly one item is in flight at a time, so items are handled strictly in
    enqueue order. A handler failure is logged and the item dropped; the
    worker moves on to the next item.
    """

    _STOP = object()

    def __init__(self, name, handler):
        self.name = name
        self._handler = handler
        self._queue = queue.Queue()
        self._thread = None
        self._stopped = False
        self._busy = threading.Event()

    def start(self):
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def submit(self, item):
        """Queue an item. Silently dropped after stop()."""
        if self._stopped:
            return
        self._queue.put(item)
        if self._thread is None:
            self.start()

    def pending(self):
        return self._queue.qsize()

    def is_busy(self):
        return self._busy.is_set()

    def clear(self):
        """Discard all queued (not yet started) items. Returns count dropped."""
        count = 0
        try:
            while True:
                item = self._queue.get_nowait()
                if item is SerialWorker._STOP:
                    self._queue.put(item)
                    break
                count += 1
        except queue.Empty:
            pass
        if count > 0:
            log_debug(f"[{self.name}] Discarded {count} queued item(s)")
        return count

    def stop(self, timeout=2.0):
        """Stop accepting work, discard the backlog, join the thread. Idempotent."""
        if self._stopped:
            return
        self._stopped = True
        self.clear()
        self._queue.put(SerialWorker._STOP)
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
            if self._thread.is_alive():
                log_error(f"[{self.name}] Worker did not exit within {timeout}s")

    def _run(self):
        while True:
            item = self._queue.get()
            if item is SerialWorker._STOP:
                break
            self._busy.set()
            try:
                self._handler(item)
            except Exception as e:
                log_error(f"[{self.name}] Item failed: {e}")
            finally:
                self._busy.clear()
        log_debug(f"[{self.name}] Worker exiting")


class Ticker:
    """Calls ``callback`` every ``period`` seconds on its own thread until stopped.

    Ticks follow a fixed monotonic schedule, so a slow callback does not
    stretch the interval. When a callback overruns whole periods the missed
    ticks are skipped, not replayed in a burst.
    """

    def __init__(self, period, callback, name="ticker"):
        self.period = period
        self._callback = callback
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self):
        self._thread.start()
        return self

    def stop(self):
        self._stop_event.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(1.0)

    def _run(self):
        deadline = time.monotonic() + self.period
        while not self._stop_event.wait(max(0.0, deadline - time.monotonic())):
            try:
                self._callback()
            except Exception as e:
                log_error(f"[{self._thread.name}] Tick failed: {e}")
            deadline += self.period
            now = time.monotonic()
            if deadline < now - self.period:
                skipped = int((now - deadline) // self.period)
                deadline += skipped * self.period
                log_debug(f"[{self._thread.name}] Behind schedule, skipped {skipped} tick(s)")


class _TimerHandle:
    def __init__(self, timer):
        self._timer = timer
        self.cancelled = False

    def cancel(self):
        self.cancelled = True
        self._timer.cancel()


class MailboxScheduler:
    """
    One-shot timers whose callbacks run on the dispatch loop thread.

    The timer thread only posts a TIMER event; the loop invokes the callback.
    A handle cancelled after its event was posted still never fires.
    """

    def __init__(self, mailbox):
        self.mailbox = mailbox
        self._handles = set()
        self._lock = threading.Lock()

    def call_later(self, delay, callback):
        handle = None

        def guarded():
            with self._lock:
                self._handles.discard(handle)
            if not handle.cancelled:
                callback()

        def fire():
            self.mailbox.post(Mailbox.TIMER, guarded)

        timer = threading.Timer(delay, fire)
        timer.daemon = True
        handle = _TimerHandle(timer)
        with self._lock:
            self._handles.add(handle)
        timer.start()
        return handle

    def cancel_all(self):
        with self._lock:
            handles = list(self._handles)
            self._handles.clear()
        for handle in handles:
            handle.cancel()
