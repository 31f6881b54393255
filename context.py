"""Voice Bridge context — shared components for the dispatch loop and ordered shutdown."""

from logging_utils import log_debug, log_info, log_error

try:
    from gi.repository import GLib
except ImportError:
    GLib = None

# Tray icon per session mode
MODE_ICONS = {
    'off': "VB_OFF",
    'detect': "VB_DETECT",
    'active': "VB_ACTIVE",
}


class BridgeContext:
    def __init__(self, config, mailbox):
        self.config = config
        self.mailbox = mailbox

        # Set by main.py during wiring; optional parts stay None when disabled
        self.mic = None
        self.transcriber = None
        self.scheduler = None
        self.session = None
        self.finalizer = None
        self.sink = None
        self.dispatch_worker = None
        self.turn_loop = None
        self.playback_queue = None
        self.player = None
        self.tray = None
        self.console = None

        self.tray_running = False
        self.exit_code = 0
        self.shut_down = False
        self._pending_icon = None   # Last icon requested (for startup race)

    def set_icon(self, icon_name):
        """Tell the GTK thread to display this icon. Called from the dispatch loop."""
        log_debug(f"[ICON] Setting: {icon_name}")
        self._pending_icon = icon_name
        if self.tray and self.tray_running and GLib is not None:
            try:
                GLib.idle_add(self.tray.set_icon_by_name, icon_name)
            except Exception as e:
                log_error(f"[ICON] Failed to set icon: {e}")

    def set_status(self, text):
        if self.tray and self.tray_running and GLib is not None:
            try:
                GLib.idle_add(self.tray.set_status_text, text)
            except Exception as e:
                log_error(f"[TRAY] Failed to set status: {e}")


def handle_quit(ctx):
    """Best-effort ordered shutdown. Each step is guarded; a failure never skips the rest.

    Idempotent. Returns ctx.exit_code.
    """
    if ctx.shut_down:
        return ctx.exit_code
    ctx.shut_down = True
    log_info("[SHUTDOWN] Stopping")

    steps = (
        ("Mic stop", lambda: ctx.mic and ctx.mic.stop()),
        ("Socket close", lambda: ctx.transcriber and ctx.transcriber.close()),
        ("Dispatch worker stop", lambda: ctx.dispatch_worker and ctx.dispatch_worker.stop(timeout=1.0)),
        ("TTS queue shutdown", lambda: ctx.playback_queue and ctx.playback_queue.shutdown()),
        ("Turn loop shutdown", lambda: ctx.turn_loop and ctx.turn_loop.shutdown()),
        ("Session timers", lambda: ctx.session and ctx.session.shutdown()),
        ("Scheduler timers", lambda: ctx.scheduler and ctx.scheduler.cancel_all()),
        ("Audio device release", lambda: ctx.player and ctx.player.shutdown()),
        ("Console stop", lambda: ctx.console and ctx.console.stop()),
    )
    for label, step in steps:
        try:
            step()
        except Exception as e:
            log_error(f"[SHUTDOWN] {label} failed: {e}")

    try:
        ctx.tray_running = False
        if ctx.tray:
            ctx.tray.stop()
    except Exception as e:
        log_error(f"[SHUTDOWN] Tray stop failed: {e}")

    return ctx.exit_code
