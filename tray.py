"""Voice Bridge system tray icon — GTK/AppIndicator, posts to mailbox only."""

import gi
gi.require_version('Gtk', '3.0')
gi.require_version('AyatanaAppIndicator3', '0.1')
from gi.repository import Gtk, AyatanaAppIndicator3, GLib

from event_mailbox import Mailbox
from logging_utils import log_info, log_debug


class TrayIcon:
    """
    System tray icon. Responsibilities:
    1. Render whatever icon and status line it's told
    2. Post user actions to the mailbox
    3. Nothing else. No mode logic, no audio, no network.
    """

    def __init__(self, mailbox, icon_dir):
        self.mailbox = mailbox
        self._icon_dir = icon_dir
        self._indicator = None
        self._status_item = None

    def setup(self):
        """Create the indicator and menu. Must be called on GTK main thread."""
        self._indicator = AyatanaAppIndicator3.Indicator.new(
            "voice-bridge",
            "VB_OFF",
            AyatanaAppIndicator3.IndicatorCategory.APPLICATION_STATUS
        )
        self._indicator.set_icon_theme_path(self._icon_dir)
        self._indicator.set_status(AyatanaAppIndicator3.IndicatorStatus.ACTIVE)
        self._indicator.set_menu(self._build_menu())
        log_info("[TRAY] Indicator created")

    def _build_menu(self):
        menu = Gtk.Menu()

        self._status_item = Gtk.MenuItem(label="OFF")
        self._status_item.set_sensitive(False)
        menu.append(self._status_item)
        menu.append(Gtk.SeparatorMenuItem())

        for label, kind in (
            ("Advance mode (Off / Detect / Active)", Mailbox.ADVANCE_MODE),
            ("Next target", Mailbox.NEXT_TARGET),
            ("Previous target", Mailbox.PREV_TARGET),
            ("Refresh targets", Mailbox.REFRESH_TARGETS),
        ):
            item = Gtk.MenuItem(label=label)
            item.connect("activate", self._post, kind)
            menu.append(item)

        menu.append(Gtk.SeparatorMenuItem())

        quit_item = Gtk.MenuItem(label="Quit Voice Bridge")
        quit_item.connect("activate", self._post, Mailbox.QUIT)
        menu.append(quit_item)

        menu.show_all()
        return menu

    def _post(self, _, kind):
        log_debug(f"[TRAY] User clicked: {kind}")
        self.mailbox.post(kind)

    def set_icon_by_name(self, name):
        """Set the tray icon. Called via GLib.idle_add from the dispatch loop."""
        if self._indicator:
            self._indicator.set_icon_full(name, "Voice Bridge")

    def set_status_text(self, text):
        """Update the status line. Called via GLib.idle_add from the dispatch loop."""
        if self._status_item:
            self._status_item.set_label(text)

    def stop(self):
        """Quit GTK main loop. Safe from any thread."""
        GLib.idle_add(Gtk.main_quit)
