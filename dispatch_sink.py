"""Voice Bridge dispatch sink — target listing and text delivery (external command or xdotool/xclip)."""

import subprocess
import time

from logging_utils import log_debug, log_info, log_error

# Known terminal emulator window classes
TERMINAL_CLASSES = {
    'gnome-terminal', 'gnome-terminal-server',
    'xterm', 'konsole', 'terminator', 'alacritty',
    'kitty', 'tilix', 'sakura', 'guake', 'yakuake',
    'st', 'urxvt', 'rxvt',
}

BUILTIN_TARGETS = [
    ('type', 'Active window'),
    ('clipboard', 'Clipboard'),
]

# Spoken words that send a key instead of text
ENTER_WORDS = {'実行', 'enter'}
CANCEL_WORDS = {'やめます', 'キャンセルします', 'クリアします', 'cancel'}

_WINDOW_CLASS_CACHE_TTL = 2.0


class DispatchError(Exception):
    """Raised when text could not be delivered to a target."""


def _strip_trailing_mark(text):
    for mark in ('。', '、', '.'):
        if text.endswith(mark):
            return text[:-len(mark)]
    return text


def special_key_for(text):
    """'Return' or 'ctrl+c' when the utterance is a spoken key command, else None."""
    word = _strip_trailing_mark(text.strip()).lower()
    if word in ENTER_WORDS:
        return 'Return'
    if word in CANCEL_WORDS:
        return 'ctrl+c'
    return None


def parse_target_lines(output):
    """Parse 'id|label' lines into [(id, label)], skipping blanks and duplicates."""
    targets = []
    seen = set()
    for line in (output or '').splitlines():
        line = line.strip()
        if not line:
            continue
        target_id, _, label = line.partition('|')
        target_id = target_id.strip()
        if not target_id or target_id in seen:
            continue
        seen.add(target_id)
        targets.append((target_id, label.strip() or target_id))
    return targets


class DispatchSink:
    """
    Delivers finalized text to a named target.

    With a command configured, targets come from ``<command> --list-targets``
    and text is sent with ``<command> --target <id> <text>``. Without one the
    built-in targets type into the active window (xdotool) or copy to the
    clipboard (xclip). Terminals get a clipboard paste instead of typing.
    """

    def __init__(self, command=None, timeout=10.0):
        self.command = command or None
        self.timeout = timeout
        self._cached_window_class = None
        self._window_class_cache_time = 0

    @classmethod
    def from_config(cls, config):
        return cls(config.get('dispatch_command'), config.get('dispatch_timeout', 10.0))

    def list_targets(self):
        """Current targets as [(id, label)]. Raises DispatchError if the command fails."""
        if not self.command:
            return list(BUILTIN_TARGETS)
        try:
            result = subprocess.run(
                [self.command, '--list-targets'],
                capture_output=True,
                timeout=self.timeout,
                shell=False,
                text=True
            )
        except subprocess.TimeoutExpired as e:
            raise DispatchError("target listing timed out") from e
        except OSError as e:
            raise DispatchError(f"target listing failed: {e}") from e
        if result.returncode != 0:
            raise DispatchError(f"target listing exited {result.returncode}: {result.stderr.strip()}")
        return parse_target_lines(result.stdout)

    def send(self, target_id, text):
        """Deliver text to target_id. Raises DispatchError on failure."""
        if not text or not text.strip():
            return
        if self.command:
            self._send_command(target_id, text)
        elif target_id == 'type':
            self._send_active_window(text)
        elif target_id == 'clipboard':
            copy_to_clipboard(text, self.timeout)
        else:
            raise DispatchError(f"Unknown target: {target_id}")
        log_debug(f"[DISPATCH] {len(text)} chars -> {target_id}")

    def _send_command(self, target_id, text):
        try:
            result = subprocess.run(
                [self.command, '--target', target_id, text],
                capture_output=True,
                timeout=self.timeout,
                shell=False,
                text=True
            )
        except subprocess.TimeoutExpired as e:
            raise DispatchError(f"send to {target_id} timed out") from e
        except OSError as e:
            raise DispatchError(f"send to {target_id} failed: {e}") from e
        if result.stdout.strip():
            log_debug(f"[DISPATCH] {result.stdout.strip()}")
        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip()
            raise DispatchError(f"send to {target_id} exited {result.returncode}: {detail}")

    def _send_active_window(self, text):
        key = special_key_for(text)
        if key is not None:
            press_key(key)
            return
        window_class = self._get_cached_window_class()
        log_debug(f"[DISPATCH] Target window: {window_class}")
        if window_class in TERMINAL_CLASSES:
            log_info("[DISPATCH] Terminal detected, pasting from clipboard (not typing)")
            copy_to_clipboard(text, self.timeout)
            press_key('ctrl+shift+v')
            return
        type_text(text)

    def _get_cached_window_class(self):
        now = time.time()
        if now - self._window_class_cache_time < _WINDOW_CLASS_CACHE_TTL:
            return self._cached_window_class
        self._cached_window_class = _get_active_window_class()
        self._window_class_cache_time = now
        return self._cached_window_class


def _get_active_window_class():
    """WM_CLASS of the focused window, lowercased, or None."""
    try:
        result = subprocess.run(
            ['xdotool', 'getactivewindow', 'getwindowclassname'],
            capture_output=True,
            timeout=1.0,
            shell=False,
            text=True
        )
        if result.returncode == 0:
            return result.stdout.strip().lower()
    except subprocess.TimeoutExpired:
        log_error("[DISPATCH] xdotool window class detection timeout")
    except OSError as e:
        log_error(f"[DISPATCH] xdotool window class detection failed: {e}")
    return None


def _run(args, what, **kwargs):
    try:
        subprocess.run(args, shell=False, check=True, **kwargs)
    except subprocess.TimeoutExpired as e:
        raise DispatchError(f"{what} timeout") from e
    except (subprocess.CalledProcessError, OSError) as e:
        raise DispatchError(f"{what} failed: {e}") from e


def type_text(text):
    """Type text into the active window, sending real Enter presses for newlines."""
    parts = text.split('\n')
    for i, part in enumerate(parts):
        if part:
            _run(['xdotool', 'type', '--clearmodifiers', '--', part], "xdotool type", timeout=5.0)
        if i < len(parts) - 1:
            press_key('Return')


def press_key(key):
    _run(['xdotool', 'key', '--clearmodifiers', key], f"xdotool key {key}", timeout=2.0)


def copy_to_clipboard(text, timeout=2.0):
    _run(['xclip', '-selection', 'clipboard'], "xclip",
         input=text.encode('utf-8'), timeout=timeout)
