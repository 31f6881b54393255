"""Voice Bridge logging utilities."""

import sys
from datetime import datetime

# Module-level flags (set by main.py after config load)
_DEBUG = False
_DEBUG_MIC = False
_LOG_TRANSCRIPTS = True


def set_debug(value):
    global _DEBUG
    _DEBUG = value


def set_debug_mic(value):
    global _DEBUG_MIC
    _DEBUG_MIC = value


def set_log_transcripts(value):
    global _LOG_TRANSCRIPTS
    _LOG_TRANSCRIPTS = value


def _timestamp():
    return datetime.now().strftime("%H:%M:%S.%f")[:-3]


def log_debug(msg):
    """Debug messages (only when debug=true)."""
    if _DEBUG:
        print(f"[{_timestamp()}] {msg}", flush=True)


def log_mic(msg):
    """Per-chunk microphone diagnostics (only with --debug-mic)."""
    if _DEBUG_MIC:
        print(f"[{_timestamp()}] [MIC] {msg}", file=sys.stderr, flush=True)


def log_info(msg):
    """Info messages (always printed)."""
    print(msg, flush=True)


def log_error(msg):
    """Error messages (always printed)."""
    print(f"[ERROR] {msg}", file=sys.stderr, flush=True)


def should_log_transcripts():
    """Check if transcription content should be logged."""
    return _LOG_TRANSCRIPTS
