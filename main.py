#!/usr/bin/env python3
"""Voice Bridge — realtime voice transcription, dispatch to other apps, and a spoken agent."""

import os
import sys

# Ensure DISPLAY is set (xdotool/xclip and the tray need it)
if not os.environ.get('DISPLAY'):
    os.environ['DISPLAY'] = ':0'

import argparse
import signal
import threading
import traceback

from openai import OpenAI

import logging_utils
from logging_utils import log_info, log_error
from agent import TurnLoop
from audio_player import AudioPlayer, SpeakerDevice
from bridge import create_dispatch_worker, create_finalizer, create_session, run_bridge
from config import ConfigError, load_config, validate_config
from console_input import ConsoleInput
from context import BridgeContext, handle_quit
from dispatch_sink import DispatchSink
from llm_backends import create_backend
from event_mailbox import Mailbox
from mic_capture import MicCapture
from realtime_socket import RealtimeTranscriber
from tool_router import create_default_router
from tts import PlaybackQueue, TtsClient
from workers import MailboxScheduler


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog='voice-bridge',
        description="Stream the microphone to realtime transcription, dispatch text, talk back.",
    )
    parser.add_argument('--no-tts', action='store_true', help="do not speak assistant replies")
    parser.add_argument('--no-agent', action='store_true', help="transcribe and dispatch only")
    parser.add_argument('--no-tray', action='store_true', help="console controls instead of the tray icon")
    parser.add_argument('--debug', action='store_true', help="verbose timestamped logging")
    parser.add_argument('--debug-mic', action='store_true', help="log every captured mic chunk")
    parser.add_argument('--config', metavar='PATH', help="settings file (default: settings.conf beside main.py)")
    return parser.parse_args(argv)


def apply_args(config, args):
    if args.no_tts:
        config['tts_enabled'] = False
    if args.no_agent:
        config['agent_enabled'] = False
    if args.no_tray:
        config['tray_enabled'] = False
    if args.debug:
        config['debug'] = True
    if args.debug_mic:
        config['debug_mic'] = True
    return config


def build_context(config, mailbox):
    """Wire every component. Raises on any startup failure."""
    ctx = BridgeContext(config, mailbox)
    openai_client = OpenAI(api_key=config['openai_api_key'])

    ctx.scheduler = MailboxScheduler(mailbox)
    ctx.sink = DispatchSink.from_config(config)
    ctx.dispatch_worker = create_dispatch_worker(ctx)

    ctx.mic = MicCapture(config)
    ctx.mic.check_device()

    if config['tts_enabled']:
        device = SpeakerDevice(config['output_device'])
        ctx.player = AudioPlayer(
            device,
            prefill_ms=config['prefill_ms'],
            idle_timeout_ms=config['idle_timeout_ms'],
            on_state_change=lambda state: mailbox.post(Mailbox.PLAYBACK_STATE, state),
        )
        ctx.playback_queue = PlaybackQueue(ctx.player, TtsClient.from_config(config, openai_client))

    if config['agent_enabled']:
        backend = create_backend(config, openai_client)
        speak = ctx.playback_queue.enqueue if ctx.playback_queue is not None else None
        ctx.turn_loop = TurnLoop.from_config(config, backend, create_default_router(), speak=speak)
        log_info(f"[AGENT] Backend: {backend.name}")

    ctx.session = create_session(ctx)
    ctx.finalizer = create_finalizer(ctx)
    ctx.transcriber = RealtimeTranscriber(config, mailbox)
    return ctx


def _start_tray(ctx):
    """Create the tray icon on the main thread. Returns the Gtk module, or None if unavailable."""
    try:
        import gi
        gi.require_version('Gtk', '3.0')
        from gi.repository import Gtk
        from tray import TrayIcon
    except (ImportError, ValueError) as e:
        log_error(f"[TRAY] Unavailable ({e}), using console controls")
        return None
    tray = TrayIcon(ctx.mailbox, ctx.config['icon_dir'])
    tray.setup()
    ctx.tray = tray
    ctx.tray_running = True
    # Apply pending icon if any (for startup race)
    if ctx._pending_icon:
        tray.set_icon_by_name(ctx._pending_icon)
    return Gtk


def main(argv=None):
    print("=" * 60)
    print("VOICE BRIDGE - Realtime voice dispatch and agent")
    print("=" * 60)
    print()

    args = parse_args(argv)
    try:
        config = apply_args(load_config(args.config), args)
        validate_config(config)
    except (ConfigError, ValueError) as e:
        log_error(f"Configuration error: {e}")
        return 1

    logging_utils.set_debug(config['debug'])
    logging_utils.set_debug_mic(config['debug_mic'])
    logging_utils.set_log_transcripts(config['log_transcripts'])

    mailbox = Mailbox()
    ctx = None
    exit_code = 1
    try:
        ctx = build_context(config, mailbox)
        log_info("[SOCKET] Connecting to realtime API...")
        ctx.transcriber.connect()
    except Exception as e:
        log_error(f"Startup failed: {e}")
        if ctx is not None:
            handle_quit(ctx)
        return 1

    def handle_signal(sig, frame):
        log_info(f"Signal {sig} received")
        mailbox.post(Mailbox.QUIT)

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    try:
        gtk = _start_tray(ctx) if config['tray_enabled'] else None
        if gtk is None:
            ctx.console = ConsoleInput(mailbox).start()
            log_info("Voice Bridge started. Press Ctrl+C to quit.")
            exit_code = run_bridge(ctx)
        else:
            result = {}
            worker = threading.Thread(
                target=lambda: result.setdefault('code', run_bridge(ctx)),
                name="dispatch-loop",
                daemon=False,
            )
            worker.start()

            log_info("Voice Bridge started")
            print()
            print("System tray icon active. Right-click for menu.")
            print("Press Ctrl+C to quit.")
            print()
            gtk.main()

            # GTK exited, wait for the dispatch loop
            worker.join(timeout=2.0)
            if worker.is_alive():
                log_error("Dispatch loop did not exit cleanly")
            exit_code = result.get('code', 0)

    except Exception as e:
        log_error(f"Unhandled exception: {e}")
        traceback.print_exc()
        exit_code = 1

    finally:
        # Final cleanup; no-op when the dispatch loop already shut down
        handle_quit(ctx)
        log_info("Voice Bridge stopped.")

    return exit_code


if __name__ == '__main__':
    sys.exit(main())
