"""Voice Bridge dispatch loop — the single owner of session mode, targets and transcript flow."""

import time

from context import MODE_ICONS, handle_quit
from dispatch_sink import DispatchError
from logging_utils import log_debug, log_info, log_error, should_log_transcripts
from event_mailbox import Mailbox
from session_mode import OFF, ACTIVE, SessionModeMachine
from text_processing import TranscriptFinalizer
from transcript_events import describe_error, iter_transcript_payloads
from workers import SerialWorker

POLL_INTERVAL = 0.04      # mic chunk / mailbox wait, one chunk period
STATUS_INTERVAL = 1.0     # countdown re-render
MESSAGE_PREVIEW_CHARS = 40


def _preview(text):
    if len(text) <= MESSAGE_PREVIEW_CHARS:
        return text
    return text[:MESSAGE_PREVIEW_CHARS - 1] + '…'


def create_session(ctx):
    """Session mode machine wired to the mic, tray and partial display."""

    def on_mode_change(old, new):
        ctx.set_icon(MODE_ICONS[new])
        if new in (OFF, ACTIVE) and ctx.finalizer is not None:
            ctx.finalizer.update_partial('')
        if ctx.mic is None:
            return
        if new == OFF:
            ctx.mic.stop()
            return
        if old == OFF:
            try:
                ctx.mic.start()
            except Exception as e:
                reason = f"Mic start failed: {e}"
                log_error(f"[MIC] {reason}")
                # Applied on the next loop pass, after this transition completes
                ctx.mailbox.post(Mailbox.TIMER, lambda reason=reason: ctx.session.apply_mode(OFF, reason))

    def on_message(text):
        log_info(f"[MODE] {text}")

    return SessionModeMachine(
        ctx.scheduler,
        detect_timeout=ctx.config['detect_timeout'],
        transcript_timeout=ctx.config['transcript_timeout'],
        on_mode_change=on_mode_change,
        on_message=on_message,
    )


def create_finalizer(ctx):
    """Finalizer whose results flow to the dispatch sink and the agent."""

    def on_partial(text):
        if ctx.session.mode == OFF and text:
            return
        if text:
            log_debug(f"[TRANSCRIPT] ... {text}")

    def on_final(utterance):
        handle_final_utterance(ctx, utterance)

    return TranscriptFinalizer(
        on_partial=on_partial,
        on_final=on_final,
        on_activity=lambda: ctx.session.note_transcript_activity(),
    )


def create_dispatch_worker(ctx):
    def deliver(job):
        target_id, label, text = job
        try:
            ctx.sink.send(target_id, text)
            log_info(f"[DISPATCH] Sent ({label}): {_preview(text)}")
        except DispatchError as e:
            log_error(f"[DISPATCH] Send failed ({label}): {e}")

    return SerialWorker("dispatch", deliver)


def handle_final_utterance(ctx, utterance):
    """Route one finalized utterance: sink in ACTIVE, agent in any non-OFF mode."""
    session = ctx.session
    if should_log_transcripts():
        log_info(f"[user] {utterance.text}")

    if session.mode == ACTIVE:
        ctx.finalizer.update_partial('')

    if session.should_dispatch():
        target_id, label = session.selected_target()
        ctx.dispatch_worker.submit((target_id, label, utterance.text))
    elif session.mode != OFF:
        log_info(f"[MODE] Transcript: {_preview(utterance.text)}")

    if session.mode != OFF and ctx.turn_loop is not None:
        ctx.turn_loop.enqueue_utterance(utterance)


def refresh_targets(ctx, announce=False):
    if ctx.sink is None:
        return
    try:
        targets = ctx.sink.list_targets()
    except DispatchError as e:
        log_error(f"[DISPATCH] Target refresh failed: {e}")
        return
    ctx.session.update_targets(targets, announce=announce)


def handle_socket_message(ctx, message):
    """Feed one realtime envelope through the extractor and finalizer."""
    handled = False
    for text, stage in iter_transcript_payloads(message):
        if ctx.finalizer.process_transcript_payload(text, stage):
            handled = True
    if handled:
        return
    msg_type = message.get('type')
    if msg_type == 'error':
        log_error(f"[SOCKET] API error: {describe_error(message)}")
    else:
        log_debug(f"[SOCKET] Ignored: {msg_type}")


def status_line(ctx):
    """One-line status; the mic level is appended while capture runs."""
    target = ctx.session.selected_target()
    line = f"{ctx.session.status_text()} -> {target[1] if target else '(no target)'} | sent {ctx.session.send_count}"
    if ctx.mic is not None and ctx.mic.running:
        line += f" | mic {ctx.mic.current_level_db:.0f} dB"
    return line


def forward_audio(ctx, chunk):
    if not ctx.session.can_forward_audio() or ctx.transcriber is None:
        return
    try:
        if ctx.transcriber.send_audio(chunk):
            ctx.session.note_audio_sent()
    except Exception as e:
        log_error(f"[SOCKET] Audio send failed: {e}")


def handle_event(ctx, kind, payload):
    """Handle one mailbox event. Returns an exit code to stop the loop, else None."""
    session = ctx.session
    if kind == Mailbox.QUIT:
        return handle_quit(ctx)
    if kind == Mailbox.SOCKET_CLOSED:
        log_info("[SOCKET] Connection to realtime API lost, shutting down")
        ctx.exit_code = 0
        return handle_quit(ctx)

    try:
        if kind == Mailbox.ADVANCE_MODE:
            session.advance()
        elif kind == Mailbox.NEXT_TARGET:
            session.move_target(1)
        elif kind == Mailbox.PREV_TARGET:
            session.move_target(-1)
        elif kind == Mailbox.REFRESH_TARGETS:
            refresh_targets(ctx, announce=True)
        elif kind == Mailbox.TIMER:
            payload()
        elif kind == Mailbox.SOCKET_MESSAGE:
            handle_socket_message(ctx, payload)
        elif kind == Mailbox.PLAYBACK_STATE:
            if ctx.mic is not None:
                ctx.mic.set_ducked(payload == 'start')
        else:
            log_error(f"[BRIDGE] Unknown event '{kind}' ignored")
    except Exception as e:
        log_error(f"[BRIDGE] {kind} handler failed: {e}")
    return None


def run_bridge(ctx):
    """Dispatch loop. Owns the session mode; every other thread talks to it via the mailbox.

    PRE: ctx.session, ctx.finalizer and ctx.mailbox are wired; ctx.transcriber is connected.
    RETURNS: process exit code (0 on quit or socket loss).
    INTERRUPTS: Mailbox drained every iteration; QUIT runs the ordered shutdown.
    """
    log_info("[BRIDGE] Entering dispatch loop")
    refresh_interval = ctx.config['target_refresh_interval']
    last_refresh = time.time()
    last_status = 0.0
    last_status_text = None

    refresh_targets(ctx, announce=True)
    ctx.set_icon(MODE_ICONS[ctx.session.mode])
    log_info("[MODE] OFF. Advance the mode to start detecting")

    while True:
        event = None
        if ctx.mic is not None and ctx.mic.running:
            chunk = ctx.mic.get_chunk(timeout=POLL_INTERVAL)
            if chunk is not None:
                forward_audio(ctx, chunk)
            event = ctx.mailbox.check()
        else:
            event = ctx.mailbox.wait(POLL_INTERVAL)

        while event is not None:
            kind, payload = event
            exit_code = handle_event(ctx, kind, payload)
            if exit_code is not None:
                log_info("[BRIDGE] Dispatch loop exiting")
                return exit_code
            event = ctx.mailbox.check()

        now = time.time()
        if now - last_refresh >= refresh_interval:
            last_refresh = now
            try:
                refresh_targets(ctx)
            except Exception as e:
                log_error(f"[DISPATCH] Target refresh failed: {e}")

        if now - last_status >= STATUS_INTERVAL:
            last_status = now
            line = status_line(ctx)
            if line != last_status_text:
                last_status_text = line
                ctx.set_status(line)
                log_debug(f"[STATUS] {line}")
