"""Voice Bridge realtime socket — streaming transcription over the OpenAI realtime websocket."""

import base64
import json
import threading

from websockets.exceptions import ConnectionClosed
from websockets.sync.client import connect

from logging_utils import log_debug, log_info, log_error
from event_mailbox import Mailbox

REALTIME_URL = 'wss://api.openai.com/v1/realtime?model={model}'


def build_session_update(config):
    """session.update payload: pcm16 both ways, whisper transcription, server VAD."""
    transcription = {'model': config['transcription_model']}
    if config.get('transcription_language'):
        transcription['language'] = config['transcription_language']
    return {
        'type': 'session.update',
        'session': {
            'modalities': ['audio', 'text'],
            'instructions': config['transcription_instructions'],
            'voice': 'alloy',
            'input_audio_format': 'pcm16',
            'output_audio_format': 'pcm16',
            'input_audio_transcription': transcription,
            'turn_detection': {
                'type': 'server_vad',
                'threshold': config['vad_threshold'],
                'prefix_padding_ms': config['vad_prefix_padding_ms'],
                'silence_duration_ms': config['vad_silence_duration_ms'],
            },
            'temperature': 0.8,
        },
    }


def build_audio_append(chunk):
    """input_audio_buffer.append for one int16 chunk (array or raw bytes)."""
    raw = chunk if isinstance(chunk, (bytes, bytearray)) else chunk.tobytes()
    return {
        'type': 'input_audio_buffer.append',
        'audio': base64.b64encode(raw).decode('ascii'),
    }


class RealtimeTranscriber:
    """
    One websocket session to the realtime transcription endpoint.

    A reader thread decodes every incoming JSON message and posts it to the
    mailbox as SOCKET_MESSAGE; the dispatch loop interprets it. When the
    connection drops without close() having been called, SOCKET_CLOSED is
    posted so the loop can exit.
    """

    def __init__(self, config, mailbox, connect_fn=connect):
        self.config = config
        self.mailbox = mailbox
        self.url = REALTIME_URL.format(model=config['realtime_model'])
        self._connect = connect_fn
        self.ws = None
        self._reader = None
        self._send_lock = threading.Lock()
        self._closing = False

    @property
    def connected(self):
        return self.ws is not None and not self._closing

    def connect(self):
        """Open the socket, configure the session and start the reader. Raises on failure."""
        headers = {
            'Authorization': f"Bearer {self.config['openai_api_key']}",
            'OpenAI-Beta': 'realtime=v1',
        }
        self.ws = self._connect(self.url, additional_headers=headers, max_size=None, open_timeout=10)
        log_info(f"[SOCKET] Connected to {self.url}")
        self.send_session_update()
        self._reader = threading.Thread(target=self._read_loop, name="socket-reader", daemon=True)
        self._reader.start()

    def send_session_update(self):
        self._send(build_session_update(self.config))

    def send_audio(self, chunk):
        """Append one captured chunk to the server input buffer. Returns False if not connected."""
        if not self.connected:
            return False
        self._send(build_audio_append(chunk))
        return True

    def _send(self, message):
        with self._send_lock:
            self.ws.send(json.dumps(message, ensure_ascii=False))

    def _read_loop(self):
        reason = None
        try:
            for raw in self.ws:
                try:
                    message = json.loads(raw)
                except ValueError as e:
                    log_error(f"[SOCKET] Undecodable message dropped: {e}")
                    continue
                if not isinstance(message, dict):
                    continue
                log_debug(f"[SOCKET] <- {message.get('type')}")
                self.mailbox.post(Mailbox.SOCKET_MESSAGE, message)
        except ConnectionClosed as e:
            reason = f"{e.rcvd.code if e.rcvd else 'no close frame'}"
        except Exception as e:
            reason = str(e)
            log_error(f"[SOCKET] Reader failed: {e}")

        if self._closing:
            return
        log_info(f"[SOCKET] Disconnected from realtime API ({reason or 'closed'})")
        self.mailbox.post(Mailbox.SOCKET_CLOSED, reason)

    def close(self):
        """Close the socket. Idempotent, no-throw."""
        if self._closing:
            return
        self._closing = True
        if self.ws is not None:
            try:
                self.ws.close()
            except Exception as e:
                log_error(f"[SOCKET] Close failed: {e}")
        if self._reader is not None and self._reader is not threading.current_thread():
            self._reader.join(2.0)
        log_info("[SOCKET] Closed")
