"""Voice Bridge mic capture — 24kHz PCM16 input stream feeding a bounded chunk queue."""

import logging
import queue
import threading
import time

import numpy as np
import sounddevice as sd

from logging_utils import log_info, log_error, log_mic

logger = logging.getLogger(__name__)

LEVEL_FLOOR_DB = -100.0


def level_db(chunk):
    """RMS level of an int16 chunk in dBFS, floored at -100."""
    if chunk is None or len(chunk) == 0:
        return LEVEL_FLOOR_DB
    rms = float(np.sqrt(np.mean((chunk.astype(np.float64) / 32768.0) ** 2)))
    if rms <= 0:
        return LEVEL_FLOOR_DB
    return max(LEVEL_FLOOR_DB, 20.0 * np.log10(rms))


class MicCapture:
    """
    Captures microphone audio as mono int16 chunks at the realtime sample rate.

    The sounddevice callback converts each block and pushes it onto a bounded
    queue (oldest chunk dropped on overflow). The dispatch loop pulls chunks
    with get_chunk(). While ducked (assistant speech playing) captured frames
    are discarded so the transcriber never hears the speaker.
    """

    def __init__(self, config):
        self.sample_rate = config['sample_rate']
        self.chunk_size = config['chunk_size']

        self.device_name = config.get('audio_device', '')
        self.device_index = None  # resolved fresh on every start()

        self.chunk_queue = queue.Queue(maxsize=100)  # bounded; ~4s at 40ms chunks
        self.stream = None
        self.current_level_db = LEVEL_FLOOR_DB

        self._ducked = threading.Event()
        self._last_error_log_time = 0

    def _resolve_device(self):
        """Resolve device name to sounddevice index.

        Returns int device index, or None if no name configured.
        Raises ValueError if name is configured but cannot be resolved.
        """
        if not self.device_name:
            return None

        input_devices = [
            (i, d) for i, d in enumerate(sd.query_devices())
            if d['max_input_channels'] > 0
        ]

        for idx, dev in input_devices:
            if dev['name'] == self.device_name:
                log_info(f"[MIC] Device exact match: [{idx}] {dev['name']}")
                return idx

        name_lower = self.device_name.lower()
        matches = [
            (idx, dev) for idx, dev in input_devices
            if name_lower in dev['name'].lower()
        ]
        if len(matches) > 1:
            names = [dev['name'] for _, dev in matches]
            raise ValueError(
                f"Ambiguous input device '{self.device_name}' matched {len(matches)} "
                f"devices: {names}. Use a more specific string."
            )
        if len(matches) == 1:
            idx, dev = matches[0]
            log_info(f"[MIC] Device substring match: [{idx}] {dev['name']}")
            return idx

        available_names = [dev['name'] for _, dev in input_devices]
        logger.debug("[MIC] Full device list: %s", input_devices)
        raise ValueError(
            f"Input device '{self.device_name}' not found. "
            f"Available input devices: {available_names}"
        )

    def check_device(self):
        """Resolve the input device now so a missing one fails at startup. Raises on failure."""
        self.device_index = self._resolve_device()
        if self.device_index is None:
            sd.query_devices(kind='input')  # raises when there is no default input
        return self.device_index

    @property
    def running(self):
        return self.stream is not None

    def start(self):
        """Start the input stream. Idempotent.

        On any exception, calls stop() to leave a clean stopped state, then re-raises.
        """
        if self.stream is not None:
            return
        try:
            self.device_index = self._resolve_device()
            self._last_error_log_time = 0
            self.stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype='int16',
                callback=self._audio_callback,
                blocksize=self.chunk_size,
                device=self.device_index
            )
            self.stream.start()
            log_info(f"[MIC] Stream started (device={self.device_index}, {self.sample_rate}Hz)")
        except Exception:
            self.stop()
            raise

    def stop(self, force=False):
        """Stop the stream and drop queued chunks. Idempotent, no-throw."""
        if self.stream is None:
            self.flush()
            return
        try:
            if force:
                self.stream.abort()
            else:
                self.stream.stop()
        except Exception as e:
            log_error(f"[MIC] Stream {'abort' if force else 'stop'} failed: {e}")
        try:
            self.stream.close()
        except Exception as e:
            log_error(f"[MIC] Stream close failed: {e}")
        self.stream = None
        self.flush()
        log_info("[MIC] Stream stopped")

    def set_ducked(self, ducked):
        if ducked:
            self._ducked.set()
            self.flush()
        else:
            self._ducked.clear()

    def get_chunk(self, timeout=0.04):
        """Next captured chunk (int16 array), or None on timeout."""
        try:
            return self.chunk_queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def flush(self):
        count = 0
        try:
            while True:
                self.chunk_queue.get_nowait()
                count += 1
        except queue.Empty:
            pass
        return count

    def _audio_callback(self, indata, frames, time_info, status):
        """Called by sounddevice in the audio thread."""
        try:
            if status:
                now = time.monotonic()
                if (now - self._last_error_log_time) > 5.0:
                    log_error(f"[MIC] Callback status: {status}")
                    self._last_error_log_time = now
                return

            chunk = np.array(indata[:, 0], dtype=np.int16, copy=True)
            self.current_level_db = level_db(chunk)
            log_mic(f"chunk={len(chunk)} level={self.current_level_db:.1f}dB"
                    f"{' (ducked)' if self._ducked.is_set() else ''}")

            if self._ducked.is_set():
                return

            try:
                self.chunk_queue.put_nowait(chunk)
            except queue.Full:
                try:
                    self.chunk_queue.get_nowait()  # discard oldest
                except queue.Empty:
                    pass
                self.chunk_queue.put_nowait(chunk)
        except Exception as e:
            log_error(f"[MIC] Callback exception: {e}")
