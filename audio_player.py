"""Voice Bridge audio player — ring-buffered playback engine feeding a sound output device."""

import math
import threading
import time
from collections import deque

import numpy as np
import sounddevice as sd

from logging_utils import log_debug, log_info, log_error
from workers import Ticker

PLAYBACK_SAMPLE_RATE = 24000
BLOCK_SIZE = 960  # 40ms @ 24kHz
TICK_MS = max(round(BLOCK_SIZE / PLAYBACK_SAMPLE_RATE * 1000), 10)
NORMALIZE_PEAK = 30000


def resample_linear(samples, from_rate, to_rate=PLAYBACK_SAMPLE_RATE):
    """Linear-interpolation resample of int16 samples. Returns input unchanged when rates match."""
    if from_rate is None or not math.isfinite(from_rate) or from_rate <= 0:
        from_rate = to_rate
    if from_rate == to_rate:
        return samples
    if len(samples) == 0:
        return np.zeros(0, dtype=np.int16)

    ratio = from_rate / to_rate
    new_length = max(1, int(math.floor(len(samples) / ratio)))
    pos = np.arange(new_length, dtype=np.float64) * ratio
    idx = np.floor(pos).astype(np.int64)
    frac = pos - idx
    source = samples.astype(np.float64)
    current = source[idx]
    # Last sample has no successor: hold it
    next_idx = np.minimum(idx + 1, len(samples) - 1)
    nxt = source[next_idx]
    out = np.round(current * (1.0 - frac) + nxt * frac)
    return np.clip(out, -32768, 32767).astype(np.int16)


def normalize(samples, peak_target=NORMALIZE_PEAK):
    """Scale quiet audio so its peak reaches peak_target. Silent or loud audio passes through."""
    if len(samples) == 0:
        return samples
    peak = int(np.max(np.abs(samples.astype(np.int32))))
    if peak == 0 or peak >= peak_target:
        return samples
    scale = peak_target / peak
    out = np.round(samples.astype(np.float64) * scale)
    return np.clip(out, -32768, 32767).astype(np.int16)


class SpeakerDevice:
    """Sound output device: mono int16 stream at the playback rate. Errors propagate to AudioPlayer."""

    def __init__(self, device_name='', sample_rate=PLAYBACK_SAMPLE_RATE, block_size=BLOCK_SIZE):
        self.device_name = device_name
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.stream = None

    def _resolve_device(self):
        """Resolve configured output device name to an index (substring match), or None for default."""
        if not self.device_name:
            return None
        name_lower = self.device_name.lower()
        for idx, dev in enumerate(sd.query_devices()):
            if dev['max_output_channels'] > 0 and name_lower in dev['name'].lower():
                return idx
        raise ValueError(f"Output device '{self.device_name}' not found")

    def start(self):
        """Open (first time) and start the output stream. Idempotent."""
        if self.stream is None:
            self.stream = sd.OutputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype='int16',
                blocksize=self.block_size,
                device=self._resolve_device(),
                latency='low',
            )
            log_debug("[PLAYBACK] Output stream opened")
        if not self.stream.active:
            self.stream.start()

    def push(self, block):
        if self.stream is None:
            return
        self.stream.write(block.reshape(-1, 1))

    def stop(self):
        if self.stream is not None and self.stream.active:
            self.stream.stop()

    def close(self):
        if self.stream is None:
            return
        try:
            self.stream.stop()
        finally:
            self.stream.close()
            self.stream = None


class AudioPlayer:
    """
    Accumulates variable-sized speech segments and plays them in fixed blocks.

    Buffer queue: deque of int16 segments plus an offset into the head segment.
    A ticker pulls one BLOCK_SIZE block per TICK_MS, zero-padding the tail.
    Playback auto-starts on enqueue (optionally after a prefill delay) and
    auto-pauses after idle_timeout_ms with nothing buffered. Device errors are
    logged, never raised.
    """

    def __init__(self, device, prefill_ms=100, idle_timeout_ms=250, on_state_change=None,
                 ticker_factory=Ticker, timer_factory=threading.Timer):
        self.device = device
        self.prefill_ms = max(0, prefill_ms)
        self.prefill_samples = round(PLAYBACK_SAMPLE_RATE * self.prefill_ms / 1000)
        self.idle_timeout = idle_timeout_ms / 1000.0
        self.on_state_change = on_state_change if callable(on_state_change) else None
        self._ticker_factory = ticker_factory
        self._timer_factory = timer_factory

        self.buffers = deque()
        self.buffer_offset = 0
        self._lock = threading.RLock()

        self.started = False
        self.stopped = False
        self.idle_since = None
        self._ticker = None
        self._prefill_timer = None

    def enqueue(self, samples, sample_rate=PLAYBACK_SAMPLE_RATE):
        """Queue int16 samples at any sample rate. No-op after shutdown."""
        if self.stopped:
            return
        samples = np.asarray(samples)
        if samples.dtype != np.int16:
            raise TypeError(f"AudioPlayer.enqueue expects int16 samples, got {samples.dtype}")
        resampled = resample_linear(samples, sample_rate, PLAYBACK_SAMPLE_RATE)
        normalized = normalize(resampled)
        if len(normalized) == 0:
            return
        if normalized is samples:
            normalized = samples.copy()  # segments are immutable once queued

        start_now = False
        with self._lock:
            if self.stopped:
                return
            self.buffers.append(normalized)
            self.idle_since = None
            if not self.started:
                if not self.prefill_samples or self.get_buffered_sample_count() >= self.prefill_samples:
                    start_now = True
                else:
                    self._schedule_prefill_start()
        if start_now:
            self.ensure_started()

    def ensure_started(self):
        with self._lock:
            if self.started or self.stopped:
                return
            self.started = True
            self.idle_since = None
            self._clear_prefill_timer()
            try:
                self.device.start()
            except Exception as e:
                log_error(f"[PLAYBACK] Device start failed: {e}")
            self._ticker = self._ticker_factory(TICK_MS / 1000.0, self.flush, name="playback-flush")
            self._ticker.start()
        log_debug("[PLAYBACK] Started")
        self._notify_state('start')

    def flush(self):
        """Push exactly one block to the device, or track idle time when empty."""
        block = None
        pause_needed = False
        with self._lock:
            if self.stopped:
                return
            if not self.buffers:
                if self.started:
                    now = time.monotonic()
                    if self.idle_since is None:
                        self.idle_since = now
                    elif now - self.idle_since > self.idle_timeout:
                        pause_needed = True
            else:
                block = self._pull_block()

        if pause_needed:
            self.pause()
            return
        if block is None:
            return
        try:
            self.device.push(block)
        except Exception as e:
            log_error(f"[PLAYBACK] Device push failed: {e}")

    def _pull_block(self):
        """Take up to BLOCK_SIZE samples across segment boundaries. Caller holds the lock."""
        block = np.zeros(BLOCK_SIZE, dtype=np.int16)
        filled = 0
        while filled < BLOCK_SIZE and self.buffers:
            current = self.buffers[0]
            remaining = len(current) - self.buffer_offset
            to_copy = min(remaining, BLOCK_SIZE - filled)
            block[filled:filled + to_copy] = current[self.buffer_offset:self.buffer_offset + to_copy]
            filled += to_copy
            self.buffer_offset += to_copy
            if self.buffer_offset >= len(current):
                self.buffers.popleft()
                self.buffer_offset = 0
        if filled == 0:
            return None
        return block

    def pause(self):
        """Stop the device and the flush ticker. Playback restarts on the next enqueue."""
        with self._lock:
            if not self.started or self.stopped:
                return
            self.started = False
            self.idle_since = None
            ticker = self._ticker
            self._ticker = None
            self._clear_prefill_timer()
        if ticker is not None:
            ticker.stop()
        try:
            self.device.stop()
        except Exception as e:
            log_error(f"[PLAYBACK] Device stop failed: {e}")
        log_debug("[PLAYBACK] Paused (idle)")
        self._notify_state('stop')

    def shutdown(self):
        """Drop all audio, stop timers, release the device. Idempotent; player is inert afterwards."""
        with self._lock:
            if self.stopped:
                return
            self.stopped = True
            self.buffers.clear()
            self.buffer_offset = 0
            ticker = self._ticker
            self._ticker = None
            self._clear_prefill_timer()
            self.started = False
        if ticker is not None:
            ticker.stop()
        try:
            self.device.close()
        except Exception as e:
            log_error(f"[PLAYBACK] Device close failed: {e}")
        log_info("[PLAYBACK] Shut down")
        self._notify_state('stop')

    def get_buffered_sample_count(self):
        with self._lock:
            if not self.buffers:
                return 0
            total = sum(len(b) for b in self.buffers) - self.buffer_offset
            return max(total, 0)

    def _notify_state(self, state):
        if self.on_state_change is None:
            return
        try:
            self.on_state_change(state)
        except Exception as e:
            log_error(f"[PLAYBACK] State callback failed: {e}")

    def _schedule_prefill_start(self):
        """Caller holds the lock."""
        if self._prefill_timer is not None or not self.get_buffered_sample_count():
            return
        delay = max(self.prefill_ms, 10) / 1000.0
        self._prefill_timer = self._timer_factory(delay, self._on_prefill_timer)
        self._prefill_timer.daemon = True
        self._prefill_timer.start()

    def _on_prefill_timer(self):
        with self._lock:
            self._prefill_timer = None
            ready = not self.started and not self.stopped and self.get_buffered_sample_count() > 0
        if ready:
            self.ensure_started()

    def _clear_prefill_timer(self):
        """Caller holds the lock."""
        if self._prefill_timer is not None:
            self._prefill_timer.cancel()
            self._prefill_timer = None
