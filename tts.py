"""Voice Bridge TTS — text segmentation, speech synthesis and the playback queue."""

import re
import threading

import numpy as np

from logging_utils import log_debug, log_info, log_error
from workers import SerialWorker

PCM_SAMPLE_RATE = 24000

SENTENCE_DELIMITERS = set('。．.!?！？')
CLAUSE_DELIMITERS = set('、，,;；:：')
OPENING_BRACKETS = set('「『（(【[〈《')
CLOSING_BRACKETS = set('」』）)】]〉》')
# A token ending in one of these closes a speakable unit
BREAK_DELIMITERS = SENTENCE_DELIMITERS | CLAUSE_DELIMITERS | CLOSING_BRACKETS

_WHITESPACE_RE = re.compile(r'\s+')


class AudioSegment:
    """One buffer of int16 PCM samples plus its sample rate."""

    __slots__ = ('samples', 'sample_rate')

    def __init__(self, samples, sample_rate=PCM_SAMPLE_RATE):
        self.samples = samples
        self.sample_rate = sample_rate

    def __len__(self):
        return len(self.samples)


def _tokenize(text):
    """Cut text into tokens that each end with at most one delimiter.

    Opening brackets become single-character tokens so a new clause can start
    a fresh segment.
    """
    tokens = []
    current = []
    for ch in text:
        if ch in OPENING_BRACKETS:
            if current:
                tokens.append(''.join(current))
                current = []
            tokens.append(ch)
        elif ch in BREAK_DELIMITERS:
            current.append(ch)
            tokens.append(''.join(current))
            current = []
        else:
            current.append(ch)
    if current:
        tokens.append(''.join(current))
    return tokens


def _join(left, right):
    """Join two stripped segments, keeping a word gap between Latin text."""
    if left and right and left[-1].isascii() and right[0].isascii():
        if left[-1] not in OPENING_BRACKETS and right[0] not in BREAK_DELIMITERS:
            return left + ' ' + right
    return left + right


def split_into_segments(text, max_chars=200, target_chars=80, min_chars=10):
    """Split assistant text into speakable chunks no longer than max_chars.

    Breaks prefer sentence, clause and bracket boundaries; a token longer than
    max_chars is sliced at the limit. Segments shorter than min_chars are
    merged into the previous one when that stays within max_chars.
    """
    if not text or not text.strip():
        return []
    normalized = _WHITESPACE_RE.sub(' ', text).strip()

    segments = []
    current = ''

    def flush():
        nonlocal current
        piece = current.strip()
        if piece:
            segments.append(piece)
        current = ''

    for token in _tokenize(normalized):
        if len(token) == 1 and token in OPENING_BRACKETS and current.strip():
            flush()

        if len(token.strip()) > max_chars:
            flush()
            stripped = token.strip()
            for start in range(0, len(stripped), max_chars):
                segments.append(stripped[start:start + max_chars])
            continue

        if len((current + token).strip()) > max_chars:
            flush()
            current = token
        else:
            current += token

        if len(current.strip()) >= target_chars or (current and current[-1] in BREAK_DELIMITERS):
            flush()
    flush()

    merged = []
    for segment in segments:
        if merged and len(segment) < min_chars:
            candidate = _join(merged[-1], segment)
            if len(candidate) <= max_chars:
                merged[-1] = candidate
                continue
        merged.append(segment)
    return merged


class TtsClient:
    """Speech synthesis through the OpenAI audio.speech endpoint (raw 24kHz PCM16)."""

    def __init__(self, client, model='gpt-4o-mini-tts', voice='alloy', instructions=None,
                 max_chars=200, target_chars=80, min_chars=10):
        self.client = client
        self.model = model
        self.voice = voice
        self.instructions = instructions
        self.max_chars = max_chars
        self.target_chars = target_chars
        self.min_chars = min_chars

    @classmethod
    def from_config(cls, config, client):
        return cls(
            client,
            model=config['tts_model'],
            voice=config['tts_voice'],
            instructions=config['tts_instructions'],
            max_chars=config['max_segment_chars'],
            target_chars=config['target_segment_chars'],
            min_chars=config['min_segment_chars'],
        )

    def synthesize(self, text, on_segment=None):
        """Synthesize each segment in order. Calls on_segment as each one arrives; returns all."""
        trimmed = (text or '').strip()
        if not trimmed:
            return []
        outputs = []
        for segment_text in split_into_segments(trimmed, self.max_chars, self.target_chars, self.min_chars):
            request = {
                'model': self.model,
                'voice': self.voice,
                'input': segment_text,
                'response_format': 'pcm',
            }
            if self.instructions:
                request['instructions'] = self.instructions
            try:
                response = self.client.audio.speech.create(**request)
                pcm = response.read() if hasattr(response, 'read') else response.content
            except Exception as e:
                raise RuntimeError(f"TTS synthesis failed: {e}") from e
            usable = len(pcm) - (len(pcm) % 2)
            segment = AudioSegment(np.frombuffer(pcm[:usable], dtype=np.int16), PCM_SAMPLE_RATE)
            log_debug(f"[TTS] Segment {len(segment_text)} chars -> {len(segment)} samples")
            outputs.append(segment)
            if on_segment is not None:
                on_segment(segment)
        return outputs


class PlaybackQueue:
    """
    FIFO of assistant utterances, synthesized and played one at a time.

    Segments of one utterance reach the player in order as they are produced,
    and no two utterances interleave. A synthesis failure skips the rest of
    that utterance only.
    """

    def __init__(self, audio_player, tts_client, enabled=True):
        if not callable(getattr(audio_player, 'enqueue', None)):
            raise TypeError("audio_player must provide enqueue(samples, sample_rate)")
        if not callable(getattr(tts_client, 'synthesize', None)):
            raise TypeError("tts_client must provide synthesize(text, on_segment=None)")
        self.audio_player = audio_player
        self.tts_client = tts_client
        self.enabled = enabled
        self.stopped = False
        self._lock = threading.Lock()
        self._worker = SerialWorker("tts", self._process)

    def enqueue(self, text, metadata=None):
        if not self.enabled or self.stopped:
            return
        if not text or not text.strip():
            return
        self._worker.submit({'text': text, 'metadata': metadata or {}})

    def _process(self, item):
        streamed = []

        def on_segment(segment):
            if self.stopped:
                return
            streamed.append(segment)
            self.audio_player.enqueue(segment.samples, segment.sample_rate)

        try:
            segments = self.tts_client.synthesize(item['text'], on_segment=on_segment)
        except Exception as e:
            log_error(f"[TTS] {e}")
            return
        if streamed or self.stopped:
            return
        for segment in segments or []:
            self.audio_player.enqueue(segment.samples, segment.sample_rate)

    def shutdown(self):
        """Discard queued and in-flight audio, then release the player."""
        with self._lock:
            if self.stopped:
                return
            self.stopped = True
        self._worker.stop(timeout=0.5)
        shutdown = getattr(self.audio_player, 'shutdown', None)
        if callable(shutdown):
            shutdown()
        log_info("[TTS] Playback queue shut down")
