"""Voice Bridge text processing — utterance finalization and trailing punctuation."""

import re
import time

from logging_utils import log_debug

TRAILING_PUNCTUATION = set('。．.?!！？、，')
LATIN_ENDING_RE = re.compile(r'[A-Za-z0-9]$')

POLITE_BASE_ENDINGS = ('です', 'でした', 'でしょう', 'でしょ', 'ます', 'ました', 'ません', 'ませんでした')
POLITE_SUFFIXES = ('ね', 'よ', 'よね')
POLITE_QUESTION_SUFFIXES = ('か', 'かね', 'かしら')
JAPANESE_POLITE_ENDINGS = frozenset(
    list(POLITE_BASE_ENDINGS)
    + [base + suffix for base in POLITE_BASE_ENDINGS for suffix in POLITE_SUFFIXES + POLITE_QUESTION_SUFFIXES]
)

FINAL_STAGE_HINTS = frozenset(['completed', 'complete', 'final', 'finished', 'done'])
PARTIAL_STAGE_HINTS = frozenset(['partial', 'delta', 'updated', 'created', 'in_progress'])


class Utterance:
    """One finalized unit of recognized speech. ``timestamp`` is epoch milliseconds."""

    __slots__ = ('text', 'timestamp')

    def __init__(self, text, timestamp=None):
        self.text = text
        self.timestamp = int(time.time() * 1000) if timestamp is None else int(timestamp)

    def __repr__(self):
        return f"Utterance({self.text!r}, {self.timestamp})"

    def __eq__(self, other):
        return isinstance(other, Utterance) and (self.text, self.timestamp) == (other.text, other.timestamp)


def has_japanese_polite_ending(text):
    return any(text.endswith(ending) for ending in JAPANESE_POLITE_ENDINGS)


def ensure_trailing_punctuation(text):
    """Append a sentence terminator when the recognizer left one off.

    Downstream consumers treat a trailing mark as "utterance complete", and the
    transcription service does not reliably emit one.
    """
    if not text:
        return text
    trimmed = text.strip()
    if not trimmed:
        return trimmed
    if trimmed[-1] in TRAILING_PUNCTUATION:
        return trimmed
    if has_japanese_polite_ending(trimmed):
        return trimmed + '。'
    if LATIN_ENDING_RE.search(trimmed):
        return trimmed + '.'
    return trimmed


class TranscriptFinalizer:
    """
    Classifies streaming transcript payloads as partial or final.

    Callbacks:
        on_partial(text): displayed partial changed ('' clears it)
        on_final(utterance): a completed, punctuation-normalized Utterance
        on_activity(): any non-empty transcript text was observed
    """

    def __init__(self, on_partial=None, on_final=None, on_activity=None):
        self.on_partial = on_partial
        self.on_final = on_final
        self.on_activity = on_activity
        self.partial_text = ''

    def process_transcript_payload(self, text, stage_hint):
        """Returns True if the payload was handled, False to let the caller try other interpretations."""
        text = text if isinstance(text, str) else ''
        stage = stage_hint.lower() if isinstance(stage_hint, str) else ''

        if stage in FINAL_STAGE_HINTS:
            self._finalize(text)
            return True
        if text:
            self.update_partial(text)
            self._note_activity()
            return True
        if stage in PARTIAL_STAGE_HINTS:
            self.update_partial('')
            return True
        return False

    def update_partial(self, text):
        if text == self.partial_text:
            return
        self.partial_text = text
        if self.on_partial is not None:
            self.on_partial(text)

    def _finalize(self, text):
        normalized = ensure_trailing_punctuation(text.strip())
        if not normalized:
            return
        # The finalized text stays displayed until the next partial; on_final may clear it
        self.update_partial(normalized)
        log_debug(f"[TRANSCRIPT] Final: {normalized}")
        self._note_activity()
        if self.on_final is not None:
            self.on_final(Utterance(normalized))

    def _note_activity(self):
        if self.on_activity is not None:
            self.on_activity()
