"""Tests for the TTS segmenter, the speech client and the playback queue."""

import threading
import unittest
from unittest import mock

import numpy as np

from tts import AudioSegment, PlaybackQueue, TtsClient, split_into_segments


class TestSplitIntoSegments(unittest.TestCase):
    """Tests for split_into_segments()."""

    def test_blank_text(self):
        self.assertEqual(split_into_segments(''), [])
        self.assertEqual(split_into_segments('   \n '), [])

    def test_sentence_boundaries(self):
        self.assertEqual(
            split_into_segments('こんにちは。今日はいい天気ですね。'),
            ['こんにちは。', '今日はいい天気ですね。'],
        )

    def test_long_run_sliced_at_max(self):
        segments = split_into_segments('a' * 450, max_chars=200)
        self.assertEqual([len(s) for s in segments], [200, 200, 50])

    def test_never_exceeds_max(self):
        text = ('これはとても長い文章で、読点で区切られていて、' * 20) + '最後です。'
        segments = split_into_segments(text, max_chars=60, target_chars=30, min_chars=10)
        self.assertTrue(segments)
        self.assertTrue(all(len(s) <= 60 for s in segments))
        self.assertEqual(''.join(segments), text)

    def test_short_tail_merged_with_word_gap(self):
        segments = split_into_segments('This is a fairly long sentence that goes on. OK.')
        self.assertEqual(segments, ['This is a fairly long sentence that goes on. OK.'])

    def test_opening_bracket_starts_segment(self):
        text = '彼は「はい」と言った。'
        self.assertEqual(split_into_segments(text, min_chars=1), ['彼は', '「はい」', 'と言った。'])
        self.assertEqual(split_into_segments(text, min_chars=10), ['彼は「はい」と言った。'])

    def test_whitespace_collapsed(self):
        self.assertEqual(split_into_segments('Hello\n\n   world.'), ['Hello world.'])


def _pcm(values):
    return np.array(values, dtype=np.int16).tobytes()


class TestTtsClient(unittest.TestCase):
    def _make_client(self, **kwargs):
        api = mock.MagicMock()
        api.audio.speech.create.return_value.read.return_value = _pcm([1, 2, 3])
        return api, TtsClient(api, **kwargs)

    def test_one_request_per_segment(self):
        api, client = self._make_client(instructions='calm')
        received = []
        segments = client.synthesize('こんにちは。今日はいい天気ですね。', on_segment=received.append)
        self.assertEqual(len(segments), 2)
        self.assertEqual(received, segments)
        self.assertEqual(segments[0].samples.tolist(), [1, 2, 3])
        self.assertEqual(segments[0].sample_rate, 24000)

        first = api.audio.speech.create.call_args_list[0][1]
        self.assertEqual(first['input'], 'こんにちは。')
        self.assertEqual(first['response_format'], 'pcm')
        self.assertEqual(first['instructions'], 'calm')

    def test_blank_text_makes_no_request(self):
        api, client = self._make_client()
        self.assertEqual(client.synthesize('  '), [])
        api.audio.speech.create.assert_not_called()

    def test_odd_byte_tail_dropped(self):
        api, client = self._make_client()
        api.audio.speech.create.return_value.read.return_value = _pcm([5, 6]) + b'\x01'
        segments = client.synthesize('テスト。')
        self.assertEqual(segments[0].samples.tolist(), [5, 6])

    def test_api_error_wrapped(self):
        api, client = self._make_client()
        api.audio.speech.create.side_effect = ConnectionError("reset")
        with self.assertRaises(RuntimeError):
            client.synthesize('テスト。')


class TestPlaybackQueue(unittest.TestCase):
    def setUp(self):
        self.player = mock.MagicMock()
        self.tts = mock.MagicMock()

    def test_streamed_segments_reach_player_in_order(self):
        a = AudioSegment(np.ones(10, dtype=np.int16))
        b = AudioSegment(np.ones(20, dtype=np.int16))

        def synthesize(text, on_segment=None):
            on_segment(a)
            on_segment(b)
            return [a, b]

        self.tts.synthesize.side_effect = synthesize
        queue = PlaybackQueue(self.player, self.tts)
        queue._process({'text': 'hello', 'metadata': {}})
        lengths = [len(c[0][0]) for c in self.player.enqueue.call_args_list]
        self.assertEqual(lengths, [10, 20])

    def test_returned_segments_used_when_nothing_streamed(self):
        seg = AudioSegment(np.ones(5, dtype=np.int16), 16000)
        self.tts.synthesize.return_value = [seg]
        queue = PlaybackQueue(self.player, self.tts)
        queue._process({'text': 'hello', 'metadata': {}})
        self.assertEqual(self.player.enqueue.call_count, 1)
        samples, rate = self.player.enqueue.call_args[0]
        self.assertIs(samples, seg.samples)
        self.assertEqual(rate, 16000)

    def test_synthesis_failure_skips_item(self):
        self.tts.synthesize.side_effect = RuntimeError("TTS synthesis failed")
        queue = PlaybackQueue(self.player, self.tts)
        queue._process({'text': 'hello', 'metadata': {}})
        self.player.enqueue.assert_not_called()

    def test_items_processed_one_at_a_time_in_order(self):
        spoken = []
        done = threading.Event()

        def synthesize(text, on_segment=None):
            spoken.append(text)
            if len(spoken) == 3:
                done.set()
            return []

        self.tts.synthesize.side_effect = synthesize
        queue = PlaybackQueue(self.player, self.tts)
        for text in ('one', 'two', 'three'):
            queue.enqueue(text)
        self.assertTrue(done.wait(2.0))
        self.assertEqual(spoken, ['one', 'two', 'three'])
        queue.shutdown()

    def test_disabled_and_blank_ignored(self):
        queue = PlaybackQueue(self.player, self.tts, enabled=False)
        queue.enqueue('hello')
        self.assertEqual(queue._worker.pending(), 0)
        queue = PlaybackQueue(self.player, self.tts)
        queue.enqueue('   ')
        self.assertEqual(queue._worker.pending(), 0)

    def test_shutdown_releases_player(self):
        queue = PlaybackQueue(self.player, self.tts)
        queue.shutdown()
        queue.shutdown()
        self.player.shutdown.assert_called_once()
        queue.enqueue('late')
        self.tts.synthesize.assert_not_called()

    def test_collaborators_validated(self):
        with self.assertRaises(TypeError):
            PlaybackQueue(object(), self.tts)
        with self.assertRaises(TypeError):
            PlaybackQueue(self.player, object())


if __name__ == '__main__':
    unittest.main()
