"""Unit tests for MicCapture — mocks sounddevice to avoid real hardware."""

import unittest
from unittest import mock

import numpy as np

from mic_capture import LEVEL_FLOOR_DB, MicCapture, level_db


def _make_config(**overrides):
    """Build a minimal config dict suitable for MicCapture.__init__."""
    config = {
        'sample_rate': 24000,
        'chunk_size': 960,
        'audio_device': '',
    }
    config.update(overrides)
    return config


def _make_device(name, max_input_channels=1, max_output_channels=0):
    """Return a dict mimicking sounddevice.query_devices() entries."""
    return {
        'name': name,
        'max_input_channels': max_input_channels,
        'max_output_channels': max_output_channels,
    }


def _block(value, frames=960):
    return np.full((frames, 1), value, dtype=np.int16)


class TestResolveDevice(unittest.TestCase):
    """Tests for MicCapture._resolve_device()."""

    @mock.patch('mic_capture.sd')
    def test_exact_match(self, mock_sd):
        mock_sd.query_devices.return_value = [
            _make_device('HDA Intel PCH: ALC892', max_input_channels=2),
            _make_device('USB Audio Device', max_input_channels=1),
        ]
        mic = MicCapture(_make_config(audio_device='USB Audio Device'))
        self.assertEqual(mic._resolve_device(), 1)

    @mock.patch('mic_capture.sd')
    def test_substring_match(self, mock_sd):
        mock_sd.query_devices.return_value = [
            _make_device('HDA Intel PCH: ALC892', max_input_channels=2),
            _make_device('Samson GoMic USB Microphone', max_input_channels=1),
        ]
        mic = MicCapture(_make_config(audio_device='gomic usb'))
        self.assertEqual(mic._resolve_device(), 1)

    @mock.patch('mic_capture.sd')
    def test_ambiguous_match_error(self, mock_sd):
        mock_sd.query_devices.return_value = [
            _make_device('USB Audio Device A'),
            _make_device('USB Audio Device B'),
        ]
        mic = MicCapture(_make_config(audio_device='usb audio'))
        with self.assertRaises(ValueError) as ctx:
            mic._resolve_device()
        self.assertIn('USB Audio Device A', str(ctx.exception))

    @mock.patch('mic_capture.sd')
    def test_output_only_device_never_selected(self, mock_sd):
        mock_sd.query_devices.return_value = [
            _make_device('HDMI Speaker', max_input_channels=0, max_output_channels=8),
        ]
        mic = MicCapture(_make_config(audio_device='HDMI Speaker'))
        with self.assertRaises(ValueError):
            mic._resolve_device()

    @mock.patch('mic_capture.sd')
    def test_check_device_default_input(self, mock_sd):
        mic = MicCapture(_make_config())
        self.assertIsNone(mic.check_device())
        mock_sd.query_devices.assert_called_once_with(kind='input')


class TestStream(unittest.TestCase):
    @mock.patch('mic_capture.sd')
    def test_start_opens_24k_int16_stream(self, mock_sd):
        mic = MicCapture(_make_config())
        mic.start()
        mic.start()  # idempotent
        mock_sd.InputStream.assert_called_once()
        kwargs = mock_sd.InputStream.call_args[1]
        self.assertEqual(kwargs['samplerate'], 24000)
        self.assertEqual(kwargs['dtype'], 'int16')
        self.assertEqual(kwargs['blocksize'], 960)
        self.assertEqual(kwargs['channels'], 1)
        self.assertTrue(mic.running)

    @mock.patch('mic_capture.sd')
    def test_start_failure_leaves_clean_state(self, mock_sd):
        mock_sd.InputStream.return_value.start.side_effect = RuntimeError("device busy")
        mic = MicCapture(_make_config())
        with self.assertRaises(RuntimeError):
            mic.start()
        self.assertFalse(mic.running)

    @mock.patch('mic_capture.sd')
    def test_stop_is_idempotent_and_no_throw(self, mock_sd):
        mock_sd.InputStream.return_value.stop.side_effect = RuntimeError("gone")
        mic = MicCapture(_make_config())
        mic.start()
        mic.stop()
        mic.stop()
        self.assertFalse(mic.running)


class TestCallback(unittest.TestCase):
    def test_chunks_queued_in_order(self):
        mic = MicCapture(_make_config())
        mic._audio_callback(_block(1), 960, None, None)
        mic._audio_callback(_block(2), 960, None, None)
        first = mic.get_chunk(timeout=0.01)
        self.assertEqual(first.dtype, np.int16)
        self.assertEqual(first.shape, (960,))
        self.assertEqual(first[0], 1)
        self.assertEqual(mic.get_chunk(timeout=0.01)[0], 2)
        self.assertIsNone(mic.get_chunk(timeout=0.01))

    def test_overflow_drops_oldest(self):
        mic = MicCapture(_make_config())
        for i in range(101):
            mic._audio_callback(_block(i), 960, None, None)
        self.assertEqual(mic.chunk_queue.qsize(), 100)
        self.assertEqual(mic.get_chunk(timeout=0.01)[0], 1)

    def test_error_status_frames_skipped(self):
        mic = MicCapture(_make_config())
        mic._audio_callback(_block(5), 960, None, 'input overflow')
        self.assertIsNone(mic.get_chunk(timeout=0.01))

    def test_ducked_frames_dropped(self):
        mic = MicCapture(_make_config())
        mic._audio_callback(_block(1), 960, None, None)
        mic.set_ducked(True)
        self.assertEqual(mic.chunk_queue.qsize(), 0)
        mic._audio_callback(_block(2), 960, None, None)
        self.assertIsNone(mic.get_chunk(timeout=0.01))
        mic.set_ducked(False)
        mic._audio_callback(_block(3), 960, None, None)
        self.assertEqual(mic.get_chunk(timeout=0.01)[0], 3)

    def test_chunk_trace_tagged_once(self):
        mic = MicCapture(_make_config())
        with mock.patch('mic_capture.log_mic') as mock_log:
            mic._audio_callback(_block(1), 960, None, None)
        message = mock_log.call_args[0][0]
        self.assertTrue(message.startswith('chunk=960'))
        self.assertNotIn('[MIC]', message)
        self.assertGreater(mic.current_level_db, LEVEL_FLOOR_DB)

    def test_level_db(self):
        self.assertEqual(level_db(np.zeros(10, dtype=np.int16)), LEVEL_FLOOR_DB)
        self.assertEqual(level_db(np.zeros(0, dtype=np.int16)), LEVEL_FLOOR_DB)
        full = level_db(np.full(10, 32767, dtype=np.int16))
        self.assertAlmostEqual(full, 0.0, places=2)


if __name__ == '__main__':
    unittest.main()
