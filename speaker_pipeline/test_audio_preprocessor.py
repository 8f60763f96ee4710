#!/usr/bin/env python3
"""
test_audio_preprocessor.py - Unit tests for the real-time capture path
"""

import unittest

import numpy as np

from speaker_pipeline.audio_preprocessor import (
    AudioLevel,
    AudioLevelMonitor,
    AudioMeterCollector,
    AudioPreprocessor,
    AutomaticGainController,
    NoiseReducer,
    VoiceActivityDetector,
    rms_energy,
)
from speaker_pipeline.diarization_config import PreprocessingConfig

SAMPLE_RATE = 16000


def sine(freq, amplitude, num_samples=1024, sample_rate=SAMPLE_RATE):
    t = np.arange(num_samples) / sample_rate
    return (amplitude * np.sin(2 * np.pi * freq * t)).astype(np.float32)


class TestNoiseReducer(unittest.TestCase):
    """Tests for the high-pass NoiseReducer."""

    def test_empty_and_single_sample(self):
        """Empty and one-sample buffers should pass through."""
        reducer = NoiseReducer()
        self.assertEqual(reducer.process(np.zeros(0), SAMPLE_RATE).size, 0)
        np.testing.assert_allclose(reducer.process(np.array([0.3]), SAMPLE_RATE), [0.3])

    def test_first_sample_unchanged(self):
        """The filter should start from y[0] = x[0]."""
        output = NoiseReducer().process(np.full(100, 0.5, dtype=np.float32), SAMPLE_RATE)
        self.assertAlmostEqual(float(output[0]), 0.5, places=5)

    def test_removes_dc(self):
        """A constant offset should decay to zero."""
        output = NoiseReducer().process(np.full(SAMPLE_RATE, 0.5, dtype=np.float32), SAMPLE_RATE)
        self.assertLess(abs(float(output[-1])), 1e-4)

    def test_passes_speech_band(self):
        """A 1 kHz tone should pass almost unattenuated."""
        tone = sine(1000.0, 0.3, num_samples=4096)
        output = NoiseReducer().process(tone, SAMPLE_RATE)
        self.assertGreater(rms_energy(output[2048:]) / rms_energy(tone[2048:]), 0.95)

    def test_no_gate_on_quiet_input(self):
        """Quiet input should not be zeroed."""
        quiet = sine(500.0, 0.001, num_samples=2048)
        output = NoiseReducer().process(quiet, SAMPLE_RATE)
        self.assertGreater(rms_energy(output[1024:]), 0.0005)


class TestAutomaticGainController(unittest.TestCase):
    """Tests for AutomaticGainController."""

    def test_quiet_signal_amplified_to_target(self):
        """A quiet tone should be brought near the target RMS."""
        output = AutomaticGainController().process(sine(440.0, 0.01, 1600), SAMPLE_RATE)
        self.assertAlmostEqual(rms_energy(output), 0.08, places=2)

    def test_loud_signal_not_attenuated(self):
        """Gain should never drop below min_gain."""
        tone = sine(440.0, 0.5, 1600)
        np.testing.assert_allclose(AutomaticGainController().process(tone, SAMPLE_RATE), tone, rtol=1e-6)

    def test_silence_untouched(self):
        """Buffers below the silence threshold should not be amplified."""
        silence = np.full(512, 1e-6, dtype=np.float32)
        np.testing.assert_array_equal(AutomaticGainController().process(silence, SAMPLE_RATE), silence)

    def test_output_clipped(self):
        """Gained samples should stay within [-1, 1]."""
        output = AutomaticGainController(target_rms=2.0).process(sine(440.0, 0.5, 1600), SAMPLE_RATE)
        self.assertLessEqual(float(np.max(np.abs(output))), 1.0)

    def test_gain_clamped_to_max(self):
        """gain_for should clamp to max_gain."""
        self.assertEqual(AutomaticGainController().gain_for(1e-5), 40.0)


class TestVoiceActivityDetector(unittest.TestCase):
    """Tests for the energy + ZCR VoiceActivityDetector."""

    def test_tone_is_speech(self):
        """A voiced-range tone with energy should be speech."""
        self.assertTrue(VoiceActivityDetector().detect_speech(sine(440.0, 0.1), SAMPLE_RATE))

    def test_silence_is_not_speech(self):
        """Silence should not be speech."""
        self.assertFalse(VoiceActivityDetector().detect_speech(np.zeros(1024), SAMPLE_RATE))
        self.assertFalse(VoiceActivityDetector().detect_speech(np.zeros(0), SAMPLE_RATE))

    def test_alternating_noise_rejected(self):
        """Alternating-sign samples (ZCR ~ 1) should be rejected."""
        alternating = np.tile(np.array([0.5, -0.5], dtype=np.float32), 512)
        self.assertFalse(VoiceActivityDetector().detect_speech(alternating, SAMPLE_RATE))

    def test_zero_crossing_rate(self):
        """ZCR should count sign changes over n-1."""
        self.assertAlmostEqual(VoiceActivityDetector.zero_crossing_rate(np.array([1.0, -1.0, 1.0])), 1.0)
        self.assertEqual(VoiceActivityDetector.zero_crossing_rate(np.array([1.0])), 0.0)

    def test_process_is_pass_through(self):
        """process() should return the input samples."""
        tone = sine(440.0, 0.1)
        self.assertIs(VoiceActivityDetector().process(tone, SAMPLE_RATE), tone)


class TestAudioLevelMonitor(unittest.TestCase):
    """Tests for AudioLevelMonitor."""

    def test_levels(self):
        """RMS and peak should be computed from the buffer."""
        level = AudioLevelMonitor().calculate_level(np.array([0.5, -0.8], dtype=np.float32), True)
        self.assertAlmostEqual(level.peak, 0.8, places=6)
        self.assertAlmostEqual(level.rms, float(np.sqrt((0.25 + 0.64) / 2)), places=6)
        self.assertTrue(level.is_speech)

    def test_empty_is_silence(self):
        """An empty buffer should report silence."""
        self.assertEqual(AudioLevelMonitor().calculate_level(np.zeros(0), True), AudioLevel.SILENCE)


class TestAudioPreprocessor(unittest.TestCase):
    """Tests for the composite capture pipeline."""

    def test_hangover_extends_speech(self):
        """Speech should be reported for hangover_frames silent buffers after speech."""
        preprocessor = AudioPreprocessor(hangover_frames=2)
        silence = np.zeros(1024, dtype=np.float32)
        flags = [preprocessor.process(sine(440.0, 0.1), SAMPLE_RATE).is_speech]
        flags += [preprocessor.process(silence, SAMPLE_RATE).is_speech for _ in range(3)]
        self.assertEqual(flags, [True, True, True, False])

    def test_reset_clears_hangover(self):
        """reset() should drop any remaining hangover."""
        preprocessor = AudioPreprocessor(hangover_frames=5)
        preprocessor.process(sine(440.0, 0.1), SAMPLE_RATE)
        self.assertEqual(preprocessor.hangover_remaining, 5)
        preprocessor.reset()
        self.assertEqual(preprocessor.hangover_remaining, 0)
        self.assertFalse(preprocessor.process(np.zeros(1024), SAMPLE_RATE).is_speech)

    def test_output_never_zeroed(self):
        """Non-speech buffers should still carry the processed waveform."""
        result = AudioPreprocessor(hangover_frames=0).process(sine(60.0, 0.0005, 1024), SAMPLE_RATE)
        self.assertFalse(result.is_speech)
        self.assertGreater(float(np.max(np.abs(result.samples))), 0.0)

    def test_empty_buffer(self):
        """An empty buffer should give an empty, silent result."""
        result = AudioPreprocessor().process(np.zeros(0), SAMPLE_RATE)
        self.assertEqual(result.samples.size, 0)
        self.assertFalse(result.is_speech)
        self.assertEqual(result.level, AudioLevel.SILENCE)

    def test_from_config(self):
        """Config values should reach the stages."""
        preprocessor = AudioPreprocessor.from_config(PreprocessingConfig(hangover_frames=7, target_rms=0.1))
        self.assertEqual(preprocessor.hangover_frames, 7)
        self.assertEqual(preprocessor.gain_controller.target_rms, 0.1)


class TestAudioMeterCollector(unittest.TestCase):
    """Tests for AudioMeterCollector."""

    def test_normalize_db(self):
        """dBFS should map to 0..1 with the -60 dB floor."""
        meter = AudioMeterCollector()
        self.assertEqual(meter.normalize_db(-70.0), 0.0)
        self.assertEqual(meter.normalize_db(3.0), 1.0)
        self.assertAlmostEqual(meter.normalize_db(-25.0), 10 ** -0.5)

    def test_update_blends_average_and_peak(self):
        """Display level should be 0.7 * average + 0.3 * peak."""
        meter = AudioMeterCollector()
        level = meter.update(-25.0, 0.0)
        self.assertAlmostEqual(level, 0.7 * 10 ** -0.5 + 0.3)

    def test_recent_levels_padded(self):
        """recent_levels should be display_count long, oldest first, zero padded."""
        meter = AudioMeterCollector(display_count=4)
        meter.update(0.0, 0.0)
        meter.update(-70.0, -70.0)
        self.assertEqual(meter.recent_levels(), [0.0, 0.0, 1.0, 0.0])

    def test_ring_buffer_wraps(self):
        """Older values should be overwritten once max_samples is reached."""
        meter = AudioMeterCollector(max_samples=3, display_count=3)
        for db in (0.0, -70.0, -70.0, -70.0):
            meter.update(db, db)
        snapshot = meter.snapshot()
        self.assertEqual(snapshot.recent_levels, [0.0, 0.0, 0.0])
        self.assertEqual(snapshot.total_updates, 4)

    def test_update_from_level_and_reset(self):
        """Linear levels should feed the meter; reset() should clear it."""
        meter = AudioMeterCollector()
        self.assertAlmostEqual(meter.update_from_level(AudioLevel(rms=1.0, peak=1.0, is_speech=True)), 1.0)
        self.assertEqual(meter.update_from_level(AudioLevel.SILENCE), 0.0)
        meter.reset()
        self.assertEqual(meter.snapshot().total_updates, 0)


if __name__ == "__main__":
    unittest.main(verbosity=2)
