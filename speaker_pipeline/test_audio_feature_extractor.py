#!/usr/bin/env python3
"""
test_audio_feature_extractor.py - Unit tests for prosodic feature extraction
"""

import unittest

import numpy as np

from speaker_pipeline.audio_feature_extractor import AudioFeatureExtractor, WindowFeatures

SAMPLE_RATE = 16000


def tone(freq, seconds=1.0, amplitude=0.5):
    t = np.arange(int(seconds * SAMPLE_RATE)) / SAMPLE_RATE
    return amplitude * np.sin(2 * np.pi * freq * t)


class TestAudioFeatureExtractor(unittest.TestCase):
    """Tests for AudioFeatureExtractor."""

    def setUp(self):
        self.extractor = AudioFeatureExtractor()

    def test_pitch_of_pure_tone(self):
        """Autocorrelation pitch should find a 200 Hz tone."""
        frame = tone(200.0)[:1024]
        self.assertAlmostEqual(self.extractor.detect_pitch(frame, SAMPLE_RATE), 200.0, delta=10.0)

    def test_pitch_of_silence(self):
        """Silent frames should have no pitch."""
        self.assertIsNone(self.extractor.detect_pitch(np.zeros(1024), SAMPLE_RATE))
        self.assertIsNone(self.extractor.detect_pitch(np.ones(32), SAMPLE_RATE))

    def test_normalized_energy(self):
        """RMS should map -60..0 dBFS onto 0..1."""
        self.assertAlmostEqual(AudioFeatureExtractor.normalized_energy(np.ones(256)), 1.0)
        self.assertAlmostEqual(AudioFeatureExtractor.normalized_energy(np.full(256, 0.001)), 0.0)
        self.assertAlmostEqual(AudioFeatureExtractor.normalized_energy(np.full(256, 10 ** (-30 / 20))), 0.5)
        self.assertEqual(AudioFeatureExtractor.normalized_energy(np.zeros(256)), 0.0)

    def test_spectral_centroid(self):
        """A pure tone's centroid should sit near its frequency."""
        centroid = self.extractor.spectral_centroid(tone(1000.0)[:1024], SAMPLE_RATE)
        self.assertAlmostEqual(centroid, 1000.0, delta=60.0)

    def test_split_frames(self):
        """Frames should be 1024 samples with a 512-sample hop."""
        frames = self.extractor.split_frames(np.zeros(4096))
        self.assertEqual(frames.shape, (7, 1024))
        self.assertEqual(self.extractor.split_frames(np.zeros(500)).shape[0], 0)

    def test_extract_whole_signal(self):
        """A steady tone should give its pitch with negligible jitter."""
        vector = self.extractor.extract(tone(150.0, seconds=2.0), SAMPLE_RATE)
        self.assertIsNotNone(vector)
        self.assertAlmostEqual(vector.mean_pitch, 150.0, delta=8.0)
        self.assertLess(vector.mean_jitter, 0.05)
        self.assertGreater(vector.mean_energy, 0.5)

    def test_extract_ranges(self):
        """Ranges should restrict analysis to the given spans."""
        signal = np.concatenate([tone(120.0), tone(300.0)])
        low = self.extractor.extract(signal, SAMPLE_RATE, ranges=[(0.0, 1.0)])
        high = self.extractor.extract(signal, SAMPLE_RATE, ranges=[(1.0, 2.0)])
        self.assertLess(low.mean_pitch, high.mean_pitch)
        self.assertIsNone(self.extractor.extract(signal, SAMPLE_RATE, ranges=[(5.0, 6.0)]))

    def test_silence_has_no_vector(self):
        """Unvoiced input should not produce a feature vector."""
        self.assertIsNone(self.extractor.extract(np.zeros(SAMPLE_RATE), SAMPLE_RATE))
        self.assertIsNone(WindowFeatures().feature_vector())


if __name__ == "__main__":
    unittest.main(verbosity=2)
