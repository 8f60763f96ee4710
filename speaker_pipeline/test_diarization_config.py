#!/usr/bin/env python3
"""
test_diarization_config.py - Unit tests for pipeline configuration
"""

import unittest

from speaker_pipeline.diarization_config import (
    ClusteringConfig,
    ClusteringProfile,
    DiarizationConfig,
    SegmentationConfig,
)


class TestClusteringProfiles(unittest.TestCase):
    """Tests for ClusteringConfig.from_profile."""

    def test_balanced_matches_defaults(self):
        """The balanced preset should equal the default thresholds."""
        config = ClusteringConfig.from_profile(ClusteringProfile.BALANCED)
        self.assertEqual(config.distance_threshold, ClusteringConfig().distance_threshold)
        self.assertEqual(config.max_clusters, ClusteringConfig().max_clusters)

    def test_conservative_merges_more(self):
        """Conservative should use a larger stopping distance than sensitive."""
        conservative = ClusteringConfig.from_profile(ClusteringProfile.CONSERVATIVE)
        sensitive = ClusteringConfig.from_profile(ClusteringProfile.SENSITIVE)
        self.assertGreater(conservative.distance_threshold, sensitive.distance_threshold)
        self.assertEqual(conservative.profile, "conservative")

    def test_custom_uses_defaults(self):
        """The custom preset should fall back to defaults."""
        self.assertEqual(ClusteringConfig.from_profile(ClusteringProfile.CUSTOM), ClusteringConfig())


class TestDiarizationConfig(unittest.TestCase):
    """Tests for the aggregate configuration."""

    def test_defaults(self):
        """Stage defaults should be in place."""
        config = DiarizationConfig()
        self.assertEqual(config.segmentation.min_segment_frames, 50)
        self.assertEqual(config.alignment.embedding_threshold, 0.35)
        self.assertEqual(config.preprocessing.hangover_frames, 3)
        self.assertFalse(config.debug)

    def test_dict_round_trip(self):
        """from_dict(to_dict()) should reproduce the config."""
        config = DiarizationConfig(segmentation=SegmentationConfig(bic_lambda=2.0), max_workers=4)
        self.assertEqual(DiarizationConfig.from_dict(config.to_dict()), config)

    def test_from_dict_ignores_unknown_keys(self):
        """Unknown keys should be ignored and missing sections defaulted."""
        config = DiarizationConfig.from_dict({"clustering": {"max_clusters": 3, "bogus": 1}, "other": {}})
        self.assertEqual(config.clustering.max_clusters, 3)
        self.assertEqual(config.smoothing.collar_ms, 300.0)

    def test_from_env(self):
        """DIARIZATION_* variables should override defaults."""
        config = DiarizationConfig.from_env({
            "DIARIZATION_DEBUG": "1",
            "DIARIZATION_MAX_SPEAKERS": "4",
            "DIARIZATION_DISTANCE_THRESHOLD": "0.5",
            "DIARIZATION_ALIGNMENT_THRESHOLD": "0.3",
            "DIARIZATION_IDENTITY_ACCEPT": "0.25",
            "DIARIZATION_HANGOVER_FRAMES": "6",
        })
        self.assertTrue(config.debug)
        self.assertEqual(config.clustering.max_clusters, 4)
        self.assertEqual(config.clustering.distance_threshold, 0.5)
        self.assertEqual(config.alignment.embedding_threshold, 0.3)
        self.assertEqual(config.identity.accept_mfcc, 0.25)
        self.assertEqual(config.preprocessing.hangover_frames, 6)

    def test_from_env_empty(self):
        """An empty environment should give defaults."""
        self.assertEqual(DiarizationConfig.from_env({}), DiarizationConfig())


if __name__ == "__main__":
    unittest.main(verbosity=2)
