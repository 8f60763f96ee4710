#!/usr/bin/env python3
"""
test_ahc_clusterer.py - Unit tests for agglomerative clustering of embeddings
"""

import unittest

import numpy as np

from speaker_pipeline.ahc_clusterer import AHCClusterer, cosine_distance_matrix, relabel_by_first_appearance
from speaker_pipeline.speaker_models import SpeakerEmbedding


def unit(index, dim=4, jitter=0.0):
    values = np.zeros(dim)
    values[index] = 1.0
    values[(index + 1) % dim] = jitter
    return SpeakerEmbedding(values)


class TestHelpers(unittest.TestCase):
    """Tests for clustering helpers."""

    def test_relabel_by_first_appearance(self):
        """Labels should be renumbered in order of first appearance."""
        self.assertEqual(relabel_by_first_appearance([3, 3, 1, 3, 2]), [0, 0, 1, 0, 2])

    def test_distance_matrix(self):
        """The matrix should be symmetric with a zero diagonal."""
        matrix = cosine_distance_matrix([unit(0), unit(1), unit(0, jitter=0.1)])
        np.testing.assert_allclose(matrix, matrix.T)
        np.testing.assert_allclose(np.diag(matrix), 0.0)
        self.assertAlmostEqual(matrix[0, 1], 1.0)


class TestAHCClusterer(unittest.TestCase):
    """Tests for AHCClusterer."""

    def test_empty_and_single(self):
        """Zero or one embedding should not need clustering."""
        clusterer = AHCClusterer()
        self.assertEqual(clusterer.cluster([]).labels, [])
        self.assertEqual(clusterer.cluster([]).num_clusters, 0)
        result = clusterer.cluster([unit(0)])
        self.assertEqual((result.labels, result.num_clusters), ([0], 1))

    def test_two_speakers(self):
        """Two tight groups should give two clusters labeled by first appearance."""
        embeddings = [unit(1), unit(0), unit(1, jitter=0.1), unit(0, jitter=0.1)]
        result = AHCClusterer(distance_threshold=0.6).cluster(embeddings)
        self.assertEqual(result.labels, [0, 1, 0, 1])
        self.assertEqual(result.num_clusters, 2)

    def test_two_groups_of_five(self):
        """Two groups of five near-identical embeddings should give exactly two clusters."""
        rng = np.random.default_rng(3)
        first = [SpeakerEmbedding(np.eye(8)[0] + 0.01 * rng.standard_normal(8)) for _ in range(5)]
        second = [SpeakerEmbedding(np.eye(8)[1] + 0.01 * rng.standard_normal(8)) for _ in range(5)]
        result = AHCClusterer().cluster(first + second)
        self.assertEqual(result.num_clusters, 2)
        self.assertEqual(set(result.labels[:5]), {0})
        self.assertEqual(set(result.labels[5:]), {1})

    def test_high_threshold_merges_everything(self):
        """Orthogonal embeddings should merge when the threshold exceeds 1."""
        result = AHCClusterer(distance_threshold=1.5).cluster([unit(0), unit(1), unit(2)])
        self.assertEqual(result.labels, [0, 0, 0])

    def test_max_clusters_cap(self):
        """Cluster count should never exceed max_clusters."""
        embeddings = [unit(i) for i in range(4)]
        result = AHCClusterer(distance_threshold=0.5, max_clusters=2).cluster(embeddings)
        self.assertEqual(result.num_clusters, 2)
        self.assertEqual(result.labels[0], 0)

    def test_default_cap_with_twelve_orthogonal_embeddings(self):
        """Twelve maximally separated embeddings should be capped at the default ten clusters."""
        embeddings = [SpeakerEmbedding(row) for row in np.eye(12)]
        result = AHCClusterer().cluster(embeddings)
        self.assertEqual(result.num_clusters, 10)
        self.assertEqual(sorted(set(result.labels)), list(range(10)))

    def test_zero_vector_allowed(self):
        """A zero embedding should cluster without errors."""
        result = AHCClusterer().cluster([unit(0), SpeakerEmbedding(np.zeros(4)), unit(0, jitter=0.05)])
        self.assertEqual(len(result.labels), 3)
        self.assertEqual(result.labels[0], result.labels[2])


if __name__ == "__main__":
    unittest.main(verbosity=2)
