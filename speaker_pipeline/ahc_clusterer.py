#!/usr/bin/env python3
"""
ahc_clusterer.py - Agglomerative clustering of segment embeddings

Average-linkage AHC over cosine distances using scikit-learn:
1. Merge until the closest clusters are farther apart than distance_threshold.
2. If that leaves more than max_clusters, re-cluster with n_clusters=max_clusters.

Labels are renumbered contiguously from 0 in order of first appearance.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Sequence

import numpy as np
from sklearn.cluster import AgglomerativeClustering

from .speaker_models import SpeakerEmbedding


@dataclass(frozen=True)
class ClusterResult:
    labels: List[int] = field(default_factory=list)
    num_clusters: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {"labels": list(self.labels), "num_clusters": self.num_clusters}


def cosine_distance_matrix(embeddings: Sequence[SpeakerEmbedding]) -> np.ndarray:
    n = len(embeddings)
    distances = np.zeros((n, n), dtype=np.float64)
    for i in range(n):
        for j in range(i + 1, n):
            d = max(embeddings[i].cosine_distance(embeddings[j]), 0.0)
            distances[i, j] = d
            distances[j, i] = d
    return distances


def relabel_by_first_appearance(labels: Sequence[int]) -> List[int]:
    mapping: Dict[int, int] = {}
    relabeled = []
    for label in labels:
        if label not in mapping:
            mapping[label] = len(mapping)
        relabeled.append(mapping[label])
    return relabeled


class AHCClusterer:
    """Average-linkage agglomerative clustering with a hard cluster cap."""

    def __init__(self, distance_threshold: float = 0.45, max_clusters: int = 10):
        self.distance_threshold = distance_threshold
        self.max_clusters = max(1, max_clusters)

    def cluster(self, embeddings: Sequence[SpeakerEmbedding]) -> ClusterResult:
        n = len(embeddings)
        if n == 0:
            return ClusterResult(labels=[], num_clusters=0)
        if n == 1:
            return ClusterResult(labels=[0], num_clusters=1)

        # Precomputed distances keep zero vectors legal (sklearn's cosine rejects them)
        distances = cosine_distance_matrix(embeddings)

        clusterer = AgglomerativeClustering(
            n_clusters=None,
            distance_threshold=self.distance_threshold,
            metric="precomputed",
            linkage="average"
        )
        labels = clusterer.fit_predict(distances)

        if len(set(labels)) > self.max_clusters:
            clusterer = AgglomerativeClustering(
                n_clusters=self.max_clusters,
                metric="precomputed",
                linkage="average"
            )
            labels = clusterer.fit_predict(distances)

        relabeled = relabel_by_first_appearance(int(label) for label in labels)
        return ClusterResult(labels=relabeled, num_clusters=len(set(relabeled)))
