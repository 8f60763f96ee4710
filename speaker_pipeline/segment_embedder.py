#!/usr/bin/env python3
"""
segment_embedder.py - Fixed-size speaker embeddings from MFCC statistics

Dimension breakdown (130 total):
- 13 MFCC means
- 13 MFCC standard deviations
- 13 delta means
- 13 delta-delta means
- 78 upper-triangular MFCC correlation coefficients (13 * 12 / 2)

The concatenated vector is L2-normalized by SpeakerEmbedding.
"""

from typing import Optional

import numpy as np

from .mel_filterbank import MFCCResult
from .speaker_models import SpeakerEmbedding

EMBEDDING_DIMENSION = 130


def _upper_triangular_correlation(frames: np.ndarray, means: np.ndarray, stds: np.ndarray) -> np.ndarray:
    n, dim = frames.shape
    rows, cols = np.triu_indices(dim, k=1)
    if n < 2:
        return np.zeros(rows.size)

    centered = frames - means
    cov = centered.T @ centered / (n - 1)
    denom = np.outer(stds, stds)
    safe = denom > 1e-10
    corr = np.where(safe, cov / np.where(safe, denom, 1.0), 0.0)
    return corr[rows, cols]


class SegmentEmbedder:
    """Computes 130-dim embeddings for contiguous spans of MFCC frames."""

    embedding_dimension = EMBEDDING_DIMENSION

    def compute_embedding(
        self,
        mfccs: np.ndarray,
        deltas: np.ndarray,
        delta_deltas: np.ndarray
    ) -> Optional[SpeakerEmbedding]:
        """
        Embed a segment from its per-frame features.

        Returns:
            Normalized SpeakerEmbedding, or None for an empty segment
        """
        mfccs = np.asarray(mfccs, dtype=np.float64)
        if mfccs.ndim != 2 or mfccs.shape[0] == 0 or mfccs.shape[1] == 0:
            return None

        n = mfccs.shape[0]
        means = mfccs.mean(axis=0)
        stds = mfccs.std(axis=0, ddof=1) if n > 1 else np.zeros(mfccs.shape[1])
        delta_means = np.asarray(deltas, dtype=np.float64).mean(axis=0)
        delta_delta_means = np.asarray(delta_deltas, dtype=np.float64).mean(axis=0)
        correlations = _upper_triangular_correlation(mfccs, means, stds)

        return SpeakerEmbedding(np.concatenate([
            means, stds, delta_means, delta_delta_means, correlations
        ]))

    def compute_embedding_for_range(self, result: MFCCResult, start: int, end: int) -> Optional[SpeakerEmbedding]:
        """Embed frames [start, end) of an MFCC result."""
        start = max(0, start)
        end = min(end, result.num_frames)
        if end <= start:
            return None
        return self.compute_embedding(
            result.mfccs[start:end],
            result.deltas[start:end],
            result.delta_deltas[start:end]
        )

    def compute_embedding_for_mask(self, result: MFCCResult, mask: np.ndarray) -> Optional[SpeakerEmbedding]:
        """Embed the (possibly non-contiguous) frames selected by a boolean mask."""
        mask = np.asarray(mask, dtype=bool)[:result.num_frames]
        if not mask.any():
            return None
        return self.compute_embedding(
            result.mfccs[:mask.size][mask],
            result.deltas[:mask.size][mask],
            result.delta_deltas[:mask.size][mask]
        )
