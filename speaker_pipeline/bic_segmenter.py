#!/usr/bin/env python3
"""
bic_segmenter.py - BIC speaker change-point detection

Tests whether a window of MFCC frames is better modeled as one full-covariance
Gaussian or two. A split is accepted only when the two-Gaussian model wins
after the complexity penalty (delta BIC > 0).

Algorithm, per speech region:
1. Start a window of min_window_frames at the search start.
2. Grow it by growth_frames; at each size test candidate splits.
3. On the first positive delta BIC, record the boundary.
4. Restart the search from the boundary.
"""

import math
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

import numpy as np
from scipy.linalg import LinAlgError, cholesky

from .energy_vad import SpeechRegion

REGULARIZATION = 1e-6


@dataclass(frozen=True)
class ChangePoint:
    """Candidate speaker boundary at an absolute frame index."""
    frame_index: int
    bic_delta: float

    def to_dict(self) -> Dict[str, float]:
        return {"frame_index": self.frame_index, "bic_delta": round(self.bic_delta, 3)}


# ============================================================================
# Covariance Helpers
# ============================================================================

def covariance_matrix(frames: np.ndarray) -> np.ndarray:
    """Sample covariance (n-1 divisor) with 1e-6 added to the diagonal."""
    frames = np.asarray(frames, dtype=np.float64)
    n, d = frames.shape
    if n < 2:
        return np.eye(d) * REGULARIZATION
    centered = frames - frames.mean(axis=0)
    cov = centered.T @ centered / (n - 1)
    cov[np.diag_indices(d)] += REGULARIZATION
    return cov


def log_determinant(matrix: np.ndarray) -> float:
    """log|A| via Cholesky; -inf when A is not positive definite."""
    try:
        lower = cholesky(matrix, lower=True, check_finite=True)
    except (LinAlgError, ValueError):
        return -math.inf
    diagonal = np.diag(lower)
    if np.any(diagonal <= 0):
        return -math.inf
    return float(2.0 * np.sum(np.log(diagonal)))


# ============================================================================
# Segmenter
# ============================================================================

class BICSegmenter:
    """Growing-window BIC change detection over MFCC frames."""

    def __init__(
        self,
        penalty_lambda: float = 1.5,
        min_window_frames: int = 100,
        growth_frames: int = 50,
        split_stride: int = 10,
        min_margin: int = 30
    ):
        self.penalty_lambda = penalty_lambda
        self.min_window_frames = min_window_frames
        self.growth_frames = growth_frames
        self.split_stride = split_stride
        self.min_margin = min_margin

    def detect_boundaries(
        self,
        features: np.ndarray,
        regions: Sequence[SpeechRegion]
    ) -> List[ChangePoint]:
        """
        Find speaker change points inside each speech region.

        Args:
            features: (num_frames, dim) MFCC matrix
            regions: Speech regions from EnergyVAD

        Returns:
            Change points sorted by frame index
        """
        features = np.asarray(features, dtype=np.float64)
        boundaries: List[ChangePoint] = []
        for region in regions:
            boundaries.extend(self._segment_region(features, region.start_frame, region.end_frame))
        return sorted(boundaries, key=lambda b: b.frame_index)

    def _segment_region(self, features: np.ndarray, start_frame: int, end_frame: int) -> List[ChangePoint]:
        end_frame = min(end_frame, features.shape[0])
        boundaries: List[ChangePoint] = []
        search_start = start_frame

        while search_start < end_frame:
            window_end = search_start + self.min_window_frames
            if window_end > end_frame:
                break

            best_split = -1
            best_bic = 0.0
            while window_end <= end_frame:
                offset, bic = self.find_best_split(features[search_start:window_end])
                if bic > best_bic:
                    best_bic = bic
                    best_split = search_start + offset
                if best_bic > 0:
                    break
                window_end += self.growth_frames

            if best_bic > 0 and best_split > search_start:
                boundaries.append(ChangePoint(frame_index=best_split, bic_delta=best_bic))
                search_start = best_split
            else:
                break

        return boundaries

    def penalty(self, n: int, dim: int) -> float:
        free_params = dim + 0.5 * dim * (dim + 1)
        return self.penalty_lambda * 0.5 * free_params * math.log(n)

    def find_best_split(self, frames: np.ndarray) -> Tuple[int, float]:
        """
        Best single split of a window.

        Returns:
            (split offset from window start, delta BIC clamped at 0)
        """
        frames = np.asarray(frames, dtype=np.float64)
        if frames.ndim != 2 or frames.shape[0] < self.min_window_frames or frames.shape[1] == 0:
            return 0, 0.0

        n, dim = frames.shape
        log_det_all = log_determinant(covariance_matrix(frames))
        if log_det_all == -math.inf:
            return 0, 0.0

        penalty = self.penalty(n, dim)
        margin = max(self.min_window_frames // 3, self.min_margin)
        if margin >= n - margin:
            return 0, 0.0

        best_offset = 0
        best_bic = -math.inf
        for split_at in range(margin, n - margin, self.split_stride):
            log_det_left = log_determinant(covariance_matrix(frames[:split_at]))
            log_det_right = log_determinant(covariance_matrix(frames[split_at:]))
            if log_det_left == -math.inf or log_det_right == -math.inf:
                continue

            bic = 0.5 * (
                n * log_det_all - split_at * log_det_left - (n - split_at) * log_det_right
            ) - penalty
            if bic > best_bic:
                best_bic = bic
                best_offset = split_at

        return best_offset, max(best_bic, 0.0)
