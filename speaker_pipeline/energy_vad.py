#!/usr/bin/env python3
"""
energy_vad.py - Speech region detection from per-frame energies

Detects speech regions from the MFCC front end's per-frame RMS energies:

1. Adaptive threshold between the noise floor (30th percentile) and the peak
2. Binary speech mask (energy > threshold)
3. Morphological close (fills gaps up to ~300ms at a 10ms hop)
4. Morphological open (drops bursts shorter than ~200ms)
5. Contiguous runs -> SpeechRegion(start_frame, end_frame), end exclusive
"""

from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

import numpy as np


@dataclass(frozen=True)
class SpeechRegion:
    """Contiguous speech span in frame indices [start_frame, end_frame)."""
    start_frame: int
    end_frame: int

    @property
    def frame_count(self) -> int:
        return self.end_frame - self.start_frame

    def to_dict(self) -> Dict[str, int]:
        return {"start_frame": self.start_frame, "end_frame": self.end_frame}


def _window_counts(mask: np.ndarray, half_kernel: int) -> Tuple[np.ndarray, np.ndarray]:
    """True count and window width of [i - half_kernel, i + half_kernel], clamped to the mask."""
    cumulative = np.concatenate(([0], np.cumsum(mask, dtype=np.int64)))
    idx = np.arange(mask.size)
    lo = np.maximum(idx - half_kernel, 0)
    hi = np.minimum(idx + half_kernel, mask.size - 1) + 1
    return cumulative[hi] - cumulative[lo], hi - lo


def dilate(mask: np.ndarray, kernel_size: int) -> np.ndarray:
    mask = np.asarray(mask, dtype=bool)
    if mask.size == 0:
        return mask.copy()
    counts, _ = _window_counts(mask, kernel_size // 2)
    return counts > 0


def erode(mask: np.ndarray, kernel_size: int) -> np.ndarray:
    mask = np.asarray(mask, dtype=bool)
    if mask.size == 0:
        return mask.copy()
    counts, widths = _window_counts(mask, kernel_size // 2)
    return counts == widths


def extract_regions(mask: Sequence[bool]) -> List[SpeechRegion]:
    regions: List[SpeechRegion] = []
    region_start = None
    for i, is_speech in enumerate(mask):
        if is_speech:
            if region_start is None:
                region_start = i
        elif region_start is not None:
            regions.append(SpeechRegion(region_start, i))
            region_start = None
    if region_start is not None:
        regions.append(SpeechRegion(region_start, len(mask)))
    return regions


class EnergyVAD:
    """Energy-based voice activity detection with morphological smoothing."""

    def __init__(
        self,
        close_kernel: int = 30,
        open_kernel: int = 20,
        noise_percentile: float = 0.3,
        threshold_ratio: float = 0.4
    ):
        self.close_kernel = close_kernel
        self.open_kernel = open_kernel
        self.noise_percentile = noise_percentile
        self.threshold_ratio = threshold_ratio

    def adaptive_threshold(self, energies: np.ndarray) -> float:
        """Noise floor plus threshold_ratio of the floor-to-peak range."""
        ordered = np.sort(np.asarray(energies, dtype=np.float64))
        if ordered.size == 0:
            return 0.0
        index = min(int(ordered.size * self.noise_percentile), ordered.size - 1)
        noise_floor = ordered[index]
        return float(noise_floor + self.threshold_ratio * (ordered[-1] - noise_floor))

    def speech_mask(self, energies: Sequence[float]) -> np.ndarray:
        """Smoothed boolean speech mask, one entry per frame."""
        energies = np.asarray(energies, dtype=np.float64).reshape(-1)
        if energies.size == 0:
            return np.zeros(0, dtype=bool)

        mask = energies > self.adaptive_threshold(energies)
        # Close fills short gaps, open removes short bursts
        mask = erode(dilate(mask, self.close_kernel), self.close_kernel)
        mask = dilate(erode(mask, self.open_kernel), self.open_kernel)
        return mask

    def detect_speech_regions(self, energies: Sequence[float]) -> List[SpeechRegion]:
        return extract_regions(self.speech_mask(energies))
