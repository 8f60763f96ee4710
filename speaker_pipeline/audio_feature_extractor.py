#!/usr/bin/env python3
"""
audio_feature_extractor.py - Prosodic speaker features from raw audio

Extracts the six SpeakerFeatureVector descriptors per time window:
1. Pitch (F0) via autocorrelation of a Hann-windowed frame (50-500 Hz)
2. Pitch standard deviation across frames
3. RMS energy, mapped from -60..0 dBFS to 0..1
4. Spectral centroid of the magnitude spectrum
5. Jitter (relative pitch period perturbation)
6. Shimmer (relative energy perturbation)

Frames are 1024 samples with a 512-sample hop.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.signal import get_window

from .speaker_models import SpeakerFeatureVector

MIN_PITCH_HZ = 50.0
MAX_PITCH_HZ = 500.0


@dataclass(frozen=True)
class WindowFeatures:
    mean_pitch: Optional[float] = None
    pitch_std_dev: Optional[float] = None
    mean_energy: Optional[float] = None
    mean_spectral_centroid: Optional[float] = None
    jitter: Optional[float] = None
    shimmer: Optional[float] = None

    def feature_vector(self) -> Optional[SpeakerFeatureVector]:
        """Feature vector when at least one voiced frame was found."""
        if self.mean_pitch is None:
            return None
        return SpeakerFeatureVector(
            mean_pitch=self.mean_pitch,
            pitch_std_dev=self.pitch_std_dev or 0.0,
            mean_energy=self.mean_energy or 0.0,
            mean_spectral_centroid=self.mean_spectral_centroid or 0.0,
            mean_jitter=self.jitter or 0.0,
            mean_shimmer=self.shimmer or 0.0,
        )

    def to_dict(self) -> Dict[str, Optional[float]]:
        return {key: getattr(self, key) for key in self.__dataclass_fields__}


def _relative_perturbation(values: np.ndarray) -> Optional[float]:
    """Mean absolute successive difference divided by the mean."""
    if values.size < 2:
        return None
    mean = float(values.mean())
    if mean <= 0:
        return None
    return float(np.mean(np.abs(np.diff(values)))) / mean


class AudioFeatureExtractor:
    """Frame-level prosodic analysis aggregated over time windows."""

    def __init__(self, frame_size: int = 1024, frame_hop: int = 512):
        self.frame_size = frame_size
        self.frame_hop = frame_hop
        self._window = get_window("hann", frame_size)

    def _apply_window(self, frame: np.ndarray) -> np.ndarray:
        if frame.size == self.frame_size:
            return frame * self._window
        return frame * get_window("hann", frame.size)

    def split_frames(self, samples: np.ndarray) -> np.ndarray:
        samples = np.asarray(samples, dtype=np.float64).reshape(-1)
        if samples.size < self.frame_size:
            return np.zeros((0, self.frame_size))
        return np.lib.stride_tricks.sliding_window_view(samples, self.frame_size)[::self.frame_hop]

    def detect_pitch(self, frame: np.ndarray, sample_rate: float) -> Optional[float]:
        count = frame.size
        if count <= 64:
            return None
        windowed = self._apply_window(frame)
        autocorrelation = np.correlate(windowed, windowed, mode="full")[count - 1:]

        min_lag = int(sample_rate / MAX_PITCH_HZ)
        max_lag = min(count - 1, int(sample_rate / MIN_PITCH_HZ))
        if min_lag >= max_lag or min_lag <= 0:
            return None

        best_lag = min_lag + int(np.argmax(autocorrelation[min_lag:max_lag + 1]))
        best_value = autocorrelation[best_lag]
        zero_lag = autocorrelation[0]
        if best_value <= 0 or zero_lag <= 0 or best_value / zero_lag <= 0.2:
            return None

        pitch = sample_rate / best_lag
        if pitch < MIN_PITCH_HZ or pitch > MAX_PITCH_HZ:
            return None
        return float(pitch)

    @staticmethod
    def normalized_energy(frame: np.ndarray) -> float:
        rms = float(np.sqrt(np.mean(frame * frame)))
        if rms <= 0:
            return 0.0
        db = 20.0 * np.log10(rms)
        return float(min(1.0, max(0.0, (db + 60.0) / 60.0)))

    def spectral_centroid(self, frame: np.ndarray, sample_rate: float) -> Optional[float]:
        count = frame.size
        if count < 64:
            return None
        windowed = self._apply_window(frame)
        magnitudes = np.abs(np.fft.rfft(windowed))[:count // 2]
        total = float(magnitudes.sum())
        if total <= 0:
            return None
        freqs = np.arange(magnitudes.size) * sample_rate / count
        return float(np.dot(freqs, magnitudes) / total)

    def analyze_frames(self, frames: np.ndarray, sample_rate: float) -> WindowFeatures:
        if frames.shape[0] == 0:
            return WindowFeatures()

        pitches: List[float] = []
        energies: List[float] = []
        centroids: List[float] = []
        for frame in frames:
            pitch = self.detect_pitch(frame, sample_rate)
            if pitch is not None:
                pitches.append(pitch)
            energies.append(self.normalized_energy(frame))
            centroid = self.spectral_centroid(frame, sample_rate)
            if centroid is not None:
                centroids.append(centroid)

        pitch_array = np.array(pitches)
        energy_array = np.array(energies)
        return WindowFeatures(
            mean_pitch=float(pitch_array.mean()) if pitches else None,
            pitch_std_dev=float(pitch_array.std()) if len(pitches) > 1 else None,
            mean_energy=float(energy_array.mean()) if energies else None,
            mean_spectral_centroid=float(np.mean(centroids)) if centroids else None,
            jitter=_relative_perturbation(sample_rate / pitch_array) if len(pitches) > 1 else None,
            shimmer=_relative_perturbation(energy_array),
        )

    def analyze_window(self, samples: np.ndarray, sample_rate: float) -> WindowFeatures:
        return self.analyze_frames(self.split_frames(samples), sample_rate)

    def extract(
        self,
        samples: np.ndarray,
        sample_rate: float,
        ranges: Optional[Sequence[Tuple[float, float]]] = None
    ) -> Optional[SpeakerFeatureVector]:
        """
        Feature vector over the given (start_sec, end_sec) ranges, or the whole signal.

        Returns:
            SpeakerFeatureVector, or None when no frame is voiced
        """
        samples = np.asarray(samples, dtype=np.float64).reshape(-1)
        if ranges is None:
            return self.analyze_window(samples, sample_rate).feature_vector()

        blocks = []
        for start_sec, end_sec in ranges:
            start = max(0, int(start_sec * sample_rate))
            end = min(samples.size, int(end_sec * sample_rate))
            frames = self.split_frames(samples[start:end])
            if frames.shape[0]:
                blocks.append(frames)
        if not blocks:
            return None
        return self.analyze_frames(np.vstack(blocks), sample_rate).feature_vector()
