#!/usr/bin/env python3
"""
mel_filterbank.py - MFCC extraction for speaker analysis

Extracts 13 Mel-frequency cepstral coefficients per frame with delta and
delta-delta features, plus per-frame RMS energy. The complete pipeline:

1. Pre-emphasis (0.97)
2. Framing (25ms frames, 10ms hop at 16kHz)
3. Hamming window
4. Zero-padded 512-point FFT -> power spectrum
5. Triangular mel filterbank (26 filters, 0 Hz to Nyquist)
6. Log compression (floored at 1e-10)
7. DCT-II -> 13 MFCCs
8. Regression deltas and delta-deltas

Audio chunk files are read with soundfile and downmixed to mono; other
sample rates are resampled to 16kHz with scipy's polyphase filter.
"""

import math
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import soundfile as sf
from scipy.signal import get_window, resample_poly

from .diarization_config import MFCCConfig
from .diarization_errors import AudioLoadError

LOG_FLOOR = 1e-10


# ============================================================================
# Mel Scale
# ============================================================================

def hz_to_mel(hz):
    return 2595.0 * np.log10(1.0 + np.asarray(hz, dtype=np.float64) / 700.0)


def mel_to_hz(mel):
    return 700.0 * (np.power(10.0, np.asarray(mel, dtype=np.float64) / 2595.0) - 1.0)


def pre_emphasis(samples: np.ndarray, coefficient: float = 0.97) -> np.ndarray:
    """y[0] = x[0], y[i] = x[i] - coefficient * x[i-1]."""
    samples = np.asarray(samples, dtype=np.float64)
    if samples.size <= 1:
        return samples.copy()
    emphasized = np.empty_like(samples)
    emphasized[0] = samples[0]
    emphasized[1:] = samples[1:] - coefficient * samples[:-1]
    return emphasized


def compute_deltas(features: np.ndarray, width: int = 2) -> np.ndarray:
    """
    Regression deltas over time with edge clamping.

    delta[t] = sum_{n=1..width} n * (c[t+n] - c[t-n]) / (2 * sum n^2)
    """
    features = np.asarray(features, dtype=np.float64)
    if features.shape[0] == 0:
        return features.copy()
    if width <= 0:
        return np.zeros_like(features)

    num_frames = features.shape[0]
    padded = np.pad(features, ((width, width), (0, 0)), mode="edge")
    denominator = 2.0 * sum(n * n for n in range(1, width + 1))

    deltas = np.zeros_like(features)
    for n in range(1, width + 1):
        ahead = padded[width + n:width + n + num_frames]
        behind = padded[width - n:width - n + num_frames]
        deltas += n * (ahead - behind)
    return deltas / denominator


def build_dct_matrix(output_dim: int, input_dim: int) -> np.ndarray:
    """Unnormalized DCT-II: M[k, n] = cos(pi * (n + 0.5) * k / N)."""
    k = np.arange(output_dim)[:, None]
    n = np.arange(input_dim)[None, :]
    return np.cos(np.pi / input_dim * (n + 0.5) * k)


# ============================================================================
# Result
# ============================================================================

@dataclass(frozen=True)
class MFCCResult:
    """Per-frame features; 2-D arrays are (num_frames, num_mfccs)."""
    mfccs: np.ndarray
    deltas: np.ndarray
    delta_deltas: np.ndarray
    rms_energies: np.ndarray
    frame_timestamps: np.ndarray

    @property
    def num_frames(self) -> int:
        return int(self.mfccs.shape[0])

    @classmethod
    def empty(cls, num_mfccs: int = 13) -> "MFCCResult":
        blank = np.zeros((0, num_mfccs), dtype=np.float64)
        return cls(
            mfccs=blank,
            deltas=blank.copy(),
            delta_deltas=blank.copy(),
            rms_energies=np.zeros(0, dtype=np.float64),
            frame_timestamps=np.zeros(0, dtype=np.float64)
        )


# ============================================================================
# MFCC Extractor
# ============================================================================

class MelFilterbank:
    """MFCC + delta front end. Filterbanks are cached per sample rate."""

    def __init__(self, config: Optional[MFCCConfig] = None):
        self.config = config or MFCCConfig()
        self._window = get_window("hamming", self.config.frame_length)
        self._dct = build_dct_matrix(self.config.num_mfccs, self.config.num_mel_filters)
        self._filterbanks = {}

    def create_filterbank(self, sample_rate: float) -> np.ndarray:
        """Triangular filters, shape (num_mel_filters, fft_size // 2 + 1)."""
        cached = self._filterbanks.get(sample_rate)
        if cached is not None:
            return cached

        cfg = self.config
        half_fft = cfg.fft_size // 2 + 1
        num_points = cfg.num_mel_filters + 2
        mel_points = np.linspace(hz_to_mel(0.0), hz_to_mel(sample_rate / 2.0), num_points)
        bins = np.floor(mel_to_hz(mel_points) * cfg.fft_size / sample_rate).astype(int)

        bank = np.zeros((cfg.num_mel_filters, half_fft), dtype=np.float64)
        for m in range(cfg.num_mel_filters):
            left, center, right = bins[m], bins[m + 1], bins[m + 2]
            if center > left:
                for k in range(left, center + 1):
                    if 0 <= k < half_fft:
                        bank[m, k] = (k - left) / (center - left)
            if right > center:
                for k in range(center, right + 1):
                    if 0 <= k < half_fft:
                        bank[m, k] = (right - k) / (right - center)

        self._filterbanks[sample_rate] = bank
        return bank

    def extract_mfccs(self, samples: np.ndarray, sample_rate: float) -> MFCCResult:
        """
        Extract MFCCs, deltas, delta-deltas and frame energies.

        Args:
            samples: Mono float samples in [-1, 1]
            sample_rate: Sample rate in Hz (16000 expected)

        Returns:
            MFCCResult; empty when the input is shorter than one frame
        """
        cfg = self.config
        samples = np.asarray(samples, dtype=np.float64).reshape(-1)
        if samples.size < cfg.frame_length:
            return MFCCResult.empty(cfg.num_mfccs)

        emphasized = pre_emphasis(samples, cfg.pre_emphasis)
        frames = np.lib.stride_tricks.sliding_window_view(emphasized, cfg.frame_length)[::cfg.hop_length]
        frames = frames * self._window

        energies = np.sqrt(np.mean(frames * frames, axis=1))

        spectrum = np.fft.rfft(frames, n=cfg.fft_size, axis=1)
        power = spectrum.real ** 2 + spectrum.imag ** 2

        mel_energies = power @ self.create_filterbank(sample_rate).T
        log_mel = np.log(np.maximum(mel_energies, LOG_FLOOR))
        mfccs = log_mel @ self._dct.T

        deltas = compute_deltas(mfccs, cfg.delta_width)
        delta_deltas = compute_deltas(deltas, cfg.delta_width)
        timestamps = np.arange(frames.shape[0]) * cfg.hop_length / float(sample_rate)

        return MFCCResult(
            mfccs=mfccs,
            deltas=deltas,
            delta_deltas=delta_deltas,
            rms_energies=energies,
            frame_timestamps=timestamps
        )


# ============================================================================
# Audio I/O
# ============================================================================

def read_audio_samples(path: str) -> Tuple[np.ndarray, int]:
    """
    Read an audio file as mono float32 samples.

    Multi-channel audio is downmixed by averaging channels.

    Raises:
        AudioLoadError: If the file cannot be decoded or holds no samples
    """
    try:
        data, sample_rate = sf.read(path, dtype="float32", always_2d=True)
    except (RuntimeError, OSError) as e:
        raise AudioLoadError(str(path), str(e)) from e

    if data.shape[0] == 0 or data.shape[1] == 0:
        raise AudioLoadError(str(path), "file contains no samples")

    mono = data[:, 0] if data.shape[1] == 1 else data.mean(axis=1)
    return mono.astype(np.float32), int(sample_rate)


def resample_audio(samples: np.ndarray, from_rate: float, to_rate: float) -> np.ndarray:
    """
    Band-limited polyphase resampling.

    Rates are rounded to whole Hz and reduced by their gcd to the up/down
    factors of scipy.signal.resample_poly, whose FIR low-pass removes content
    above the new Nyquist frequency.
    """
    samples = np.asarray(samples, dtype=np.float32).reshape(-1)
    from_hz, to_hz = int(round(from_rate)), int(round(to_rate))
    if from_hz == to_hz or samples.size == 0:
        return samples
    divisor = math.gcd(from_hz, to_hz)
    resampled = resample_poly(samples, to_hz // divisor, from_hz // divisor)
    return resampled.astype(np.float32)
