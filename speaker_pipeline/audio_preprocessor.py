#!/usr/bin/env python3
"""
audio_preprocessor.py - Real-time capture-path audio preprocessing

Runs once per incoming capture buffer, sequentially from the capture callback:

    NoiseReducer -> AutomaticGainController -> VoiceActivityDetector (+hangover)
        -> AudioLevelMonitor

The output is the full gained waveform (never zeroed), an advisory speech
flag, and level metrics for UI meters. No stage logs or raises; every stage
returns a well-defined value for empty input.

Usage:
    from speaker_pipeline.audio_preprocessor import AudioPreprocessor

    preprocessor = AudioPreprocessor(hangover_frames=3)
    result = preprocessor.process(buffer, sample_rate=16000)
    # result.samples, result.is_speech, result.level.rms, result.level.peak
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import ClassVar, Dict, List, Optional

import numpy as np
from scipy.signal import lfilter

from .diarization_config import PreprocessingConfig


def _as_float_array(samples) -> np.ndarray:
    return np.asarray(samples, dtype=np.float32).reshape(-1)


def rms_energy(samples: np.ndarray) -> float:
    """Root-mean-square of a buffer (0 for empty input)."""
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))


# ============================================================================
# Result Types
# ============================================================================

@dataclass(frozen=True)
class AudioLevel:
    """Buffer level for UI meters; rms and peak are in [0, 1]."""
    rms: float
    peak: float
    is_speech: bool

    SILENCE: ClassVar["AudioLevel"]

    def to_dict(self) -> Dict[str, float]:
        return {"rms": round(self.rms, 5), "peak": round(self.peak, 5), "is_speech": self.is_speech}


AudioLevel.SILENCE = AudioLevel(rms=0.0, peak=0.0, is_speech=False)


@dataclass(frozen=True)
class ProcessedAudioResult:
    samples: np.ndarray
    is_speech: bool
    level: AudioLevel


# ============================================================================
# Processing Stages
# ============================================================================

class AudioProcessingStage(ABC):
    """A stage that maps a sample buffer to a sample buffer."""

    @abstractmethod
    def process(self, samples: np.ndarray, sample_rate: float) -> np.ndarray:
        ...


class NoiseReducer(AudioProcessingStage):
    """
    First-order high-pass filter removing rumble below the cutoff.

    There is no amplitude gate: quiet far-field speech passes through with
    only the filter's own attenuation.
    """

    def __init__(self, cutoff_hz: float = 80.0):
        self.cutoff_hz = cutoff_hz

    def alpha(self, sample_rate: float) -> float:
        rc = 1.0 / (2.0 * math.pi * self.cutoff_hz)
        dt = 1.0 / sample_rate
        return rc / (rc + dt)

    def process(self, samples: np.ndarray, sample_rate: float) -> np.ndarray:
        samples = _as_float_array(samples)
        if samples.size <= 1:
            return samples.copy()

        a = self.alpha(sample_rate)
        # y[i] = a*(y[i-1] + x[i] - x[i-1]), with y[0] = x[0]
        zi = np.array([(1.0 - a) * samples[0]], dtype=np.float64)
        filtered, _ = lfilter([a, -a], [1.0, -a], samples.astype(np.float64), zi=zi)
        return filtered.astype(np.float32)

    @staticmethod
    def rms_energy(samples: np.ndarray) -> float:
        return rms_energy(_as_float_array(samples))


class AutomaticGainController(AudioProcessingStage):
    """Scales buffers toward a target RMS, hard-clipped to [-1, 1]."""

    def __init__(
        self,
        target_rms: float = 0.08,
        max_gain: float = 40.0,
        min_gain: float = 1.0,
        silence_threshold: float = 0.00001
    ):
        self.target_rms = target_rms
        self.max_gain = max_gain
        self.min_gain = min_gain
        self.silence_threshold = silence_threshold

    def gain_for(self, rms: float) -> float:
        return min(max(self.target_rms / rms, self.min_gain), self.max_gain)

    def process(self, samples: np.ndarray, sample_rate: float) -> np.ndarray:
        samples = _as_float_array(samples)
        if samples.size == 0:
            return samples.copy()

        rms = rms_energy(samples)
        # Below the noise floor: leave untouched rather than amplify hiss
        if rms <= self.silence_threshold:
            return samples.copy()

        gained = samples * np.float32(self.gain_for(rms))
        return np.clip(gained, -1.0, 1.0)


class VoiceActivityDetector(AudioProcessingStage):
    """
    Energy + zero-crossing-rate speech classifier.

    A buffer is speech when its RMS exceeds energy_threshold and its ZCR lies
    strictly between zcr_low and zcr_high. Very high ZCR (alternating-sign
    noise) and silence are both rejected. process() is a pass-through; the
    classification is advisory only.
    """

    def __init__(
        self,
        energy_threshold: float = 0.002,
        zcr_low: float = 0.02,
        zcr_high: float = 0.5
    ):
        self.energy_threshold = energy_threshold
        self.zcr_low = zcr_low
        self.zcr_high = zcr_high

    def process(self, samples: np.ndarray, sample_rate: float) -> np.ndarray:
        return samples

    @staticmethod
    def zero_crossing_rate(samples: np.ndarray) -> float:
        samples = _as_float_array(samples)
        if samples.size < 2:
            return 0.0
        positive = samples >= 0
        crossings = np.count_nonzero(positive[1:] != positive[:-1])
        return crossings / (samples.size - 1)

    def detect_speech(self, samples: np.ndarray, sample_rate: float) -> bool:
        samples = _as_float_array(samples)
        if samples.size == 0:
            return False
        energy = rms_energy(samples)
        zcr = self.zero_crossing_rate(samples)
        return energy > self.energy_threshold and self.zcr_low < zcr < self.zcr_high


class AudioLevelMonitor:
    """Computes RMS and peak levels for UI meters."""

    def calculate_level(self, samples: np.ndarray, is_speech: bool) -> AudioLevel:
        samples = _as_float_array(samples)
        if samples.size == 0:
            return AudioLevel.SILENCE
        rms = min(rms_energy(samples), 1.0)
        peak = min(float(np.max(np.abs(samples))), 1.0)
        return AudioLevel(rms=rms, peak=peak, is_speech=is_speech)


# ============================================================================
# Composite Pipeline
# ============================================================================

class AudioPreprocessor:
    """
    Capture-path pipeline: high-pass, gain, speech detection with hangover.

    The hangover keeps reporting speech for a few buffers after the detector
    drops out so trailing syllables are not cut. State is private to the
    capture thread; call reset() when a capture session restarts.
    """

    def __init__(
        self,
        noise_reducer: Optional[NoiseReducer] = None,
        gain_controller: Optional[AutomaticGainController] = None,
        detector: Optional[VoiceActivityDetector] = None,
        level_monitor: Optional[AudioLevelMonitor] = None,
        hangover_frames: int = 3
    ):
        self.noise_reducer = noise_reducer or NoiseReducer()
        self.gain_controller = gain_controller or AutomaticGainController()
        self.detector = detector or VoiceActivityDetector()
        self.level_monitor = level_monitor or AudioLevelMonitor()
        self.hangover_frames = max(0, hangover_frames)
        self._hangover_remaining = 0

    @classmethod
    def from_config(cls, config: PreprocessingConfig) -> "AudioPreprocessor":
        return cls(
            noise_reducer=NoiseReducer(cutoff_hz=config.high_pass_cutoff_hz),
            gain_controller=AutomaticGainController(
                target_rms=config.target_rms,
                max_gain=config.max_gain,
                min_gain=config.min_gain,
                silence_threshold=config.silence_threshold
            ),
            detector=VoiceActivityDetector(
                energy_threshold=config.energy_threshold,
                zcr_low=config.zcr_low,
                zcr_high=config.zcr_high
            ),
            hangover_frames=config.hangover_frames
        )

    @property
    def hangover_remaining(self) -> int:
        return self._hangover_remaining

    def process(self, samples: np.ndarray, sample_rate: float) -> ProcessedAudioResult:
        samples = _as_float_array(samples)
        if samples.size == 0:
            return ProcessedAudioResult(samples=samples, is_speech=False, level=AudioLevel.SILENCE)

        processed = self.noise_reducer.process(samples, sample_rate)
        processed = self.gain_controller.process(processed, sample_rate)
        raw_is_speech = self.detector.detect_speech(processed, sample_rate)
        is_speech = self._apply_hangover(raw_is_speech)

        level = self.level_monitor.calculate_level(processed, is_speech)
        return ProcessedAudioResult(samples=processed, is_speech=is_speech, level=level)

    def _apply_hangover(self, raw_is_speech: bool) -> bool:
        if raw_is_speech:
            self._hangover_remaining = self.hangover_frames
            return True
        if self._hangover_remaining > 0:
            self._hangover_remaining -= 1
            return True
        return False

    def reset(self) -> None:
        self._hangover_remaining = 0


# ============================================================================
# Meter Collector
# ============================================================================

@dataclass(frozen=True)
class MeterSnapshot:
    current_level: float
    recent_levels: List[float]
    total_updates: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "current_level": round(self.current_level, 4),
            "recent_levels": [round(v, 4) for v in self.recent_levels],
            "total_updates": self.total_updates,
        }


@dataclass
class AudioMeterCollector:
    """
    Rolling history of display levels for waveform meters.

    Owned and updated by the capture thread only; readers on other threads
    take an immutable snapshot().
    """
    max_samples: int = 3000
    display_count: int = 30
    min_db: float = -60.0
    _buffer: np.ndarray = field(init=False, repr=False)
    _write_index: int = field(default=0, init=False, repr=False)
    _count: int = field(default=0, init=False, repr=False)
    _total_updates: int = field(default=0, init=False, repr=False)
    _current_level: float = field(default=0.0, init=False, repr=False)

    def __post_init__(self):
        self._buffer = np.zeros(self.max_samples, dtype=np.float32)

    def normalize_db(self, db: float) -> float:
        """Map dBFS to a perceptual 0..1 display value."""
        if db <= self.min_db:
            return 0.0
        if db >= 0.0:
            return 1.0
        return float(10.0 ** (db / 50.0))

    def update(self, average_power_db: float, peak_power_db: float) -> float:
        blended = self.normalize_db(average_power_db) * 0.7 + self.normalize_db(peak_power_db) * 0.3
        self._current_level = blended
        self._buffer[self._write_index] = blended
        self._write_index = (self._write_index + 1) % self.max_samples
        self._count = min(self._count + 1, self.max_samples)
        self._total_updates += 1
        return blended

    def update_from_level(self, level: AudioLevel) -> float:
        """Feed an AudioLevel from the preprocessor (linear rms/peak)."""
        return self.update(_to_dbfs(level.rms), _to_dbfs(level.peak))

    def recent_levels(self) -> List[float]:
        available = min(self._count, self.display_count)
        levels = [
            float(self._buffer[(self._write_index - 1 - i) % self.max_samples])
            for i in reversed(range(available))
        ]
        return [0.0] * (self.display_count - available) + levels

    def snapshot(self) -> MeterSnapshot:
        return MeterSnapshot(
            current_level=self._current_level,
            recent_levels=self.recent_levels(),
            total_updates=self._total_updates
        )

    def reset(self) -> None:
        self._buffer = np.zeros(self.max_samples, dtype=np.float32)
        self._write_index = 0
        self._count = 0
        self._total_updates = 0
        self._current_level = 0.0


def _to_dbfs(value: float) -> float:
    if value <= 0.0:
        return -160.0
    return 20.0 * math.log10(value)
