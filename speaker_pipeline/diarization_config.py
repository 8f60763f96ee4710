#!/usr/bin/env python3
"""
diarization_config.py - Configuration for the speaker pipeline

Each processing stage accepts its tunables as keyword arguments; the dataclasses
here group them so a whole pipeline can be configured, logged (to_dict) and
overridden from the environment in one place.

Environment overrides (DiarizationConfig.from_env):
    DIARIZATION_DEBUG=1                  Verbose stderr diagnostics
    DIARIZATION_MAX_SPEAKERS=N           AHC cluster cap
    DIARIZATION_DISTANCE_THRESHOLD=F     AHC cosine stopping distance
    DIARIZATION_ALIGNMENT_THRESHOLD=F    Cross-chunk embedding match distance
    DIARIZATION_IDENTITY_ACCEPT=F        Enrollment accept distance (MFCC)
    DIARIZATION_HANGOVER_FRAMES=N        Real-time VAD hangover length
"""

import os
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional


def debug_enabled() -> bool:
    """True when DIARIZATION_DEBUG=1 is set."""
    return os.environ.get("DIARIZATION_DEBUG", "0") == "1"


# ============================================================================
# Stage Configurations
# ============================================================================

@dataclass
class PreprocessingConfig:
    """Real-time capture path: high-pass, AGC, VAD and hangover."""
    high_pass_cutoff_hz: float = 80.0
    target_rms: float = 0.08
    max_gain: float = 40.0
    min_gain: float = 1.0
    silence_threshold: float = 0.00001
    energy_threshold: float = 0.002
    zcr_low: float = 0.02
    zcr_high: float = 0.5
    hangover_frames: int = 3

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MFCCConfig:
    """MFCC front end. Frame/hop are in samples at sample_rate."""
    sample_rate: int = 16000
    frame_length: int = 400
    hop_length: int = 160
    fft_size: int = 512
    num_mel_filters: int = 26
    num_mfccs: int = 13
    pre_emphasis: float = 0.97
    delta_width: int = 2

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SegmentationConfig:
    """EnergyVAD region detection and BIC change-point search."""
    close_kernel: int = 30
    open_kernel: int = 20
    noise_percentile: float = 0.3
    threshold_ratio: float = 0.4
    bic_lambda: float = 1.5
    min_window_frames: int = 100
    growth_frames: int = 50
    min_segment_frames: int = 50

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ClusteringProfile(Enum):
    """Pre-defined AHC settings."""

    # Fewer speakers, merges borderline clusters
    CONSERVATIVE = "conservative"

    # Default calibration
    BALANCED = "balanced"

    # Splits more eagerly, may over-segment
    SENSITIVE = "sensitive"

    CUSTOM = "custom"


@dataclass
class ClusteringConfig:
    """
    Agglomerative clustering settings.

    Attributes:
        distance_threshold: Cosine distance above which clusters stop merging.
                            Lower values = more speakers detected.
        max_clusters: Hard cap on the number of clusters per chunk.
    """
    distance_threshold: float = 0.45
    max_clusters: int = 10
    profile: str = "custom"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_profile(cls, profile: ClusteringProfile) -> "ClusteringConfig":
        if profile == ClusteringProfile.CONSERVATIVE:
            return cls(distance_threshold=0.6, max_clusters=6, profile="conservative")
        elif profile == ClusteringProfile.BALANCED:
            return cls(distance_threshold=0.45, max_clusters=10, profile="balanced")
        elif profile == ClusteringProfile.SENSITIVE:
            return cls(distance_threshold=0.35, max_clusters=10, profile="sensitive")
        else:
            return cls(profile="custom")


@dataclass
class SmoothingConfig:
    """Turn smoothing, durations in milliseconds."""
    frame_duration_ms: float = 10.0
    min_duration_ms: float = 500.0
    collar_ms: float = 300.0
    max_isolated_ms: float = 1000.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AlignmentConfig:
    """Cross-chunk matching thresholds."""
    embedding_threshold: float = 0.35
    feature_threshold: float = 2.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class IdentityMatchingConfig:
    """Enrollment matching and adaptation thresholds."""
    accept_mfcc: float = 0.30
    review_mfcc: float = 0.40
    accept_legacy: float = 1.30
    review_legacy: float = 2.00
    adapt_mfcc: float = 0.22
    adapt_legacy: float = 0.90
    adaptation_alpha: float = 0.20

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EnrollmentConfig:
    """Quality gate for enrollment takes."""
    min_duration_sec: float = 4.5
    max_duration_sec: float = 15.0
    min_snr_db: float = 8.0
    min_speech_ratio: float = 0.45
    max_speech_ratio: float = 0.98
    max_clipping_ratio: float = 0.02
    clipping_level: float = 0.98
    min_speech_frames: int = 12
    min_accepted_samples: int = 3
    outlier_min_samples: int = 6
    outlier_drop_fraction: float = 0.10

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ============================================================================
# Pipeline Configuration
# ============================================================================

_SECTIONS = {
    "preprocessing": PreprocessingConfig,
    "mfcc": MFCCConfig,
    "segmentation": SegmentationConfig,
    "clustering": ClusteringConfig,
    "smoothing": SmoothingConfig,
    "alignment": AlignmentConfig,
    "identity": IdentityMatchingConfig,
    "enrollment": EnrollmentConfig,
}


@dataclass
class DiarizationConfig:
    """Aggregate configuration for the whole speaker pipeline."""
    preprocessing: PreprocessingConfig = field(default_factory=PreprocessingConfig)
    mfcc: MFCCConfig = field(default_factory=MFCCConfig)
    segmentation: SegmentationConfig = field(default_factory=SegmentationConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    smoothing: SmoothingConfig = field(default_factory=SmoothingConfig)
    alignment: AlignmentConfig = field(default_factory=AlignmentConfig)
    identity: IdentityMatchingConfig = field(default_factory=IdentityMatchingConfig)
    enrollment: EnrollmentConfig = field(default_factory=EnrollmentConfig)
    debug: bool = False
    max_workers: int = 2

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DiarizationConfig":
        """Build from a nested dict; unknown keys are ignored."""
        kwargs: Dict[str, Any] = {}
        for name, section_cls in _SECTIONS.items():
            values = data.get(name) or {}
            known = {k: v for k, v in values.items() if k in section_cls.__dataclass_fields__}
            kwargs[name] = section_cls(**known)
        if "debug" in data:
            kwargs["debug"] = bool(data["debug"])
        if "max_workers" in data:
            kwargs["max_workers"] = int(data["max_workers"])
        return cls(**kwargs)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DiarizationConfig":
        """Defaults with DIARIZATION_* environment overrides applied."""
        env = os.environ if environ is None else environ
        config = cls()
        config.debug = env.get("DIARIZATION_DEBUG", "0") == "1"

        if env.get("DIARIZATION_MAX_SPEAKERS"):
            config.clustering.max_clusters = max(1, int(env["DIARIZATION_MAX_SPEAKERS"]))
        if env.get("DIARIZATION_DISTANCE_THRESHOLD"):
            config.clustering.distance_threshold = float(env["DIARIZATION_DISTANCE_THRESHOLD"])
        if env.get("DIARIZATION_ALIGNMENT_THRESHOLD"):
            config.alignment.embedding_threshold = float(env["DIARIZATION_ALIGNMENT_THRESHOLD"])
        if env.get("DIARIZATION_IDENTITY_ACCEPT"):
            config.identity.accept_mfcc = float(env["DIARIZATION_IDENTITY_ACCEPT"])
        if env.get("DIARIZATION_HANGOVER_FRAMES"):
            config.preprocessing.hangover_frames = max(0, int(env["DIARIZATION_HANGOVER_FRAMES"]))
        return config
