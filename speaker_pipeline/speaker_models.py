#!/usr/bin/env python3
"""
speaker_models.py - Shared value types for the speaker pipeline

Core types:
- SpeakerEmbedding: L2-normalized 130-dim MFCC statistics vector (cosine metrics)
- SpeakerFeatureVector: six scalar prosodic descriptors with a weighted distance
- SpeakerProfile: one speaker (chunk-local or session-global) with running centroid
- VoiceEnrollmentProfile: the persisted reference voice of the device owner

Transcript and result types:
- WordSegmentInfo: one word from the speech recognizer
- DiarizedSegment / DiarizationResult: per-chunk output

All types serialize with to_dict(); the persisted ones round-trip via from_dict().
"""

import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import numpy as np


NORM_EPSILON = 1e-10


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Speaker Embedding
# ============================================================================

class SpeakerEmbedding:
    """
    Speaker embedding derived from MFCC statistics.

    Embeddings are L2-normalized at construction so cosine similarity is a
    plain dot product. A zero vector is kept as-is (no NaN).

    Dimension breakdown (130 total):
    - 13 MFCC means
    - 13 MFCC standard deviations
    - 13 delta means
    - 13 delta-delta means
    - 78 upper-triangular correlation coefficients (13 choose 2)
    """

    __slots__ = ("_values",)

    def __init__(self, values: Sequence[float]):
        vector = np.asarray(values, dtype=np.float64).reshape(-1).copy()
        norm = float(np.linalg.norm(vector)) if vector.size else 0.0
        if norm > NORM_EPSILON:
            vector /= norm
        vector.setflags(write=False)
        self._values = vector

    @classmethod
    def pre_normalized(cls, values: Sequence[float]) -> "SpeakerEmbedding":
        """Wrap values that are already unit length (skips normalization)."""
        embedding = cls.__new__(cls)
        vector = np.asarray(values, dtype=np.float64).reshape(-1).copy()
        vector.setflags(write=False)
        embedding._values = vector
        return embedding

    @property
    def values(self) -> np.ndarray:
        return self._values

    @property
    def dimension(self) -> int:
        return int(self._values.size)

    def cosine_similarity(self, other: "SpeakerEmbedding") -> float:
        """Dot product of the normalized vectors; 0 on dimension mismatch."""
        if self.dimension != other.dimension or self.dimension == 0:
            return 0.0
        return float(np.dot(self._values, other._values))

    def cosine_distance(self, other: "SpeakerEmbedding") -> float:
        return 1.0 - self.cosine_similarity(other)

    @staticmethod
    def centroid(embeddings: Sequence["SpeakerEmbedding"]) -> Optional["SpeakerEmbedding"]:
        """Mean of the embeddings, re-normalized. None when empty."""
        if not embeddings:
            return None
        dim = embeddings[0].dimension
        if dim == 0:
            return None
        matching = [e.values for e in embeddings if e.dimension == dim]
        # Mismatched vectors are skipped but still count in the divisor
        mean = np.sum(matching, axis=0) / len(embeddings)
        return SpeakerEmbedding(mean)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SpeakerEmbedding):
            return NotImplemented
        return np.array_equal(self._values, other._values)

    def __hash__(self) -> int:
        return hash(self._values.tobytes())

    def __repr__(self) -> str:
        return f"SpeakerEmbedding(dimension={self.dimension})"

    def to_dict(self) -> Dict[str, Any]:
        return {"values": self._values.tolist()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpeakerEmbedding":
        return cls.pre_normalized(data["values"])


# ============================================================================
# Speaker Feature Vector
# ============================================================================

# Per-feature normalization ranges and weights for distance(); pitch dominates.
FEATURE_NORMALIZERS = np.array([150.0, 50.0, 20.0, 1500.0, 0.05, 0.10])
FEATURE_WEIGHTS = np.array([2.0, 1.0, 1.5, 1.5, 0.5, 0.5])


@dataclass(frozen=True)
class SpeakerFeatureVector:
    """Six scalar acoustic descriptors summarizing a speaker."""
    mean_pitch: float
    pitch_std_dev: float
    mean_energy: float
    mean_spectral_centroid: float
    mean_jitter: float
    mean_shimmer: float

    def as_array(self) -> np.ndarray:
        return np.array([
            self.mean_pitch,
            self.pitch_std_dev,
            self.mean_energy,
            self.mean_spectral_centroid,
            self.mean_jitter,
            self.mean_shimmer,
        ], dtype=np.float64)

    @classmethod
    def from_array(cls, values: Sequence[float]) -> "SpeakerFeatureVector":
        return cls(*(float(v) for v in values))

    def distance(self, other: "SpeakerFeatureVector") -> float:
        """Weighted Euclidean distance over range-normalized features."""
        diff = (self.as_array() - other.as_array()) / FEATURE_NORMALIZERS
        return float(math.sqrt(np.sum(FEATURE_WEIGHTS * diff * diff)))

    @staticmethod
    def centroid(vectors: Sequence["SpeakerFeatureVector"]) -> Optional["SpeakerFeatureVector"]:
        if not vectors:
            return None
        stacked = np.vstack([v.as_array() for v in vectors])
        return SpeakerFeatureVector.from_array(stacked.mean(axis=0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mean_pitch": self.mean_pitch,
            "pitch_std_dev": self.pitch_std_dev,
            "mean_energy": self.mean_energy,
            "mean_spectral_centroid": self.mean_spectral_centroid,
            "mean_jitter": self.mean_jitter,
            "mean_shimmer": self.mean_shimmer,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpeakerFeatureVector":
        return cls(**{key: float(data[key]) for key in cls.__dataclass_fields__})


# ============================================================================
# Speaker Profile
# ============================================================================

@dataclass(frozen=True)
class SpeakerProfile:
    """
    One speaker within a chunk, or a session-global speaker.

    Profiles are immutable; merging() returns a new profile. Merges weight
    by sample count and are order dependent, so callers must apply them in
    chunk order.
    """
    speaker_index: int
    centroid: Optional[SpeakerFeatureVector]
    sample_count: int
    mfcc_embedding: Optional[SpeakerEmbedding] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def merging(
        self,
        new_centroid: Optional[SpeakerFeatureVector],
        new_sample_count: int,
        new_embedding: Optional[SpeakerEmbedding] = None
    ) -> "SpeakerProfile":
        total = self.sample_count + new_sample_count
        if total <= 0:
            return self

        old_weight = self.sample_count / total
        new_weight = new_sample_count / total

        if self.centroid is not None and new_centroid is not None:
            merged_centroid = SpeakerFeatureVector.from_array(
                self.centroid.as_array() * old_weight + new_centroid.as_array() * new_weight
            )
        else:
            merged_centroid = self.centroid if self.centroid is not None else new_centroid

        if self.mfcc_embedding is not None and new_embedding is not None:
            merged_embedding = SpeakerEmbedding(
                self.mfcc_embedding.values * old_weight + new_embedding.values * new_weight
            )
        else:
            merged_embedding = self.mfcc_embedding if self.mfcc_embedding is not None else new_embedding

        return replace(
            self,
            centroid=merged_centroid,
            sample_count=total,
            mfcc_embedding=merged_embedding
        )

    def with_index(self, speaker_index: int) -> "SpeakerProfile":
        return replace(self, speaker_index=speaker_index)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "speaker_index": self.speaker_index,
            "centroid": self.centroid.to_dict() if self.centroid else None,
            "sample_count": self.sample_count,
            "mfcc_embedding": self.mfcc_embedding.to_dict() if self.mfcc_embedding else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpeakerProfile":
        return cls(
            id=data.get("id") or str(uuid.uuid4()),
            speaker_index=int(data["speaker_index"]),
            centroid=SpeakerFeatureVector.from_dict(data["centroid"]) if data.get("centroid") else None,
            sample_count=int(data.get("sample_count", 0)),
            mfcc_embedding=SpeakerEmbedding.from_dict(data["mfcc_embedding"]) if data.get("mfcc_embedding") else None,
        )


# ============================================================================
# Voice Enrollment
# ============================================================================

class IdentityLabel(Enum):
    """Identity assigned to a global speaker."""
    ME = "me"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class EnrollmentQualityStats:
    accepted_samples: int = 0
    average_snr_db: float = 0.0
    average_speech_ratio: float = 0.0
    average_clipping_ratio: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted_samples": self.accepted_samples,
            "average_snr_db": self.average_snr_db,
            "average_speech_ratio": self.average_speech_ratio,
            "average_clipping_ratio": self.average_clipping_ratio,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnrollmentQualityStats":
        return cls(
            accepted_samples=int(data.get("accepted_samples", 0)),
            average_snr_db=float(data.get("average_snr_db", 0.0)),
            average_speech_ratio=float(data.get("average_speech_ratio", 0.0)),
            average_clipping_ratio=float(data.get("average_clipping_ratio", 0.0)),
        )


@dataclass(frozen=True)
class VoiceEnrollmentProfile:
    """
    Persisted reference voice of the device owner.

    Created by enrollment, adapted (with a version bump) after confident
    matches, and deactivated when the user clears enrollment.
    """
    display_name: str
    reference_embedding: Optional[SpeakerEmbedding]
    reference_centroid: Optional[SpeakerFeatureVector] = None
    version: int = 1
    is_active: bool = True
    quality_stats: EnrollmentQualityStats = field(default_factory=EnrollmentQualityStats)
    adaptation_count: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "reference_embedding": self.reference_embedding.to_dict() if self.reference_embedding else None,
            "reference_centroid": self.reference_centroid.to_dict() if self.reference_centroid else None,
            "version": self.version,
            "is_active": self.is_active,
            "quality_stats": self.quality_stats.to_dict(),
            "adaptation_count": self.adaptation_count,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VoiceEnrollmentProfile":
        embedding = data.get("reference_embedding")
        centroid = data.get("reference_centroid")
        return cls(
            id=data["id"],
            display_name=data.get("display_name", ""),
            reference_embedding=SpeakerEmbedding.from_dict(embedding) if embedding else None,
            reference_centroid=SpeakerFeatureVector.from_dict(centroid) if centroid else None,
            version=int(data.get("version", 1)),
            is_active=bool(data.get("is_active", True)),
            quality_stats=EnrollmentQualityStats.from_dict(data.get("quality_stats") or {}),
            adaptation_count=int(data.get("adaptation_count", 0)),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else _utc_now(),
            updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else _utc_now(),
        )


@dataclass(frozen=True)
class SpeakerIdentityMatchResult:
    identity: IdentityLabel
    distance: float
    confidence: float
    used_mfcc: bool
    decision_reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity.value,
            "distance": round(self.distance, 4),
            "confidence": round(self.confidence, 4),
            "used_mfcc": self.used_mfcc,
            "decision_reason": self.decision_reason,
        }


@dataclass(frozen=True)
class SpeakerIdentityAssignment:
    global_speaker_index: int
    result: SpeakerIdentityMatchResult

    def to_dict(self) -> Dict[str, Any]:
        return {"global_speaker_index": self.global_speaker_index, **self.result.to_dict()}


@dataclass(frozen=True)
class EnrollmentSampleQuality:
    """Quality measurements of one enrollment take."""
    snr_db: float
    speech_ratio: float
    clipping_ratio: float
    duration_sec: float
    accepted: bool
    rejection_reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "snr_db": round(self.snr_db, 2),
            "speech_ratio": round(self.speech_ratio, 3),
            "clipping_ratio": round(self.clipping_ratio, 4),
            "duration_sec": round(self.duration_sec, 2),
            "accepted": self.accepted,
            "rejection_reasons": list(self.rejection_reasons),
        }


# ============================================================================
# Transcript and Result Types
# ============================================================================

@dataclass(frozen=True)
class WordSegmentInfo:
    """One recognized word with timing (seconds) and optional acoustics."""
    substring: str
    timestamp: float
    duration: float
    confidence: float = 1.0
    average_pitch: Optional[float] = None
    pitch_std_dev: Optional[float] = None
    average_energy: Optional[float] = None
    average_spectral_centroid: Optional[float] = None
    average_jitter: Optional[float] = None
    average_shimmer: Optional[float] = None

    @property
    def end_time(self) -> float:
        return self.timestamp + self.duration

    def feature_vector(self) -> Optional[SpeakerFeatureVector]:
        """Feature vector from the recognizer's voice analytics, if present."""
        if self.average_pitch is None:
            return None
        return SpeakerFeatureVector(
            mean_pitch=self.average_pitch,
            pitch_std_dev=self.pitch_std_dev or 0.0,
            mean_energy=self.average_energy or 0.0,
            mean_spectral_centroid=self.average_spectral_centroid or 0.0,
            mean_jitter=self.average_jitter or 0.0,
            mean_shimmer=self.average_shimmer or 0.0,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {key: getattr(self, key) for key in self.__dataclass_fields__}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WordSegmentInfo":
        known = {key: data[key] for key in cls.__dataclass_fields__ if key in data}
        return cls(**known)


@dataclass(frozen=True)
class DiarizedSegment:
    """A run of words attributed to one speaker, offsets in ms from chunk start."""
    speaker_index: int
    text: str
    start_offset_ms: int
    end_offset_ms: int
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def with_speaker(self, speaker_index: int) -> "DiarizedSegment":
        return replace(self, speaker_index=speaker_index)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "speaker_index": self.speaker_index,
            "text": self.text,
            "start_offset_ms": self.start_offset_ms,
            "end_offset_ms": self.end_offset_ms,
        }


@dataclass
class DiarizationResult:
    """Complete per-chunk diarization output."""
    segments: List[DiarizedSegment]
    speaker_count: int
    speaker_profiles: List[SpeakerProfile] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "segments": [s.to_dict() for s in self.segments],
            "speaker_count": self.speaker_count,
            "speaker_profiles": [p.to_dict() for p in self.speaker_profiles],
        }
