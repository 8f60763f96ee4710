#!/usr/bin/env python3
"""
voice_enrollment.py - Builds and persists the owner's reference voice

Workflow:
1. The user records several short takes (ideally one per prompt).
2. Each take is analyzed: MFCC + EnergyVAD, an embedding over the speech
   frames, a prosodic feature vector and quality measurements (SNR, speech
   ratio, clipping, duration). Takes that fail the quality gate are rejected.
3. finalize() averages the accepted takes (dropping outlier embeddings when
   there are enough of them) into a VoiceEnrollmentProfile and stores it as
   the active profile with a bumped version.

VoiceEnrollmentStore keeps the profile in a small JSON file that is replaced
atomically on every write.
"""

import json
import os
import sys
import tempfile
import threading
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple

import numpy as np

from .audio_feature_extractor import AudioFeatureExtractor
from .diarization_config import EnrollmentConfig, MFCCConfig, SegmentationConfig, debug_enabled
from .diarization_errors import (
    EmbeddingUnavailableError,
    InsufficientAcceptedSamplesError,
    InsufficientSpeechError,
    LowQualitySampleError,
    PromptNotFoundError,
)
from .energy_vad import EnergyVAD
from .json_serialization_utils import safe_json_dumps
from .mel_filterbank import MelFilterbank, read_audio_samples, resample_audio
from .segment_embedder import SegmentEmbedder
from .speaker_models import (
    EnrollmentQualityStats,
    EnrollmentSampleQuality,
    SpeakerEmbedding,
    SpeakerFeatureVector,
    VoiceEnrollmentProfile,
)

CANONICAL_SAMPLE_RATE = 16000
NO_NOISE_SNR_DB = 40.0
ENERGY_FLOOR = 1e-6


@dataclass(frozen=True)
class EnrollmentPrompt:
    id: int
    style_label: str
    text: str

    def to_dict(self) -> Dict[str, object]:
        return {"id": self.id, "style_label": self.style_label, "text": self.text}


DEFAULT_PROMPTS = [
    EnrollmentPrompt(1, "normal", "The weather is nice today, so I am going for a walk."),
    EnrollmentPrompt(2, "quiet", "Please review this carefully somewhere calm and quiet."),
    EnrollmentPrompt(3, "loud", "The next meeting starts at three in the main conference room."),
    EnrollmentPrompt(4, "fast", "The documents you need are attached to yesterday's email."),
    EnrollmentPrompt(5, "slow", "Let us go through the important points one at a time."),
    EnrollmentPrompt(6, "question", "Is now really the best time to prioritize this proposal?"),
    EnrollmentPrompt(7, "numbers", "Sales were one twenty in January and one fifty in March."),
    EnrollmentPrompt(8, "names", "We meet in Boston, then Chicago, then Seattle."),
]


@dataclass(frozen=True)
class EnrollmentTake:
    prompt_id: int
    embedding: SpeakerEmbedding
    centroid: Optional[SpeakerFeatureVector]
    quality: EnrollmentSampleQuality


# ============================================================================
# Persistence
# ============================================================================

class VoiceEnrollmentStore:
    """
    JSON-file storage for the enrollment profile.

    The file holds the latest profile (active or deactivated) so versions
    keep increasing across re-enrollments.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _read(self) -> Optional[VoiceEnrollmentProfile]:
        if not os.path.exists(self.path):
            return None
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        profile = data.get("profile")
        return VoiceEnrollmentProfile.from_dict(profile) if profile else None

    def _write(self, profile: Optional[VoiceEnrollmentProfile]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        payload = {"profile": profile.to_dict() if profile else None}
        fd, tmp_path = tempfile.mkstemp(prefix=".enrollment-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(safe_json_dumps(payload, indent=2))
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def latest_profile(self) -> Optional[VoiceEnrollmentProfile]:
        with self._lock:
            return self._read()

    def active_profile(self) -> Optional[VoiceEnrollmentProfile]:
        profile = self.latest_profile()
        if profile is None or not profile.is_active:
            return None
        return profile

    def save_active_profile(self, profile: VoiceEnrollmentProfile) -> None:
        with self._lock:
            self._write(replace(profile, is_active=True))

    def deactivate_profile(self) -> None:
        with self._lock:
            profile = self._read()
            if profile is not None and profile.is_active:
                self._write(replace(profile, is_active=False))


# ============================================================================
# Enrollment Service
# ============================================================================

class VoiceEnrollmentService:
    """Collects enrollment takes and produces the reference profile."""

    def __init__(
        self,
        store: VoiceEnrollmentStore,
        config: Optional[EnrollmentConfig] = None,
        prompts: Optional[List[EnrollmentPrompt]] = None,
        debug: bool = False
    ):
        self.store = store
        self.config = config or EnrollmentConfig()
        self.prompts = list(prompts) if prompts is not None else list(DEFAULT_PROMPTS)
        self._mfcc = MelFilterbank(MFCCConfig(sample_rate=CANONICAL_SAMPLE_RATE))
        segmentation = SegmentationConfig()
        self._vad = EnergyVAD(
            close_kernel=segmentation.close_kernel,
            open_kernel=segmentation.open_kernel,
            noise_percentile=segmentation.noise_percentile,
            threshold_ratio=segmentation.threshold_ratio
        )
        self._embedder = SegmentEmbedder()
        self._features = AudioFeatureExtractor()
        self._takes: Dict[int, EnrollmentTake] = {}
        self._debug = debug or debug_enabled()

    def _log(self, message: str) -> None:
        if self._debug:
            print(f"[VoiceEnrollment] {message}", file=sys.stderr, flush=True)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def assess_quality(
        self,
        snr_db: float,
        speech_ratio: float,
        clipping_ratio: float,
        duration_sec: float
    ) -> EnrollmentSampleQuality:
        cfg = self.config
        reasons = []
        if duration_sec < cfg.min_duration_sec:
            reasons.append("duration_short")
        if duration_sec > cfg.max_duration_sec:
            reasons.append("duration_long")
        if snr_db < cfg.min_snr_db:
            reasons.append("snr_low")
        if speech_ratio < cfg.min_speech_ratio:
            reasons.append("speech_ratio_low")
        if speech_ratio > cfg.max_speech_ratio:
            reasons.append("speech_ratio_high")
        if clipping_ratio > cfg.max_clipping_ratio:
            reasons.append("clipping_high")

        return EnrollmentSampleQuality(
            snr_db=snr_db,
            speech_ratio=speech_ratio,
            clipping_ratio=clipping_ratio,
            duration_sec=duration_sec,
            accepted=not reasons,
            rejection_reasons=reasons
        )

    def analyze_sample(
        self,
        samples: np.ndarray,
        sample_rate: int
    ) -> Tuple[SpeakerEmbedding, Optional[SpeakerFeatureVector], EnrollmentSampleQuality]:
        """
        Analyze one take.

        Raises:
            InsufficientSpeechError: Fewer than min_speech_frames speech frames
            EmbeddingUnavailableError: No embedding could be computed
        """
        samples = np.asarray(samples, dtype=np.float32).reshape(-1)
        duration_sec = samples.size / float(max(1, sample_rate))
        clipping_ratio = float(np.mean(np.abs(samples) >= self.config.clipping_level)) if samples.size else 0.0

        canonical = resample_audio(samples, sample_rate, CANONICAL_SAMPLE_RATE)
        mfcc = self._mfcc.extract_mfccs(canonical, CANONICAL_SAMPLE_RATE)
        if mfcc.num_frames == 0:
            raise InsufficientSpeechError(0, self.config.min_speech_frames)

        mask = self._vad.speech_mask(mfcc.rms_energies)
        speech_frames = int(mask.sum())
        if speech_frames < self.config.min_speech_frames:
            raise InsufficientSpeechError(speech_frames, self.config.min_speech_frames)

        speech_ratio = speech_frames / float(mask.size)
        speech_mean = float(mfcc.rms_energies[mask].mean())
        noise = mfcc.rms_energies[~mask]
        if noise.size == 0:
            snr_db = NO_NOISE_SNR_DB
        else:
            snr_db = 20.0 * float(np.log10(max(speech_mean, ENERGY_FLOOR) / max(float(noise.mean()), ENERGY_FLOOR)))

        embedding = self._embedder.compute_embedding_for_mask(mfcc, mask)
        if embedding is None:
            raise EmbeddingUnavailableError()

        centroid = self._features.extract(canonical, CANONICAL_SAMPLE_RATE)
        quality = self.assess_quality(snr_db, speech_ratio, clipping_ratio, duration_sec)
        self._log(f"take: {duration_sec:.1f}s, snr={snr_db:.1f}dB, speech={speech_ratio:.2f}, "
                  f"clipping={clipping_ratio:.3f}, accepted={quality.accepted}")
        return embedding, centroid, quality

    # ------------------------------------------------------------------
    # Enrollment flow
    # ------------------------------------------------------------------

    def start_session(self) -> None:
        self._takes.clear()

    @property
    def accepted_prompt_ids(self) -> List[int]:
        return sorted(self._takes)

    def add_sample(self, samples: np.ndarray, sample_rate: int, prompt_id: Optional[int] = None) -> EnrollmentSampleQuality:
        """
        Analyze a take and keep it if it passes the quality gate.

        A take for a prompt that already has one replaces it. Without a
        prompt_id the take gets the next free slot.

        Raises:
            PromptNotFoundError: Unknown prompt_id
            LowQualitySampleError: Take rejected by the quality gate
        """
        if prompt_id is not None and all(p.id != prompt_id for p in self.prompts):
            raise PromptNotFoundError(str(prompt_id))

        embedding, centroid, quality = self.analyze_sample(samples, sample_rate)
        if not quality.accepted:
            raise LowQualitySampleError(quality.rejection_reasons)

        if prompt_id is None:
            prompt_id = max(self._takes, default=0) + 1
        self._takes[prompt_id] = EnrollmentTake(
            prompt_id=prompt_id,
            embedding=embedding,
            centroid=centroid,
            quality=quality
        )
        return quality

    def add_sample_file(self, path: str, prompt_id: Optional[int] = None) -> EnrollmentSampleQuality:
        samples, sample_rate = read_audio_samples(path)
        return self.add_sample(samples, sample_rate, prompt_id)

    def filter_outlier_embeddings(self, embeddings: List[SpeakerEmbedding]) -> List[SpeakerEmbedding]:
        """Drop the embeddings farthest from the centroid once there are enough of them."""
        if len(embeddings) < self.config.outlier_min_samples:
            return embeddings
        center = SpeakerEmbedding.centroid(embeddings)
        if center is None:
            return embeddings

        distances = [e.cosine_distance(center) for e in embeddings]
        remove_count = max(1, int(len(embeddings) * self.config.outlier_drop_fraction))
        farthest = set(sorted(range(len(embeddings)), key=lambda i: distances[i], reverse=True)[:remove_count])
        filtered = [e for i, e in enumerate(embeddings) if i not in farthest]
        return filtered or embeddings

    def finalize(self, display_name: str = "Me") -> VoiceEnrollmentProfile:
        """
        Build, store and return the active enrollment profile.

        Raises:
            InsufficientAcceptedSamplesError: Not enough accepted takes
            EmbeddingUnavailableError: Takes could not be averaged
        """
        takes = [self._takes[k] for k in sorted(self._takes)]
        if len(takes) < self.config.min_accepted_samples:
            raise InsufficientAcceptedSamplesError(len(takes), self.config.min_accepted_samples)

        reference_embedding = SpeakerEmbedding.centroid(self.filter_outlier_embeddings([t.embedding for t in takes]))
        if reference_embedding is None:
            raise EmbeddingUnavailableError()
        reference_centroid = SpeakerFeatureVector.centroid([t.centroid for t in takes if t.centroid is not None])

        count = len(takes)
        stats = EnrollmentQualityStats(
            accepted_samples=count,
            average_snr_db=sum(t.quality.snr_db for t in takes) / count,
            average_speech_ratio=sum(t.quality.speech_ratio for t in takes) / count,
            average_clipping_ratio=sum(t.quality.clipping_ratio for t in takes) / count
        )

        previous = self.store.latest_profile()
        profile = VoiceEnrollmentProfile(
            display_name=display_name,
            reference_embedding=reference_embedding,
            reference_centroid=reference_centroid,
            version=max(1, (previous.version if previous else 0) + 1),
            is_active=True,
            quality_stats=stats,
            adaptation_count=0
        )
        self.store.save_active_profile(profile)
        self._takes.clear()
        self._log(f"enrolled '{display_name}' v{profile.version} from {count} takes")
        return profile

    def clear_enrollment(self) -> None:
        self._takes.clear()
        self.store.deactivate_profile()
