#!/usr/bin/env python3
"""
speaker_identity_matcher.py - Labels global speakers against the enrolled voice

A speaker is "me" when its distance to the enrolled reference is within the
accept threshold of the metric used:
- MFCC embedding cosine distance (accept 0.30, review 0.40), when both sides
  carry an embedding
- Weighted feature-vector distance (accept 1.30, review 2.00) otherwise

Distances between accept and review are reported as uncertain but still
labeled "unknown". Very close matches (adapt thresholds) may refine the
enrolled reference with an exponential moving average.
"""

import sys
from dataclasses import replace
from typing import List, Optional, Sequence, Tuple

from .diarization_config import IdentityMatchingConfig, debug_enabled
from .speaker_models import (
    IdentityLabel,
    SpeakerEmbedding,
    SpeakerFeatureVector,
    SpeakerIdentityAssignment,
    SpeakerIdentityMatchResult,
    SpeakerProfile,
    VoiceEnrollmentProfile,
    _utc_now,
)

ACCEPTED = "accepted_within_threshold"
UNCERTAIN = "uncertain_between_accept_and_review"
TOO_FAR = "distance_too_far"
ANOTHER_SPEAKER_CLOSER = "another_speaker_closer"


class SpeakerIdentityMatcher:
    """Matches speaker profiles to the enrolled owner profile."""

    def __init__(self, config: Optional[IdentityMatchingConfig] = None, debug: bool = False):
        self.config = config or IdentityMatchingConfig()
        self.adaptation_alpha = min(max(self.config.adaptation_alpha, 0.01), 0.8)
        self._debug = debug or debug_enabled()

    def distance(
        self,
        profile: SpeakerProfile,
        enrollment: VoiceEnrollmentProfile
    ) -> Optional[Tuple[float, bool]]:
        """(distance, used_mfcc), or None when no metric is available."""
        if profile.mfcc_embedding is not None and enrollment.reference_embedding is not None:
            return profile.mfcc_embedding.cosine_distance(enrollment.reference_embedding), True
        if profile.centroid is not None and enrollment.reference_centroid is not None:
            return profile.centroid.distance(enrollment.reference_centroid), False
        return None

    def thresholds(self, used_mfcc: bool) -> Tuple[float, float]:
        if used_mfcc:
            return self.config.accept_mfcc, self.config.review_mfcc
        return self.config.accept_legacy, self.config.review_legacy

    def classify(self, distance: float, used_mfcc: bool) -> SpeakerIdentityMatchResult:
        accept, review = self.thresholds(used_mfcc)
        confidence = max(0.0, min(1.0, 1.0 - distance / max(accept + 0.01, review)))

        if distance <= accept:
            identity, reason = IdentityLabel.ME, ACCEPTED
        elif distance <= review:
            identity, reason = IdentityLabel.UNKNOWN, UNCERTAIN
        else:
            identity, reason = IdentityLabel.UNKNOWN, TOO_FAR

        return SpeakerIdentityMatchResult(
            identity=identity,
            distance=distance,
            confidence=confidence,
            used_mfcc=used_mfcc,
            decision_reason=reason
        )

    def match(
        self,
        profile: SpeakerProfile,
        enrollments: Sequence[VoiceEnrollmentProfile]
    ) -> Optional[SpeakerIdentityMatchResult]:
        """
        Match one profile against the active enrollments.

        Returns:
            Result for the closest enrollment, or None when there is no active
            enrollment or no comparable metric
        """
        best: Optional[Tuple[float, bool]] = None
        for enrollment in enrollments:
            if not enrollment.is_active:
                continue
            measured = self.distance(profile, enrollment)
            if measured is None:
                continue
            if best is None or measured[0] < best[0]:
                best = measured

        if best is None:
            return None
        return self.classify(*best)

    def match_global_speakers(
        self,
        profiles: Sequence[SpeakerProfile],
        enrollment: Optional[VoiceEnrollmentProfile]
    ) -> List[SpeakerIdentityAssignment]:
        """Label every global speaker; only the closest accepted one stays "me"."""
        if enrollment is None or not enrollment.is_active:
            return []

        assignments = []
        for profile in profiles:
            result = self.match(profile, [enrollment])
            if result is not None:
                assignments.append(SpeakerIdentityAssignment(global_speaker_index=profile.speaker_index, result=result))

        accepted = [a for a in assignments if a.result.identity == IdentityLabel.ME]
        if len(accepted) > 1:
            winner = min(accepted, key=lambda a: a.result.distance)
            assignments = [
                a if a is winner or a.result.identity != IdentityLabel.ME else SpeakerIdentityAssignment(
                    global_speaker_index=a.global_speaker_index,
                    result=replace(a.result, identity=IdentityLabel.UNKNOWN, decision_reason=ANOTHER_SPEAKER_CLOSER)
                )
                for a in assignments
            ]

        if self._debug:
            for a in assignments:
                print(f"[SpeakerIdentityMatcher] speaker {a.global_speaker_index}: {a.result.identity.value} "
                      f"(distance={a.result.distance:.3f}, {a.result.decision_reason})", file=sys.stderr, flush=True)
        return assignments

    def should_adapt_profile(self, result: SpeakerIdentityMatchResult) -> bool:
        if result.identity != IdentityLabel.ME:
            return False
        threshold = self.config.adapt_mfcc if result.used_mfcc else self.config.adapt_legacy
        return result.distance <= threshold

    def adapt(
        self,
        enrollment: VoiceEnrollmentProfile,
        matched: SpeakerProfile,
        alpha: Optional[float] = None
    ) -> Optional[VoiceEnrollmentProfile]:
        """EMA update of the reference toward a confidently matched speaker."""
        if enrollment.reference_embedding is None or matched.mfcc_embedding is None:
            return None
        current = enrollment.reference_embedding.values
        incoming = matched.mfcc_embedding.values
        if current.size == 0 or current.size != incoming.size:
            return None

        rate = self.adaptation_alpha if alpha is None else min(max(alpha, 0.01), 0.8)
        keep = 1.0 - rate
        embedding = SpeakerEmbedding(keep * current + rate * incoming)

        centroid = enrollment.reference_centroid
        if centroid is not None and matched.centroid is not None:
            centroid = SpeakerFeatureVector.from_array(keep * centroid.as_array() + rate * matched.centroid.as_array())
        elif centroid is None:
            centroid = matched.centroid

        return replace(
            enrollment,
            reference_embedding=embedding,
            reference_centroid=centroid,
            version=enrollment.version + 1,
            adaptation_count=enrollment.adaptation_count + 1,
            updated_at=_utc_now()
        )
