#!/usr/bin/env python3
"""
speaker_turn_smoother.py - Post-processing of speaker-labeled segments

Four sequential passes clean up noisy segment boundaries:
1. Minimum duration: segments shorter than min_duration_ms are absorbed by a neighbor
2. Collar merge: same-speaker segments separated by a gap <= collar_ms are joined
3. Isolated turn removal: a short turn between two segments of one other speaker
   is absorbed into that speaker
4. Consecutive merge: adjacent same-speaker segments are joined

Segments are frame based (10ms per frame by default), ascending and
non-overlapping.
"""

from dataclasses import dataclass
from typing import Dict, List, Sequence

from .diarization_config import SmoothingConfig


@dataclass(frozen=True)
class SpeakerSegment:
    start_frame: int
    end_frame: int
    speaker_label: int

    @property
    def duration_frames(self) -> int:
        return self.end_frame - self.start_frame

    def duration_ms(self, frame_duration_ms: float) -> float:
        return self.duration_frames * frame_duration_ms

    def to_dict(self) -> Dict[str, int]:
        return {
            "start_frame": self.start_frame,
            "end_frame": self.end_frame,
            "speaker_label": self.speaker_label,
        }


def _join(first: SpeakerSegment, second: SpeakerSegment, label: int) -> SpeakerSegment:
    return SpeakerSegment(start_frame=first.start_frame, end_frame=second.end_frame, speaker_label=label)


class SpeakerTurnSmoother:
    """Smooths speaker turns; all durations in milliseconds."""

    def __init__(
        self,
        min_duration_ms: float = 500.0,
        collar_ms: float = 300.0,
        max_isolated_ms: float = 1000.0,
        frame_duration_ms: float = 10.0
    ):
        self.min_duration_ms = min_duration_ms
        self.collar_ms = collar_ms
        self.max_isolated_ms = max_isolated_ms
        self.frame_duration_ms = frame_duration_ms

    @classmethod
    def from_config(cls, config: SmoothingConfig) -> "SpeakerTurnSmoother":
        return cls(
            min_duration_ms=config.min_duration_ms,
            collar_ms=config.collar_ms,
            max_isolated_ms=config.max_isolated_ms,
            frame_duration_ms=config.frame_duration_ms
        )

    def smooth(self, segments: Sequence[SpeakerSegment]) -> List[SpeakerSegment]:
        segments = list(segments)
        if len(segments) <= 1:
            return segments

        result = self.enforce_minimum_duration(segments)
        result = self.apply_collar_merge(result)
        result = self.remove_isolated_turns(result)
        return self.merge_consecutive(result)

    # ------------------------------------------------------------------
    # Pass 1: minimum duration
    # ------------------------------------------------------------------

    def _is_short(self, segment: SpeakerSegment) -> bool:
        return segment.duration_ms(self.frame_duration_ms) < self.min_duration_ms

    def enforce_minimum_duration(self, segments: Sequence[SpeakerSegment]) -> List[SpeakerSegment]:
        result = list(segments)
        if len(result) <= 1:
            return result

        for _ in range(len(result)):
            changed = False
            merged: List[SpeakerSegment] = []
            for segment in result:
                if merged and self._is_short(segment):
                    previous = merged.pop()
                    merged.append(_join(previous, segment, previous.speaker_label))
                    changed = True
                else:
                    merged.append(segment)

            # A short leading segment has no predecessor; fold it forward
            if len(merged) > 1 and self._is_short(merged[0]):
                merged[0:2] = [_join(merged[0], merged[1], merged[1].speaker_label)]
                changed = True

            result = merged
            if not changed or len(result) <= 1:
                break
        return result

    # ------------------------------------------------------------------
    # Pass 2: collar merge
    # ------------------------------------------------------------------

    def apply_collar_merge(self, segments: Sequence[SpeakerSegment]) -> List[SpeakerSegment]:
        if len(segments) <= 1:
            return list(segments)

        collar_frames = int(self.collar_ms / max(self.frame_duration_ms, 1e-9))
        result = [segments[0]]
        for current in segments[1:]:
            previous = result[-1]
            gap = current.start_frame - previous.end_frame
            if gap <= collar_frames and previous.speaker_label == current.speaker_label:
                result[-1] = _join(previous, current, previous.speaker_label)
            else:
                result.append(current)
        return result

    # ------------------------------------------------------------------
    # Pass 3: isolated turns
    # ------------------------------------------------------------------

    def remove_isolated_turns(self, segments: Sequence[SpeakerSegment]) -> List[SpeakerSegment]:
        if len(segments) <= 2:
            return list(segments)

        result: List[SpeakerSegment] = []
        for i, segment in enumerate(segments):
            is_short = segment.duration_ms(self.frame_duration_ms) <= self.max_isolated_ms
            if is_short and 0 < i < len(segments) - 1:
                previous = segments[i - 1]
                following = segments[i + 1]
                if (previous.speaker_label == following.speaker_label
                        and previous.speaker_label != segment.speaker_label
                        and result):
                    last = result.pop()
                    result.append(_join(last, segment, last.speaker_label))
                    continue
            result.append(segment)
        return result

    # ------------------------------------------------------------------
    # Pass 4: consecutive merge
    # ------------------------------------------------------------------

    @staticmethod
    def merge_consecutive(segments: Sequence[SpeakerSegment]) -> List[SpeakerSegment]:
        if not segments:
            return []
        result = [segments[0]]
        for current in segments[1:]:
            if result[-1].speaker_label == current.speaker_label:
                result[-1] = _join(result[-1], current, current.speaker_label)
            else:
                result.append(current)
        return result
