#!/usr/bin/env python3
"""
word_speaker_mapper.py - Assigns transcribed words to speaker turns

Each word goes to the smoothed segment it overlaps most in time. Equal
overlaps favor the longer segment. A word outside every segment goes to the
segment whose midpoint is nearest; with no segments at all every word is
speaker 0.
"""

from dataclasses import dataclass
from typing import Dict, List, Sequence

from .speaker_models import WordSegmentInfo
from .speaker_turn_smoother import SpeakerSegment


@dataclass(frozen=True)
class MappedWord:
    word: WordSegmentInfo
    speaker_label: int

    def to_dict(self) -> Dict[str, object]:
        return {"word": self.word.substring, "speaker_label": self.speaker_label}


class WordSpeakerMapper:
    """Maps words (seconds) onto frame-based speaker segments."""

    def __init__(self, hop_length: int = 160, sample_rate: int = 16000):
        self.frame_hop_sec = hop_length / float(sample_rate)

    def map_words_to_speakers(
        self,
        words: Sequence[WordSegmentInfo],
        segments: Sequence[SpeakerSegment]
    ) -> List[MappedWord]:
        if not segments:
            return [MappedWord(word=word, speaker_label=0) for word in words]
        return [
            MappedWord(word=word, speaker_label=self.find_best_segment(word.timestamp, word.end_time, segments))
            for word in words
        ]

    def find_best_segment(self, word_start: float, word_end: float, segments: Sequence[SpeakerSegment]) -> int:
        best_overlap = 0.0
        best_span = 0
        best_label = segments[0].speaker_label

        for segment in segments:
            seg_start = segment.start_frame * self.frame_hop_sec
            seg_end = segment.end_frame * self.frame_hop_sec
            overlap = max(0.0, min(word_end, seg_end) - max(word_start, seg_start))
            if overlap <= 0.0:
                continue
            if overlap > best_overlap or (overlap == best_overlap and segment.duration_frames > best_span):
                best_overlap = overlap
                best_span = segment.duration_frames
                best_label = segment.speaker_label

        if best_overlap <= 0.0:
            return self._nearest_segment((word_start + word_end) / 2.0, segments)
        return best_label

    def _nearest_segment(self, word_mid: float, segments: Sequence[SpeakerSegment]) -> int:
        nearest_label = segments[0].speaker_label
        min_distance = float("inf")
        for segment in segments:
            seg_mid = (segment.start_frame + segment.end_frame) / 2.0 * self.frame_hop_sec
            distance = abs(word_mid - seg_mid)
            if distance < min_distance:
                min_distance = distance
                nearest_label = segment.speaker_label
        return nearest_label
