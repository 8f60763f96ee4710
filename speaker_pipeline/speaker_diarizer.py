#!/usr/bin/env python3
"""
speaker_diarizer.py - Offline speaker diarization of recorded chunks

Pipeline per chunk (16 kHz mono):
1. MFCC + delta features (MelFilterbank)
2. Speech regions (EnergyVAD)
3. Speaker change points inside regions (BICSegmenter)
4. One embedding per sub-segment (SegmentEmbedder)
5. Agglomerative clustering of the embeddings (AHCClusterer)
6. Turn smoothing (SpeakerTurnSmoother)
7. Per-speaker profiles and word-to-speaker mapping (WordSpeakerMapper)

A session is a sequence of chunks. Chunks are diarized concurrently, then
their chunk-local speakers are aligned to session-global ones in chunk order
(CrossChunkSpeakerAligner) and optionally labeled against the enrolled owner
voice (SpeakerIdentityMatcher).

Usage:
    speaker-pipeline chunk0.wav chunk1.wav --words w0.json w1.json

Environment:
    DIARIZATION_DEBUG=1 and the other DIARIZATION_* overrides, see diarization_config.py
"""

import argparse
import json
import os
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .ahc_clusterer import AHCClusterer, relabel_by_first_appearance
from .audio_feature_extractor import AudioFeatureExtractor
from .bic_segmenter import BICSegmenter
from .cross_chunk_aligner import (
    ChunkSpeakers,
    CrossChunkSpeakerAligner,
    GlobalSpeakerMap,
    SessionSpeakerAligner,
    remap_segments,
)
from .diarization_config import ClusteringConfig, ClusteringProfile, DiarizationConfig
from .diarization_errors import DiarizationError
from .energy_vad import EnergyVAD, SpeechRegion, extract_regions
from .json_serialization_utils import safe_json_dumps, safe_output_json
from .mel_filterbank import MelFilterbank, MFCCResult, read_audio_samples, resample_audio
from .segment_embedder import SegmentEmbedder
from .speaker_identity_matcher import SpeakerIdentityMatcher
from .speaker_models import (
    DiarizationResult,
    DiarizedSegment,
    IdentityLabel,
    SpeakerFeatureVector,
    SpeakerIdentityAssignment,
    SpeakerProfile,
    VoiceEnrollmentProfile,
    WordSegmentInfo,
)
from .speaker_turn_smoother import SpeakerSegment, SpeakerTurnSmoother
from .voice_enrollment import VoiceEnrollmentStore
from .word_speaker_mapper import MappedWord, WordSpeakerMapper

AudioInput = Union[str, os.PathLike, np.ndarray]


# ============================================================================
# Inputs and Results
# ============================================================================

@dataclass
class ChunkInput:
    """One recorded chunk: a file path or a sample array, plus its words."""
    chunk_index: int
    audio: AudioInput
    words: List[WordSegmentInfo] = field(default_factory=list)
    sample_rate: int = 16000


@dataclass
class SessionDiarizationResult:
    """Diarization of a whole session with global speaker indices."""
    chunk_results: Dict[int, DiarizationResult]
    speaker_map: GlobalSpeakerMap
    identities: List[SpeakerIdentityAssignment] = field(default_factory=list)
    adapted_enrollment: Optional[VoiceEnrollmentProfile] = None

    @property
    def speaker_count(self) -> int:
        return self.speaker_map.speaker_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "speaker_count": self.speaker_count,
            "chunks": {
                str(index): result.to_dict()
                for index, result in sorted(self.chunk_results.items())
            },
            "speaker_map": self.speaker_map.to_dict(),
            "identities": [a.to_dict() for a in self.identities],
            "enrollment_adapted": self.adapted_enrollment is not None,
        }


def group_words(mapped: Sequence[MappedWord]) -> List[DiarizedSegment]:
    """Consecutive words with the same speaker become one segment."""
    segments: List[DiarizedSegment] = []
    run: List[WordSegmentInfo] = []
    run_speaker = None

    def flush():
        if run:
            segments.append(DiarizedSegment(
                speaker_index=run_speaker,
                text=" ".join(w.substring for w in run),
                start_offset_ms=int(run[0].timestamp * 1000),
                end_offset_ms=int(run[-1].end_time * 1000)
            ))

    for item in mapped:
        if run and item.speaker_label != run_speaker:
            flush()
            run = []
        run_speaker = item.speaker_label
        run.append(item.word)
    flush()
    return segments


def split_regions(
    regions: Sequence[SpeechRegion],
    boundaries: Sequence[int],
    min_segment_frames: int
) -> List[Tuple[int, int]]:
    """
    Cut speech regions at change points into (start, end) frame spans.

    A span shorter than min_segment_frames is merged into its predecessor in
    the same region, or into its successor when it is the first span.
    """
    spans: List[Tuple[int, int]] = []
    for region in regions:
        cuts = [b for b in boundaries if region.start_frame < b < region.end_frame]
        edges = [region.start_frame] + cuts + [region.end_frame]
        pieces = [(edges[i], edges[i + 1]) for i in range(len(edges) - 1)]

        merged: List[Tuple[int, int]] = []
        for start, end in pieces:
            if merged and end - start < min_segment_frames:
                merged[-1] = (merged[-1][0], end)
            else:
                merged.append((start, end))
        if len(merged) > 1 and merged[0][1] - merged[0][0] < min_segment_frames:
            merged[0:2] = [(merged[0][0], merged[1][1])]
        spans.extend(merged)
    return spans


# ============================================================================
# Diarizer
# ============================================================================

class SpeakerDiarizer:
    """MFCC/BIC/AHC speaker diarization of single chunks and whole sessions."""

    def __init__(self, config: Optional[DiarizationConfig] = None):
        self.config = config or DiarizationConfig.from_env()
        cfg = self.config
        self.sample_rate = cfg.mfcc.sample_rate
        self.mfcc = MelFilterbank(cfg.mfcc)
        self.vad = EnergyVAD(
            close_kernel=cfg.segmentation.close_kernel,
            open_kernel=cfg.segmentation.open_kernel,
            noise_percentile=cfg.segmentation.noise_percentile,
            threshold_ratio=cfg.segmentation.threshold_ratio
        )
        self.segmenter = BICSegmenter(
            penalty_lambda=cfg.segmentation.bic_lambda,
            min_window_frames=cfg.segmentation.min_window_frames,
            growth_frames=cfg.segmentation.growth_frames
        )
        self.embedder = SegmentEmbedder()
        self.clusterer = AHCClusterer(
            distance_threshold=cfg.clustering.distance_threshold,
            max_clusters=cfg.clustering.max_clusters
        )
        self.smoother = SpeakerTurnSmoother.from_config(cfg.smoothing)
        self.mapper = WordSpeakerMapper(hop_length=cfg.mfcc.hop_length, sample_rate=cfg.mfcc.sample_rate)
        self.features = AudioFeatureExtractor()
        self._debug = cfg.debug

    def _log(self, message: str) -> None:
        if self._debug:
            print(f"[SpeakerDiarizer] {message}", file=sys.stderr, flush=True)

    def load_audio(self, audio: AudioInput, sample_rate: int = 16000) -> np.ndarray:
        """
        Samples at the pipeline rate.

        Raises:
            AudioLoadError: If a path is given and cannot be read
        """
        if isinstance(audio, (str, os.PathLike)):
            samples, sample_rate = read_audio_samples(os.fspath(audio))
        else:
            samples = np.asarray(audio, dtype=np.float32).reshape(-1)
        return resample_audio(samples, sample_rate, self.sample_rate)

    def diarize(
        self,
        audio: AudioInput,
        words: Optional[Sequence[WordSegmentInfo]] = None,
        sample_rate: int = 16000
    ) -> DiarizationResult:
        """
        Diarize one chunk.

        Args:
            audio: Path to an audio file, or mono samples at sample_rate
            words: Recognized words with timing in seconds from chunk start
            sample_rate: Rate of array input (ignored for paths)

        Returns:
            DiarizationResult with chunk-local speaker indices
        """
        words = list(words or [])
        samples = self.load_audio(audio, sample_rate)

        mfcc = self.mfcc.extract_mfccs(samples, self.sample_rate)
        if mfcc.num_frames == 0:
            self._log("chunk shorter than one frame, single-speaker fallback")
            return self.single_speaker_result(words)

        speech_mask = self.vad.speech_mask(mfcc.rms_energies)
        regions = extract_regions(speech_mask)
        if not regions:
            self._log("no speech detected, single-speaker fallback")
            return self.single_speaker_result(words)

        change_points = self.segmenter.detect_boundaries(mfcc.mfccs, regions)
        spans = split_regions(
            regions,
            [c.frame_index for c in change_points],
            self.config.segmentation.min_segment_frames
        )
        self._log(f"{mfcc.num_frames} frames, {len(regions)} speech regions, "
                  f"{len(change_points)} change points, {len(spans)} sub-segments")

        embeddings = [self.embedder.compute_embedding_for_range(mfcc, start, end) for start, end in spans]
        kept = [(span, emb) for span, emb in zip(spans, embeddings) if emb is not None]
        clusters = self.clusterer.cluster([emb for _, emb in kept])

        turns = [
            SpeakerSegment(start_frame=start, end_frame=end, speaker_label=label)
            for ((start, end), _), label in zip(kept, clusters.labels)
        ]
        turns = self.smoother.smooth(turns)
        labels = relabel_by_first_appearance([t.speaker_label for t in turns])
        turns = [
            SpeakerSegment(start_frame=t.start_frame, end_frame=t.end_frame, speaker_label=label)
            for t, label in zip(turns, labels)
        ]
        self._log(f"{clusters.num_clusters} clusters, {len(turns)} turns after smoothing")

        mapped = self.mapper.map_words_to_speakers(words, turns)
        profiles = self.build_profiles(samples, mfcc, speech_mask, turns, mapped)

        return DiarizationResult(
            segments=group_words(mapped),
            speaker_count=len(profiles),
            speaker_profiles=profiles
        )

    def build_profiles(
        self,
        samples: np.ndarray,
        mfcc: MFCCResult,
        speech_mask: np.ndarray,
        turns: Sequence[SpeakerSegment],
        mapped: Sequence[MappedWord]
    ) -> List[SpeakerProfile]:
        """One profile per speaker label, in label order."""
        frame_sec = self.config.mfcc.hop_length / float(self.sample_rate)
        profiles = []
        for label in sorted({t.speaker_label for t in turns}):
            own = [t for t in turns if t.speaker_label == label]
            turn_mask = np.zeros(mfcc.num_frames, dtype=bool)
            for t in own:
                turn_mask[t.start_frame:t.end_frame] = True
            mask = turn_mask & speech_mask[:mfcc.num_frames]
            if not mask.any():
                mask = turn_mask

            word_vectors = [m.word.feature_vector() for m in mapped if m.speaker_label == label]
            word_vectors = [v for v in word_vectors if v is not None]
            if word_vectors:
                centroid = SpeakerFeatureVector.centroid(word_vectors)
            else:
                ranges = [(t.start_frame * frame_sec, t.end_frame * frame_sec) for t in own]
                centroid = self.features.extract(samples, self.sample_rate, ranges)

            profiles.append(SpeakerProfile(
                speaker_index=label,
                centroid=centroid,
                sample_count=int(mask.sum()),
                mfcc_embedding=self.embedder.compute_embedding_for_mask(mfcc, mask)
            ))
        return profiles

    @staticmethod
    def single_speaker_result(words: Sequence[WordSegmentInfo]) -> DiarizationResult:
        if not words:
            return DiarizationResult(segments=[], speaker_count=0)
        segment = DiarizedSegment(
            speaker_index=0,
            text=" ".join(w.substring for w in words),
            start_offset_ms=int(words[0].timestamp * 1000),
            end_offset_ms=int(words[-1].end_time * 1000)
        )
        return DiarizationResult(segments=[segment], speaker_count=1)

    # ------------------------------------------------------------------
    # Batches and sessions
    # ------------------------------------------------------------------

    def _diarize_chunk(self, chunk: ChunkInput) -> DiarizationResult:
        return self.diarize(chunk.audio, chunk.words, chunk.sample_rate)

    def diarize_many(self, chunks: Sequence[ChunkInput]) -> List[DiarizationResult]:
        """Diarize independent chunks concurrently; results follow chunk index order."""
        ordered = sorted(chunks, key=lambda c: c.chunk_index)
        if not ordered:
            return []
        with ThreadPoolExecutor(max_workers=max(1, self.config.max_workers)) as executor:
            return list(executor.map(self._diarize_chunk, ordered))

    def diarize_session(
        self,
        chunks: Sequence[ChunkInput],
        enrollment: Optional[VoiceEnrollmentProfile] = None
    ) -> SessionDiarizationResult:
        """
        Diarize all chunks of a session and align their speakers.

        Chunks finish in any order; the aligner folds them in chunk order.
        With an active enrollment, global speakers are labeled and a confident
        "me" match yields an adapted enrollment profile.
        """
        session = SessionSpeakerAligner(
            CrossChunkSpeakerAligner.from_config(self.config.alignment, debug=self._debug),
            expected_chunks=[c.chunk_index for c in chunks]
        )
        results: Dict[int, DiarizationResult] = {}

        with ThreadPoolExecutor(max_workers=max(1, self.config.max_workers)) as executor:
            futures = {executor.submit(self._diarize_chunk, chunk): chunk.chunk_index for chunk in chunks}
            try:
                for future in as_completed(futures):
                    index = futures[future]
                    results[index] = future.result()
                    session.submit(ChunkSpeakers(chunk_index=index, profiles=results[index].speaker_profiles))
            except BaseException:
                session.stop()
                for pending in futures:
                    pending.cancel()
                raise

        speaker_map = session.snapshot()
        remapped = {
            index: remap_segments(result, speaker_map.alignment.get(index, {}))
            for index, result in results.items()
        }
        self._log(f"session: {len(chunks)} chunks, {speaker_map.speaker_count} global speakers")

        identities: List[SpeakerIdentityAssignment] = []
        adapted = None
        if enrollment is not None:
            matcher = SpeakerIdentityMatcher(self.config.identity, debug=self._debug)
            identities = matcher.match_global_speakers(speaker_map.global_profiles, enrollment)
            by_index = {p.speaker_index: p for p in speaker_map.global_profiles}
            for assignment in identities:
                if assignment.result.identity == IdentityLabel.ME and matcher.should_adapt_profile(assignment.result):
                    adapted = matcher.adapt(enrollment, by_index[assignment.global_speaker_index])

        return SessionDiarizationResult(
            chunk_results=remapped,
            speaker_map=speaker_map,
            identities=identities,
            adapted_enrollment=adapted
        )


# ============================================================================
# Command-Line Interface
# ============================================================================

def load_words(path: str) -> List[WordSegmentInfo]:
    """Words from a JSON list, or from an object with a "words" list."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise DiarizationError(
            message=f"Failed to read words file '{path}'",
            error_code="WORDS_LOAD_ERROR",
            details={"path": path, "reason": str(e)}
        ) from e
    if isinstance(data, dict):
        data = data.get("words", [])
    try:
        return [WordSegmentInfo.from_dict(item) for item in data]
    except (KeyError, TypeError) as e:
        raise DiarizationError(
            message=f"Invalid word entry in '{path}'",
            error_code="WORDS_LOAD_ERROR",
            details={"path": path, "reason": str(e)}
        ) from e


def build_config(args: argparse.Namespace) -> DiarizationConfig:
    config = DiarizationConfig.from_env()
    if args.profile:
        config.clustering = ClusteringConfig.from_profile(ClusteringProfile(args.profile))
    if args.max_speakers is not None:
        config.clustering.max_clusters = max(1, args.max_speakers)
    if args.threshold is not None:
        config.clustering.distance_threshold = args.threshold
    if args.workers is not None:
        config.max_workers = max(1, args.workers)
    if args.debug:
        config.debug = True
    return config


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Command-line interface for session diarization."""
    parser = argparse.ArgumentParser(
        description="Speaker diarization of recorded chunks with cross-chunk speaker alignment",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # One chunk, speakers only
  speaker-pipeline chunk0.wav

  # Session of chunks with recognized words
  speaker-pipeline chunk0.wav chunk1.wav --words chunk0.json chunk1.json

  # Label the enrolled owner voice and write the result to a file
  speaker-pipeline chunk0.wav --enrollment enrollment.json --output result.json
        """
    )
    parser.add_argument("audio_files", nargs="+", help="Chunk audio files, in chunk order")
    parser.add_argument("--words", nargs="+", metavar="FILE",
                        help="Per-chunk word JSON files (same order as the audio files)")
    parser.add_argument("--enrollment", help="Voice enrollment store (JSON) to match against")
    parser.add_argument("--adapt", action="store_true",
                        help="Write the adapted enrollment back to the store after a confident match")
    parser.add_argument("--profile", choices=[p.value for p in ClusteringProfile if p != ClusteringProfile.CUSTOM],
                        help="Clustering preset")
    parser.add_argument("--max-speakers", type=int, help="Maximum speakers per chunk")
    parser.add_argument("--threshold", type=float, help="AHC cosine distance threshold")
    parser.add_argument("--workers", type=int, help="Concurrent chunk workers")
    parser.add_argument("--debug", action="store_true", help="Verbose diagnostics on stderr")
    parser.add_argument("--output", "-o", help="Write JSON to this file instead of stdout")

    args = parser.parse_args(argv)

    if args.words and len(args.words) != len(args.audio_files):
        parser.error("--words needs one file per audio file")

    try:
        config = build_config(args)
        chunks = [
            ChunkInput(
                chunk_index=index,
                audio=path,
                words=load_words(args.words[index]) if args.words else []
            )
            for index, path in enumerate(args.audio_files)
        ]

        store = VoiceEnrollmentStore(args.enrollment) if args.enrollment else None
        enrollment = store.active_profile() if store else None

        result = SpeakerDiarizer(config).diarize_session(chunks, enrollment)

        if args.adapt and store is not None and result.adapted_enrollment is not None:
            store.save_active_profile(result.adapted_enrollment)

        if args.output:
            with open(args.output, "w", encoding="utf-8") as f:
                f.write(safe_json_dumps(result, indent=2))
            print(f"[SpeakerDiarizer] Wrote {args.output}", file=sys.stderr, flush=True)
        else:
            safe_output_json(result.to_dict())
        return 0

    except DiarizationError as e:
        safe_output_json(e.to_dict())
        return 1
    except (OSError, ValueError) as e:
        print(f"[SpeakerDiarizer] Error: {e}", file=sys.stderr, flush=True)
        safe_output_json(DiarizationError(str(e)).to_dict())
        return 1


if __name__ == "__main__":
    sys.exit(main())
