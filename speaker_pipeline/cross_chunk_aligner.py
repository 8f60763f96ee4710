#!/usr/bin/env python3
"""
cross_chunk_aligner.py - Session-global speaker identities across chunks

Each chunk is diarized independently, so its speaker indices (0, 1, 2, ...)
are local to the chunk. Alignment folds the chunks, in ascending chunk index
order, into one list of global speaker profiles:

1. The first chunk's speakers become the initial global profiles (identity map).
2. For each later chunk, every (local, global) pair gets a distance: cosine
   distance between MFCC embeddings when both have one, otherwise the weighted
   feature-vector distance.
3. Pairs are matched greedily in ascending distance while under the threshold
   of the metric used; matched global profiles absorb the local profile
   (sample-count weighted merge).
4. Unmatched local speakers get fresh global indices, never reused.

The fold is order dependent. SessionSpeakerAligner accepts chunk results in
any order (e.g. from parallel workers) and folds them strictly in order.
"""

import sys
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .diarization_config import AlignmentConfig, debug_enabled
from .speaker_models import DiarizationResult, SpeakerProfile

AlignmentMap = Dict[int, Dict[int, int]]


@dataclass(frozen=True)
class ChunkSpeakers:
    chunk_index: int
    profiles: List[SpeakerProfile]


@dataclass
class GlobalSpeakerMap:
    """chunk_index -> {local_index -> global_index}, plus the global profiles."""
    alignment: AlignmentMap = field(default_factory=dict)
    global_profiles: List[SpeakerProfile] = field(default_factory=list)
    next_global_index: int = 0

    def global_index(self, chunk_index: int, local_index: int) -> Optional[int]:
        return self.alignment.get(chunk_index, {}).get(local_index)

    @property
    def speaker_count(self) -> int:
        return len(self.global_profiles)

    def copy(self) -> "GlobalSpeakerMap":
        return GlobalSpeakerMap(
            alignment={chunk: dict(mapping) for chunk, mapping in self.alignment.items()},
            global_profiles=list(self.global_profiles),
            next_global_index=self.next_global_index
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "alignment": {
                str(chunk): {str(local): global_idx for local, global_idx in mapping.items()}
                for chunk, mapping in sorted(self.alignment.items())
            },
            "global_profiles": [p.to_dict() for p in self.global_profiles],
            "speaker_count": self.speaker_count,
        }


class CrossChunkSpeakerAligner:
    """Greedy nearest-profile alignment of chunk-local speakers."""

    def __init__(self, embedding_threshold: float = 0.35, feature_threshold: float = 2.0, debug: bool = False):
        self.embedding_threshold = embedding_threshold
        self.feature_threshold = feature_threshold
        self._debug = debug or debug_enabled()

    @classmethod
    def from_config(cls, config: AlignmentConfig, debug: bool = False) -> "CrossChunkSpeakerAligner":
        return cls(
            embedding_threshold=config.embedding_threshold,
            feature_threshold=config.feature_threshold,
            debug=debug
        )

    def profile_distance(self, local: SpeakerProfile, global_profile: SpeakerProfile) -> Tuple[float, float]:
        """(distance, threshold) for a pair; distance is inf when incomparable."""
        if local.mfcc_embedding is not None and global_profile.mfcc_embedding is not None:
            return local.mfcc_embedding.cosine_distance(global_profile.mfcc_embedding), self.embedding_threshold
        if local.centroid is not None and global_profile.centroid is not None:
            return local.centroid.distance(global_profile.centroid), self.feature_threshold
        return float("inf"), self.feature_threshold

    def align(self, chunks: Iterable[ChunkSpeakers]) -> GlobalSpeakerMap:
        """Fold all chunks, sorted by chunk index, into a fresh map."""
        state = GlobalSpeakerMap()
        for chunk in sorted(chunks, key=lambda c: c.chunk_index):
            self.fold(state, chunk)
        return state

    def fold(self, state: GlobalSpeakerMap, chunk: ChunkSpeakers) -> GlobalSpeakerMap:
        """Align one chunk against the current state, updating it in place."""
        if not state.global_profiles and not state.alignment:
            self._seed(state, chunk)
            return state

        local_to_global: Dict[int, int] = {}
        profiles = list(state.global_profiles)
        position = {p.speaker_index: i for i, p in enumerate(profiles)}

        candidates = []
        for local in chunk.profiles:
            for global_profile in profiles:
                distance, threshold = self.profile_distance(local, global_profile)
                candidates.append((distance, threshold, local.speaker_index, global_profile.speaker_index))
        candidates.sort(key=lambda c: c[0])

        locals_by_index = {p.speaker_index: p for p in chunk.profiles}
        matched_global = set()
        for distance, threshold, local_idx, global_idx in candidates:
            if local_idx in local_to_global or global_idx in matched_global:
                continue
            if distance > threshold:
                continue
            local_to_global[local_idx] = global_idx
            matched_global.add(global_idx)
            local = locals_by_index[local_idx]
            slot = position[global_idx]
            profiles[slot] = profiles[slot].merging(local.centroid, local.sample_count, local.mfcc_embedding)
            if self._debug:
                print(f"[CrossChunkSpeakerAligner] chunk {chunk.chunk_index}: local {local_idx} -> global {global_idx} "
                      f"(distance={distance:.3f})", file=sys.stderr, flush=True)

        for local in chunk.profiles:
            if local.speaker_index in local_to_global:
                continue
            new_index = state.next_global_index
            state.next_global_index += 1
            local_to_global[local.speaker_index] = new_index
            profiles.append(SpeakerProfile(
                speaker_index=new_index,
                centroid=local.centroid,
                sample_count=local.sample_count,
                mfcc_embedding=local.mfcc_embedding
            ))
            if self._debug:
                print(f"[CrossChunkSpeakerAligner] chunk {chunk.chunk_index}: local {local.speaker_index} -> "
                      f"new global {new_index}", file=sys.stderr, flush=True)

        state.global_profiles = profiles
        state.alignment[chunk.chunk_index] = local_to_global
        return state

    def _seed(self, state: GlobalSpeakerMap, chunk: ChunkSpeakers) -> None:
        mapping: Dict[int, int] = {}
        for local in chunk.profiles:
            mapping[local.speaker_index] = local.speaker_index
            state.global_profiles.append(local)
        state.alignment[chunk.chunk_index] = mapping
        if mapping:
            state.next_global_index = max(mapping.values()) + 1


# ============================================================================
# Incremental Session Alignment
# ============================================================================

class SessionSpeakerAligner:
    """
    Ordered consumer of chunk results for one recording session.

    submit() may be called from any thread and in any chunk order; results
    are buffered and folded strictly in the expected order. After stop(),
    further submissions are ignored and aligned state is kept as-is.
    """

    def __init__(
        self,
        aligner: Optional[CrossChunkSpeakerAligner] = None,
        first_chunk_index: int = 0,
        expected_chunks: Optional[Sequence[int]] = None
    ):
        self.aligner = aligner or CrossChunkSpeakerAligner()
        self._order = sorted(expected_chunks) if expected_chunks is not None else None
        self._cursor = 0
        self._next_index = first_chunk_index
        self._pending: Dict[int, ChunkSpeakers] = {}
        self._state = GlobalSpeakerMap()
        self._stopped = False
        self._lock = threading.Lock()

    def _expected(self) -> Optional[int]:
        if self._order is None:
            return self._next_index
        if self._cursor < len(self._order):
            return self._order[self._cursor]
        return None

    def _accepts(self, chunk_index: int) -> bool:
        if self._order is None:
            return chunk_index >= self._next_index
        return chunk_index in self._order[self._cursor:]

    def _advance(self) -> None:
        if self._order is None:
            self._next_index += 1
        else:
            self._cursor += 1

    def submit(self, chunk: ChunkSpeakers) -> List[int]:
        """
        Buffer a chunk and fold every chunk now in order. Returns the folded indices.

        Chunks that were already folded, or that are not in expected_chunks,
        are ignored.
        """
        folded: List[int] = []
        with self._lock:
            if self._stopped:
                return folded
            if not self._accepts(chunk.chunk_index):
                if debug_enabled():
                    print(f"[SessionSpeakerAligner] ignoring chunk {chunk.chunk_index}: already folded or not expected",
                          file=sys.stderr, flush=True)
                return folded
            self._pending[chunk.chunk_index] = chunk
            expected = self._expected()
            while expected is not None and expected in self._pending:
                self.aligner.fold(self._state, self._pending.pop(expected))
                folded.append(expected)
                self._advance()
                expected = self._expected()
        return folded

    def stop(self) -> None:
        """Stop consuming; pending chunks are dropped, aligned state is kept."""
        with self._lock:
            self._stopped = True
            self._pending.clear()

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def snapshot(self) -> GlobalSpeakerMap:
        with self._lock:
            return self._state.copy()


def remap_segments(result: DiarizationResult, mapping: Dict[int, int]) -> DiarizationResult:
    """Rewrite a chunk result's speaker indices to global ones (unmapped indices are kept)."""
    return DiarizationResult(
        segments=[s.with_speaker(mapping.get(s.speaker_index, s.speaker_index)) for s in result.segments],
        speaker_count=result.speaker_count,
        speaker_profiles=[p.with_index(mapping.get(p.speaker_index, p.speaker_index)) for p in result.speaker_profiles]
    )
