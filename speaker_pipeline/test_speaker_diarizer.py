#!/usr/bin/env python3
"""
test_speaker_diarizer.py - Tests for chunk and session diarization

Uses synthetic voices: two harmonic signals with different pitch and
spectral tilt, scaled to the same energy after pre-emphasis so that both
clear the adaptive speech threshold.
"""

import io
import json
import os
import shutil
import tempfile
import unittest
from contextlib import redirect_stdout

import numpy as np
import soundfile as sf

from speaker_pipeline.diarization_config import ClusteringConfig, DiarizationConfig
from speaker_pipeline.diarization_errors import AudioLoadError, DiarizationError
from speaker_pipeline.energy_vad import SpeechRegion
from speaker_pipeline.mel_filterbank import pre_emphasis
from speaker_pipeline.speaker_diarizer import (
    ChunkInput,
    SpeakerDiarizer,
    group_words,
    load_words,
    main,
    split_regions,
)
from speaker_pipeline.speaker_models import IdentityLabel, VoiceEnrollmentProfile, WordSegmentInfo
from speaker_pipeline.word_speaker_mapper import MappedWord

SAMPLE_RATE = 16000


def synthetic_voice(f0, harmonics, tilt, seconds):
    """Harmonic series with amplitude k**-tilt, normalized to a fixed emphasized RMS."""
    t = np.arange(int(seconds * SAMPLE_RATE)) / SAMPLE_RATE
    voice = sum((k ** -tilt) * np.sin(2 * np.pi * f0 * k * t) for k in range(1, harmonics + 1))
    emphasized = pre_emphasis(voice)
    return 0.03 * voice / np.sqrt(np.mean(emphasized * emphasized))


def voice_a(seconds):
    return synthetic_voice(130.0, 20, 1.0, seconds)


def voice_b(seconds):
    return synthetic_voice(260.0, 12, 0.0, seconds)


def silence(seconds):
    return np.zeros(int(seconds * SAMPLE_RATE))


def with_noise(signal, seed):
    rng = np.random.default_rng(seed)
    return (signal + 0.002 * rng.standard_normal(signal.size)).astype(np.float32)


def two_speaker_chunk(seed=0, swap=False):
    """1s silence, 3s first voice, 1.5s gap, 3s second voice, 1s silence."""
    first, second = (voice_b, voice_a) if swap else (voice_a, voice_b)
    signal = np.concatenate([silence(1.0), first(3.0), silence(1.5), second(3.0), silence(1.0)])
    return with_noise(signal, seed)


def word(text, start, duration=0.4):
    return WordSegmentInfo(substring=text, timestamp=start, duration=duration)


# Speech spans 1.0-4.0s and 5.5-8.5s
WORDS = [word("hello", 1.5), word("there", 2.5), word("good", 6.0), word("morning", 7.0)]


def tight_config():
    """Any acoustic difference splits, capped at two speakers."""
    return DiarizationConfig(clustering=ClusteringConfig(distance_threshold=0.001, max_clusters=2))


class TestHelpers(unittest.TestCase):
    """Tests for word grouping and region splitting."""

    def test_group_words(self):
        """Consecutive same-speaker words should form one segment."""
        mapped = [
            MappedWord(word("a", 0.0, 0.5), 0),
            MappedWord(word("b", 0.5, 0.5), 0),
            MappedWord(word("c", 1.2, 0.3), 1),
            MappedWord(word("d", 2.0, 0.25), 0),
        ]
        segments = group_words(mapped)
        self.assertEqual([(s.speaker_index, s.text) for s in segments], [(0, "a b"), (1, "c"), (0, "d")])
        self.assertEqual((segments[0].start_offset_ms, segments[0].end_offset_ms), (0, 1000))
        self.assertEqual(group_words([]), [])

    def test_split_regions(self):
        """Regions should be cut at inner boundaries; short spans merge."""
        regions = [SpeechRegion(0, 300), SpeechRegion(400, 500)]
        self.assertEqual(split_regions(regions, [150, 450], 50), [(0, 150), (150, 300), (400, 450), (450, 500)])
        self.assertEqual(split_regions(regions, [280], 50), [(0, 300), (400, 500)])
        self.assertEqual(split_regions(regions, [20], 50), [(0, 300), (400, 500)])
        self.assertEqual(split_regions(regions, [0, 300], 50), [(0, 300), (400, 500)])

    def test_load_words(self):
        """Words should load from a list or a {"words": [...]} object."""
        test_dir = tempfile.mkdtemp()
        try:
            listed = os.path.join(test_dir, "list.json")
            wrapped = os.path.join(test_dir, "wrapped.json")
            broken = os.path.join(test_dir, "broken.json")
            entry = {"substring": "hi", "timestamp": 0.5, "duration": 0.2}
            with open(listed, "w", encoding="utf-8") as f:
                json.dump([entry], f)
            with open(wrapped, "w", encoding="utf-8") as f:
                json.dump({"words": [entry]}, f)
            with open(broken, "w", encoding="utf-8") as f:
                f.write("{not json")

            self.assertEqual(load_words(listed), [WordSegmentInfo("hi", 0.5, 0.2)])
            self.assertEqual(load_words(wrapped), load_words(listed))
            with self.assertRaises(DiarizationError) as ctx:
                load_words(broken)
            self.assertEqual(ctx.exception.error_code, "WORDS_LOAD_ERROR")
        finally:
            shutil.rmtree(test_dir)


class TestSpeakerDiarizer(unittest.TestCase):
    """Tests for single-chunk diarization."""

    def test_two_speakers(self):
        """Two voices separated by a pause should become two speakers with default settings."""
        result = SpeakerDiarizer(DiarizationConfig()).diarize(two_speaker_chunk(), WORDS)
        self.assertEqual(result.speaker_count, 2)
        self.assertEqual([(s.speaker_index, s.text) for s in result.segments], [(0, "hello there"), (1, "good morning")])
        self.assertEqual([p.speaker_index for p in result.speaker_profiles], [0, 1])
        for profile in result.speaker_profiles:
            self.assertGreater(profile.sample_count, 0)
            self.assertIsNotNone(profile.mfcc_embedding)
            self.assertIsNotNone(profile.centroid)

    def test_same_voice_stays_one_speaker(self):
        """One voice on both sides of a pause should stay a single speaker."""
        signal = np.concatenate([silence(1.0), voice_a(3.0), silence(1.5), voice_a(3.0), silence(1.0)])
        result = SpeakerDiarizer(DiarizationConfig()).diarize(with_noise(signal, 4), WORDS)
        self.assertEqual(result.speaker_count, 1)
        self.assertEqual({s.speaker_index for s in result.segments}, {0})

    def test_word_features_preferred_for_centroid(self):
        """Recognizer voice analytics should set the profile centroid."""
        words = [WordSegmentInfo("hello", 1.5, 0.4, average_pitch=111.0), word("good", 6.0)]
        result = SpeakerDiarizer(tight_config()).diarize(two_speaker_chunk(), words)
        self.assertAlmostEqual(result.speaker_profiles[0].centroid.mean_pitch, 111.0)

    def test_too_short_chunk(self):
        """Audio shorter than one frame should fall back to a single speaker."""
        diarizer = SpeakerDiarizer(DiarizationConfig())
        result = diarizer.diarize(np.zeros(100, dtype=np.float32), [word("hi", 0.0, 0.005)])
        self.assertEqual(result.speaker_count, 1)
        self.assertEqual(result.segments[0].speaker_index, 0)
        self.assertEqual(result.speaker_profiles, [])

    def test_silent_chunk(self):
        """Silence should fall back; without words there are no speakers."""
        diarizer = SpeakerDiarizer(DiarizationConfig())
        self.assertEqual(diarizer.diarize(silence(2.0)).speaker_count, 0)
        result = diarizer.diarize(silence(2.0), [word("um", 0.5), word("yes", 1.0)])
        self.assertEqual(len(result.segments), 1)
        self.assertEqual(result.segments[0].text, "um yes")

    def test_resampling_input(self):
        """Array input at another rate should be resampled first."""
        chunk = two_speaker_chunk()
        downsampled = chunk[::2]
        result = SpeakerDiarizer(tight_config()).diarize(downsampled, WORDS, sample_rate=8000)
        self.assertEqual(result.speaker_count, 2)

    def test_missing_file(self):
        """An unreadable path should raise AudioLoadError."""
        with self.assertRaises(AudioLoadError):
            SpeakerDiarizer(DiarizationConfig()).diarize("/nonexistent/chunk.wav")

    def test_diarize_many_order(self):
        """Batch results should follow chunk index order."""
        chunks = [
            ChunkInput(chunk_index=1, audio=with_noise(voice_b(3.0), 1), words=[word("beta", 1.0)]),
            ChunkInput(chunk_index=0, audio=with_noise(voice_a(3.0), 2), words=[word("alpha", 1.0)]),
        ]
        results = SpeakerDiarizer(DiarizationConfig()).diarize_many(chunks)
        self.assertEqual([r.segments[0].text for r in results], ["alpha", "beta"])
        self.assertEqual(SpeakerDiarizer(DiarizationConfig()).diarize_many([]), [])


class TestSessionDiarization(unittest.TestCase):
    """Tests for session diarization with cross-chunk alignment."""

    def setUp(self):
        self.diarizer = SpeakerDiarizer(tight_config())
        self.chunks = [
            ChunkInput(chunk_index=0, audio=two_speaker_chunk(seed=1), words=WORDS),
            ChunkInput(chunk_index=1, audio=two_speaker_chunk(seed=2, swap=True), words=WORDS),
        ]

    def test_speakers_aligned_across_chunks(self):
        """The same voices should keep their global indices in every chunk."""
        session = SpeakerDiarizer(DiarizationConfig()).diarize_session(self.chunks)
        self.assertEqual(session.speaker_count, 2)
        self.assertEqual(session.speaker_map.alignment[1], {0: 1, 1: 0})
        self.assertEqual([s.speaker_index for s in session.chunk_results[0].segments], [0, 1])
        self.assertEqual([s.speaker_index for s in session.chunk_results[1].segments], [1, 0])
        self.assertEqual(session.identities, [])
        self.assertIsNone(session.adapted_enrollment)
        self.assertEqual(session.to_dict()["speaker_count"], 2)

    def test_enrolled_speaker_identified(self):
        """The enrolled voice should be labeled "me" and adapt the enrollment."""
        reference = self.diarizer.diarize(two_speaker_chunk(seed=3)).speaker_profiles[0]
        enrollment = VoiceEnrollmentProfile(
            display_name="Me",
            reference_embedding=reference.mfcc_embedding,
            reference_centroid=reference.centroid
        )
        session = self.diarizer.diarize_session(self.chunks, enrollment)
        by_index = {a.global_speaker_index: a.result for a in session.identities}
        self.assertEqual(by_index[0].identity, IdentityLabel.ME)
        self.assertEqual(by_index[1].identity, IdentityLabel.UNKNOWN)
        self.assertIsNotNone(session.adapted_enrollment)
        self.assertEqual(session.adapted_enrollment.version, 2)

    def test_failed_chunk_propagates(self):
        """A chunk that cannot be loaded should fail the session."""
        chunks = self.chunks + [ChunkInput(chunk_index=2, audio="/nonexistent/chunk.wav")]
        with self.assertRaises(AudioLoadError):
            self.diarizer.diarize_session(chunks)


class TestCommandLine(unittest.TestCase):
    """Tests for the speaker-pipeline command."""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.audio = os.path.join(self.test_dir, "chunk0.wav")
        sf.write(self.audio, two_speaker_chunk(), SAMPLE_RATE, subtype="FLOAT")
        self.words = os.path.join(self.test_dir, "chunk0.json")
        with open(self.words, "w", encoding="utf-8") as f:
            json.dump({"words": [w.to_dict() for w in WORDS]}, f)

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_writes_output_file(self):
        """A successful run should write the session JSON and return 0."""
        output = os.path.join(self.test_dir, "result.json")
        code = main([self.audio, "--words", self.words, "--threshold", "0.001",
                     "--max-speakers", "2", "--output", output])
        self.assertEqual(code, 0)
        with open(output, "r", encoding="utf-8") as f:
            data = json.load(f)
        self.assertEqual(data["speaker_count"], 2)
        self.assertEqual([s["text"] for s in data["chunks"]["0"]["segments"]], ["hello there", "good morning"])

    def test_stdout_output(self):
        """Without --output the JSON should go to stdout."""
        buffer = io.StringIO()
        with redirect_stdout(buffer):
            code = main([self.audio, "--workers", "1"])
        self.assertEqual(code, 0)
        self.assertIn("speaker_count", json.loads(buffer.getvalue()))

    def test_missing_audio_returns_error(self):
        """An unreadable file should print an error object and return 1."""
        buffer = io.StringIO()
        with redirect_stdout(buffer):
            code = main([os.path.join(self.test_dir, "missing.wav")])
        self.assertEqual(code, 1)
        data = json.loads(buffer.getvalue())
        self.assertTrue(data["error"])
        self.assertEqual(data["error_code"], "AUDIO_LOAD_ERROR")

    def test_words_count_mismatch(self):
        """--words must match the number of audio files."""
        with self.assertRaises(SystemExit):
            with redirect_stdout(io.StringIO()):
                main([self.audio, self.audio, "--words", self.words])


if __name__ == "__main__":
    unittest.main(verbosity=2)
