"""
Speaker Pipeline

Speaker diarization for recorded speech, split into a real-time capture path
and an offline analysis path.

Components:
    - audio_preprocessor: High-pass, gain control, VAD with hangover, level metering
    - speaker_diarizer: MFCC/BIC/AHC diarization of recorded chunks and sessions
    - cross_chunk_aligner: Session-global speaker identities across chunks
    - speaker_identity_matcher: Labels the enrolled owner voice ("me")
    - voice_enrollment: Builds and stores the owner's reference voice

Usage:
    from speaker_pipeline import get_diarizer

    SpeakerDiarizer = get_diarizer()
    result = SpeakerDiarizer().diarize("chunk0.wav", words)
"""

__version__ = "1.0.0"
__author__ = "Speaker Pipeline Team"

# Lazy imports to avoid loading scikit-learn and scipy until needed
def get_diarizer():
    """Get the SpeakerDiarizer class."""
    from .speaker_diarizer import SpeakerDiarizer
    return SpeakerDiarizer

def get_audio_preprocessor():
    """Get the AudioPreprocessor class."""
    from .audio_preprocessor import AudioPreprocessor
    return AudioPreprocessor

def get_aligner():
    """Get the CrossChunkSpeakerAligner class."""
    from .cross_chunk_aligner import CrossChunkSpeakerAligner
    return CrossChunkSpeakerAligner

def get_identity_matcher():
    """Get the SpeakerIdentityMatcher class."""
    from .speaker_identity_matcher import SpeakerIdentityMatcher
    return SpeakerIdentityMatcher

def get_enrollment_service():
    """Get the VoiceEnrollmentService class."""
    from .voice_enrollment import VoiceEnrollmentService
    return VoiceEnrollmentService
