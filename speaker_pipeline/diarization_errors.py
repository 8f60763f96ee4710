#!/usr/bin/env python3
"""
diarization_errors.py - Exceptions raised at the I/O and enrollment boundary

The numeric pipeline itself is total: empty buffers, empty word lists and
degenerate clusters produce empty or neutral results. Exceptions are reserved
for reading audio files and for the voice enrollment workflow, where the
caller has to react (re-record, pick another file, ...).

Every error carries a stable error_code and can be rendered with to_dict()
for JSON output.
"""

from typing import Any, Dict, List, Optional


class DiarizationError(Exception):
    """Base error for the speaker pipeline."""
    def __init__(self, message: str, error_code: str = "DIARIZATION_ERROR", details: Optional[Dict] = None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }


class AudioLoadError(DiarizationError):
    """Raised when an audio chunk file cannot be read."""
    def __init__(self, path: str, details: Optional[str] = None):
        super().__init__(
            message=f"Failed to read audio file '{path}'",
            error_code="AUDIO_LOAD_ERROR",
            details={"path": path, "reason": details or "Unknown error while decoding audio"}
        )


# ============================================================================
# Voice enrollment errors
# ============================================================================

class EnrollmentError(DiarizationError):
    """Base error for the voice enrollment workflow."""
    pass


class PromptNotFoundError(EnrollmentError):
    """Raised when a sample references an unknown enrollment prompt."""
    def __init__(self, prompt_id: str):
        super().__init__(
            message=f"Enrollment prompt '{prompt_id}' not found",
            error_code="PROMPT_NOT_FOUND",
            details={"prompt_id": prompt_id}
        )


class InsufficientSpeechError(EnrollmentError):
    """Raised when a take contains too few speech frames to embed."""
    def __init__(self, speech_frames: int, minimum_frames: int):
        super().__init__(
            message=f"Not enough speech in sample: {speech_frames} frames, need {minimum_frames}",
            error_code="INSUFFICIENT_SPEECH",
            details={"speech_frames": speech_frames, "minimum_frames": minimum_frames}
        )


class LowQualitySampleError(EnrollmentError):
    """Raised when a take fails the enrollment quality gate."""
    def __init__(self, reasons: List[str]):
        self.reasons = list(reasons)
        super().__init__(
            message=f"Sample rejected: {', '.join(self.reasons)}",
            error_code="LOW_QUALITY",
            details={"reasons": self.reasons}
        )


class EmbeddingUnavailableError(EnrollmentError):
    """Raised when no embedding could be computed for a take."""
    def __init__(self):
        super().__init__(
            message="Could not compute a speaker embedding for the sample",
            error_code="EMBEDDING_UNAVAILABLE"
        )


class InsufficientAcceptedSamplesError(EnrollmentError):
    """Raised when finalizing with fewer accepted takes than required."""
    def __init__(self, accepted: int, required: int):
        super().__init__(
            message=f"Need at least {required} accepted samples, have {accepted}",
            error_code="INSUFFICIENT_ACCEPTED_SAMPLES",
            details={"accepted": accepted, "required": required}
        )
