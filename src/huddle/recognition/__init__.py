"""
Huddle continuous recognition sessions

Provides a unified interface for continuous speech-recognition backends:
- Whisper (faster-whisper) - Default, runs locally
"""

from .base import (
    ERROR_ABORTED,
    ERROR_AUDIO_CAPTURE,
    ERROR_LANGUAGE_NOT_SUPPORTED,
    ERROR_NETWORK,
    ERROR_NO_SPEECH,
    ERROR_NOT_ALLOWED,
    ERROR_SERVICE_NOT_ALLOWED,
    TRANSIENT_ERRORS,
    RecognitionResult,
    RecognitionSession,
    SessionNotAvailableError,
)
from .factory import (
    create_session,
    get_available_sessions,
    get_session_class,
    is_session_available,
    register_session,
)

__all__ = [
    # Base classes
    "RecognitionResult",
    "RecognitionSession",
    "SessionNotAvailableError",
    "TRANSIENT_ERRORS",
    # Error kinds
    "ERROR_ABORTED",
    "ERROR_AUDIO_CAPTURE",
    "ERROR_LANGUAGE_NOT_SUPPORTED",
    "ERROR_NETWORK",
    "ERROR_NO_SPEECH",
    "ERROR_NOT_ALLOWED",
    "ERROR_SERVICE_NOT_ALLOWED",
    # Factory functions
    "create_session",
    "get_available_sessions",
    "get_session_class",
    "is_session_available",
    "register_session",
]
