"""
Session factory for continuous recognition backends.

Backends register themselves with @register_session; availability depends
on their optional dependencies being installed.
"""

from typing import Dict, List, Optional, Type

from .base import RecognitionSession, SessionNotAvailableError


# Registry of session types (populated by register_session)
_session_registry: Dict[str, Type[RecognitionSession]] = {}


def register_session(session_class: Type[RecognitionSession]) -> Type[RecognitionSession]:
    """
    Register a session class in the registry.

    Use as a decorator:
        @register_session
        class MySession(RecognitionSession):
            SESSION_ID = "my_session"
    """
    _session_registry[session_class.SESSION_ID] = session_class
    return session_class


def get_available_sessions() -> List[str]:
    """Session IDs whose dependencies are installed."""
    return [sid for sid, cls in _session_registry.items() if cls.is_available()]


def is_session_available(session_id: str) -> bool:
    if session_id not in _session_registry:
        return False
    return _session_registry[session_id].is_available()


def get_session_class(session_id: str) -> Optional[Type[RecognitionSession]]:
    return _session_registry.get(session_id)


def create_session(session_id: str, stream, **options) -> RecognitionSession:
    """
    Create a recognition session reading from stream.

    Raises:
        SessionNotAvailableError: If the session's dependencies are missing
        ValueError: If session ID is unknown
    """
    if session_id not in _session_registry:
        available = list(_session_registry.keys())
        raise ValueError(f"Unknown recognition session '{session_id}'. Available: {available}")

    session_class = _session_registry[session_id]
    if not session_class.is_available():
        raise SessionNotAvailableError(session_id, session_class.get_install_hint())

    return session_class(stream, **options)


def _register_sessions():
    """Import backend modules to register them."""
    from . import whisper_session  # noqa: F401


_register_sessions()
