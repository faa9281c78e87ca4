"""
Base classes for continuous speech-recognition sessions.

A session reads the mixed audio stream and reports results through three
callbacks: results, errors and end-of-session. Sessions may end on their own
at any time; keeping recognition continuous is the caller's job.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional, Sequence


# Error kinds reported through on_error
ERROR_NO_SPEECH = "no-speech"
ERROR_NETWORK = "network"
ERROR_AUDIO_CAPTURE = "audio-capture"
ERROR_ABORTED = "aborted"
ERROR_NOT_ALLOWED = "not-allowed"
ERROR_SERVICE_NOT_ALLOWED = "service-not-allowed"
ERROR_LANGUAGE_NOT_SUPPORTED = "language-not-supported"

# Errors worth relaunching the session for
TRANSIENT_ERRORS = frozenset({ERROR_NO_SPEECH, ERROR_NETWORK, ERROR_AUDIO_CAPTURE, ERROR_ABORTED})


@dataclass(frozen=True)
class RecognitionResult:
    """One recognised phrase, interim or final."""
    text: str
    confidence: float = 0.0
    is_final: bool = False


ResultCallback = Callable[[int, Sequence[RecognitionResult]], None]
ErrorCallback = Callable[[str], None]
EndCallback = Callable[[], None]


class SessionNotAvailableError(Exception):
    """Raised when a session type is not available (missing dependencies)."""
    def __init__(self, session_id: str, install_hint: str):
        self.session_id = session_id
        self.install_hint = install_hint
        super().__init__(f"Recognition session '{session_id}' not available. {install_hint}")


class RecognitionSession(ABC):
    """
    Abstract base class for continuous recognition sessions.

    Callbacks may fire on any thread. After stop() the session must still
    call on_end once it has actually finished; that call is the
    acknowledgement that it is safe to start again.
    """

    SESSION_ID: str = "base"
    SESSION_NAME: str = "Base Session"

    def __init__(self):
        self._on_result: Optional[ResultCallback] = None
        self._on_error: Optional[ErrorCallback] = None
        self._on_end: Optional[EndCallback] = None

    def bind(self, on_result: ResultCallback, on_error: ErrorCallback, on_end: EndCallback):
        """Attach the three event callbacks."""
        self._on_result = on_result
        self._on_error = on_error
        self._on_end = on_end

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """True between start() and the end-of-session callback."""

    @abstractmethod
    def start(self) -> None:
        """
        Begin recognising.

        Raises:
            RuntimeError: the session is still running
        """

    @abstractmethod
    def stop(self) -> None:
        """Ask the session to finish. Pending audio may still produce a final result."""

    def _emit_results(self, result_index: int, results: Sequence[RecognitionResult]):
        if self._on_result is not None:
            self._on_result(result_index, tuple(results))

    def _emit_error(self, kind: str):
        if self._on_error is not None:
            self._on_error(kind)

    def _emit_end(self):
        if self._on_end is not None:
            self._on_end()

    @classmethod
    def is_available(cls) -> bool:
        """
        Check if this session type is available (dependencies installed).

        Override in subclasses to check for specific dependencies.
        """
        return True

    @classmethod
    def get_install_hint(cls) -> str:
        return "Install required dependencies."
