"""
Exception hierarchy shared by the capture, recognition and orchestration layers.

Only setup failures are raised to callers. Transient recognition errors are
absorbed by the orchestrator and only show up in the log.
"""


class HuddleError(Exception):
    """Base class for all Huddle errors."""


class AudioCaptureError(HuddleError):
    """Raised when the capture devices cannot be acquired."""

    hint = "Check your audio devices and try again."

    def __init__(self, message: str = "", hint: str = ""):
        self.hint = hint or self.hint
        super().__init__(message or self.hint)

    def user_message(self) -> str:
        """Message that tells the user what to do about it."""
        text = str(self)
        if self.hint and self.hint not in text:
            text = f"{text} {self.hint}"
        return text


class PermissionDenied(AudioCaptureError):
    hint = "Allow microphone and system audio access for this terminal/app in your OS privacy settings."


class DeviceNotFound(AudioCaptureError):
    hint = "Make sure a microphone is connected and a loopback source exists (BlackHole on macOS, a PulseAudio monitor on Linux, WASAPI loopback on Windows)."


class UnsupportedCapability(AudioCaptureError):
    hint = "System audio capture is not supported here. Install PortAudio (and PyAudioWPatch on Windows)."


class InitializationFailed(HuddleError):
    """Orchestrator setup failed; start() must not be called."""

    def __init__(self, message: str, cause: Exception = None):
        self.cause = cause
        super().__init__(message)


class UnsupportedPlatform(HuddleError):
    """No continuous speech-recognition capability is available."""
