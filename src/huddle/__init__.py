"""
Huddle - live speaker-labelled meeting transcription

Captures microphone + system loopback audio, keeps a continuous speech
recognition session alive and attributes each utterance to a speaker.
"""

__version__ = "0.1.0"


# Lazy imports so `import huddle` does not pull in audio/OCR libraries
def __getattr__(name):
    if name == "AudioSourceMixer":
        from .capture import AudioSourceMixer
        return AudioSourceMixer
    elif name == "NameCandidateRegistry":
        from .names import NameCandidateRegistry
        return NameCandidateRegistry
    elif name == "SpeakerIdentifier":
        from .speakers import SpeakerIdentifier
        return SpeakerIdentifier
    elif name == "TranscriptionOrchestrator":
        from .orchestrator import TranscriptionOrchestrator
        return TranscriptionOrchestrator
    elif name == "TranscriptionEntry":
        from .transcript import TranscriptionEntry
        return TranscriptionEntry
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "AudioSourceMixer",
    "NameCandidateRegistry",
    "SpeakerIdentifier",
    "TranscriptionOrchestrator",
    "TranscriptionEntry",
]
