"""
Transcript entries, text cleanup and meeting export (markdown / JSON).
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from .logger import get_logger
from .utils import ConfigManager

logger = get_logger("transcript")

DEFAULT_OUTPUT_DIR = Path.cwd() / "Transcripts"

# Filler words stripped from recognised text
FILLERS = [
    r'\bum+\b', r'\buh+\b', r'\bah+\b', r'\beh+\b',
    r'\bhmm+\b', r'\bmm+\b', r'\bhm+\b',
    r'\byou know,?\s*', r'\bI mean,?\s*',
]

# Common Whisper hallucinations on near-silent audio (full match - discard entire text)
HALLUCINATIONS = [
    r"^\.+$",
    r"^thank you\.?$",
    r"^thanks\.?$",
    r"^thank you for watching\.?$",
    r"^thanks for watching\.?$",
    r"^bye\.?$",
    r"^you\.?$",
    r"^\[.*\]$",  # [Music], [BLANK_AUDIO], etc.
    r"^\(.*\)$",
    r"^♪.*♪$",
    r"^-+$",
]

# Hallucinated sign-offs appended to real speech
TRAILING_HALLUCINATIONS = [
    r"\s*thanks for watching\.?\s*$",
    r"\s*thank you for watching\.?\s*$",
    r"\s*subscribe to (my|the) channel\.?\s*$",
    r"\s*please like and subscribe\.?\s*$",
    r"\s*see you (in the )?next (one|video|time)\.?\s*$",
]


def post_process_text(text: str, final: bool = True) -> str:
    """
    Clean up recognised text.

    Interim text (final=False) is cleaned the same way but is not given
    closing punctuation, since more words are still coming.
    """
    if not text:
        return ""

    text = text.strip()

    for pattern in HALLUCINATIONS:
        if re.match(pattern, text, flags=re.IGNORECASE):
            return ""

    if ConfigManager.get_value_or(True, 'post_processing', 'remove_filler_words'):
        for filler in FILLERS:
            text = re.sub(filler, '', text, flags=re.IGNORECASE)

    for pattern in TRAILING_HALLUCINATIONS:
        text = re.sub(pattern, '', text, flags=re.IGNORECASE)

    # Clean up
    text = re.sub(r'\s+', ' ', text)
    text = re.sub(r'\s+([,.?!])', r'\1', text)
    text = re.sub(r'([,.?!])\s*\1+', r'\1', text)
    text = re.sub(r',\s*\.', '.', text)
    text = re.sub(r'^\s*[,.]\s*', '', text)
    text = text.strip()

    if len(text) < 2:
        return ""

    # Spelling corrections for names the model keeps getting wrong
    replacements = ConfigManager.get_config_value('post_processing', 'name_replacements') or {}
    for wrong, correct in replacements.items():
        text = re.sub(r'\b' + re.escape(wrong) + r'\b', correct, text, flags=re.IGNORECASE)

    if final and text[-1] not in '.?!':
        text += '.'
    return text


def sanitize_filename(name: str) -> str:
    """Make a meeting title safe to use as a filename."""
    if not name:
        return "untitled"
    name = re.sub(r'[<>:"/\\|?*]', '', name)
    name = re.sub(r'[\x00-\x1f]', '', name)
    name = name.strip().rstrip('. ')
    return name[:200] or "untitled"


def format_timestamp(seconds: float) -> str:
    """Format seconds as HH:MM:SS or MM:SS."""
    seconds = max(0, seconds)
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


@dataclass(frozen=True)
class TranscriptionEntry:
    """One line of the live transcript. Interim entries get replaced, finals never change."""
    id: str
    timestamp: float      # Unix time (seconds)
    speaker: str
    speaker_id: str
    text: str
    confidence: float
    audio_level: float
    is_final: bool

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "speaker": self.speaker,
            "speaker_id": self.speaker_id,
            "text": self.text,
            "confidence": self.confidence,
            "audio_level": self.audio_level,
            "is_final": self.is_final,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TranscriptionEntry":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            timestamp=data["timestamp"],
            speaker=data["speaker"],
            speaker_id=data.get("speaker_id", ""),
            text=data["text"],
            confidence=data.get("confidence", 0.0),
            audio_level=data.get("audio_level", 0.0),
            is_final=data.get("is_final", True),
        )


@dataclass
class TranscriptExport:
    """A finished meeting: final segments plus per-speaker statistics."""

    start_time: datetime
    end_time: datetime
    segments: List[TranscriptionEntry] = field(default_factory=list)
    participants: Dict[str, dict] = field(default_factory=dict)
    title: Optional[str] = None
    include_timestamps: bool = True

    def __post_init__(self):
        if not self.title:
            self.title = f"Meeting {self.start_time.strftime('%Y-%m-%d %H:%M')}"
        # Speakers that were transcribed but never made it into the stats window
        for entry in self.segments:
            self.participants.setdefault(entry.speaker, {
                "total_speaking_time": 0.0,
                "segments": 0,
                "avg_audio_level": 0.0,
                "last_seen": 0.0,
            })

    @property
    def duration_seconds(self) -> float:
        return max(0.0, (self.end_time - self.start_time).total_seconds())

    @property
    def summary(self) -> str:
        minutes = round(self.duration_seconds / 60)
        return (
            f"Meeting summary: {len(self.segments)} segments from "
            f"{len(self.participants)} speakers over {minutes} minutes."
        )

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration": self.duration_seconds,
            "participants": self.participants,
            "segments": [entry.to_dict() for entry in self.segments],
            "summary": self.summary,
        }

    def to_markdown(self) -> str:
        lines = [
            f"# {self.title}",
            "",
            f"**Date**: {self.start_time.strftime('%Y-%m-%d %H:%M')}",
            f"**Duration**: {int(self.duration_seconds // 60)} minutes",
            f"**Participants**: {', '.join(sorted(self.participants))}",
            "",
            self.summary,
            "",
            "---",
            "",
        ]

        if self.segments:
            lines.append("## Full Transcript")
            lines.append("")
            start = self.start_time.timestamp()
            for entry in self.segments:
                if self.include_timestamps:
                    ts = format_timestamp(entry.timestamp - start)
                    lines.append(f"**[{ts}] {entry.speaker}**: {entry.text}")
                else:
                    lines.append(f"**{entry.speaker}**: {entry.text}")
                lines.append("")

        return "\n".join(lines)

    def default_filename(self, suffix: str = ".md") -> str:
        return sanitize_filename(self.start_time.strftime("meeting_%Y%m%d_%H%M%S")) + suffix

    def save(self, path=None) -> Path:
        """
        Write the transcript atomically. A .json path gets the JSON export,
        anything else markdown. A directory (or None) gets a dated filename.
        """
        if path is None:
            output_dir = ConfigManager.get_config_value('transcript', 'output_dir')
            path = Path(output_dir) if output_dir else DEFAULT_OUTPUT_DIR
        filepath = Path(path)
        if filepath.is_dir() or not filepath.suffix:
            filepath = filepath / self.default_filename()
        filepath.parent.mkdir(parents=True, exist_ok=True)

        if filepath.suffix.lower() == ".json":
            content = json.dumps(self.to_dict(), indent=2, ensure_ascii=False)
        else:
            content = self.to_markdown()

        # Atomic write: write to temp file then rename
        temp_path = filepath.with_suffix(filepath.suffix + '.tmp')
        temp_path.write_text(content, encoding='utf-8')
        temp_path.replace(filepath)
        logger.info(f"Transcript saved to {filepath}")
        ConfigManager.console_print(f"[Huddle Transcript] Saved to: {filepath}")
        return filepath
