"""
Speaker attribution from audio activity.

Maps an instantaneous (level, timestamp) pair to a speaker label. When the
name registry has candidates it is used as an oracle: a highlighted candidate
wins outright, otherwise speakers rotate round-robin after a silence gap.
Without candidates a single generic "Speaker 1" is used.
"""

from dataclasses import dataclass, replace
from typing import Dict, List, Optional

from .logger import get_logger
from .utils import ConfigManager

logger = get_logger("speakers")

UNKNOWN_SPEAKER = "Unknown Speaker"

DEFAULT_SPEAKING_THRESHOLD = 0.1
DEFAULT_SWITCH_COOLDOWN_MS = 1000
MIN_SWITCH_COOLDOWN_MS = 500

RECENT_WINDOW = 10          # History entries checked by round-robin
RECORD_GAP_MS = 2000        # Same-speaker entries closer than this are not recorded
HISTORY_CAP = 50
HISTORY_KEEP = 25


@dataclass(frozen=True)
class SpeakerIdentity:
    """The speaker currently assigned to incoming speech."""
    id: str
    name: str


@dataclass(frozen=True)
class SpeakerActivityRecord:
    """One history entry, used only for statistics."""
    speaker_id: str
    speaker_name: str
    timestamp: float      # ms
    audio_level: float
    duration: float       # ms since the previous entry for any speaker


class SpeakerIdentifier:
    """Turns audio levels into speaker names, one instance per session."""

    def __init__(
        self,
        registry=None,
        speaking_threshold: Optional[float] = None,
        switch_cooldown: Optional[float] = None
    ):
        """
        Args:
            registry: Anything with list_candidates() and current_highlighted(),
                normally a NameCandidateRegistry. None means generic mode only.
            speaking_threshold: Level above which someone is speaking (0-1)
            switch_cooldown: ms of silence before a timing-based switch
        """
        self.registry = registry
        self.current_speaker: Optional[SpeakerIdentity] = None
        self.last_speaking_time: float = 0.0
        self._history: List[SpeakerActivityRecord] = []
        self._generic_count = 0

        if speaking_threshold is None:
            speaking_threshold = ConfigManager.get_value_or(DEFAULT_SPEAKING_THRESHOLD, 'speakers', 'speaking_threshold')
        if switch_cooldown is None:
            switch_cooldown = ConfigManager.get_value_or(DEFAULT_SWITCH_COOLDOWN_MS, 'speakers', 'switch_cooldown_ms')
        self.speaking_threshold = DEFAULT_SPEAKING_THRESHOLD
        self.switch_cooldown = DEFAULT_SWITCH_COOLDOWN_MS
        self.set_speaking_threshold(speaking_threshold)
        self.set_switch_cooldown(switch_cooldown)

    def _candidates(self) -> list:
        if self.registry is None:
            return []
        return self.registry.list_candidates()

    def identify(self, level: float, timestamp: float) -> str:
        """
        Return the speaker name for speech at the given level.

        Args:
            level: Audio level in [0, 1]
            timestamp: Time in milliseconds

        Returns:
            Speaker name, or "Unknown Speaker" before anyone has spoken
        """
        candidates = self._candidates()
        speaking = level > self.speaking_threshold

        if not candidates:
            return self._identify_generic(level, timestamp, speaking)

        if not speaking:
            # Silence never switches speakers
            return self._current_name()

        highlighted = self.registry.current_highlighted()
        if highlighted is not None and highlighted.name and any(c.id == highlighted.id for c in candidates):
            self._switch_to(SpeakerIdentity(highlighted.id, highlighted.name))
        elif self.current_speaker is None or timestamp - self.last_speaking_time > self.switch_cooldown:
            self._switch_to(self._select_next(candidates))

        self._record(self.current_speaker, level, timestamp)
        self.last_speaking_time = timestamp
        return self.current_speaker.name

    def _identify_generic(self, level: float, timestamp: float, speaking: bool) -> str:
        if speaking:
            if self.current_speaker is None:
                self._generic_count = max(self._generic_count, 1)
                self._switch_to(SpeakerIdentity("speaker_1", "Speaker 1"))
            self._record(self.current_speaker, level, timestamp)
            self.last_speaking_time = timestamp
        return self._current_name()

    def _current_name(self) -> str:
        return self.current_speaker.name if self.current_speaker else UNKNOWN_SPEAKER

    def _switch_to(self, identity: SpeakerIdentity):
        if identity != self.current_speaker:
            logger.debug(f"Speaker -> {identity.name}")
        self.current_speaker = identity

    def _select_next(self, candidates: list, exclude: Optional[str] = None) -> SpeakerIdentity:
        """First candidate absent from recent history, else the first candidate."""
        recent = {record.speaker_id for record in self._history[-RECENT_WINDOW:]}
        for candidate in candidates:
            if candidate.id not in recent and candidate.id != exclude:
                return SpeakerIdentity(candidate.id, candidate.name)
        if exclude is not None:
            # Manual override: rotate to whoever follows the excluded speaker
            ids = [c.id for c in candidates]
            if exclude in ids:
                nxt = candidates[(ids.index(exclude) + 1) % len(candidates)]
                return SpeakerIdentity(nxt.id, nxt.name)
        return SpeakerIdentity(candidates[0].id, candidates[0].name)

    def _record(self, speaker: SpeakerIdentity, level: float, timestamp: float):
        last = self._history[-1] if self._history else None
        if last is not None and last.speaker_id == speaker.id and timestamp - last.timestamp <= RECORD_GAP_MS:
            return

        self._history.append(SpeakerActivityRecord(
            speaker_id=speaker.id,
            speaker_name=speaker.name,
            timestamp=timestamp,
            audio_level=level,
            duration=timestamp - last.timestamp if last else 0.0
        ))
        if len(self._history) > HISTORY_CAP:
            self._history = self._history[-HISTORY_KEEP:]

    def set_speaking_threshold(self, value: float) -> float:
        self.speaking_threshold = max(0.0, min(1.0, float(value)))
        logger.info(f"Speaking threshold set to {self.speaking_threshold}")
        return self.speaking_threshold

    def set_switch_cooldown(self, ms: float) -> float:
        self.switch_cooldown = max(float(MIN_SWITCH_COOLDOWN_MS), float(ms))
        return self.switch_cooldown

    def force_switch(self, candidate_id: Optional[str] = None) -> str:
        """
        Manually change the current speaker.

        With a candidate id, switch to that candidate. Without one, rotate to
        the next candidate, or to a new generic "Speaker N" when the registry
        is empty.

        Raises:
            ValueError: candidate_id is not a registered candidate
        """
        candidates = self._candidates()
        current_id = self.current_speaker.id if self.current_speaker else None

        if candidate_id is not None:
            for candidate in candidates:
                if candidate.id == candidate_id:
                    self._switch_to(SpeakerIdentity(candidate.id, candidate.name))
                    break
            else:
                raise ValueError(f"Unknown speaker candidate '{candidate_id}'")
        elif candidates:
            self._switch_to(self._select_next(candidates, exclude=current_id))
        else:
            self._generic_count += 1
            n = self._generic_count
            self._switch_to(SpeakerIdentity(f"speaker_{n}", f"Speaker {n}"))

        logger.info(f"Speaker manually switched to {self.current_speaker.name}")
        return self.current_speaker.name

    def get_current_speaker(self) -> Optional[SpeakerIdentity]:
        return self.current_speaker

    def get_history(self) -> List[SpeakerActivityRecord]:
        return [replace(record) for record in self._history]

    def get_speaker_stats(self) -> Dict[str, dict]:
        """Aggregate history into {name: {total_speaking_time, segments, avg_audio_level, last_seen}}."""
        stats: Dict[str, dict] = {}
        for record in self._history:
            data = stats.setdefault(record.speaker_name, {
                "total_speaking_time": 0.0,
                "segments": 0,
                "avg_audio_level": 0.0,
                "last_seen": 0.0,
            })
            data["total_speaking_time"] += record.duration
            data["segments"] += 1
            data["avg_audio_level"] += record.audio_level
            data["last_seen"] = max(data["last_seen"], record.timestamp)

        for data in stats.values():
            if data["segments"]:
                data["avg_audio_level"] /= data["segments"]
        return stats

    def reset(self):
        self.current_speaker = None
        self.last_speaking_time = 0.0
        self._history = []
        self._generic_count = 0
        logger.info("Speaker identifier reset")
