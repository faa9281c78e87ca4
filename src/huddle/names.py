"""
Participant name candidates read off a meeting window.

A frame source (screen region, video file, anything with is_ready()/grab())
is sampled every couple of seconds and a pluggable extractor turns each
frame into (name, confidence) pairs, optionally flagging the tile that is
highlighted as speaking. The registry keeps every name it has ever seen for
the session, with first/last seen times and an active flag.
"""

import re
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Tuple

from .logger import get_logger
from .utils import ConfigManager

try:
    import pytesseract
    from PIL import ImageGrab
except ImportError:  # pragma: no cover - OCR stack not installed
    pytesseract = None
    ImageGrab = None

logger = get_logger("names")

DEFAULT_SAMPLE_INTERVAL = 2.0
READY_POLL_INTERVAL = 0.25

# (image) -> [(name, confidence)] or [(name, confidence, highlighted)]
FrameToCandidates = Callable[[object], List[Tuple[str, float]]]


def candidate_id(name: str) -> str:
    """'Sarah  Johnson' -> 'sarah_johnson'"""
    return re.sub(r"\s+", "_", name.strip().lower())


def normalize_name(name: str) -> str:
    return re.sub(r"\s+", " ", name or "").strip()


@dataclass
class SpeakerCandidate:
    """A participant name seen on screen."""
    id: str
    name: str
    first_seen: float
    last_seen: float
    confidence: float
    is_active: bool = True


class ScreenFrameSource:
    """Grabs a region of the screen (the meeting window) with Pillow."""

    def __init__(self, bbox: Optional[Tuple[int, int, int, int]] = None):
        """
        Args:
            bbox: (left, top, right, bottom) in screen pixels, None for the whole screen
        """
        self.bbox = bbox
        self.paused = False

    def is_ready(self) -> bool:
        return ImageGrab is not None and not self.paused

    def grab(self):
        if ImageGrab is None:
            raise RuntimeError("Pillow is not installed; screen capture unavailable.")
        return ImageGrab.grab(bbox=self.bbox)


class TesseractNameExtractor:
    """
    Best-effort OCR of participant name labels.

    Tesseract word boxes are grouped into lines; a line of 1-4 capitalised,
    name-like words becomes a candidate with the mean word confidence.
    """

    NAME_WORD = re.compile(r"^[A-Z][A-Za-z'\-]*[a-z][A-Za-z'\-]*$")
    MAX_WORDS = 4
    # Meeting-client chrome that looks like a name
    UI_WORDS = {
        "mute", "unmute", "stop", "start", "video", "share", "screen", "chat",
        "participants", "record", "recording", "leave", "end", "meeting",
        "reactions", "apps", "view", "gallery", "speaker", "more", "host",
        "you", "me", "join", "audio", "settings", "people", "raise", "hand",
    }

    def __init__(self, min_confidence: float = 0.5, tesseract_cmd: Optional[str] = None):
        if pytesseract is None:
            raise RuntimeError("pytesseract is not installed. Install with: pip install pytesseract")
        self.min_confidence = min_confidence
        tesseract_cmd = tesseract_cmd or ConfigManager.get_config_value('names', 'tesseract_cmd')
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    def __call__(self, image) -> List[Tuple[str, float]]:
        data = pytesseract.image_to_data(image, config="--psm 11", output_type=pytesseract.Output.DICT)

        lines = {}
        for i, word in enumerate(data["text"]):
            word = (word or "").strip()
            conf = float(data["conf"][i])
            if not word or conf < 0:
                continue
            key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
            lines.setdefault(key, []).append((word, conf))

        candidates = []
        for words in lines.values():
            names = [w for w, _ in words]
            if not 1 <= len(names) <= self.MAX_WORDS:
                continue
            if not all(self.NAME_WORD.match(w) for w in names):
                continue
            if any(w.lower() in self.UI_WORDS for w in names):
                continue
            confidence = sum(c for _, c in words) / len(words) / 100.0
            if confidence >= self.min_confidence:
                candidates.append((" ".join(names), confidence))
        return candidates


class NameCandidateRegistry:
    """Time-stamped registry of participant names, fed by periodic frame sampling."""

    def __init__(
        self,
        extractor: Optional[FrameToCandidates] = None,
        interval: Optional[float] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Args:
            extractor: Frame -> [(name, confidence[, highlighted])]. Defaults
                to Tesseract OCR, created lazily on first attach.
            interval: Seconds between samples
            clock: Time source for first/last seen (seconds)
        """
        self._extractor = extractor
        self.interval = float(interval or ConfigManager.get_value_or(DEFAULT_SAMPLE_INTERVAL, 'names', 'sample_interval'))
        self._clock = clock

        self._candidates = {}  # id -> SpeakerCandidate, insertion ordered
        self._highlighted_id: Optional[str] = None
        self._lock = threading.Lock()

        self._frame_source = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def is_attached(self) -> bool:
        return self._frame_source is not None

    def attach(self, frame_source, background: bool = True):
        """
        Start sampling frame_source once it has a frame. Never blocks.

        With background=False the source is only bound; call tick() to sample.
        """
        if self._frame_source is not None:
            if frame_source is not self._frame_source:
                logger.warning("Name registry already attached to a frame source; ignoring new source")
            return

        if self._extractor is None:
            self._extractor = TesseractNameExtractor()

        self._frame_source = frame_source
        self._stop_event = threading.Event()
        if not background:
            return
        self._thread = threading.Thread(
            target=self._sample_loop,
            args=(frame_source, self._stop_event),
            name="huddle-names",
            daemon=True
        )
        self._thread.start()
        logger.info(f"Name sampling attached (every {self.interval}s)")

    def _sample_loop(self, frame_source, stop_event: threading.Event):
        # Wait for the first frame
        while not stop_event.is_set():
            try:
                if frame_source.is_ready():
                    break
            except Exception as e:
                logger.debug(f"Frame source readiness check failed: {e}")
            stop_event.wait(READY_POLL_INTERVAL)

        while not stop_event.is_set():
            self.tick()
            stop_event.wait(self.interval)

    def tick(self, now: Optional[float] = None) -> List[SpeakerCandidate]:
        """
        Sample the frame source once and update the registry.

        Returns:
            Copies of the candidates detected on this tick (empty on any failure)
        """
        frame_source = self._frame_source
        extractor = self._extractor
        if frame_source is None or extractor is None:
            return []

        try:
            if not frame_source.is_ready():
                return []
            frame = frame_source.grab()
            extracted = extractor(frame) or []
        except Exception as e:
            logger.warning(f"Name extraction failed this tick: {e}")
            return []

        now = self._clock() if now is None else now
        detected = []
        with self._lock:
            seen = []
            flagged = None
            for item in extracted:
                raw_name, confidence = item[0], item[1]
                name = normalize_name(raw_name)
                if not name:
                    continue
                confidence = max(0.0, min(1.0, float(confidence)))
                cid = candidate_id(name)
                candidate = self._candidates.get(cid)
                if candidate is None:
                    candidate = SpeakerCandidate(cid, name, now, now, confidence)
                    self._candidates[cid] = candidate
                    logger.info(f"New speaker candidate: {name}")
                else:
                    candidate.last_seen = max(candidate.last_seen, now)
                    candidate.confidence = max(candidate.confidence, confidence)
                    candidate.is_active = True
                if cid not in seen:
                    seen.append(cid)
                if len(item) > 2 and item[2]:
                    flagged = cid
                detected.append(replace(candidate))

            # A gallery of unflagged tiles says nothing about who is talking
            if flagged is None and len(seen) == 1:
                flagged = seen[0]
            self._highlighted_id = flagged

            for cid, candidate in self._candidates.items():
                if cid not in seen:
                    candidate.is_active = False
        return detected

    def list_candidates(self) -> List[SpeakerCandidate]:
        with self._lock:
            return [replace(c) for c in self._candidates.values()]

    def get_active_candidates(self) -> List[SpeakerCandidate]:
        with self._lock:
            return [replace(c) for c in self._candidates.values() if c.is_active]

    def get_candidate(self, cid: str) -> Optional[SpeakerCandidate]:
        with self._lock:
            candidate = self._candidates.get(cid)
            return replace(candidate) if candidate else None

    def current_highlighted(self) -> Optional[SpeakerCandidate]:
        """The candidate the last tick singled out as speaking, if still active."""
        with self._lock:
            candidate = self._candidates.get(self._highlighted_id) if self._highlighted_id else None
            if candidate is None or not candidate.is_active:
                return None
            return replace(candidate)

    def detach(self):
        """Stop sampling and forget every candidate. Idempotent."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)
        self._thread = None
        was_attached = self._frame_source is not None
        self._frame_source = None
        with self._lock:
            self._candidates = {}
            self._highlighted_id = None
        if was_attached:
            logger.info("Name sampling detached")
