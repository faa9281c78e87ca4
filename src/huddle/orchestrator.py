"""
Live transcription orchestrator.

Owns the recognition session lifecycle and the transcript buffer. Every
recognition callback, error, session end and restart timer is turned into an
event on one queue, drained by a single worker thread, so the buffer,
speaker state and restart bookkeeping only ever change on that thread.

States: IDLE -> initialize() -> READY -> start() -> ACTIVE -> stop() -> STOPPED,
and any state -> cleanup() -> IDLE.
"""

import queue
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Callable, Dict, List, Optional, Tuple

from .capture import LOCAL, REMOTE, AudioSourceMixer, normalize_source
from .errors import AudioCaptureError, InitializationFailed, UnsupportedPlatform
from .logger import get_logger, log_error, log_exception
from .names import NameCandidateRegistry, candidate_id
from .recognition import (
    TRANSIENT_ERRORS,
    RecognitionResult,
    SessionNotAvailableError,
    create_session,
    get_session_class,
    is_session_available,
)
from .speakers import SpeakerIdentifier
from .transcript import TranscriptExport, TranscriptionEntry
from .utils import ConfigManager

logger = get_logger("orchestrator")

DEFAULT_CONFIDENCE = 0.8
DEFAULT_ERROR_RESTART_DELAY = 1.0
DEFAULT_END_RESTART_DELAY = 0.1
COMMAND_TIMEOUT = 5.0


class OrchestratorState(str, Enum):
    IDLE = "idle"
    READY = "ready"
    ACTIVE = "active"
    STOPPED = "stopped"


class EventKind(Enum):
    RESULT = "result"
    ERROR = "error"
    END = "end"
    RESTART_DUE = "restart_due"
    START = "start"
    STOP = "stop"
    CLEANUP = "cleanup"
    SHUTDOWN = "shutdown"


@dataclass
class OrchestratorEvent:
    kind: EventKind
    result_index: int = 0
    results: Tuple[RecognitionResult, ...] = ()
    error: Optional[str] = None
    generation: int = 0
    done: Optional[threading.Event] = None


def _default_timer(delay: float, callback: Callable[[], None]):
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    return timer


class TranscriptionOrchestrator:
    """Keeps a recognition session alive and turns its results into a speaker-labelled transcript."""

    def __init__(
        self,
        mixer: Optional[AudioSourceMixer] = None,
        registry: Optional[NameCandidateRegistry] = None,
        identifier: Optional[SpeakerIdentifier] = None,
        session_factory: Optional[Callable] = None,
        primary_source: Optional[str] = None,
        error_restart_delay: Optional[float] = None,
        end_restart_delay: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        timer_factory: Optional[Callable] = None
    ):
        """
        Args:
            mixer: Audio mixer (default: configured AudioSourceMixer)
            registry: Name candidate registry
            identifier: Speaker identifier, defaults to one built on the registry
            session_factory: stream -> RecognitionSession, defaults to the configured engine
            primary_source: Source whose level drives speaker identification
            error_restart_delay: Seconds before relaunching after a transient error
            end_restart_delay: Seconds before relaunching after the session ends
            clock: Unix time source in seconds
            timer_factory: (delay, callback) -> object with start()/cancel()
        """
        self.mixer = mixer or AudioSourceMixer()
        self.registry = registry or NameCandidateRegistry()
        self.identifier = identifier or SpeakerIdentifier(self.registry)
        self._session_factory = session_factory
        self.primary_source = normalize_source(
            primary_source or ConfigManager.get_value_or(REMOTE, 'audio', 'primary_source')
        )
        self.error_restart_delay = float(
            error_restart_delay if error_restart_delay is not None
            else ConfigManager.get_value_or(DEFAULT_ERROR_RESTART_DELAY, 'recognition', 'error_restart_delay')
        )
        self.end_restart_delay = float(
            end_restart_delay if end_restart_delay is not None
            else ConfigManager.get_value_or(DEFAULT_END_RESTART_DELAY, 'recognition', 'end_restart_delay')
        )
        self._clock = clock
        self._timer_factory = timer_factory or _default_timer

        self._state = OrchestratorState.IDLE
        self._is_active = False
        self._session = None
        self._session_running = False      # started and not yet acknowledged its end
        self._session_ended = threading.Event()  # set while no run is in flight
        self._session_ended.set()
        self._deferred_start: Optional[str] = None  # "start"/"restart" once the running session ends
        self._generation = 0
        self._pending_restart = None
        self.restart_count = 0

        self._entries: List[TranscriptionEntry] = []
        self._interim_slots: Dict[int, str] = {}  # result index -> interim entry id, current run
        self._buffer_lock = threading.Lock()
        self._subscribers: List[Callable[[List[TranscriptionEntry]], None]] = []

        self._queue: "queue.Queue[OrchestratorEvent]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._accepting = False

        self._started_at: Optional[datetime] = None
        self._ended_at: Optional[datetime] = None

    # --- public surface ---

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._is_active

    def initialize(self, frame_source=None):
        """
        Acquire audio, build the recognition session and start the event worker.

        Raises:
            UnsupportedPlatform: No continuous recognition capability is installed
            InitializationFailed: Audio devices could not be acquired
        """
        if self._state is not OrchestratorState.IDLE:
            logger.warning(f"initialize() called in state {self._state.value}; ignoring")
            return

        factory = self._session_factory
        if factory is None:
            engine = ConfigManager.get_value_or("whisper", 'recognition', 'engine')
            if not is_session_available(engine):
                session_class = get_session_class(engine)
                hint = session_class.get_install_hint() if session_class else ""
                raise UnsupportedPlatform(f"No continuous speech recognition available ('{engine}'). {hint}".strip())
            factory = partial(create_session, engine)

        try:
            stream = self.mixer.acquire()
        except AudioCaptureError as e:
            log_error("Audio acquisition failed", e)
            raise InitializationFailed(e.user_message(), cause=e) from e

        try:
            session = factory(stream)
        except SessionNotAvailableError as e:
            self.mixer.release()
            raise UnsupportedPlatform(str(e)) from e
        except Exception as e:
            self.mixer.release()
            log_error("Could not create recognition session", e)
            raise InitializationFailed(f"Could not create recognition session: {e}", cause=e) from e

        session.bind(self._on_session_result, self._on_session_error, self._on_session_end)
        self._session = session

        if frame_source is not None:
            try:
                self.registry.attach(frame_source)
            except RuntimeError as e:
                # Names are best-effort; generic speaker labels still work
                logger.warning(f"Name sampling unavailable: {e}")

        self._start_worker()
        self._state = OrchestratorState.READY
        logger.info("Orchestrator ready")

    def start(self):
        """Start (or resume) transcription."""
        if self._state is OrchestratorState.IDLE:
            raise RuntimeError("initialize() must succeed before start()")
        self._call(EventKind.START)

    def stop(self):
        """Stop transcription; the buffer is kept."""
        if self._state is OrchestratorState.IDLE:
            return
        self._call(EventKind.STOP)

    def cleanup(self):
        """Stop everything, release devices, forget the transcript. Idempotent."""
        if self._worker is not None:
            self._call(EventKind.CLEANUP)
        self._accepting = False
        self._shutdown_worker()

        self.mixer.release()
        self.registry.detach()
        self.identifier.reset()
        with self._buffer_lock:
            self._entries = []
            self._interim_slots = {}

        self._session = None
        self._session_running = False
        self._session_ended.set()
        self._deferred_start = None
        self._started_at = None
        self._ended_at = None
        if self._state is not OrchestratorState.IDLE:
            logger.info("Orchestrator cleaned up")
        self._state = OrchestratorState.IDLE

    def on_update(self, callback: Callable[[List[TranscriptionEntry]], None]):
        """Register a callback receiving a copy of the buffer on every change."""
        self._subscribers.append(callback)

    def wait_idle(self):
        """Block until every queued event has been processed."""
        self._queue.join()

    def wait_stopped(self, timeout: float = COMMAND_TIMEOUT) -> bool:
        """
        After stop(), block until the session has acknowledged its end and
        everything it flushed on the way out is in the buffer.

        Returns False if the session was still running after timeout seconds.
        """
        ended = self._session_ended.wait(timeout)
        if not ended:
            logger.warning(f"Recognition session did not end within {timeout}s")
        self.wait_idle()
        return ended

    def get_entries(self) -> List[TranscriptionEntry]:
        """Snapshot of the whole buffer, interim entries included."""
        with self._buffer_lock:
            return list(self._entries)

    def get_transcription_history(self) -> List[TranscriptionEntry]:
        """Final entries only, in buffer order."""
        with self._buffer_lock:
            return [entry for entry in self._entries if entry.is_final]

    def get_speaker_stats(self) -> dict:
        return self.identifier.get_speaker_stats()

    def adjust_audio_levels(self, local_gain: float, remote_gain: float) -> Tuple[float, float]:
        """Set both source gains; out-of-range values saturate to [0, 3]."""
        return self.mixer.set_gain(LOCAL, local_gain), self.mixer.set_gain(REMOTE, remote_gain)

    def set_speaking_threshold(self, value: float) -> float:
        return self.identifier.set_speaking_threshold(value)

    def get_audio_levels(self) -> dict:
        return self.mixer.get_all_levels()

    def export_transcript(self, title: Optional[str] = None) -> TranscriptExport:
        """Package the final entries and speaker stats for saving."""
        now = datetime.fromtimestamp(self._clock())
        start = self._started_at or now
        end = now if self._is_active or self._ended_at is None else self._ended_at
        return TranscriptExport(
            start_time=start,
            end_time=end,
            segments=self.get_transcription_history(),
            participants=self.get_speaker_stats(),
            title=title,
            include_timestamps=ConfigManager.get_value_or(True, 'transcript', 'include_timestamps')
        )

    # --- session callbacks (any thread) ---

    def _on_session_result(self, result_index: int, results):
        self._post(OrchestratorEvent(EventKind.RESULT, result_index=result_index, results=tuple(results)))

    def _on_session_error(self, kind: str):
        self._post(OrchestratorEvent(EventKind.ERROR, error=kind))

    def _on_session_end(self):
        self._post(OrchestratorEvent(EventKind.END))

    # --- event worker ---

    def _post(self, event: OrchestratorEvent):
        if not self._accepting:
            logger.debug(f"Dropping {event.kind.value} event after cleanup")
            return
        self._queue.put(event)

    def _start_worker(self):
        self._accepting = True
        self._worker = threading.Thread(target=self._run, name="huddle-orchestrator", daemon=True)
        self._worker.start()

    def _shutdown_worker(self):
        worker = self._worker
        if worker is None:
            return
        self._queue.put(OrchestratorEvent(EventKind.SHUTDOWN))
        if worker is not threading.current_thread():
            worker.join(timeout=COMMAND_TIMEOUT)
        self._worker = None

    def _call(self, kind: EventKind):
        """Run a command on the worker thread and wait for it."""
        if self._worker is None or threading.current_thread() is self._worker:
            self._dispatch(OrchestratorEvent(kind))
            return
        done = threading.Event()
        self._queue.put(OrchestratorEvent(kind, done=done))
        if not done.wait(COMMAND_TIMEOUT):
            logger.warning(f"{kind.value} command timed out waiting for the event worker")

    def _run(self):
        while True:
            event = self._queue.get()
            try:
                if event.kind is EventKind.SHUTDOWN:
                    return
                self._dispatch(event)
            except Exception as e:
                log_exception(e, f"handling {event.kind.value} event")
            finally:
                if event.done is not None:
                    event.done.set()
                self._queue.task_done()

    def _dispatch(self, event: OrchestratorEvent):
        handler = {
            EventKind.RESULT: self._handle_result,
            EventKind.ERROR: self._handle_error,
            EventKind.END: self._handle_end,
            EventKind.RESTART_DUE: self._handle_restart_due,
            EventKind.START: self._handle_start,
            EventKind.STOP: self._handle_stop,
            EventKind.CLEANUP: self._handle_cleanup,
        }[event.kind]
        handler(event)

    # --- handlers (worker thread only) ---

    def _handle_start(self, event: OrchestratorEvent):
        if self._state is OrchestratorState.ACTIVE:
            return
        self._generation += 1
        self._cancel_pending_restart()
        self._is_active = True
        self._state = OrchestratorState.ACTIVE
        if self._started_at is None:
            self._started_at = datetime.fromtimestamp(self._clock())

        if self._session_running:
            # Previous run has not acknowledged its stop yet
            self._deferred_start = "start"
        else:
            self._launch_session()
        logger.info("Transcription started")
        ConfigManager.console_print("[Huddle] Transcription started")

    def _handle_stop(self, event: Optional[OrchestratorEvent] = None):
        if self._state is not OrchestratorState.ACTIVE:
            return
        self._deactivate()
        self._state = OrchestratorState.STOPPED
        self._ended_at = datetime.fromtimestamp(self._clock())
        logger.info("Transcription stopped")
        ConfigManager.console_print("[Huddle] Transcription stopped")

    def _handle_cleanup(self, event: OrchestratorEvent):
        self._deactivate()

    def _deactivate(self):
        self._generation += 1
        self._cancel_pending_restart()
        self._deferred_start = None
        self._is_active = False
        if self._session_running and self._session is not None:
            self._session.stop()

    def _handle_result(self, event: OrchestratorEvent):
        if self._state is OrchestratorState.IDLE:
            return
        results = event.results
        for i in range(max(0, event.result_index), len(results)):
            result = results[i]
            text = (result.text or "").strip()
            if not text:
                continue

            confidence = result.confidence if result.confidence and result.confidence > 0 else DEFAULT_CONFIDENCE
            level = self.mixer.level_of(self.primary_source)
            now = self._clock()
            speaker = self.identifier.identify(level, now * 1000)
            current = self.identifier.get_current_speaker()
            entry = TranscriptionEntry(
                id=f"{int(now * 1000)}_{i}",
                timestamp=now,
                speaker=speaker,
                speaker_id=current.id if current else candidate_id(speaker),
                text=text,
                confidence=min(1.0, float(confidence)),
                audio_level=level,
                is_final=result.is_final
            )

            with self._buffer_lock:
                # Entry id of the interim this result index last produced
                slot_id = self._interim_slots.pop(i, None)
                if entry.is_final:
                    # Finalizing supersedes the result's own interim and the speaker's interim
                    self._entries = [
                        e for e in self._entries
                        if e.is_final or (e.speaker != speaker and e.id != slot_id)
                    ]
                    self._entries.append(entry)
                else:
                    self._interim_slots[i] = entry.id
                    for idx, existing in enumerate(self._entries):
                        if not existing.is_final and (existing.id == slot_id or existing.speaker == speaker):
                            self._entries[idx] = entry
                            break
                    else:
                        self._entries.append(entry)
                snapshot = list(self._entries)

            if entry.is_final:
                logger.debug(f"{speaker}: {text}")
            self._notify(snapshot)

    def _notify(self, snapshot: List[TranscriptionEntry]):
        for callback in list(self._subscribers):
            try:
                callback(list(snapshot))
            except Exception as e:
                log_exception(e, "in transcript subscriber")

    def _handle_error(self, event: OrchestratorEvent):
        kind = event.error
        if kind in TRANSIENT_ERRORS:
            logger.info(f"Recognition error '{kind}'")
            if self._is_active:
                self._schedule_restart(self.error_restart_delay, kind)
            return

        log_error(f"Recognition error '{kind}' is not recoverable; transcription stopped")
        ConfigManager.console_print(f"[!] Speech recognition stopped: {kind}")
        self._handle_stop()

    def _handle_end(self, event: OrchestratorEvent):
        self._session_running = False
        self._session_ended.set()
        if not self._is_active:
            return

        if self._deferred_start is not None:
            restart = self._deferred_start == "restart"
            self._deferred_start = None
            self._launch_session(restart=restart)
            return

        # An error restart already pending keeps its own delay
        if self._pending_restart is None:
            self._schedule_restart(self.end_restart_delay, "session ended")

    def _handle_restart_due(self, event: OrchestratorEvent):
        if event.generation != self._generation or not self._is_active or self._pending_restart is None:
            logger.debug("Ignoring stale restart")
            return
        self._pending_restart = None

        if self._session_running:
            # Never overlap two runs: stop this one and relaunch on its end
            self._deferred_start = "restart"
            self._session.stop()
            return
        self._launch_session(restart=True)

    # --- restart plumbing ---

    def _launch_session(self, restart: bool = False):
        try:
            self._session.start()
        except Exception as e:
            logger.warning(f"Recognition session failed to start: {e}")
            self._schedule_restart(self.error_restart_delay, "start failed")
            return
        self._session_running = True
        self._session_ended.clear()
        self._interim_slots = {}
        if restart:
            self.restart_count += 1
            logger.info(f"Recognition session restarted ({self.restart_count})")

    def _schedule_restart(self, delay: float, reason: str):
        self._cancel_pending_restart()
        self._generation += 1
        generation = self._generation

        def fire():
            self._post(OrchestratorEvent(EventKind.RESTART_DUE, generation=generation))

        timer = self._timer_factory(delay, fire)
        self._pending_restart = timer
        timer.start()
        logger.debug(f"Restart in {delay}s ({reason})")

    def _cancel_pending_restart(self):
        timer = self._pending_restart
        self._pending_restart = None
        if timer is not None:
            timer.cancel()
