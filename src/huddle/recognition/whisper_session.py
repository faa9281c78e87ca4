"""
Continuous recognition session using faster-whisper.

Reads the mixed stream on a worker thread, splits it into utterances with
webrtcvad, transcribes the growing utterance for interim results and emits a
final result once the speaker pauses. Like a browser recognition session it
ends on its own: after a stretch with no speech, after max_session_seconds,
or when the audio stream goes away.
"""

import math
import threading
import time
from typing import Callable, List, Optional

import numpy as np
import webrtcvad

from ..logger import get_logger
from ..transcript import post_process_text
from ..utils import ConfigManager
from .base import (
    ERROR_ABORTED,
    ERROR_AUDIO_CAPTURE,
    ERROR_NO_SPEECH,
    RecognitionResult,
    RecognitionSession,
)
from .factory import register_session

logger = get_logger("recognition")

VAD_FRAME_MS = 30
VAD_RATES = (8000, 16000, 32000, 48000)
READ_TIMEOUT = 0.1


def _option(value, key, default):
    if value is not None:
        return value
    return ConfigManager.get_value_or(default, 'recognition', key)


@register_session
class WhisperRecognitionSession(RecognitionSession):
    """
    Recognition session backed by a local Whisper model (faster-whisper).

    faster-whisper is a CTranslate2 implementation of Whisper; it transcribes
    whole buffers, so continuity comes from re-transcribing the current
    utterance every interim_interval seconds.
    """

    SESSION_ID = "whisper"
    SESSION_NAME = "Whisper (faster-whisper)"

    def __init__(
        self,
        stream,
        model: Optional[str] = None,
        device: Optional[str] = None,
        compute_type: Optional[str] = None,
        language: Optional[str] = None,
        no_speech_timeout: Optional[float] = None,
        max_session_seconds: Optional[float] = None,
        interim_interval: Optional[float] = None,
        silence_duration_ms: Optional[int] = None,
        max_utterance_seconds: Optional[float] = None,
        vad_aggressiveness: Optional[int] = None,
        model_instance=None,
        speech_detector: Optional[Callable[[bytes, int], bool]] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Args:
            stream: MixedStream (anything with read(timeout), sample_rate, closed)
            model_instance: Preloaded model exposing faster-whisper's transcribe()
            speech_detector: (pcm16 frame bytes, sample_rate) -> bool, defaults to webrtcvad
            clock: Monotonic time source in seconds
        """
        super().__init__()
        self.stream = stream
        self.sample_rate = int(stream.sample_rate)
        if self.sample_rate not in VAD_RATES:
            raise ValueError(f"Stream sample rate {self.sample_rate}Hz not supported (use one of {VAD_RATES})")

        self.model_name = _option(model, 'model', "base.en")
        self.device = _option(device, 'device', "auto")
        self.compute_type = _option(compute_type, 'compute_type', "int8")
        self.language = _option(language, 'language', "en")
        self.no_speech_timeout = float(_option(no_speech_timeout, 'no_speech_timeout', 8.0))
        self.max_session_seconds = float(_option(max_session_seconds, 'max_session_seconds', 60.0))
        self.interim_interval = float(_option(interim_interval, 'interim_interval', 1.0))
        silence_ms = int(_option(silence_duration_ms, 'silence_duration_ms', 600))
        self.max_utterance_seconds = float(_option(max_utterance_seconds, 'max_utterance_seconds', 15.0))

        if speech_detector is None:
            aggressiveness = vad_aggressiveness
            if aggressiveness is None:
                aggressiveness = ConfigManager.get_value_or(2, 'audio', 'vad_aggressiveness')
            vad = webrtcvad.Vad(int(aggressiveness))
            speech_detector = vad.is_speech
        self._is_speech = speech_detector

        # VAD setup - 30ms frames (480 samples at 16kHz)
        self._frame_size = int(self.sample_rate * VAD_FRAME_MS / 1000)
        self._silence_frames_needed = max(1, int(silence_ms / VAD_FRAME_MS))
        self._clock = clock

        self._model = model_instance
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._running = False
        self._lock = threading.Lock()

    @classmethod
    def is_available(cls) -> bool:
        """Check if faster-whisper is installed."""
        try:
            import faster_whisper  # noqa: F401
            return True
        except ImportError:
            return False

    @classmethod
    def get_install_hint(cls) -> str:
        return "pip install faster-whisper"

    @property
    def is_running(self) -> bool:
        return self._running

    def load(self):
        """Load the Whisper model (first start() does this if needed)."""
        if self._model is not None:
            return
        from faster_whisper import WhisperModel

        ConfigManager.console_print(f"[Huddle Recognition] Loading model '{self.model_name}' ({self.device}, {self.compute_type})...")
        try:
            self._model = WhisperModel(self.model_name, device=self.device, compute_type=self.compute_type)
        except Exception as e:
            if self.device == "cpu":
                raise
            logger.warning(f"Model load on {self.device} failed ({e}), falling back to CPU")
            self._model = WhisperModel(self.model_name, device="cpu", compute_type="int8")
        logger.info(f"Whisper model '{self.model_name}' loaded")

    def start(self):
        with self._lock:
            if self._running:
                raise RuntimeError("Recognition session already running")
            self.load()
            self._running = True
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop_event,),
                name="huddle-recognition",
                daemon=True
            )
            self._thread.start()
        logger.debug("Recognition session started")

    def stop(self):
        self._stop_event.set()

    def join(self, timeout: Optional[float] = None):
        """Wait for the worker thread to finish (tests and shutdown)."""
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _transcribe(self, audio: np.ndarray, final: bool) -> RecognitionResult:
        segments, _info = self._model.transcribe(
            audio,
            language=self.language,
            beam_size=5 if final else 1,
            vad_filter=False,
            condition_on_previous_text=False,
        )
        texts = []
        logprobs = []
        for segment in segments:
            texts.append(segment.text)
            avg_logprob = getattr(segment, "avg_logprob", None)
            if avg_logprob is not None:
                logprobs.append(avg_logprob)

        text = post_process_text("".join(texts), final=final)
        confidence = 0.0
        if logprobs:
            confidence = max(0.0, min(1.0, math.exp(sum(logprobs) / len(logprobs))))
        return RecognitionResult(text=text, confidence=confidence, is_final=final)

    def _run(self, stop_event: threading.Event):
        """Worker loop: read audio, detect utterances, emit results until the session ends."""
        results: List[RecognitionResult] = []
        utterance: List[np.ndarray] = []
        utterance_samples = 0
        pending = np.array([], dtype=np.int16)
        preroll: Optional[np.ndarray] = None
        in_speech = False
        silence_frames = 0

        started = self._clock()
        last_speech = started
        last_interim = started

        def publish(result: RecognitionResult, replace_interim: bool):
            # Interim results occupy the last slot until finalized
            if replace_interim and results and not results[-1].is_final:
                results[-1] = result
            else:
                results.append(result)
            index = len(results) - 1
            self._emit_results(index, list(results))

        def finish_utterance():
            nonlocal utterance, utterance_samples, in_speech, silence_frames
            audio = np.concatenate(utterance) if utterance else None
            utterance, utterance_samples = [], 0
            in_speech, silence_frames = False, 0
            if audio is None:
                return
            result = self._transcribe(audio, final=True)
            if result.text:
                publish(result, replace_interim=True)
            elif results and not results[-1].is_final:
                results.pop()  # Interim turned out to be noise

        try:
            while not stop_event.is_set():
                if self.stream.closed:
                    logger.warning("Audio stream closed under the recognition session")
                    self._emit_error(ERROR_AUDIO_CAPTURE)
                    break

                block = self.stream.read(timeout=READ_TIMEOUT)
                now = self._clock()

                if block is not None and len(block):
                    was_in_speech = in_speech
                    pcm = (np.clip(block, -1.0, 1.0) * 32767).astype(np.int16)
                    pending = np.concatenate([pending, pcm])
                    while len(pending) >= self._frame_size:
                        frame = pending[:self._frame_size]
                        pending = pending[self._frame_size:]
                        if self._is_speech(frame.tobytes(), self.sample_rate):
                            in_speech = True
                            silence_frames = 0
                            last_speech = now
                        elif in_speech:
                            silence_frames += 1
                    if in_speech:
                        if not was_in_speech:
                            # Onset: the utterance starts one block early
                            if preroll is not None:
                                utterance.append(preroll)
                                utterance_samples += len(preroll)
                            last_interim = now
                        utterance.append(block)
                        utterance_samples += len(block)
                        preroll = None
                    else:
                        preroll = block

                if in_speech:
                    too_long = utterance_samples >= self.max_utterance_seconds * self.sample_rate
                    if silence_frames >= self._silence_frames_needed or too_long:
                        finish_utterance()
                        last_interim = now
                    elif now - last_interim >= self.interim_interval and utterance:
                        result = self._transcribe(np.concatenate(utterance), final=False)
                        if result.text:
                            publish(result, replace_interim=True)
                        last_interim = now
                elif now - last_speech >= self.no_speech_timeout:
                    logger.info(f"No speech for {self.no_speech_timeout:.0f}s")
                    self._emit_error(ERROR_NO_SPEECH)
                    break

                if now - started >= self.max_session_seconds:
                    if in_speech:
                        finish_utterance()
                    logger.debug("Recognition session reached its maximum length")
                    break
            else:
                # stop() requested: flush what the speaker already said
                if in_speech:
                    finish_utterance()
        except Exception as e:
            logger.error(f"Recognition failed: {e}", exc_info=e)
            self._emit_error(ERROR_ABORTED)
        finally:
            self._running = False
            self._emit_end()
