"""
Audio capture and mixing for live meeting transcription.

macOS/Linux: sounddevice (BlackHole or a PulseAudio/PipeWire monitor for system audio).
Windows: PyAudioWPatch for WASAPI loopback support.

Microphone (local) and system loopback (remote) each run through their own
processing, gain and level-analysis stage into one shared mix sink. Captured
audio is never routed to a playback device.
"""

import sys
import threading
import time
from dataclasses import dataclass
from functools import partial
from math import gcd
from typing import Callable, Dict, List, Optional

import numpy as np
import webrtcvad
from scipy.signal import resample_poly

from .errors import AudioCaptureError, DeviceNotFound, PermissionDenied, UnsupportedCapability
from .logger import get_logger
from .utils import ConfigManager

try:
    import sounddevice as sd
except (ImportError, OSError):  # pragma: no cover - PortAudio library missing
    sd = None

if sys.platform == 'win32':
    try:
        import pyaudiowpatch as pyaudio
    except ImportError:  # pragma: no cover
        pyaudio = None
else:
    pyaudio = None

logger = get_logger("capture")

LOCAL = "local"
REMOTE = "remote"
SOURCE_ALIASES = {
    "local": LOCAL,
    "mic": LOCAL,
    "microphone": LOCAL,
    "remote": REMOTE,
    "system": REMOTE,
    "loopback": REMOTE,
}

GAIN_MIN = 0.0
GAIN_MAX = 3.0
DEFAULT_LOCAL_GAIN = 1.0
DEFAULT_REMOTE_GAIN = 1.3  # Remote audio usually arrives attenuated

# Level analysis (mirrors a browser AnalyserNode: fftSize 2048, smoothing 0.8, -100..-30 dB)
FFT_SIZE = 2048
SMOOTHING = 0.8
MIN_DB = -100.0
MAX_DB = -30.0

# Local processing
VAD_FRAME_MS = 30
VAD_RATES = (8000, 16000, 32000, 48000)
NOISE_GATE_ATTENUATION = 0.1   # -20 dB on non-speech frames
AGC_TARGET_RMS = 3000.0 / 32768.0  # ~-20 dBFS
AGC_MAX_GAIN = 20.0
AGC_SILENCE_RMS = 10.0 / 32768.0
AGC_ATTACK = 0.2

# Seconds a source may deliver nothing before the mix treats it as silence
DEFAULT_STALL_TIMEOUT = 0.2

# Name fragments that identify a loopback-capable input device
LOOPBACK_NAME_HINTS = ("blackhole", "monitor", "loopback", "stereo mix", "what u hear")


@dataclass(frozen=True)
class CaptureConstraints:
    """Capture settings requested for one source."""
    echo_cancellation: bool
    noise_suppression: bool
    auto_gain_control: bool
    sample_rate: int = 48000
    channels: int = 1


# Local voice gets cleaned up; remote voices stay exactly as they arrived
LOCAL_CONSTRAINTS = CaptureConstraints(echo_cancellation=True, noise_suppression=True, auto_gain_control=True)
REMOTE_CONSTRAINTS = CaptureConstraints(echo_cancellation=False, noise_suppression=False, auto_gain_control=False, channels=2)


def clamp_gain(gain: float) -> float:
    """Saturate a gain value to [0, 3]."""
    return float(max(GAIN_MIN, min(GAIN_MAX, gain)))


def normalize_source(source: str) -> str:
    """Map 'microphone'/'system' style names onto 'local'/'remote'."""
    try:
        return SOURCE_ALIASES[source.lower()]
    except (KeyError, AttributeError):
        raise ValueError(f"Unknown audio source '{source}'. Use 'local' or 'remote'.")


def to_mono_float(block: np.ndarray, channels: int = 1) -> np.ndarray:
    """Convert an int16/float block (interleaved or 2-D) to mono float32 in [-1, 1]."""
    audio = np.asarray(block)
    if audio.dtype == np.int16:
        audio = audio.astype(np.float32) / 32768.0
    else:
        audio = audio.astype(np.float32, copy=False)

    if audio.ndim == 2:
        channels = audio.shape[1]
    elif channels > 1:
        audio = audio[:len(audio) - len(audio) % channels].reshape(-1, channels)

    if audio.ndim == 2:
        if audio.shape[1] > 1:
            # Sum with +3dB compensation rather than averaging away energy
            audio = audio.sum(axis=1) / np.sqrt(audio.shape[1])
        else:
            audio = audio[:, 0]
    return np.clip(audio, -1.0, 1.0).astype(np.float32)


def resample(audio: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """Polyphase resampling with anti-aliasing."""
    if source_rate == target_rate or len(audio) == 0:
        return audio
    g = gcd(int(target_rate), int(source_rate))
    return resample_poly(audio, int(target_rate) // g, int(source_rate) // g).astype(np.float32)


class LevelMeter:
    """RMS level over the magnitude spectrum of the most recent analysis window."""

    def __init__(self, fft_size: int = FFT_SIZE, smoothing: float = SMOOTHING):
        self.fft_size = fft_size
        self.smoothing = smoothing
        self._window = np.zeros(fft_size, dtype=np.float32)
        self._taper = np.blackman(fft_size).astype(np.float32)
        self._smoothed = np.zeros(fft_size // 2, dtype=np.float64)
        self._filled = 0
        self._lock = threading.Lock()

    def push(self, samples: np.ndarray):
        """Slide new samples into the analysis window."""
        if len(samples) == 0:
            return
        with self._lock:
            samples = samples[-self.fft_size:]
            n = len(samples)
            self._window = np.roll(self._window, -n)
            self._window[-n:] = samples
            self._filled = min(self.fft_size, self._filled + n)

    def level(self) -> float:
        """Current loudness in [0, 1]; 0 before any audio has arrived."""
        with self._lock:
            if self._filled == 0:
                return 0.0
            spectrum = np.abs(np.fft.rfft(self._window * self._taper))[:self.fft_size // 2] / self.fft_size
            self._smoothed = self.smoothing * self._smoothed + (1.0 - self.smoothing) * spectrum
            db = 20.0 * np.log10(np.maximum(self._smoothed, 1e-12))
            scaled = np.clip((db - MIN_DB) / (MAX_DB - MIN_DB) * 255.0, 0.0, 255.0)
            rms = float(np.sqrt(np.mean(scaled ** 2)))
        return max(0.0, min(rms / 255.0, 1.0))

    def reset(self):
        with self._lock:
            self._window[:] = 0
            self._smoothed[:] = 0
            self._filled = 0


class SourceStage:
    """
    Processing, gain and level analysis for one source.

    Blocks arrive from the device callback thread, get converted to mono at the
    mixer rate, optionally noise-gated and gain-normalized (local source only),
    scaled by the user gain, metered, and pushed into the shared MixedStream.
    """

    def __init__(
        self,
        name: str,
        constraints: CaptureConstraints,
        output_rate: int,
        gain: float,
        sink: "MixedStream",
        vad_aggressiveness: int = 2
    ):
        self.name = name
        self.constraints = constraints
        self.output_rate = output_rate
        self.meter = LevelMeter()
        self._sink = sink
        self._gain = clamp_gain(gain)
        self._lock = threading.Lock()

        self._vad = None
        if constraints.noise_suppression and output_rate in VAD_RATES:
            self._vad = webrtcvad.Vad(vad_aggressiveness)
        self._frame_size = int(output_rate * VAD_FRAME_MS / 1000)
        self._gate_open = True
        self._agc_gain = 1.0

    @property
    def gain(self) -> float:
        return self._gain

    def set_gain(self, gain: float) -> float:
        with self._lock:
            self._gain = clamp_gain(gain)
            return self._gain

    def push(self, block: np.ndarray, input_rate: int, channels: int = 1):
        """Process one captured block and hand it to the mix sink."""
        audio = to_mono_float(block, channels)
        audio = resample(audio, input_rate, self.output_rate)
        if len(audio) == 0:
            return
        if self._vad is not None:
            audio = self._noise_gate(audio)
        if self.constraints.auto_gain_control:
            audio = self._auto_gain(audio)
        with self._lock:
            gained = audio * self._gain
        self.meter.push(gained)
        self._sink.push(self.name, gained)

    def _noise_gate(self, audio: np.ndarray) -> np.ndarray:
        """Attenuate 30ms frames that webrtcvad does not classify as speech."""
        out = audio.copy()
        pcm = (np.clip(audio, -1.0, 1.0) * 32767).astype(np.int16)
        for start in range(0, len(pcm), self._frame_size):
            frame = pcm[start:start + self._frame_size]
            if len(frame) == self._frame_size:
                try:
                    self._gate_open = self._vad.is_speech(frame.tobytes(), self.output_rate)
                except Exception:
                    self._gate_open = True  # Assume speech on error
            # Partial tail frames reuse the previous decision
            if not self._gate_open:
                out[start:start + self._frame_size] *= NOISE_GATE_ATTENUATION
        return out

    def _auto_gain(self, audio: np.ndarray) -> np.ndarray:
        """Ease the block RMS toward the target level, never boosting silence."""
        rms = float(np.sqrt(np.mean(audio ** 2)))
        if rms > AGC_SILENCE_RMS:
            wanted = min(AGC_TARGET_RMS / rms, AGC_MAX_GAIN)
            self._agc_gain += AGC_ATTACK * (wanted - self._agc_gain)
        return np.clip(audio * self._agc_gain, -1.0, 1.0)


class AudioSource:
    """One capture device. Device callbacks call feed(); the mixer connects the sink."""

    def __init__(
        self,
        name: str,
        sample_rate: int,
        channels: int = 1,
        constraints: Optional[CaptureConstraints] = None,
        device_name: str = "",
        stream=None
    ):
        self.name = name
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self.constraints = constraints or (LOCAL_CONSTRAINTS if name == LOCAL else REMOTE_CONSTRAINTS)
        self.device_name = device_name
        self.stream = stream
        self._sink: Optional[Callable[[np.ndarray], None]] = None
        self._started = False
        self._stopped = False

    @property
    def track_count(self) -> int:
        return 0 if self._stopped else 1

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    def connect(self, sink: Callable[[np.ndarray], None]):
        self._sink = sink

    def disconnect(self):
        self._sink = None

    def feed(self, block: np.ndarray):
        """Deliver a captured block to the connected stage (no-op when unconnected)."""
        sink = self._sink
        if sink is not None and not self._stopped:
            sink(block)

    # --- sounddevice callback ---

    def _sd_callback(self, indata, frames, time_info, status):
        if status:
            logger.debug(f"{self.name} stream status: {status}")
        self.feed(indata.copy())

    # --- PyAudioWPatch callback ---

    def _pa_callback(self, in_data, frame_count, time_info, status):
        self.feed(np.frombuffer(in_data, dtype=np.int16).copy())
        return (None, pyaudio.paContinue)

    def start(self):
        if self._started or self._stopped or self.stream is None:
            return
        if hasattr(self.stream, "start_stream"):
            self.stream.start_stream()
        else:
            self.stream.start()
        self._started = True

    def stop(self):
        """Stop and close the device stream. Safe to call repeatedly."""
        if self._stopped:
            return
        self._stopped = True
        self._sink = None
        if self.stream is None:
            return
        try:
            if hasattr(self.stream, "stop_stream"):
                self.stream.stop_stream()
            else:
                self.stream.stop()
            self.stream.close()
        except Exception as e:
            logger.warning(f"Error closing {self.name} stream: {e}")
        self.stream = None


class MixedStream:
    """
    Mixed mono float32 output of both sources, read by the recognition session.

    Each source keeps its own buffer and read() sums only the sample-aligned
    overlap, so the two voices line up in time. A source that has delivered
    nothing for stall_timeout seconds counts as silence (loopback devices
    often stop delivering while the system is quiet).
    """

    def __init__(self, sample_rate: int, sources: List[str], stall_timeout: float = DEFAULT_STALL_TIMEOUT):
        self.sample_rate = sample_rate
        self.sources = list(sources)
        self.stall_timeout = float(stall_timeout)
        self._buffers: Dict[str, List[np.ndarray]] = {name: [] for name in self.sources}
        self._pending: Dict[str, int] = {name: 0 for name in self.sources}
        now = time.monotonic()
        self._last_push: Dict[str, float] = {name: now for name in self.sources}
        self._cond = threading.Condition()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, name: str, block: np.ndarray):
        """Append a processed block from one source (device callback thread)."""
        if len(block) == 0:
            return
        with self._cond:
            if self._closed:
                return
            self._buffers[name].append(block)
            self._pending[name] += len(block)
            self._last_push[name] = time.monotonic()
            self._cond.notify_all()

    def read(self, timeout: float = 0.1) -> Optional[np.ndarray]:
        """Block up to timeout for mixable audio; None if nothing is ready."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while not self._closed:
                now = time.monotonic()
                mixed, stall_wait = self._mix_ready(now)
                if mixed is not None:
                    return mixed
                remaining = deadline - now
                if remaining <= 0:
                    return None
                self._cond.wait(remaining if stall_wait is None else min(remaining, stall_wait))
        return None

    def _mix_ready(self, now: float):
        """
        Returns (mixed, None) when audio can be emitted, otherwise
        (None, seconds until the silent sources count as stalled).
        """
        waiting = [name for name in self.sources if self._pending[name] > 0]
        if not waiting:
            return None, None
        silent = [name for name in self.sources if self._pending[name] == 0]
        stall_wait = max(
            (self._last_push[name] + self.stall_timeout - now for name in silent),
            default=0.0
        )
        if stall_wait > 0:
            return None, stall_wait

        length = min(self._pending[name] for name in waiting)
        mixed = np.zeros(length, dtype=np.float32)
        for name in waiting:
            mixed += self._take(name, length)
        return np.clip(mixed, -1.0, 1.0), None

    def _take(self, name: str, length: int) -> np.ndarray:
        blocks = self._buffers[name]
        data = blocks[0] if len(blocks) == 1 else np.concatenate(blocks)
        rest = data[length:]
        self._buffers[name] = [rest] if len(rest) else []
        self._pending[name] -= length
        return data[:length]

    def close(self):
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._buffers = {name: [] for name in self.sources}
            self._pending = {name: 0 for name in self.sources}
            self._cond.notify_all()


def classify_capture_error(error: Exception) -> AudioCaptureError:
    """Turn a backend exception into one of the three actionable capture errors."""
    if isinstance(error, AudioCaptureError):
        return error
    message = str(error)
    lowered = message.lower()
    if isinstance(error, PermissionError) or any(
        s in lowered for s in ("permission", "not allowed", "access denied", "not authorized", "notallowed")
    ):
        return PermissionDenied(f"Audio capture permission denied: {message}")
    if any(s in lowered for s in (
        "invalid sample rate", "invalid number of channels", "not supported", "unsupported", "host api"
    )):
        return UnsupportedCapability(f"Audio capture configuration not supported: {message}")
    return DeviceNotFound(f"Could not open audio device: {message}")


class AudioSourceMixer:
    """Acquires microphone + system audio and exposes one mixed stream with level meters."""

    def __init__(
        self,
        sample_rate: Optional[int] = None,
        capture_sample_rate: Optional[int] = None,
        block_size: Optional[int] = None,
        local_gain: Optional[float] = None,
        remote_gain: Optional[float] = None,
        local_device: Optional[str] = None,
        loopback_device: Optional[str] = None,
        vad_aggressiveness: Optional[int] = None,
        stall_timeout: Optional[float] = None
    ):
        self.sample_rate = int(sample_rate or ConfigManager.get_value_or(16000, 'audio', 'sample_rate'))
        self.capture_sample_rate = int(capture_sample_rate or ConfigManager.get_value_or(48000, 'audio', 'capture_sample_rate'))
        self.block_size = int(block_size or ConfigManager.get_value_or(1024, 'audio', 'block_size'))
        self.local_device = local_device or ConfigManager.get_config_value('audio', 'local_device')
        self.loopback_device = loopback_device or ConfigManager.get_config_value('audio', 'loopback_device')
        if vad_aggressiveness is None:
            vad_aggressiveness = ConfigManager.get_value_or(2, 'audio', 'vad_aggressiveness')
        self.vad_aggressiveness = int(vad_aggressiveness)
        if stall_timeout is None:
            stall_timeout = ConfigManager.get_value_or(DEFAULT_STALL_TIMEOUT, 'audio', 'stall_timeout')
        self.stall_timeout = float(stall_timeout)

        if local_gain is None:
            local_gain = ConfigManager.get_value_or(DEFAULT_LOCAL_GAIN, 'audio', 'local_gain')
        if remote_gain is None:
            remote_gain = ConfigManager.get_value_or(DEFAULT_REMOTE_GAIN, 'audio', 'remote_gain')
        self._gains: Dict[str, float] = {LOCAL: clamp_gain(local_gain), REMOTE: clamp_gain(remote_gain)}

        self._sources: Dict[str, AudioSource] = {}
        self._stages: Dict[str, SourceStage] = {}
        self._mixed: Optional[MixedStream] = None
        self._pa = None
        self._lock = threading.RLock()

    @property
    def mixed_stream(self) -> Optional[MixedStream]:
        return self._mixed

    # --- acquisition ---

    def acquire(self) -> MixedStream:
        """
        Open the local and remote capture devices and wire them into the mix.

        Raises:
            PermissionDenied, DeviceNotFound, UnsupportedCapability
        """
        if sd is None and pyaudio is None:
            raise UnsupportedCapability("No audio capture backend available (PortAudio library not found).")

        try:
            if sys.platform == 'win32':
                local, remote = self._open_windows()
            else:
                local, remote = self._open_portaudio()
            mixed = self.mix(local, remote)
        except Exception as e:
            error = classify_capture_error(e)
            logger.error(f"Audio acquisition failed: {error}")
            self.release()
            if error is e:
                raise
            raise error from e

        ConfigManager.console_print(
            f"[Huddle Audio] Capturing '{local.device_name}' + '{remote.device_name}' -> {self.sample_rate}Hz mix"
        )
        return mixed

    def _open_portaudio(self):
        """Open both sources with sounddevice (macOS/Linux)."""
        if sd is None:
            raise UnsupportedCapability("sounddevice/PortAudio is not available.")

        local_index, local_info = self._find_input_device(self.local_device, default=True)
        local = self._open_sd_source(LOCAL, local_index, local_info, LOCAL_CONSTRAINTS)

        remote_index, remote_info = self._find_loopback_device()
        remote = self._open_sd_source(REMOTE, remote_index, remote_info, REMOTE_CONSTRAINTS)
        return local, remote

    def _find_input_device(self, name_fragment: Optional[str], default: bool = False):
        """Return (index, info) of the input device matching name_fragment, or the default input."""
        devices = sd.query_devices()
        if name_fragment:
            for i, dev in enumerate(devices):
                if name_fragment.lower() in dev['name'].lower() and dev['max_input_channels'] > 0:
                    return i, dict(dev)
            raise DeviceNotFound(f"No input device matching '{name_fragment}'.")
        if default:
            try:
                info = dict(sd.query_devices(kind='input'))
            except Exception as e:
                raise DeviceNotFound(f"No default microphone found: {e}")
            index = info.get('index')
            if index is None:
                index = sd.default.device[0]
            return index, info
        return None, None

    def _find_loopback_device(self):
        """Find a loopback-capable input (BlackHole, PulseAudio monitor, Stereo Mix...)."""
        if self.loopback_device:
            return self._find_input_device(self.loopback_device)

        devices = sd.query_devices()
        for i, dev in enumerate(devices):
            name = dev['name'].lower()
            if dev['max_input_channels'] > 0 and any(hint in name for hint in LOOPBACK_NAME_HINTS):
                logger.info(f"Found loopback device: {dev['name']} ({dev['default_samplerate']}Hz, {dev['max_input_channels']}ch)")
                return i, dict(dev)

        if sys.platform == 'darwin':
            raise DeviceNotFound(
                "BlackHole not found. Install with: brew install blackhole-2ch, "
                "then create a Multi-Output Device in Audio MIDI Setup."
            )
        raise DeviceNotFound("No system audio loopback device found.")

    def _open_sd_source(self, name: str, index, info: dict, constraints: CaptureConstraints) -> AudioSource:
        channels = max(1, min(constraints.channels, int(info.get('max_input_channels', 1))))
        rate = self.capture_sample_rate
        try:
            sd.check_input_settings(device=index, samplerate=rate, channels=channels, dtype='int16')
        except Exception:
            rate = int(info.get('default_samplerate', rate))

        source = AudioSource(name, rate, channels, constraints, device_name=info.get('name', ''))
        self._sources[name] = source
        source.stream = sd.InputStream(
            device=index,
            samplerate=rate,
            channels=channels,
            dtype='int16',
            blocksize=self.block_size,
            callback=source._sd_callback
        )
        logger.info(f"Opened {name} source '{source.device_name}' ({rate}Hz, {channels}ch)")
        return source

    def _open_windows(self):
        """Open both sources with PyAudioWPatch (WASAPI loopback)."""
        if pyaudio is None:
            raise UnsupportedCapability("WASAPI loopback capture requires PyAudioWPatch.")
        self._pa = pyaudio.PyAudio()

        try:
            mic = self._pa.get_default_input_device_info()
        except Exception as e:
            raise DeviceNotFound(f"No default microphone found: {e}")
        local = self._open_pa_source(LOCAL, mic, LOCAL_CONSTRAINTS)

        loopback = None
        try:
            loopback = self._pa.get_default_wasapi_loopback()
        except Exception as e:
            logger.warning(f"get_default_wasapi_loopback failed: {e}")
        if not loopback:
            wasapi_info = self._pa.get_host_api_info_by_type(pyaudio.paWASAPI)
            for i in range(self._pa.get_device_count()):
                device = self._pa.get_device_info_by_index(i)
                if device.get('hostApi') == wasapi_info['index'] and device.get('isLoopbackDevice', False):
                    loopback = device
                    break
        if not loopback:
            raise DeviceNotFound("No WASAPI loopback device found.")
        remote = self._open_pa_source(REMOTE, loopback, REMOTE_CONSTRAINTS)
        return local, remote

    def _open_pa_source(self, name: str, info: dict, constraints: CaptureConstraints) -> AudioSource:
        # Some WASAPI loopback devices only open with their native channel count
        channels = int(info['maxInputChannels']) if name == REMOTE else 1
        rate = int(info['defaultSampleRate'])
        source = AudioSource(name, rate, channels, constraints, device_name=info.get('name', ''))
        self._sources[name] = source
        source.stream = self._pa.open(
            format=pyaudio.paInt16,
            channels=channels,
            rate=rate,
            input=True,
            input_device_index=int(info['index']),
            frames_per_buffer=self.block_size,
            stream_callback=source._pa_callback,
            start=False
        )
        logger.info(f"Opened {name} source '{source.device_name}' ({rate}Hz, {channels}ch)")
        return source

    # --- mixing graph ---

    def mix(self, local: AudioSource, remote: AudioSource) -> MixedStream:
        """
        Route both sources through their own gain + analysis stage into one sink.

        The returned stream is the only output of the graph.
        """
        with self._lock:
            if self._mixed is not None:
                self._mixed.close()
            for old in self._sources.values():
                old.disconnect()

            mixed = MixedStream(self.sample_rate, [LOCAL, REMOTE], stall_timeout=self.stall_timeout)
            self._sources = {LOCAL: local, REMOTE: remote}
            self._stages = {}
            for source in (local, remote):
                stage = SourceStage(
                    source.name,
                    source.constraints,
                    self.sample_rate,
                    self._gains[source.name],
                    mixed,
                    vad_aggressiveness=self.vad_aggressiveness
                )
                self._stages[source.name] = stage
                source.connect(partial(stage.push, input_rate=source.sample_rate, channels=source.channels))

            self._mixed = mixed

        local.start()
        remote.start()
        logger.info(f"Mix graph ready: local gain {self._gains[LOCAL]:.2f}, remote gain {self._gains[REMOTE]:.2f}")
        return self._mixed

    def set_gain(self, source: str, gain: float) -> float:
        """Set a source gain at runtime; values saturate to [0, 3]."""
        name = normalize_source(source)
        with self._lock:
            self._gains[name] = clamp_gain(gain)
            stage = self._stages.get(name)
            if stage is not None:
                stage.set_gain(gain)
        logger.debug(f"{name} gain set to {self._gains[name]:.2f}")
        return self._gains[name]

    def get_gain(self, source: str) -> float:
        return self._gains[normalize_source(source)]

    def level_of(self, source: str) -> float:
        """Instantaneous level of a source in [0, 1]; 0 when the source is not initialized."""
        stage = self._stages.get(normalize_source(source))
        if stage is None:
            return 0.0
        return stage.meter.level()

    def get_all_levels(self) -> Dict[str, float]:
        return {LOCAL: self.level_of(LOCAL), REMOTE: self.level_of(REMOTE)}

    def get_stream_info(self) -> dict:
        local = self._sources.get(LOCAL)
        remote = self._sources.get(REMOTE)
        return {
            "local_tracks": local.track_count if local else 0,
            "remote_tracks": remote.track_count if remote else 0,
            "output_tracks": 1 if self._mixed is not None and not self._mixed.closed else 0,
            "sample_rate": self.sample_rate if self._mixed is not None else 0,
            "local_device": local.device_name if local else None,
            "remote_device": remote.device_name if remote else None,
        }

    def release(self):
        """Stop every device stream and tear down the mix graph. Idempotent."""
        with self._lock:
            sources = list(self._sources.values())
            self._sources = {}
            self._stages = {}
            mixed = self._mixed
            self._mixed = None
            pa = self._pa
            self._pa = None

        for source in sources:
            source.stop()
        if mixed is not None:
            mixed.close()
        if pa is not None:
            try:
                pa.terminate()
            except Exception as e:
                logger.warning(f"PyAudio terminate failed: {e}")
        if sources or mixed is not None:
            logger.info("Audio capture released")
