"""
Tests for audio capture, mixing and level metering.
"""

from pathlib import Path
from types import SimpleNamespace

import numpy as np
import pytest

from huddle import capture
from huddle.capture import (
    AudioSource,
    AudioSourceMixer,
    CaptureConstraints,
    LevelMeter,
    classify_capture_error,
    clamp_gain,
    normalize_source,
    to_mono_float,
)
from huddle.errors import DeviceNotFound, PermissionDenied, UnsupportedCapability

PLAIN = CaptureConstraints(echo_cancellation=False, noise_suppression=False, auto_gain_control=False)


def plain_sources(rate=16000):
    local = AudioSource("local", rate, 1, PLAIN, device_name="Test Mic")
    remote = AudioSource("remote", rate, 1, PLAIN, device_name="Test Loopback")
    return local, remote


class FakeStream:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.started = False
        self.stopped = False
        self.closed = False

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def close(self):
        self.closed = True


class FakeSoundDevice:
    """Just enough of the sounddevice module for device discovery and stream opening."""

    def __init__(self, devices, open_error=None):
        self.devices = devices
        self.open_error = open_error
        self.streams = []
        self.output_streams = 0
        self.default = SimpleNamespace(device=(0, None))

    def query_devices(self, kind=None):
        if kind == 'input':
            for i, dev in enumerate(self.devices):
                if dev['max_input_channels'] > 0:
                    return dict(dev, index=i)
            raise RuntimeError("No input device")
        return list(self.devices)

    def check_input_settings(self, **kwargs):
        return None

    def InputStream(self, **kwargs):
        if self.open_error is not None:
            raise self.open_error
        stream = FakeStream(**kwargs)
        self.streams.append(stream)
        return stream

    def OutputStream(self, **kwargs):
        self.output_streams += 1
        return FakeStream(**kwargs)


def device(name, inputs=2, rate=48000.0):
    return {"name": name, "max_input_channels": inputs, "default_samplerate": rate}


@pytest.fixture
def linux(monkeypatch):
    monkeypatch.setattr(capture.sys, "platform", "linux")


class TestHelpers:
    def test_clamp_gain(self):
        assert clamp_gain(5) == 3.0
        assert clamp_gain(-1) == 0.0
        assert clamp_gain(1.3) == 1.3

    def test_normalize_source_aliases(self):
        assert normalize_source("microphone") == "local"
        assert normalize_source("System") == "remote"
        with pytest.raises(ValueError):
            normalize_source("speakers")

    def test_to_mono_int16(self):
        block = np.array([16384, -16384], dtype=np.int16)
        assert np.allclose(to_mono_float(block), [0.5, -0.5])

    def test_to_mono_stereo_2d(self):
        block = np.array([[0.2, 0.2], [0.1, -0.1]], dtype=np.float32)
        mono = to_mono_float(block)
        assert mono.shape == (2,)
        assert mono[0] == pytest.approx(0.4 / np.sqrt(2))
        assert mono[1] == pytest.approx(0.0)


class TestLevelMeter:
    def test_zero_before_audio(self):
        assert LevelMeter().level() == 0.0

    def test_silence_is_zero(self):
        meter = LevelMeter()
        meter.push(np.zeros(4096, dtype=np.float32))
        assert meter.level() == 0.0

    def test_noise_is_loud_and_bounded(self):
        meter = LevelMeter()
        rng = np.random.default_rng(0)
        meter.push(rng.uniform(-0.5, 0.5, 4096).astype(np.float32))
        level = meter.level()
        assert 0.1 < level <= 1.0


class TestMixerGains:
    def test_defaults(self):
        mixer = AudioSourceMixer()
        assert mixer.get_gain("local") == 1.0
        assert mixer.get_gain("remote") == 1.3

    def test_set_gain_saturates(self):
        mixer = AudioSourceMixer()
        assert mixer.set_gain("local", 5) == 3.0
        assert mixer.set_gain("remote", -2) == 0.0

    def test_unknown_source(self):
        with pytest.raises(ValueError):
            AudioSourceMixer().set_gain("speakers", 1.0)

    def test_level_zero_when_not_initialized(self):
        mixer = AudioSourceMixer()
        assert mixer.level_of("local") == 0.0
        assert mixer.get_all_levels() == {"local": 0.0, "remote": 0.0}


class TestMixing:
    """The mix graph: gain stages into one time-aligned sink."""

    def test_interleaved_feeds_are_summed_in_time(self):
        """Reading between device callbacks never plays the sources back to back."""
        mixer = AudioSourceMixer(sample_rate=16000, remote_gain=1.0, stall_timeout=60)
        local, remote = plain_sources()
        stream = mixer.mix(local, remote)

        chunks = []
        for _ in range(50):
            local.feed(np.full(320, 0.1, dtype=np.float32))
            chunks.append(stream.read(timeout=0))
            remote.feed(np.full(320, 0.2, dtype=np.float32))
            chunks.append(stream.read(timeout=0))

        mixed = np.concatenate([c for c in chunks if c is not None])
        assert len(mixed) == 16000
        assert np.allclose(mixed, 0.3)

    def test_sum_with_gains_keeps_remainder(self):
        mixer = AudioSourceMixer(sample_rate=16000, stall_timeout=60)
        local, remote = plain_sources()
        stream = mixer.mix(local, remote)

        local.feed(np.full(320, 0.1, dtype=np.float32))
        remote.feed(np.full(160, 0.2, dtype=np.float32))
        mixed = stream.read(timeout=0.5)
        assert mixed.shape == (160,)
        assert np.allclose(mixed, 0.1 + 0.2 * 1.3)

        # The rest of the local block waits for its remote counterpart
        assert stream.read(timeout=0) is None
        remote.feed(np.full(160, 0.2, dtype=np.float32))
        assert np.allclose(stream.read(timeout=0.5), 0.1 + 0.2 * 1.3)

    def test_silent_source_stops_holding_back_the_mix(self):
        mixer = AudioSourceMixer(sample_rate=16000, stall_timeout=0.05)
        local, remote = plain_sources()
        stream = mixer.mix(local, remote)

        local.feed(np.full(160, 0.1, dtype=np.float32))
        mixed = stream.read(timeout=2.0)
        assert mixed.shape == (160,)
        assert np.allclose(mixed, 0.1)

    def test_mix_is_clipped(self):
        mixer = AudioSourceMixer(sample_rate=16000)
        local, remote = plain_sources()
        stream = mixer.mix(local, remote)
        local.feed(np.full(160, 0.9, dtype=np.float32))
        remote.feed(np.full(160, 0.9, dtype=np.float32))
        assert np.allclose(stream.read(timeout=0.5), 1.0)

    def test_runtime_gain_change(self):
        mixer = AudioSourceMixer(sample_rate=16000, stall_timeout=0)
        local, remote = plain_sources()
        stream = mixer.mix(local, remote)
        mixer.set_gain("remote", 0.0)
        remote.feed(np.full(160, 0.5, dtype=np.float32))
        assert np.allclose(stream.read(timeout=0.5), 0.0)

    def test_resampled_to_output_rate(self):
        mixer = AudioSourceMixer(sample_rate=16000, stall_timeout=0)
        local, remote = plain_sources(rate=48000)
        stream = mixer.mix(local, remote)
        local.feed(np.zeros(4800, dtype=np.float32))
        assert len(stream.read(timeout=0.5)) == 1600

    def test_read_times_out_empty(self):
        mixer = AudioSourceMixer(sample_rate=16000)
        stream = mixer.mix(*plain_sources())
        assert stream.read(timeout=0.01) is None

    def test_levels_follow_sources(self):
        mixer = AudioSourceMixer(sample_rate=16000)
        local, remote = plain_sources()
        mixer.mix(local, remote)
        rng = np.random.default_rng(1)
        remote.feed(rng.uniform(-0.5, 0.5, 4096).astype(np.float32))
        assert mixer.level_of("remote") > 0.1
        assert mixer.level_of("local") == 0.0

    def test_local_processing_stage_runs(self):
        """Noise gate + AGC on the local source still yields bounded audio."""
        mixer = AudioSourceMixer(sample_rate=16000, stall_timeout=0)
        local = AudioSource("local", 16000, 1, device_name="Mic")
        remote = AudioSource("remote", 16000, 1, PLAIN, device_name="Loopback")
        stream = mixer.mix(local, remote)
        rng = np.random.default_rng(2)
        local.feed(rng.uniform(-0.01, 0.01, 1600).astype(np.float32))
        mixed = stream.read(timeout=0.5)
        assert mixed.shape == (1600,)
        assert np.all(np.abs(mixed) <= 1.0)

    def test_stream_info_and_release(self):
        mixer = AudioSourceMixer(sample_rate=16000)
        local, remote = plain_sources()
        stream = mixer.mix(local, remote)

        info = mixer.get_stream_info()
        assert info["local_tracks"] == 1
        assert info["remote_tracks"] == 1
        assert info["output_tracks"] == 1
        assert info["sample_rate"] == 16000

        mixer.release()
        mixer.release()
        assert stream.closed
        assert stream.read(timeout=0.01) is None
        assert local.is_stopped and remote.is_stopped
        assert mixer.get_stream_info()["output_tracks"] == 0
        assert mixer.level_of("local") == 0.0

    def test_feed_after_release_is_dropped(self):
        mixer = AudioSourceMixer(sample_rate=16000)
        local, remote = plain_sources()
        mixer.mix(local, remote)
        mixer.release()
        local.feed(np.ones(160, dtype=np.float32))  # must not raise


class TestAcquire:
    """Device discovery and error mapping (no real hardware)."""

    def test_opens_mic_and_loopback_without_playback(self, monkeypatch, linux):
        fake_sd = FakeSoundDevice([device("Built-in Mic", 1), device("Speakers", 0), device("BlackHole 2ch", 2)])
        monkeypatch.setattr(capture, "sd", fake_sd)
        mixer = AudioSourceMixer(sample_rate=16000, stall_timeout=0)

        stream = mixer.acquire()

        assert len(fake_sd.streams) == 2
        assert all(s.started for s in fake_sd.streams)
        assert fake_sd.output_streams == 0
        assert fake_sd.streams[0].kwargs["channels"] == 1
        assert fake_sd.streams[1].kwargs["device"] == 2
        info = mixer.get_stream_info()
        assert info["remote_device"] == "BlackHole 2ch"

        # Device callback delivers int16 blocks into the mix
        callback = fake_sd.streams[1].kwargs["callback"]
        callback(np.zeros((4800, 2), dtype=np.int16), 4800, None, None)
        assert len(stream.read(timeout=0.5)) == 1600

        mixer.release()
        assert all(s.closed for s in fake_sd.streams)

    def test_missing_loopback_releases_mic(self, monkeypatch, linux):
        fake_sd = FakeSoundDevice([device("Built-in Mic", 1)])
        monkeypatch.setattr(capture, "sd", fake_sd)
        mixer = AudioSourceMixer()

        with pytest.raises(DeviceNotFound):
            mixer.acquire()
        assert fake_sd.streams[0].closed
        assert mixer.get_stream_info()["local_tracks"] == 0

    def test_configured_device_missing(self, monkeypatch, linux):
        monkeypatch.setattr(capture, "sd", FakeSoundDevice([device("Built-in Mic", 1)]))
        with pytest.raises(DeviceNotFound):
            AudioSourceMixer(local_device="USB Headset").acquire()

    def test_permission_error(self, monkeypatch, linux):
        fake_sd = FakeSoundDevice([device("Mic", 1), device("monitor of Built-in", 2)],
                                  open_error=PermissionError("denied"))
        monkeypatch.setattr(capture, "sd", fake_sd)
        with pytest.raises(PermissionDenied):
            AudioSourceMixer().acquire()

    def test_no_backend(self, monkeypatch):
        monkeypatch.setattr(capture, "sd", None)
        monkeypatch.setattr(capture, "pyaudio", None)
        with pytest.raises(UnsupportedCapability):
            AudioSourceMixer().acquire()


class TestErrorClassification:
    def test_mapping(self):
        assert isinstance(classify_capture_error(PermissionError("x")), PermissionDenied)
        assert isinstance(classify_capture_error(RuntimeError("Access denied by system")), PermissionDenied)
        assert isinstance(classify_capture_error(RuntimeError("Invalid sample rate [PaErrorCode -9997]")), UnsupportedCapability)
        assert isinstance(classify_capture_error(RuntimeError("Error querying device -1")), DeviceNotFound)

    def test_capture_errors_pass_through(self):
        error = DeviceNotFound("gone")
        assert classify_capture_error(error) is error

    def test_messages_are_distinct_and_actionable(self):
        messages = {
            PermissionDenied("a").user_message(),
            DeviceNotFound("a").user_message(),
            UnsupportedCapability("a").user_message(),
        }
        assert len(messages) == 3
        assert "privacy" in PermissionDenied().user_message()


class TestOptionalImports:
    def test_backend_guard_only_catches_import_failures(self):
        """A missing PortAudio library surfaces as ImportError or OSError; nothing else is hidden."""
        content = Path(capture.__file__).read_text()

        assert "except (ImportError, OSError):" in content
        assert "except Exception:  # pragma: no cover" not in content
