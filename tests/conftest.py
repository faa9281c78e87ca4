"""
Pytest fixtures for Huddle tests.
"""

import os
import sys
import tempfile
from pathlib import Path

import pytest

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

# Keep test logs out of the user's home directory
os.environ.setdefault("HUDDLE_LOG_DIR", tempfile.mkdtemp(prefix="huddle-logs-"))

from huddle.capture import GAIN_MAX, GAIN_MIN, normalize_source
from huddle.recognition import RecognitionSession
from huddle.utils import ConfigManager


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(autouse=True)
def config(temp_dir):
    """Fresh default configuration for every test, with terminal output off."""
    ConfigManager.reset_instance()
    ConfigManager.initialize(config_path=str(temp_dir / "missing.yaml"))
    ConfigManager.set_config_value(False, 'misc', 'print_to_terminal')
    yield ConfigManager
    ConfigManager.reset_instance()


class FakeClock:
    """Manually advanced time source (seconds)."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeTimer:
    """Timer that only fires when the test says so."""

    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        # Fires even when cancelled, like a threading.Timer that raced cancel()
        self.callback()


class FakeTimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, delay, callback):
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def pending(self):
        return [t for t in self.timers if t.started and not t.cancelled]


class FakeSession(RecognitionSession):
    """Recognition session driven by the test."""

    SESSION_ID = "fake"

    def __init__(self, stream=None, ack_stop: bool = True):
        super().__init__()
        self.stream = stream
        self.ack_stop = ack_stop
        self.start_calls = 0
        self.stop_calls = 0
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self):
        if self._running:
            raise RuntimeError("Recognition session already running")
        self._running = True
        self.start_calls += 1

    def stop(self):
        self.stop_calls += 1
        if self._running and self.ack_stop:
            self.end()

    def emit(self, *results, index: int = 0):
        self._emit_results(index, results)

    def fail(self, kind: str):
        self._emit_error(kind)

    def end(self):
        self._running = False
        self._emit_end()


class FakeMixer:
    """Mixer stand-in with fixed levels."""

    def __init__(self, error: Exception = None):
        self.error = error
        self.levels = {"local": 0.0, "remote": 0.5}
        self.gains = {"local": 1.0, "remote": 1.3}
        self.stream = object()
        self.acquired = False
        self.release_calls = 0

    def acquire(self):
        if self.error is not None:
            raise self.error
        self.acquired = True
        return self.stream

    def level_of(self, source):
        return self.levels[normalize_source(source)]

    def get_all_levels(self):
        return dict(self.levels)

    def set_gain(self, source, gain):
        name = normalize_source(source)
        self.gains[name] = max(GAIN_MIN, min(GAIN_MAX, gain))
        return self.gains[name]

    def get_gain(self, source):
        return self.gains[normalize_source(source)]

    def release(self):
        self.release_calls += 1
        self.acquired = False


class FakeFrameSource:
    def __init__(self, ready: bool = True):
        self.ready = ready
        self.grabs = 0

    def is_ready(self):
        return self.ready

    def grab(self):
        self.grabs += 1
        return f"frame-{self.grabs}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_session_class():
    return FakeSession


@pytest.fixture
def fake_mixer():
    return FakeMixer()


@pytest.fixture
def fake_frame_source():
    return FakeFrameSource()


@pytest.fixture
def make_orchestrator(clock):
    """Build orchestrators wired to fakes; cleaned up after the test."""
    from huddle.names import NameCandidateRegistry
    from huddle.orchestrator import TranscriptionOrchestrator

    built = []

    def build(mixer=None, registry=None, session=None, **kwargs):
        session = session or FakeSession()
        timers = FakeTimerFactory()
        orchestrator = TranscriptionOrchestrator(
            mixer=mixer or FakeMixer(),
            registry=registry or NameCandidateRegistry(extractor=lambda frame: []),
            session_factory=lambda stream: session,
            primary_source="remote",
            error_restart_delay=1.0,
            end_restart_delay=0.1,
            clock=clock,
            timer_factory=timers,
            **kwargs
        )
        built.append(orchestrator)
        return orchestrator, session, timers

    yield build

    for orchestrator in built:
        orchestrator.cleanup()
