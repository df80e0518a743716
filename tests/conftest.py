from pathlib import Path
from typing import Callable, Generator
from unittest.mock import MagicMock, patch
import tempfile
import threading
import time

import pytest

from publish_runner.watcher import WATCHED_FOLDER_NAMES


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Fixture for a temporary directory using tempfile.TemporaryDirectory.

    Ensures automatic cleanup after test execution.
    """
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname)


@pytest.fixture
def site_root(temp_dir: Path) -> Path:
    """Fixture for a site with all input folders and an Output folder."""
    for name in WATCHED_FOLDER_NAMES + ("Output",):
        (temp_dir / name).mkdir()
    (temp_dir / "Content" / "index.md").write_text("# Hello\n", encoding="utf-8")
    (temp_dir / "Output" / "index.html").write_text("<h1>Hello</h1>\n", encoding="utf-8")
    return temp_dir


@pytest.fixture
def mock_observer() -> Generator[MagicMock, None, None]:
    """Fixture for mocking the watchdog Observer."""
    with patch("publish_runner.watcher.Observer") as mock:
        yield mock


@pytest.fixture
def mock_signal() -> Generator[MagicMock, None, None]:
    """Fixture for mocking signal.signal."""
    with patch("signal.signal") as mock:
        yield mock


@pytest.fixture
def mock_monotonic(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    """Mock time.monotonic for deterministic timing."""
    mock = MagicMock(return_value=1000.0)
    monkeypatch.setattr("time.monotonic", mock)
    return mock


@pytest.fixture
def wait_until() -> Callable[..., bool]:
    """Fixture polling a condition until it holds or a timeout expires."""
    def _wait(condition: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if condition():
                return True
            time.sleep(interval)
        return condition()
    return _wait


class RecordingGenerator:
    """Generator double that records call times and can fail on demand."""

    def __init__(self, failures: tuple = ()) -> None:
        self.calls: list = []
        self.failures = set(failures)
        self._lock = threading.Lock()

    def generate(self) -> None:
        with self._lock:
            self.calls.append(time.monotonic())
            call_number = len(self.calls)
        if call_number in self.failures:
            raise RuntimeError(f"generation #{call_number} failed")


@pytest.fixture
def recording_generator() -> RecordingGenerator:
    return RecordingGenerator()


@pytest.fixture
def make_generator() -> Callable[..., RecordingGenerator]:
    """Fixture returning a factory for generators failing on given call numbers."""
    return RecordingGenerator
