from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Any, Callable, Generator, Tuple
from unittest.mock import MagicMock, patch

import pytest

from publish_runner.errors import StartupError, WatchFolderNotFoundError
from publish_runner.runner import SiteRunner


@pytest.fixture
def mock_supervisor_cls() -> Generator[MagicMock, None, None]:
    with patch("publish_runner.runner.ServerSupervisor") as mock:
        yield mock


@pytest.fixture
def mock_watcher_cls() -> Generator[MagicMock, None, None]:
    with patch("publish_runner.runner.SiteWatcher") as mock:
        yield mock


class HangingGenerator:
    """Returns at once for the initial build, then blocks every rebuild until released."""

    def __init__(self) -> None:
        self.calls = 0
        self.release = threading.Event()
        self.in_rebuild = threading.Event()
        self.finished = threading.Event()

    def generate(self) -> None:
        self.calls += 1
        if self.calls == 1:
            return
        self.in_rebuild.set()
        try:
            self.release.wait(10.0)
            raise RuntimeError("terminated")
        finally:
            self.finished.set()


class CancellableGenerator(HangingGenerator):
    def __init__(self) -> None:
        super().__init__()
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True
        self.release.set()


def _run_in_thread(runner: SiteRunner) -> Tuple[threading.Thread, dict]:
    outcome: dict = {}

    def target() -> None:
        try:
            outcome["exit_code"] = runner.run()
        except BaseException as e:  # noqa: B902 - surfaced to the test
            outcome["error"] = e

    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread, outcome


def test_initial_build_failure_aborts_before_server(
    site_root: Path,
    mock_supervisor_cls: MagicMock,
    mock_watcher_cls: MagicMock,
    make_generator: Callable[..., Any],
) -> None:
    runner = SiteRunner(site_root, generator=make_generator(failures=(1,)), install_signal_handlers=False)

    with pytest.raises(StartupError, match="generation #1 failed"):
        runner.run()

    mock_supervisor_cls.return_value.start.assert_not_called()
    mock_watcher_cls.assert_not_called()


def test_interrupt_with_pending_change_skips_rebuild(
    site_root: Path,
    mock_supervisor_cls: MagicMock,
    mock_watcher_cls: MagicMock,
    recording_generator: Any,
    wait_until: Callable[..., bool],
) -> None:
    runner = SiteRunner(
        site_root,
        generator=recording_generator,
        quiet_period=0.2,
        poll_interval=0.01,
        install_signal_handlers=False,
    )
    handle = mock_supervisor_cls.return_value.start.return_value
    watcher = mock_watcher_cls.return_value

    thread, outcome = _run_in_thread(runner)
    assert wait_until(lambda: watcher.start.called)

    runner.debouncer.record_change()
    runner.coordinator.request_shutdown(0)
    thread.join(timeout=5.0)
    time.sleep(0.3)

    assert outcome == {"exit_code": 0}
    watcher.stop.assert_called_once()
    handle.terminate.assert_called_once()
    assert len(recording_generator.calls) == 1


def test_abnormal_server_exit_ends_session_with_status_1(
    site_root: Path,
    mock_supervisor_cls: MagicMock,
    mock_watcher_cls: MagicMock,
    recording_generator: Any,
    wait_until: Callable[..., bool],
) -> None:
    runner = SiteRunner(site_root, generator=recording_generator, poll_interval=0.01, install_signal_handlers=False)
    on_abnormal_exit = mock_supervisor_cls.call_args.kwargs["on_abnormal_exit"]
    watcher = mock_watcher_cls.return_value

    thread, outcome = _run_in_thread(runner)
    assert wait_until(lambda: watcher.start.called)

    on_abnormal_exit(1)
    runner.coordinator.request_shutdown(0)
    thread.join(timeout=5.0)

    assert outcome == {"exit_code": 1}
    watcher.stop.assert_called_once()
    mock_supervisor_cls.return_value.start.return_value.terminate.assert_called_once()


def test_burst_of_changes_triggers_one_rebuild(
    site_root: Path,
    mock_supervisor_cls: MagicMock,
    mock_watcher_cls: MagicMock,
    recording_generator: Any,
    wait_until: Callable[..., bool],
    capsys: pytest.CaptureFixture[str],
) -> None:
    runner = SiteRunner(
        site_root,
        generator=recording_generator,
        quiet_period=0.3,
        poll_interval=0.01,
        install_signal_handlers=False,
    )
    thread, outcome = _run_in_thread(runner)
    assert wait_until(lambda: mock_watcher_cls.return_value.start.called)

    last_change = 0.0
    for _ in range(3):
        last_change = time.monotonic()
        runner.debouncer.record_change()
        time.sleep(0.05)

    assert wait_until(lambda: len(recording_generator.calls) == 2, timeout=5.0)
    time.sleep(0.5)
    runner.coordinator.request_shutdown(0)
    thread.join(timeout=5.0)

    assert outcome == {"exit_code": 0}
    assert len(recording_generator.calls) == 2
    assert recording_generator.calls[1] - last_change >= 0.3
    assert capsys.readouterr().out.count("Regenerating...") == 1


def test_failed_rebuild_keeps_loop_running(
    site_root: Path,
    mock_supervisor_cls: MagicMock,
    mock_watcher_cls: MagicMock,
    make_generator: Callable[..., Any],
    wait_until: Callable[..., bool],
    capsys: pytest.CaptureFixture[str],
) -> None:
    generator = make_generator(failures=(2,))
    runner = SiteRunner(
        site_root, generator=generator, quiet_period=0.0, poll_interval=0.01, install_signal_handlers=False
    )
    thread, outcome = _run_in_thread(runner)
    assert wait_until(lambda: mock_watcher_cls.return_value.start.called)

    runner.debouncer.record_change()
    assert wait_until(lambda: len(generator.calls) == 2)
    runner.debouncer.record_change()
    assert wait_until(lambda: len(generator.calls) == 3)
    runner.coordinator.request_shutdown(0)
    thread.join(timeout=5.0)

    assert outcome == {"exit_code": 0}
    assert "❌ Regeneration failed" in capsys.readouterr().err
    assert runner.get_statistics()["failures"] == 1


def test_no_watch_mode_never_arms_watcher(
    site_root: Path,
    mock_supervisor_cls: MagicMock,
    mock_watcher_cls: MagicMock,
    recording_generator: Any,
    wait_until: Callable[..., bool],
) -> None:
    runner = SiteRunner(
        site_root, watch=False, generator=recording_generator, poll_interval=0.01, install_signal_handlers=False
    )
    thread, outcome = _run_in_thread(runner)
    assert wait_until(lambda: mock_supervisor_cls.return_value.start.called)

    runner.coordinator.request_shutdown(0)
    thread.join(timeout=5.0)

    assert outcome == {"exit_code": 0}
    mock_watcher_cls.assert_not_called()
    mock_supervisor_cls.return_value.start.return_value.terminate.assert_called_once()


def test_missing_watch_folder_stops_started_server(
    site_root: Path, mock_supervisor_cls: MagicMock, recording_generator: Any
) -> None:
    (site_root / "Sources").rmdir()
    runner = SiteRunner(site_root, generator=recording_generator, install_signal_handlers=False)

    with pytest.raises(WatchFolderNotFoundError):
        runner.run()

    mock_supervisor_cls.return_value.start.return_value.terminate.assert_called_once()


def test_signal_handlers_installed_and_restored(
    site_root: Path,
    mock_supervisor_cls: MagicMock,
    mock_watcher_cls: MagicMock,
    recording_generator: Any,
) -> None:
    runner = SiteRunner(site_root, generator=recording_generator, poll_interval=0.01)
    with patch.object(runner.coordinator, "register_signal_handlers") as mock_register, \
            patch.object(runner.coordinator, "restore_signal_handlers") as mock_restore:
        mock_register.side_effect = lambda: runner.coordinator.request_shutdown(0)
        assert runner.run() == 0

    mock_register.assert_called_once()
    mock_restore.assert_called_once()


def test_invalid_poll_interval(site_root: Path, recording_generator: Any) -> None:
    with pytest.raises(ValueError, match="poll_interval"):
        SiteRunner(site_root, generator=recording_generator, poll_interval=0)


def test_abnormal_server_exit_during_rebuild_ends_session_promptly(
    site_root: Path,
    mock_supervisor_cls: MagicMock,
    mock_watcher_cls: MagicMock,
    wait_until: Callable[..., bool],
) -> None:
    generator = HangingGenerator()
    runner = SiteRunner(
        site_root, generator=generator, quiet_period=0.0, poll_interval=0.01, install_signal_handlers=False
    )
    on_abnormal_exit = mock_supervisor_cls.call_args.kwargs["on_abnormal_exit"]
    watcher = mock_watcher_cls.return_value
    handle = mock_supervisor_cls.return_value.start.return_value

    thread, outcome = _run_in_thread(runner)
    assert wait_until(lambda: watcher.start.called)
    runner.debouncer.record_change()
    assert generator.in_rebuild.wait(5.0)

    started = time.monotonic()
    on_abnormal_exit(1)
    watcher.stop.assert_called_once()
    handle.terminate.assert_called_once()

    thread.join(timeout=5.0)
    elapsed = time.monotonic() - started
    generator.release.set()

    assert outcome == {"exit_code": 1}
    assert elapsed < 0.5
    assert runner.trigger.cancelled is True
    watcher.stop.assert_called_once()
    handle.terminate.assert_called_once()


def test_interrupt_during_rebuild_cancels_generator(
    site_root: Path,
    mock_supervisor_cls: MagicMock,
    mock_watcher_cls: MagicMock,
    wait_until: Callable[..., bool],
    capsys: pytest.CaptureFixture[str],
) -> None:
    generator = CancellableGenerator()
    runner = SiteRunner(
        site_root, generator=generator, quiet_period=0.0, poll_interval=0.01, install_signal_handlers=False
    )
    thread, outcome = _run_in_thread(runner)
    assert wait_until(lambda: mock_watcher_cls.return_value.start.called)
    runner.debouncer.record_change()
    assert generator.in_rebuild.wait(5.0)

    runner.coordinator.request_shutdown(0)
    thread.join(timeout=5.0)

    assert outcome == {"exit_code": 0}
    assert generator.cancelled is True
    assert generator.finished.wait(5.0)
    assert wait_until(lambda: runner.trigger.failures == 1)
    assert "Regeneration failed" not in capsys.readouterr().err
