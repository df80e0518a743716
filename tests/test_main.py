from __future__ import annotations

import logging
from pathlib import Path
from typing import Generator
from unittest.mock import MagicMock, patch

import pytest

from publish_runner.errors import OutputFolderNotFoundError, StartupError
from publish_runner.main import build_parser, main, setup_logging


@pytest.fixture
def mock_runner_cls() -> Generator[MagicMock, None, None]:
    with patch("publish_runner.main.SiteRunner") as mock:
        mock.return_value.run.return_value = 0
        yield mock


@pytest.fixture(autouse=True)
def no_logging_reconfiguration() -> Generator[None, None, None]:
    """Keep main() from replacing pytest's logging handlers."""
    with patch("publish_runner.main.logging.basicConfig"):
        yield


def test_setup_logging(tmp_path: Path) -> None:
    log_file = tmp_path / "test.log"
    with patch("publish_runner.main.logging.basicConfig") as mock_basic_config:
        setup_logging("DEBUG", str(log_file))

    kwargs = mock_basic_config.call_args.kwargs
    assert kwargs["level"] == logging.DEBUG
    assert kwargs["force"] is True
    assert len(kwargs["handlers"]) == 2
    for handler in kwargs["handlers"]:
        handler.close()


def test_setup_logging_invalid() -> None:
    with pytest.raises(ValueError, match="Invalid log level"):
        setup_logging("INVALID_LEVEL", None)


def test_setup_logging_creates_dir(tmp_path: Path) -> None:
    log_file = tmp_path / "subdir" / "logs" / "test.log"
    with patch("publish_runner.main.logging.basicConfig") as mock_basic_config:
        setup_logging("INFO", str(log_file))

    assert log_file.parent.exists()
    for handler in mock_basic_config.call_args.kwargs["handlers"]:
        handler.close()


def test_setup_logging_file_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """A directory in place of the log file falls back to console logging."""
    log_dir = tmp_path / "log_dir"
    log_dir.mkdir()

    setup_logging("INFO", str(log_dir))

    assert "Warning: Failed to setup log file" in capsys.readouterr().err


def test_parser_no_watch() -> None:
    args = build_parser().parse_args(["--no-watch", "--port", "8080"])
    assert args.watch is False
    assert args.port == 8080
    assert build_parser().parse_args([]).watch is None


def test_main_runs_session(site_root: Path, mock_runner_cls: MagicMock) -> None:
    with pytest.raises(SystemExit) as exc_info:
        main(["--site-root", str(site_root), "--port", "8123", "--no-watch", "--quiet-period", "1.5"])

    assert exc_info.value.code == 0
    args, kwargs = mock_runner_cls.call_args
    assert args[0] == str(site_root.resolve())
    assert kwargs["port"] == 8123
    assert kwargs["watch"] is False
    assert kwargs["quiet_period"] == 1.5
    assert kwargs["generator"].command == ["swift", "run"]
    mock_runner_cls.return_value.run.assert_called_once()


def test_main_propagates_server_failure_status(site_root: Path, mock_runner_cls: MagicMock) -> None:
    mock_runner_cls.return_value.run.return_value = 1
    with pytest.raises(SystemExit) as exc_info:
        main(["--site-root", str(site_root)])
    assert exc_info.value.code == 1


@pytest.mark.parametrize(
    "error",
    [
        StartupError("Failed to generate the website: boom"),
        OutputFolderNotFoundError("Could not find the 'Output' folder", "/site/Output"),
    ],
    ids=["Initial Build", "Missing Output"],
)
def test_main_fatal_errors(
    site_root: Path, mock_runner_cls: MagicMock, capsys: pytest.CaptureFixture[str], error: Exception
) -> None:
    mock_runner_cls.return_value.run.side_effect = error
    with pytest.raises(SystemExit) as exc_info:
        main(["--site-root", str(site_root)])

    assert exc_info.value.code == 1
    assert f"❌ {error}" in capsys.readouterr().err


def test_main_configuration_error(tmp_path: Path, mock_runner_cls: MagicMock) -> None:
    with pytest.raises(SystemExit) as exc_info:
        main(["--site-root", str(tmp_path / "missing")])

    assert "Configuration Error: Site root not found" in str(exc_info.value.code)
    mock_runner_cls.assert_not_called()


def test_main_keyboard_interrupt_before_handlers(site_root: Path, mock_runner_cls: MagicMock) -> None:
    mock_runner_cls.return_value.run.side_effect = KeyboardInterrupt
    with pytest.raises(SystemExit) as exc_info:
        main(["--site-root", str(site_root)])
    assert exc_info.value.code == 0


def test_main_unexpected_error(
    site_root: Path, mock_runner_cls: MagicMock, caplog: pytest.LogCaptureFixture
) -> None:
    mock_runner_cls.return_value.run.side_effect = RuntimeError("observer exploded")
    with caplog.at_level(logging.CRITICAL):
        with pytest.raises(SystemExit) as exc_info:
            main(["--site-root", str(site_root)])
    assert exc_info.value.code == 1
    assert "Fatal error: observer exploded" in caplog.text


def test_version(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc_info:
        main(["--version"])
    assert exc_info.value.code == 0
    assert "publish-run 0.1.0" in capsys.readouterr().out
