"""Configuration management for publish-runner.

This module handles loading configuration from defaults, config files, environment variables,
and CLI arguments. Supports XDG_CONFIG_HOME (Linux/macOS), APPDATA (Windows), and ~/.config fallback.

The configuration is aggregated into a :class:`Config` dataclass, which serves as the
single source of truth for application settings.

Priority Order:
    1. CLI Arguments
    2. Environment Variables
    3. Config File
    4. Defaults

Supported Environment Variables:
    * ``PUBLISH_RUNNER_SITE_ROOT``: Root folder of the site.
    * ``PUBLISH_RUNNER_PORT``: Port for the preview server.
    * ``PUBLISH_RUNNER_WATCH``: Rebuild on changes (true/false).
    * ``PUBLISH_RUNNER_QUIET_PERIOD``: Seconds without changes before rebuilding.
    * ``PUBLISH_RUNNER_POLL_INTERVAL``: Main loop polling interval in seconds.
    * ``PUBLISH_RUNNER_GENERATE_COMMAND``: Command that generates the site.
    * ``PUBLISH_RUNNER_PYTHON``: Interpreter used for the preview server.
    * ``PUBLISH_RUNNER_LOG_FILE``: Path to the log file.
    * ``PUBLISH_RUNNER_LOG_LEVEL``: Logging level.
"""

from __future__ import annotations

import logging
import os
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from publish_runner.build import DEFAULT_GENERATE_COMMAND
from publish_runner.debounce import DEFAULT_QUIET_PERIOD
from publish_runner.runner import DEFAULT_POLL_INTERVAL, DEFAULT_PORT

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Config", "load_config"]

CONFIG_SECTION = "publish-runner"
TRUE_VALUES = ("true", "1", "yes", "on")
FALSE_VALUES = ("false", "0", "no", "off")


@dataclass
class Config:
    """Define the application configuration structure.

    Attributes:
        site_root (str): Absolute path of the site. Defaults to the current directory.
        port (int): Port for the preview server. Defaults to 8000.
        watch (bool): Whether to rebuild on changes. Defaults to True.
        quiet_period (float): Seconds without changes before rebuilding. Defaults to 3.0.
        poll_interval (float): Main loop polling interval in seconds. Defaults to 0.1.
        generate_command (str): Command that generates the site. Defaults to "swift run".
        python (str): Interpreter used for the preview server. Defaults to "python".
        log_file (Optional[str]): Absolute path to the log file. Defaults to None.
        log_level (str): Logging level (e.g., INFO, DEBUG). Defaults to "WARNING".
    """

    site_root: str
    port: int
    watch: bool
    quiet_period: float
    poll_interval: float
    generate_command: str
    python: str
    log_file: Optional[str]
    log_level: str


def _get_config_file_paths() -> List[str]:
    """Return a list of potential config file paths in order of priority.

    Checks the following locations:
    1. Local `publish-runner.ini` (current working directory).
    2. `$XDG_CONFIG_HOME/publish-runner/config.ini` (Linux/macOS).
    3. `%APPDATA%\\publish-runner\\config.ini` (Windows).
    4. `~/.config/publish-runner/config.ini` (Fallback).

    Returns:
        List[str]: A list of file paths to check for configuration.
    """
    paths = ["publish-runner.ini"]

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        paths.append(os.path.join(os.path.expanduser(xdg_config_home), "publish-runner", "config.ini"))
    elif os.name == "nt" and os.environ.get("APPDATA"):
        paths.append(os.path.join(os.path.expanduser(os.environ["APPDATA"]), "publish-runner", "config.ini"))
    else:
        paths.append(os.path.join(os.path.expanduser("~"), ".config", "publish-runner", "config.ini"))
    return paths


def _validate_site_root(path_str: str) -> str:
    """Resolve the site root, expanding the user tilde.

    Raises:
        ValueError: If the path does not exist or is not a directory.
    """
    path = Path(os.path.expanduser(path_str))
    try:
        resolved = path.resolve(strict=True)
    except FileNotFoundError as e:
        raise ValueError(f"Site root not found: {path}") from e
    except (RuntimeError, OSError) as e:
        raise ValueError(f"Error resolving site root {path}: {e}") from e
    if not resolved.is_dir():
        raise ValueError(f"Site root is not a directory: {resolved}")
    return str(resolved)


def _validate_log_file(path_str: str) -> str:
    """Resolve the log file path and check it can be written.

    Raises:
        ValueError: If the file is not a regular file or cannot be created.
    """
    resolved = Path(os.path.expanduser(path_str)).absolute()
    if resolved.exists() and not resolved.is_file():
        raise ValueError(f"Invalid path: Log file is not a regular file: {resolved}")
    try:
        with resolved.open("a"):
            pass
    except PermissionError as e:
        raise ValueError(f"Write permission denied for log file: {resolved}") from e
    except OSError as e:
        raise ValueError(f"Cannot create log file: {e}") from e
    return str(resolved)


def _parse_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean for {key}: {value}")


def load_config(args: Dict[str, Any]) -> Config:
    """Load and validate configuration with strict priority, returning a Config object.

    Args:
        args (Dict[str, Any]): Dictionary of parsed CLI arguments from argparse.
            Keys should match Config attributes. Values of None are ignored so
            lower-priority sources take effect. Typically obtained via
            ``vars(parser.parse_args())``.

    Returns:
        Config: The fully resolved and validated configuration object.

    Raises:
        ValueError: If a value is invalid (bad port, negative quiet period,
            missing site root, unknown log level, ...).

    Examples:
        >>> config = load_config({"port": 9999})
        >>> config.port
        9999
        >>> config.quiet_period
        3.0
    """
    # 1. Defaults
    config_values: Dict[str, Any] = {
        "site_root": None,
        "port": DEFAULT_PORT,
        "watch": True,
        "quiet_period": DEFAULT_QUIET_PERIOD,
        "poll_interval": DEFAULT_POLL_INTERVAL,
        "generate_command": DEFAULT_GENERATE_COMMAND,
        "python": "python",
        "log_file": None,
        "log_level": "WARNING",
    }

    # 2. Config File
    for path in _get_config_file_paths():
        if os.path.isfile(path):
            logger.debug(f"Loading config from {path}")
            parser = ConfigParser(interpolation=None)
            try:
                parser.read(path, encoding="utf-8-sig")
                if CONFIG_SECTION in parser:
                    for key, value in parser[CONFIG_SECTION].items():
                        key = key.replace("-", "_")
                        if key in config_values and value is not None and value != "":
                            config_values[key] = value
            except (ConfigParserError, UnicodeDecodeError, OSError) as e:
                logger.error(f"Failed to parse config file {path}: {e}")
            break

    # 3. Environment Variables
    env_map = {
        "PUBLISH_RUNNER_SITE_ROOT": "site_root",
        "PUBLISH_RUNNER_PORT": "port",
        "PUBLISH_RUNNER_WATCH": "watch",
        "PUBLISH_RUNNER_QUIET_PERIOD": "quiet_period",
        "PUBLISH_RUNNER_POLL_INTERVAL": "poll_interval",
        "PUBLISH_RUNNER_GENERATE_COMMAND": "generate_command",
        "PUBLISH_RUNNER_PYTHON": "python",
        "PUBLISH_RUNNER_LOG_FILE": "log_file",
        "PUBLISH_RUNNER_LOG_LEVEL": "log_level",
    }
    for env_var, config_key in env_map.items():
        val = os.getenv(env_var)
        if val is not None and val != "":
            config_values[config_key] = val

    # 4. CLI Arguments (override if not None)
    for key, value in args.items():
        if value is not None:
            config_values[key] = value

    try:
        config_values["port"] = int(config_values["port"])
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid integer for port: {config_values['port']}") from e
    if not (1 <= config_values["port"] <= 65535):
        raise ValueError(f"Port must be between 1 and 65535, got {config_values['port']}")

    try:
        config_values["quiet_period"] = float(config_values["quiet_period"])
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid float for quiet_period: {config_values['quiet_period']}") from e
    if config_values["quiet_period"] < 0:
        raise ValueError(f"quiet_period must be non-negative, got {config_values['quiet_period']}")

    try:
        config_values["poll_interval"] = float(config_values["poll_interval"])
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid float for poll_interval: {config_values['poll_interval']}") from e
    if config_values["poll_interval"] <= 0:
        raise ValueError(f"poll_interval must be positive, got {config_values['poll_interval']}")

    config_values["watch"] = _parse_bool("watch", config_values["watch"])

    config_values["generate_command"] = str(config_values["generate_command"]).strip()
    if not config_values["generate_command"]:
        raise ValueError("generate_command must not be empty")

    config_values["python"] = str(config_values["python"]).strip() or "python"

    if config_values["site_root"]:
        config_values["site_root"] = _validate_site_root(str(config_values["site_root"]))
    else:
        config_values["site_root"] = _validate_site_root(".")

    if config_values["log_file"]:
        config_values["log_file"] = _validate_log_file(str(config_values["log_file"]))

    # Handle debug flag
    if args.get("debug"):
        config_values["log_level"] = "DEBUG"

    config_values["log_level"] = str(config_values["log_level"]).upper()
    if not isinstance(getattr(logging, config_values["log_level"], None), int):
        raise ValueError(f"Invalid log level: {config_values['log_level']}")

    # Filter out keys that are not in Config fields (e.g. 'debug' from CLI)
    config_fields = {f.name for f in fields(Config)}
    filtered_values = {k: v for k, v in config_values.items() if k in config_fields}

    return Config(**filtered_values)
