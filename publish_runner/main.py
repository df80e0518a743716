"""Main entry point for publish-runner.

This module handles the command-line interface (CLI), configuration loading,
logging setup, and turning the outcome of a session into a process exit status.

Key Responsibilities:
    - CLI Argument Parsing: Handles --site-root, --port, --no-watch, etc.
    - Logging: Configures console logging and optional file logging with rotation (10MB).
    - Exit Status: 0 after an interrupt, 1 after an abnormal server exit, a
      fatal precondition, or a failed initial build.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import List, Optional

from publish_runner import __version__
from publish_runner.build import CommandGenerator
from publish_runner.config import load_config
from publish_runner.errors import RunnerError
from publish_runner.output import output_error
from publish_runner.runner import SiteRunner

# Logging configuration constants
LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s: %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def setup_logging(log_level: str, log_file: Optional[str]) -> None:
    """Configure the logging system.

    Sets up console logging (stdout) and optional file logging with rotation.

    Logging Practices:
        - **Levels**:
            - ``INFO``: Lifecycle (observer started, server PID, build durations).
            - ``WARNING``: Recoverable issues (failed regeneration).
            - ``ERROR``: Failures while tearing down.
            - ``DEBUG``: Raw events and server stderr.
        - **Format**: ``[asctime] [levelname] name: message``
        - **Rotation**: Log files are rotated at 10MB (keeping 5 backups).

    Args:
        log_level (str): The logging level (e.g., "DEBUG", "INFO", "WARNING", "ERROR").
        log_file (Optional[str]): Optional path to a log file.

    Raises:
        ValueError: If the provided log_level is not a valid logging level.
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    handlers: List[logging.Handler] = []
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            # Rotate at 10MB, keep 5 backups
            file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except OSError as e:
            # Logging isn't set up yet
            sys.stderr.write(f"Warning: Failed to setup log file '{log_file}': {e}\n")

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="publish-run",
        description="Generate a website, serve it locally and regenerate it on changes.",
    )
    parser.add_argument("--site-root", type=str, default=None, help="Root folder of the site (default: current directory).")
    parser.add_argument("--port", type=int, default=None, help="Port for the preview server (default: 8000).")
    parser.add_argument(
        "--no-watch",
        dest="watch",
        action="store_const",
        const=False,
        default=None,
        help="Serve without regenerating on changes.",
    )
    parser.add_argument(
        "--quiet-period",
        type=float,
        default=None,
        help="Seconds without changes before regenerating (default: 3).",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between checks for pending changes (default: 0.1).",
    )
    parser.add_argument(
        "--generate-command",
        type=str,
        default=None,
        help="Command that generates the site into Output/ (default: 'swift run').",
    )
    parser.add_argument("--python", type=str, default=None, help="Interpreter used to run the preview server.")
    parser.add_argument("--log-file", type=str, default=None, help="Path to the log file.")
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR). Default: WARNING",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging (overrides --log-level).")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Execute the main application logic.

    Parse command-line arguments, load configuration, set up logging and run
    the session until it ends.

    Raises:
        SystemExit: Always. Status 0 after an interrupt, 1 on any failure.

    Example:
        $ publish-run --site-root ./MySite --port 8080
    """
    args = build_parser().parse_args(argv)

    # Bootstrap logging to capture config loading events
    bootstrap_handler = logging.StreamHandler(sys.stdout)
    bootstrap_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    bootstrap_level = logging.DEBUG if args.debug else logging.WARNING
    logging.basicConfig(level=bootstrap_level, handlers=[bootstrap_handler], force=True)

    try:
        config = load_config(vars(args))
        logger.debug(f"Configuration loaded: {config}")
        setup_logging(config.log_level, config.log_file)
    except ValueError as e:
        sys.exit(f"Configuration Error: {e}")

    logger.info(f"Starting publish-runner v{__version__} (PID: {os.getpid()}) for {config.site_root}")

    runner = SiteRunner(
        config.site_root,
        port=config.port,
        watch=config.watch,
        generator=CommandGenerator(config.site_root, config.generate_command),
        quiet_period=config.quiet_period,
        poll_interval=config.poll_interval,
        python=config.python,
    )

    try:
        exit_code = runner.run()
    except RunnerError as e:
        output_error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        # Interrupted before the handlers were installed
        logger.info("KeyboardInterrupt received, stopping...")
        sys.exit(0)
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
