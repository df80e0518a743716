"""Preview web server supervision.

The preview server is Python's own static file server (``python -m http.server``,
or ``SimpleHTTPServer`` for a Python 2 interpreter) run as a child process in the
site's ``Output`` folder.

Design:
    - **Background watchdog thread**: :meth:`ServerSupervisor.start` returns at once.
      A daemon thread named ``WebServer`` launches the child, drains its stderr and
      waits for it to exit.
    - **Exit classification**: A SIGTERM exit (or any exit after we asked the
      server to stop) is expected and silent. Anything else is an abnormal
      termination. A port conflict gets a dedicated diagnostic.
    - **One-way escalation**: An abnormal exit terminates the handle and calls the
      ``on_abnormal_exit`` callback with status 1. There is no return path to the
      main loop.

Key Invariants:
    - ``ServerHandle.terminate()`` sends at most one termination request.
    - The ``Output`` folder is checked before any launch attempt.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from collections import deque
from pathlib import Path
from typing import Callable, Deque, List, Optional, Union

from publish_runner.errors import OutputFolderNotFoundError
from publish_runner.output import output_error, output_status

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

OUTPUT_FOLDER_NAME = "Output"
NORMAL_TERMINATION_STATUS = 15
NORMAL_TERMINATION_RETURNCODES = frozenset({NORMAL_TERMINATION_STATUS, -signal.SIGTERM})
PORT_IN_USE_PATTERN = "Address already in use"
MAX_ERROR_LINES = 200


def resolve_output_folder(site_root: Union[str, Path]) -> Path:
    """Return the site's ``Output`` folder.

    Raises:
        OutputFolderNotFoundError: If the folder does not exist.
    """
    folder = Path(site_root).absolute() / OUTPUT_FOLDER_NAME
    if not folder.is_dir():
        raise OutputFolderNotFoundError(
            f"Could not find the '{OUTPUT_FOLDER_NAME}' folder at {folder}. Generate the site first.",
            folder,
        )
    return folder


def resolve_python_major_version(python: str = "python") -> int:
    """Query the major version of an interpreter.

    Args:
        python (str): Interpreter executable to query.

    Returns:
        int: The major version, or 2 if it could not be determined.
    """
    try:
        result = subprocess.run(
            [python, "--version"],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"Could not run '{python} --version': {e}")
        return 2

    # Expected output: `Python X.Y.Z` (on stderr for Python 2)
    output = (result.stdout.strip() or result.stderr.strip())
    if not output:
        return 2
    version = output.split()[-1]
    major = version.split(".")[0]
    if not major.isdigit():
        logger.debug(f"Unrecognized version output: {output!r}")
        return 2
    return int(major)


def resolve_http_server_module(python: str = "python") -> str:
    if resolve_python_major_version(python) >= 3:
        return "http.server"
    return "SimpleHTTPServer"


def port_conflict_message(port: int) -> str:
    return (
        f"A localhost server is already running on port number {port}.\n"
        "- Perhaps another 'publish-run' session is running?\n"
        "- The preview server is Python's built-in HTTP server, so you can\n"
        "  find running instances with 'ps' (search for 'python') and\n"
        "  terminate the previous process before starting a new one."
    )


class ServerHandle:
    """Thread-safe handle on the preview server process.

    The handle may be terminated before the process is attached; the process
    is then stopped as soon as it is attached.
    """

    __slots__ = ('_lock', '_process', '_terminate_requested', '_signal_sent')

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._process: Optional[subprocess.Popen] = None
        self._terminate_requested = False
        self._signal_sent = False

    def attach(self, process: subprocess.Popen) -> None:
        with self._lock:
            self._process = process
            if self._terminate_requested:
                self._send_terminate()

    def terminate(self) -> None:
        """Ask the server to stop.

        Safe to call repeatedly, concurrently, before the process was started,
        and after it exited.
        """
        with self._lock:
            self._terminate_requested = True
            self._send_terminate()

    def _send_terminate(self) -> None:
        process = self._process
        if process is None or self._signal_sent:
            return
        if process.poll() is not None:
            return
        self._signal_sent = True
        try:
            process.terminate()
            logger.debug(f"Sent termination request to web server (PID {process.pid})")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.warning(f"Failed to terminate web server: {e}")

    @property
    def terminate_requested(self) -> bool:
        with self._lock:
            return self._terminate_requested

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._process is not None and self._process.poll() is None

    @property
    def pid(self) -> Optional[int]:
        process = self._process
        return process.pid if process is not None else None

    @property
    def returncode(self) -> Optional[int]:
        process = self._process
        return process.returncode if process is not None else None

    def __repr__(self) -> str:
        return f"<ServerHandle pid={self.pid} running={self.is_running}>"


class ServerSupervisor:
    """Launch and watch the preview server on a dedicated thread.

    Attributes:
        site_root (Path): Absolute path of the site.
        port (int): Port the server listens on.
        python (str): Interpreter used to run the server.
        handle (ServerHandle): Handle on the child process.
        on_abnormal_exit (Callable[[int], None]): Called with the exit status
            when the server dies abnormally.
    """

    def __init__(
        self,
        site_root: Union[str, Path],
        port: int,
        on_abnormal_exit: Callable[[int], None],
        python: str = "python",
    ) -> None:
        self.site_root = Path(site_root).absolute()
        self.port = port
        self.python = python
        self.on_abnormal_exit = on_abnormal_exit
        self.handle = ServerHandle()
        self.last_error: Optional[str] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def url(self) -> str:
        return f"http://localhost:{self.port}"

    def build_command(self) -> List[str]:
        return [self.python, "-m", resolve_http_server_module(self.python), str(self.port)]

    def start(self) -> ServerHandle:
        """Start the server in the background.

        Returns:
            ServerHandle: Handle on the (soon to be) running server.

        Raises:
            OutputFolderNotFoundError: If there is no ``Output`` folder to serve.
            RuntimeError: If the server was already started.
        """
        output_folder = resolve_output_folder(self.site_root)
        if self._thread is not None:
            raise RuntimeError("Web server already started")

        output_status(
            f"🌍 Starting web server at {self.url}\n\n"
            "Press CTRL+C to stop the server and exit"
        )

        self._thread = threading.Thread(
            target=self._serve, args=(output_folder,), name="WebServer", daemon=True
        )
        self._thread.start()
        return self.handle

    def terminate(self) -> None:
        self.handle.terminate()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def classify_exit(self, returncode: int, output: str) -> Optional[str]:
        """Return the error to report for a server exit, or None if it was expected.

        Args:
            returncode (int): The child's return code (negative for signals).
            output (str): Text the child wrote to stderr.

        Returns:
            Optional[str]: The message to report, None for a normal termination.
        """
        if returncode in NORMAL_TERMINATION_RETURNCODES:
            return None
        output = output.strip()
        if PORT_IN_USE_PATTERN in output:
            return port_conflict_message(self.port)
        if output:
            return output
        return f"Web server exited unexpectedly with status {returncode}"

    def _serve(self, output_folder: Path) -> None:
        """Run the server to completion. Executes on the ``WebServer`` thread."""
        try:
            command = self.build_command()
            logger.debug(f"Launching web server: {' '.join(command)} (cwd={output_folder})")
            process = subprocess.Popen(
                command,
                cwd=str(output_folder),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                start_new_session=(os.name == "posix"),
            )
        except (OSError, ValueError) as e:
            self._report_failure(str(e) or type(e).__name__)
            return

        self.handle.attach(process)
        logger.info(f"Web server running (PID {process.pid})")

        tail: Deque[str] = deque(maxlen=MAX_ERROR_LINES)
        if process.stderr is not None:
            with process.stderr:
                for line in process.stderr:
                    tail.append(line)
                    if logger.isEnabledFor(logging.DEBUG):
                        logger.debug(f"[server] {line.rstrip()}")
        returncode = process.wait()

        if self.handle.terminate_requested:
            logger.info(f"Web server stopped (status {returncode})")
            return

        message = self.classify_exit(returncode, "".join(tail))
        if message is None:
            logger.info("Web server terminated normally")
            return
        self._report_failure(message)

    def _report_failure(self, message: str) -> None:
        self.last_error = message
        output_error(f"Failed to start local web server:\n{message}")
        self.handle.terminate()
        self.on_abnormal_exit(1)

    def __repr__(self) -> str:
        return f"<ServerSupervisor url={self.url} handle={self.handle!r}>"
