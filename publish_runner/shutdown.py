"""Single-fire shutdown coordination.

Two paths can end a session: the user interrupting the process, and the preview
server dying on its ``WebServer`` thread. Both go through one
:class:`ShutdownCoordinator`:

    * :meth:`ShutdownCoordinator.request_shutdown` is non-blocking and may be
      called from a signal handler or any thread. The first request decides the
      exit status and wakes the main loop.
    * :meth:`ShutdownCoordinator.teardown` stops the watcher and terminates the
      server. It runs at most once, however many threads call it.
    * :meth:`ShutdownCoordinator.abort` combines both for background failures,
      so the program ends without waiting for the main loop.

Using the coordinator as a context manager runs the teardown on every exit path
of the ``with`` block.
"""

from __future__ import annotations

import enum
import logging
import signal
import threading
from types import FrameType, TracebackType
from typing import Any, Dict, Optional, Type

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

INTERRUPT_SIGNALS = tuple(
    sig for sig in (getattr(signal, "SIGINT", None), getattr(signal, "SIGTERM", None)) if sig is not None
)


class ShutdownState(enum.Enum):
    ARMED = "armed"
    TORN_DOWN = "torn_down"


class ShutdownCoordinator:
    """Own the shutdown latch and the resources torn down with it.

    Attributes:
        watcher (Optional[Any]): Object with a ``stop()`` method, or None when
            watch mode is off.
        server (Optional[Any]): Object with a ``terminate()`` method.
    """

    def __init__(self, watcher: Optional[Any] = None, server: Optional[Any] = None) -> None:
        self.watcher = watcher
        self.server = server
        self._lock = threading.Lock()
        self._state = ShutdownState.ARMED
        self._exit_code: Optional[int] = None
        self._requested = threading.Event()
        self._previous_handlers: Dict[int, Any] = {}

    def attach(self, watcher: Optional[Any] = None, server: Optional[Any] = None) -> None:
        """Register resources to tear down. None leaves the current value in place.

        A resource attached after the teardown already ran is stopped at once.
        """
        with self._lock:
            torn_down = self._state is ShutdownState.TORN_DOWN
            if not torn_down:
                if watcher is not None:
                    self.watcher = watcher
                if server is not None:
                    self.server = server
        if torn_down:
            logger.debug("Resource attached after teardown, stopping it")
            self._stop_resources(watcher, server)

    @property
    def state(self) -> ShutdownState:
        with self._lock:
            return self._state

    @property
    def exit_code(self) -> int:
        with self._lock:
            return self._exit_code if self._exit_code is not None else 0

    @property
    def is_shutdown_requested(self) -> bool:
        return self._requested.is_set()

    def request_shutdown(self, exit_code: int = 0) -> None:
        """Ask the session to end. The first request fixes the exit status.

        Does no blocking work, so it is safe inside a signal handler.
        """
        with self._lock:
            if self._exit_code is None:
                self._exit_code = exit_code
        self._requested.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until shutdown is requested or the timeout elapses.

        Returns:
            bool: True if shutdown was requested.
        """
        return self._requested.wait(timeout)

    def teardown(self) -> bool:
        """Stop the watcher, then terminate the server, exactly once.

        Returns:
            bool: True for the call that performed the teardown, False otherwise.
        """
        with self._lock:
            if self._state is ShutdownState.TORN_DOWN:
                return False
            self._state = ShutdownState.TORN_DOWN
            watcher = self.watcher
            server = self.server

        logger.info("Tearing down...")
        self._stop_resources(watcher, server)
        self._requested.set()
        return True

    def abort(self, exit_code: int = 1) -> None:
        """End the session from any thread: record the status and tear down now.

        Used when a background failure must end the program without waiting
        for the main loop, which may be busy regenerating.
        """
        self.request_shutdown(exit_code)
        self.teardown()

    def _stop_resources(self, watcher: Optional[Any], server: Optional[Any]) -> None:
        if watcher is not None:
            try:
                watcher.stop()
            except Exception as e:
                logger.error(f"Error stopping watcher: {e}")
        if server is not None:
            try:
                server.terminate()
            except Exception as e:
                logger.error(f"Error terminating web server: {e}")

    def _signal_handler(self, sig: int, frame: Optional[FrameType]) -> None:
        """Handle SIGINT/SIGTERM by requesting a clean (status 0) shutdown.

        Args:
            sig (int): The signal number.
            frame (Optional[FrameType]): The current stack frame (unused).
        """
        logger.info(f"Received signal {signal.Signals(sig).name}, shutting down...")
        self.request_shutdown(0)

    def register_signal_handlers(self) -> None:
        """Install the interrupt handlers in place of the default disposition.

        Must be called from the main thread.
        """
        for sig in INTERRUPT_SIGNALS:
            self._previous_handlers[sig] = signal.signal(sig, self._signal_handler)

    def restore_signal_handlers(self) -> None:
        for sig, handler in self._previous_handlers.items():
            try:
                signal.signal(sig, handler if handler is not None else signal.SIG_DFL)
            except (ValueError, OSError) as e:
                logger.debug(f"Could not restore handler for {sig}: {e}")
        self._previous_handlers.clear()

    def __enter__(self) -> "ShutdownCoordinator":
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        self.teardown()

    def __repr__(self) -> str:
        return f"<ShutdownCoordinator state={self._state.value} exit_code={self._exit_code}>"
