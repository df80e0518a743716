"""The development loop: build, serve, watch, rebuild.

Control flow:
    1. Initial build. A failure here is fatal: there is nothing to serve yet.
    2. Start the preview server on its own thread.
    3. In watch mode, start the watcher on ``Sources``, ``Resources`` and ``Content``.
    4. Install the interrupt handlers.
    5. Poll the debouncer every ``poll_interval`` seconds and regenerate when a
       change has been quiet for ``quiet_period`` seconds. Regeneration runs on a
       ``Generator`` thread while the loop keeps watching for shutdown; a build
       still running at shutdown is cancelled.

The loop only ends when shutdown is requested, by the user (status 0) or by
the server supervisor after an abnormal server exit (status 1). The latter
tears down from the server thread at once, even mid-regeneration. Without
watch mode the loop still runs; it just never finds a rebuild due.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Union

from publish_runner.build import BuildTrigger, CommandGenerator, Generator
from publish_runner.debounce import DEFAULT_QUIET_PERIOD, ChangeDebouncer
from publish_runner.errors import BuildError, StartupError
from publish_runner.output import output_status
from publish_runner.server import ServerSupervisor
from publish_runner.shutdown import ShutdownCoordinator
from publish_runner.watcher import SiteWatcher

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

DEFAULT_PORT = 8000
DEFAULT_POLL_INTERVAL = 0.1


class SiteRunner:
    """Run a site's development session.

    Attributes:
        site_root (Path): Absolute path of the site.
        watch (bool): Whether to rebuild on changes.
        poll_interval (float): Main loop suspension slice, in seconds.
        debouncer (ChangeDebouncer): Pending-change state shared with the watcher.
        trigger (BuildTrigger): Runs the generator.
        supervisor (ServerSupervisor): Runs the preview server.
        coordinator (ShutdownCoordinator): Owns the shutdown latch.
        watcher (Optional[SiteWatcher]): The watcher, once started in watch mode.

    Example:
        >>> runner = SiteRunner(Path("MySite"), port=8000, watch=True)
        >>> sys.exit(runner.run())
    """

    def __init__(
        self,
        site_root: Union[str, Path],
        port: int = DEFAULT_PORT,
        watch: bool = True,
        generator: Optional[Generator] = None,
        quiet_period: float = DEFAULT_QUIET_PERIOD,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        python: str = "python",
        install_signal_handlers: bool = True,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {poll_interval}")
        self.site_root = Path(site_root).absolute()
        self.watch = watch
        self.poll_interval = poll_interval
        self.install_signal_handlers = install_signal_handlers

        self.debouncer = ChangeDebouncer(quiet_period)
        self.trigger = BuildTrigger(generator if generator is not None else CommandGenerator(self.site_root))
        self.coordinator = ShutdownCoordinator()
        self.supervisor = ServerSupervisor(
            self.site_root,
            port,
            on_abnormal_exit=self.coordinator.abort,
            python=python,
        )
        self.watcher: Optional[SiteWatcher] = None

    def run(self) -> int:
        """Run the session until it is interrupted or the server dies.

        Returns:
            int: The process exit status (0 on interrupt, 1 on server failure).

        Raises:
            StartupError: If the initial build fails.
            FatalPreconditionError: If a watched folder or ``Output`` is missing.
        """
        try:
            self.trigger.build()
        except BuildError as e:
            raise StartupError(f"Failed to generate the website: {e}") from e

        with self.coordinator:
            self.coordinator.attach(server=self.supervisor.start())

            if self.watch:
                self.watcher = SiteWatcher(self.site_root, self.debouncer)
                self.watcher.start()
                self.coordinator.attach(watcher=self.watcher)

            if self.install_signal_handlers:
                self.coordinator.register_signal_handlers()
            try:
                self._loop()
            finally:
                self.coordinator.teardown()
                self.coordinator.restore_signal_handlers()

        logger.info(f"Session summary: {self.get_statistics()}")
        return self.coordinator.exit_code

    def _loop(self) -> None:
        while not self.coordinator.wait(self.poll_interval):
            if not self.debouncer.is_rebuild_due():
                continue
            output_status("Regenerating...")
            self._rebuild()

    def _rebuild(self) -> None:
        build_thread = threading.Thread(target=self.trigger.rebuild, name="Generator", daemon=True)
        build_thread.start()
        while True:
            build_thread.join(self.poll_interval)
            if not build_thread.is_alive():
                return
            if self.coordinator.is_shutdown_requested:
                logger.info("Shutdown requested during regeneration, cancelling it")
                self.trigger.cancel()
                return

    def get_statistics(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {}
        stats.update(self.trigger.get_statistics())
        stats.update(self.debouncer.get_statistics())
        if self.watcher is not None:
            stats.update(self.watcher.get_statistics())
        return stats

    def __repr__(self) -> str:
        return f"<SiteRunner root={self.site_root} watch={self.watch}>"
