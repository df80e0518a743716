"""Site generation and the rebuild trigger.

The actual generation algorithm is external. Anything with a ``generate()``
method that raises on failure can be plugged in; :class:`CommandGenerator`
runs a build command in the site folder and is what the CLI uses.

:class:`BuildTrigger` runs the generator synchronously on the caller's thread.
There is no timeout. A build in progress can be cancelled from another thread;
generators that support it expose a ``cancel()`` method.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union

from publish_runner.errors import BuildError
from publish_runner.output import output_error

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

DEFAULT_GENERATE_COMMAND = "swift run"


class Generator(Protocol):
    def generate(self) -> None:
        ...


class CommandGenerator:
    """Generate the site by running an external command in its root folder.

    On POSIX the command runs in its own session, so a terminal interrupt only
    reaches the runner, which then cancels the build.

    Attributes:
        site_root (Path): Working directory for the command.
        command (List[str]): The command and its arguments.
    """

    def __init__(self, site_root: Union[str, Path], command: Union[str, List[str]] = DEFAULT_GENERATE_COMMAND) -> None:
        self.site_root = Path(site_root).absolute()
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.command:
            raise ValueError("Generate command must not be empty")
        self._lock = threading.Lock()
        self._process: Optional[subprocess.Popen] = None

    def generate(self) -> None:
        """Run the command and wait for it.

        Raises:
            BuildError: If the command cannot be started or exits non-zero.
        """
        logger.debug(f"Running generator: {' '.join(self.command)} (cwd={self.site_root})")
        try:
            process = subprocess.Popen(
                self.command,
                cwd=str(self.site_root),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            raise BuildError(f"Could not run '{self.command[0]}': {e}") from e

        with self._lock:
            self._process = process
        try:
            stdout, stderr = process.communicate()
        except BaseException:
            # Interrupted while waiting; do not leave the generator behind
            process.kill()
            process.wait()
            raise
        finally:
            with self._lock:
                self._process = None

        if process.returncode != 0:
            message = (stderr or stdout or "").strip()
            raise BuildError(
                message or f"'{' '.join(self.command)}' exited with status {process.returncode}",
                context={"returncode": process.returncode},
            )

    def cancel(self) -> None:
        """Terminate the running command, if any. Safe from any thread."""
        with self._lock:
            process = self._process
        if process is None or process.poll() is not None:
            return
        try:
            process.terminate()
            logger.debug(f"Sent termination request to generator (PID {process.pid})")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.warning(f"Failed to terminate generator: {e}")

    def __repr__(self) -> str:
        return f"<CommandGenerator command={self.command!r} cwd={self.site_root}>"


class BuildTrigger:
    """Invoke a generator and keep failures from ending the loop.

    Attributes:
        generator (Generator): The site generator.
        builds (int): Number of generator invocations.
        failures (int): Number of failed invocations.
    """

    def __init__(self, generator: Generator) -> None:
        self.generator = generator
        self.builds: int = 0
        self.failures: int = 0
        self.last_build_duration: float = 0.0
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def build(self) -> None:
        """Generate the site once.

        Raises:
            BuildError: If generation fails, whatever the generator raised.
        """
        self.builds += 1
        start = time.monotonic()
        try:
            self.generator.generate()
        except BuildError:
            self.failures += 1
            raise
        except Exception as e:
            self.failures += 1
            raise BuildError(str(e) or type(e).__name__) from e
        finally:
            self.last_build_duration = time.monotonic() - start
        logger.info(f"Generation finished in {self.last_build_duration:.2f}s")

    def rebuild(self) -> bool:
        """Regenerate the site, reporting but containing any failure.

        A failure after :meth:`cancel` is expected and not reported.

        Returns:
            bool: True if the build succeeded.
        """
        if self.cancelled:
            return False
        try:
            self.build()
        except BuildError as e:
            if self.cancelled:
                logger.info(f"Regeneration cancelled: {e}")
                return False
            output_error("Regeneration failed")
            logger.warning(f"Regeneration failed: {e}")
            return False
        return True

    def cancel(self) -> None:
        """Stop the build in progress and refuse further rebuilds.

        The generator is only interrupted if it has a ``cancel()`` method.
        """
        self._cancelled.set()
        cancel = getattr(self.generator, "cancel", None)
        if callable(cancel):
            cancel()

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "builds": self.builds,
            "failures": self.failures,
            "last_build_duration": self.last_build_duration,
        }
