"""Error types for publish-runner.

This module only contains exception classes so every other module can import
them without pulling in watchdog or subprocess machinery.

Taxonomy:
    * :class:`FatalPreconditionError` - a required folder is missing. Aborts the
      run before the loop starts.
    * :class:`BuildError` - the generator failed. Recoverable inside the loop.
    * :class:`StartupError` - the initial build failed. Fatal.
    * :class:`ServerError` - the preview server died abnormally.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

__all__ = [
    "RunnerError",
    "FatalPreconditionError",
    "WatchFolderNotFoundError",
    "OutputFolderNotFoundError",
    "BuildError",
    "StartupError",
    "ServerError",
]


class RunnerError(Exception):
    """Base exception for publish-runner."""

    context: Dict[str, Any]

    def __init__(self, message: str = "", *, context: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.context = dict(context) if context is not None else {}


class FatalPreconditionError(RunnerError):
    """Raised when a folder the runner depends on does not exist."""

    def __init__(self, message: str, path: Union[str, Path]) -> None:
        super().__init__(message, context={"path": str(path)})
        self.path = Path(path)


class WatchFolderNotFoundError(FatalPreconditionError):
    """Raised when one of the watched input folders is missing."""


class OutputFolderNotFoundError(FatalPreconditionError):
    """Raised when the site has no ``Output`` folder to serve."""


class BuildError(RunnerError):
    """Raised when site generation fails."""


class StartupError(RunnerError):
    """Raised when the initial build fails and there is nothing to serve."""


class ServerError(RunnerError):
    """Raised (or reported) when the preview server terminates abnormally."""

    def __init__(self, message: str, *, port_conflict: bool = False) -> None:
        super().__init__(message, context={"port_conflict": port_conflict})
        self.port_conflict = port_conflict
