"""User-facing console output.

Status lines go to stdout, error lines to stderr prefixed with ``❌``.
Diagnostics belong in :mod:`logging`, not here.
"""

from __future__ import annotations

import sys


def output_status(message: str) -> None:
    print(message, flush=True)


def output_error(message: str) -> None:
    sys.stderr.write(f"\n❌ {message}\n")
    sys.stderr.flush()
