"""Build and runtime version details."""

from __future__ import annotations

import platform
import sys
from typing import TextIO

# Set at release time.
VERSION = ""
GIT_COMMIT = ""


def version_lines() -> list[str]:
    """Return the lines describing the version and runtime."""
    return [
        f"Version: {VERSION}",
        f"Git Commit: {GIT_COMMIT}",
        f"Python Version: {platform.python_version()}",
        f"Implementation: {platform.python_implementation()}",
        f"Platform: {sys.platform}/{platform.machine()}",
    ]


def print_version(stream: TextIO | None = None) -> None:
    """Write the version details to *stream* (standard output by default)."""
    out = sys.stdout if stream is None else stream
    for line in version_lines():
        out.write(line + "\n")