"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes used when no docker exit status applies."""

    OK = 0
    CONFIGURATION = 2
    VALIDATION = 3
    AUTHENTICATION = 4
    EXECUTION = 5
    DOCKER_NOT_FOUND = 127


def from_returncode(returncode: int, fallback: ExitCode) -> int:
    """Translate a subprocess return code into a process exit status.

    A negative code means the child was killed by that signal and maps to the
    shell's ``128 + signal`` convention. Zero yields *fallback*.
    """
    if returncode < 0:
        return 128 - returncode
    return returncode or int(fallback)
