"""Build metadata reported by ``drone-stack version``."""
from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime

from . import __version__

COMMIT_ENV_VAR = "DRONE_STACK_COMMIT"
BUILD_TIME_ENV_VAR = "DRONE_STACK_BUILD_TIME"
UNKNOWN = "unknown"
BUILD_TIME_FORMAT = "%a %b %e %H:%M:%S %Y"
VERSION_TEMPLATE = "drone-stack version: {version}, commit: {commit}, built at: {built_at}"


@dataclass(frozen=True)
class BuildInfo:
    """Version, commit and build time stamped into the plugin image."""

    version: str = __version__
    commit: str = UNKNOWN
    build_time: str = UNKNOWN

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> BuildInfo:
        """Read build metadata from *env* (defaults to ``os.environ``)."""
        source = os.environ if env is None else env
        commit = source.get(COMMIT_ENV_VAR, "").strip() or UNKNOWN
        build_time = format_build_time(source.get(BUILD_TIME_ENV_VAR))
        return cls(version=__version__, commit=commit, build_time=build_time)

    def render(self) -> str:
        """Return the single line printed by the version command."""
        return VERSION_TEMPLATE.format(
            version=self.version,
            commit=self.commit,
            built_at=self.build_time,
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "version": self.version,
            "commit": self.commit,
            "build_time": self.build_time,
        }


def format_build_time(raw: str | None) -> str:
    """Format a Unix timestamp string, or return ``unknown``."""
    if raw is None or not raw.strip():
        return UNKNOWN
    try:
        seconds = int(raw.strip(), 10)
    except ValueError:
        return UNKNOWN
    try:
        moment = datetime.fromtimestamp(seconds, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return UNKNOWN
    return moment.strftime(BUILD_TIME_FORMAT)


__all__ = ["BuildInfo", "format_build_time"]
