"""Connection target resolution for the remote docker engine."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from urllib.parse import urlsplit

from .config import ConfigurationError, HostConfig

SSH_HOST_ALIAS = "remote"


class ConnectionKind(Enum):
    """How the docker client reaches the engine."""

    LOCAL = "local"
    TCP = "tcp"
    SSH = "ssh"
    SOCKET = "socket"


SCHEME_KINDS: dict[str, ConnectionKind] = {
    "tcp": ConnectionKind.TCP,
    "ssh": ConnectionKind.SSH,
    "unix": ConnectionKind.SOCKET,
    "npipe": ConnectionKind.SOCKET,
}


@dataclass(frozen=True)
class ConnectionTarget:
    """Parsed docker host URI."""

    kind: ConnectionKind
    uri: str = ""
    hostname: str | None = None
    user: str | None = None
    port: int | None = None

    @property
    def docker_host(self) -> str | None:
        """Return the ``DOCKER_HOST`` value the client should use."""
        if self.kind is ConnectionKind.LOCAL:
            return None
        if self.kind is ConnectionKind.SSH:
            return f"ssh://{SSH_HOST_ALIAS}"
        return self.uri

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "kind": self.kind.value,
            "uri": self.uri,
            "hostname": self.hostname,
            "user": self.user,
            "port": self.port,
        }


def resolve_target(host: HostConfig) -> ConnectionTarget:
    """Classify ``host.host`` into a :class:`ConnectionTarget`."""
    uri = host.host.strip()
    if not uri:
        return ConnectionTarget(kind=ConnectionKind.LOCAL)
    if "://" not in uri:
        raise ConfigurationError(
            f"Docker host '{uri}' must include a scheme (tcp://, ssh://, unix:// or npipe://)."
        )
    try:
        parts = urlsplit(uri)
        port = parts.port
    except ValueError as exc:
        raise ConfigurationError(f"Invalid docker host '{uri}': {exc}") from exc

    scheme = parts.scheme.lower()
    kind = SCHEME_KINDS.get(scheme)
    if kind is None:
        allowed = ", ".join(sorted(SCHEME_KINDS))
        raise ConfigurationError(
            f"Unsupported docker host scheme '{parts.scheme}'. Allowed: {allowed}."
        )
    if kind in (ConnectionKind.TCP, ConnectionKind.SSH) and not parts.hostname:
        raise ConfigurationError(f"Docker host '{uri}' is missing a hostname.")

    return ConnectionTarget(
        kind=kind,
        uri=uri,
        hostname=parts.hostname,
        user=parts.username or None,
        port=port,
    )


def docker_environment(
    target: ConnectionTarget,
    host: HostConfig,
    *,
    cert_dir: Path | None = None,
) -> dict[str, str]:
    """Return the docker client variables for *target*.

    The mapping is handed to each subprocess; the ambient process
    environment is left alone.
    """
    env: dict[str, str] = {}
    docker_host = target.docker_host
    if docker_host is not None:
        env["DOCKER_HOST"] = docker_host
    if target.kind is ConnectionKind.TCP and cert_dir is not None:
        env["DOCKER_CERT_PATH"] = str(cert_dir)
    if host.tls_verify:
        env["DOCKER_TLS_VERIFY"] = "1"
    elif host.use_tls:
        env["DOCKER_TLS"] = "1"
    return env


__all__ = [
    "ConnectionKind",
    "ConnectionTarget",
    "SSH_HOST_ALIAS",
    "docker_environment",
    "resolve_target",
]
