"""Argument vectors for the docker client.

The builders are pure: they never touch the filesystem or the environment,
so the executor and the tests share exactly the same command lines.
"""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from .config import DeployConfig, LoginConfig

MASK = "********"


@dataclass(frozen=True)
class DockerCommand:
    """A docker invocation: binary, arguments and values hidden from traces."""

    binary: str
    args: tuple[str, ...]
    secrets: tuple[str, ...] = ()

    @property
    def argv(self) -> list[str]:
        """Return the full argument vector passed to ``subprocess``."""
        return [self.binary, *self.args]

    @property
    def name(self) -> str:
        """Return a short label such as ``docker stack deploy``."""
        if self.args[:1] == ("stack",):
            return " ".join(["docker", *self.args[:2]])
        return " ".join(["docker", *self.args[:1]])

    def trace(self) -> str:
        """Render the command for the build log with secrets masked."""
        masked = [MASK if arg in self.secrets else arg for arg in self.argv]
        return "+ " + " ".join(masked)


def login_args(login: LoginConfig) -> list[str]:
    """Return ``docker login`` arguments; ``-e`` only for legacy registries."""
    args = ["login", "-u", login.username, "-p", login.password]
    if login.email:
        args.extend(["-e", login.email])
    args.append(login.registry)
    return args


def version_args() -> list[str]:
    """Return ``docker version`` arguments."""
    return ["version"]


def info_args() -> list[str]:
    """Return ``docker info`` arguments."""
    return ["info"]


def deploy_args(deploy: DeployConfig, registry_auth: bool) -> list[str]:
    """Return ``docker stack deploy`` arguments for *deploy*."""
    args = ["stack", "deploy", deploy.name]
    for compose in deploy.compose:
        args.extend(["-c", compose])
    if deploy.prune:
        args.append("--prune")
    if registry_auth:
        args.append("--with-registry-auth")
    return args


def login_command(binary: str, login: LoginConfig) -> DockerCommand:
    """Build the registry login command."""
    secrets: Sequence[str] = (login.password,) if login.password else ()
    return DockerCommand(binary=binary, args=tuple(login_args(login)), secrets=tuple(secrets))


def deploy_sequence(binary: str, deploy: DeployConfig, registry_auth: bool) -> list[DockerCommand]:
    """Return ``docker version``, ``docker info`` and ``docker stack deploy``."""
    return [
        DockerCommand(binary=binary, args=tuple(version_args())),
        DockerCommand(binary=binary, args=tuple(info_args())),
        DockerCommand(binary=binary, args=tuple(deploy_args(deploy, registry_auth))),
    ]


__all__ = [
    "DockerCommand",
    "deploy_args",
    "deploy_sequence",
    "info_args",
    "login_args",
    "login_command",
    "version_args",
]
