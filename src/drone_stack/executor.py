"""Deployment pipeline: validate, stage credentials, login, deploy.

The pipeline is a fixed sequence of stages::

    IDLE -> VALIDATE_CONFIG -> STAGE_CREDENTIALS -> LOGIN (optional)
         -> VERSION -> INFO -> DEPLOY -> DONE

Any failure moves the deployer to ``FAILED`` and re-raises, skipping the
remaining stages. Docker output is streamed straight to the caller's
stdout/stderr so the CI log shows it as it happens.
"""
from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from rich.console import Console

from .commands import DockerCommand, deploy_sequence, login_command
from .config import PluginConfig, validate_config
from .connection import ConnectionKind, ConnectionTarget, docker_environment, resolve_target
from .credentials import (
    FindingSeverity,
    StagedSSH,
    StagedTLS,
    inspect_tls_material,
    stage_ssh,
    stage_tls,
)
from .exit_codes import ExitCode
from .logging import OperationScope

LOGGER = logging.getLogger(__name__)

GUEST_MODE_MESSAGE = "Registry credentials not provided. Guest mode enabled."


class AuthenticationError(RuntimeError):
    """Raised when ``docker login`` exits non-zero."""

    def __init__(self, message: str, *, returncode: int) -> None:
        """Capture the login exit status alongside the engine's error text."""
        super().__init__(message)
        self.returncode = returncode


class ExecutionError(RuntimeError):
    """Raised when a docker subcommand exits non-zero."""

    def __init__(self, message: str, *, command: str, returncode: int) -> None:
        """Capture the failing command and its exit status."""
        super().__init__(message)
        self.command = command
        self.returncode = returncode


class PipelineStage(Enum):
    """States of a single deployment run."""

    IDLE = "idle"
    VALIDATE_CONFIG = "validate-config"
    STAGE_CREDENTIALS = "stage-credentials"
    LOGIN = "login"
    VERSION = "version"
    INFO = "info"
    DEPLOY = "deploy"
    DONE = "done"
    FAILED = "failed"


_COMMAND_STAGES = (PipelineStage.VERSION, PipelineStage.INFO, PipelineStage.DEPLOY)


@dataclass(slots=True)
class DockerRunner:
    """Run docker commands with an explicit environment."""

    def run(
        self,
        command: DockerCommand,
        env: Mapping[str, str],
        *,
        capture_output: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Run *command*; output is inherited unless *capture_output* is set."""
        try:
            if capture_output:
                return subprocess.run(  # noqa: S603
                    command.argv,
                    env=dict(env),
                    capture_output=True,
                    text=True,
                    check=False,
                )
            return subprocess.run(  # noqa: S603
                command.argv,
                env=dict(env),
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ExecutionError(
                f"{command.binary} not found: {exc}",
                command=command.name,
                returncode=int(ExitCode.DOCKER_NOT_FOUND),
            ) from exc


@dataclass(frozen=True)
class DeployResult:
    """Summary of a finished deployment."""

    target: ConnectionTarget
    registry_auth: bool
    stages: tuple[PipelineStage, ...]
    commands: tuple[str, ...]
    warnings: tuple[str, ...] = ()
    tls: StagedTLS | None = None
    ssh: StagedSSH | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "target": self.target.to_dict(),
            "registry_auth": self.registry_auth,
            "stages": [stage.value for stage in self.stages],
            "commands": list(self.commands),
            "warnings": list(self.warnings),
            "tls": self.tls.to_dict() if self.tls is not None else None,
            "ssh": self.ssh.to_dict() if self.ssh is not None else None,
        }


@dataclass
class StackDeployer:
    """Drive one plugin run from validated configuration to ``stack deploy``."""

    config: PluginConfig
    runner: DockerRunner = field(default_factory=DockerRunner)
    console: Console = field(default_factory=Console)
    err_console: Console = field(default_factory=lambda: Console(stderr=True))
    base_env: Mapping[str, str] | None = None
    stage: PipelineStage = PipelineStage.IDLE
    history: list[PipelineStage] = field(default_factory=list)

    def run(self, op: OperationScope | None = None) -> DeployResult:
        """Execute every stage in order, stopping at the first failure."""
        try:
            return self._run(op)
        except Exception:
            failed_at = self.stage
            self._enter(PipelineStage.FAILED)
            if op is not None:
                op.add_step(f"pipeline.{failed_at.value}", status="failed")
            raise

    def _run(self, op: OperationScope | None) -> DeployResult:
        self._enter(PipelineStage.VALIDATE_CONFIG)
        validate_config(self.config)
        target = resolve_target(self.config.host)
        self._step(op, "config.validate", detail=target.kind.value)

        self._enter(PipelineStage.STAGE_CREDENTIALS)
        staged_tls, staged_ssh, warnings = self._stage_credentials(target, op)
        env = self._build_env(target)

        traces: list[str] = []
        registry_auth = self.config.login.enabled
        if registry_auth:
            self._enter(PipelineStage.LOGIN)
            traces.append(self._login(env))
            self._step(op, "docker.login", detail=self.config.login.registry)
        else:
            self.console.print(GUEST_MODE_MESSAGE, markup=False, highlight=False)
            self._step(op, "docker.login", status="skipped", detail="guest mode")

        commands = deploy_sequence(self.config.docker_bin, self.config.deploy, registry_auth)
        for stage, command in zip(_COMMAND_STAGES, commands, strict=True):
            self._enter(stage)
            traces.append(self._execute(command, env))
            self._step(op, f"docker.{stage.value}")

        self._enter(PipelineStage.DONE)
        return DeployResult(
            target=target,
            registry_auth=registry_auth,
            stages=tuple(self.history),
            commands=tuple(traces),
            warnings=tuple(warnings),
            tls=staged_tls,
            ssh=staged_ssh,
        )

    def _stage_credentials(
        self,
        target: ConnectionTarget,
        op: OperationScope | None,
    ) -> tuple[StagedTLS | None, StagedSSH | None, list[str]]:
        warnings: list[str] = []
        staged_tls: StagedTLS | None = None
        staged_ssh: StagedSSH | None = None
        if target.kind is ConnectionKind.TCP:
            staged_tls = stage_tls(self.config.certs, self.config.host, self.config.cert_dir)
            if staged_tls is None:
                self._step(op, "credentials.tls", status="skipped", detail="tls disabled")
            else:
                self._step(op, "credentials.tls", detail=str(staged_tls.directory))
                warnings.extend(self._report_findings(staged_tls))
        elif target.kind is ConnectionKind.SSH:
            staged_ssh = stage_ssh(self.config.ssh, target, self.config.ssh_dir)
            self.console.print(
                f"SSH Config:\n\n{staged_ssh.content}",
                markup=False,
                highlight=False,
            )
            self._step(op, "credentials.ssh", detail=str(staged_ssh.config_path))
        else:
            self._step(op, "credentials", status="skipped", detail=target.kind.value)
        return staged_tls, staged_ssh, warnings

    def _report_findings(self, staged: StagedTLS) -> list[str]:
        warnings: list[str] = []
        for finding in inspect_tls_material(staged):
            if finding.severity is FindingSeverity.WARNING:
                message = finding.describe()
                self.err_console.print(f"[yellow]Warning:[/yellow] {message}", highlight=False)
                warnings.append(message)
        return warnings

    def _build_env(self, target: ConnectionTarget) -> dict[str, str]:
        base = dict(os.environ if self.base_env is None else self.base_env)
        docker_env = docker_environment(target, self.config.host, cert_dir=self.config.cert_dir)
        LOGGER.debug("Docker environment: %s", sorted(docker_env))
        return {**self.config.extra_env, **base, **docker_env}

    def _login(self, env: Mapping[str, str]) -> str:
        command = login_command(self.config.docker_bin, self.config.login)
        trace = command.trace()
        self.console.print(trace, markup=False, highlight=False, soft_wrap=True)
        try:
            result = self.runner.run(command, env, capture_output=True)
        except ExecutionError as exc:
            raise AuthenticationError(
                f"Error authenticating: {exc}",
                returncode=exc.returncode,
            ) from exc
        self._echo(result.stdout, result.stderr)
        if result.returncode != 0:
            message = _error_text(result) or "no output"
            raise AuthenticationError(
                f"Error authenticating (exit {result.returncode}): {message}",
                returncode=result.returncode,
            )
        return trace

    def _execute(self, command: DockerCommand, env: Mapping[str, str]) -> str:
        trace = command.trace()
        self.console.print(trace, markup=False, highlight=False, soft_wrap=True)
        result = self.runner.run(command, env)
        if result.returncode != 0:
            raise ExecutionError(
                f"{command.name} failed (exit {result.returncode})",
                command=command.name,
                returncode=result.returncode,
            )
        return trace

    def _echo(self, stdout: str | None, stderr: str | None) -> None:
        if stdout:
            self.console.print(stdout.rstrip("\n"), markup=False, highlight=False, soft_wrap=True)
        if stderr:
            self.err_console.print(
                stderr.rstrip("\n"),
                markup=False,
                highlight=False,
                soft_wrap=True,
            )

    def _enter(self, stage: PipelineStage) -> None:
        LOGGER.debug("Pipeline stage %s -> %s", self.stage.value, stage.value)
        self.stage = stage
        self.history.append(stage)

    @staticmethod
    def _step(
        op: OperationScope | None,
        name: str,
        *,
        status: str = "success",
        detail: str | None = None,
    ) -> None:
        if op is not None:
            op.add_step(name, status=status, detail=detail)


def _error_text(result: subprocess.CompletedProcess[str]) -> str:
    stdout = getattr(result, "stdout", "") or ""
    stderr = getattr(result, "stderr", "") or ""
    return stderr.strip() or stdout.strip()


__all__ = [
    "AuthenticationError",
    "DeployResult",
    "DockerRunner",
    "ExecutionError",
    "GUEST_MODE_MESSAGE",
    "PipelineStage",
    "StackDeployer",
]
