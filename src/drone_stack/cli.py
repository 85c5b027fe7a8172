"""Typer-powered command line entry point for ``drone-stack``.

Invoked without a subcommand (the way a CI runner starts the plugin image)
it runs the full deployment. Every setting comes from ``PLUGIN_*``
environment variables; the flags below override them for local use.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import ConfigurationError, PluginConfig, load_config
from .credentials import ValidationError
from .executor import AuthenticationError, ExecutionError, StackDeployer
from .exit_codes import ExitCode, from_returncode
from .logging import OperationScope, StructuredLogger
from .version import BuildInfo

console = Console()
err_console = Console(stderr=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="YAML config file layered under the PLUGIN_* environment.",
)
ENV_FILE_OPTION = typer.Option(
    None,
    "--env-file",
    dir_okay=False,
    help="Dotenv file pre-loaded before reading the environment (PLUGIN_ENV_FILE).",
)
HOST_OPTION = typer.Option(
    None,
    "--host",
    help="Docker host, e.g. tcp://swarm.example.com:2376 or ssh://deploy@swarm (PLUGIN_HOST).",
)
TLS_OPTION = typer.Option(
    None,
    "--tls/--no-tls",
    help="Talk to the docker host over TLS (PLUGIN_TLS).",
)
TLSVERIFY_OPTION = typer.Option(
    None,
    "--tlsverify/--no-tlsverify",
    help="Verify the docker host against the given CA (PLUGIN_TLSVERIFY).",
)
COMPOSE_OPTION = typer.Option(
    None,
    "--compose",
    "-c",
    help="Compose file; repeat for several (PLUGIN_COMPOSE).",
)
STACK_NAME_OPTION = typer.Option(
    None,
    "--stack-name",
    help="Stack to deploy (PLUGIN_STACK_NAME).",
)
PRUNE_OPTION = typer.Option(
    None,
    "--prune/--no-prune",
    help="Prune services that are no longer referenced (PLUGIN_PRUNE).",
)
REGISTRY_OPTION = typer.Option(
    None,
    "--registry",
    help="Registry to log in to (PLUGIN_REGISTRY).",
)
USERNAME_OPTION = typer.Option(
    None,
    "--username",
    help="Registry username (PLUGIN_USERNAME).",
)
PASSWORD_OPTION = typer.Option(
    None,
    "--password",
    help="Registry password; omit for guest mode (PLUGIN_PASSWORD).",
)
EMAIL_OPTION = typer.Option(
    None,
    "--email",
    help="Registry email, legacy registries only (PLUGIN_EMAIL).",
)
DOCKER_BIN_OPTION = typer.Option(
    None,
    "--docker-bin",
    help="docker executable to invoke (PLUGIN_DOCKER_BIN).",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Deploy a Docker Swarm stack from a CI pipeline.

        Logs in to the registry, prepares TLS or SSH access to the docker
        host and runs `docker stack deploy`. Settings are read from PLUGIN_*
        environment variables; flags override them.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective plugin configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Objects shared by commands for one invocation."""

    config_file: Path | None = None
    env_file: Path | None = None
    overrides: dict[str, object] = field(default_factory=dict)
    config: PluginConfig | None = None
    logger: StructuredLogger | None = None

    def load(self) -> tuple[PluginConfig, StructuredLogger]:
        """Load configuration once and open the operation log."""
        if self.config is None or self.logger is None:
            try:
                self.config = load_config(
                    config_file=self.config_file,
                    env_file=self.env_file,
                    overrides=self.overrides,
                )
            except ConfigurationError as exc:
                err_console.print(f"[red]{escape(str(exc))}[/red]")
                raise typer.Exit(code=int(ExitCode.CONFIGURATION)) from exc
            self.logger = StructuredLogger(self.config.log_dir)
        return self.config, self.logger


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    runtime = RuntimeContext()
    ctx.obj = runtime
    return runtime


def _build_overrides(
    *,
    host: str | None,
    tls: bool | None,
    tlsverify: bool | None,
    compose: list[str] | None,
    stack_name: str | None,
    prune: bool | None,
    registry: str | None,
    username: str | None,
    password: str | None,
    email: str | None,
    docker_bin: str | None,
) -> dict[str, object]:
    return {
        "host": {"host": host, "use_tls": tls, "tls_verify": tlsverify},
        "deploy": {
            "name": stack_name,
            "compose": list(compose) if compose else None,
            "prune": prune,
        },
        "login": {
            "registry": registry,
            "username": username,
            "password": password,
            "email": email,
        },
        "docker_bin": docker_bin,
    }


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401, PLR0913 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the drone-stack version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    env_file: Path | None = ENV_FILE_OPTION,
    host: str | None = HOST_OPTION,
    tls: bool | None = TLS_OPTION,
    tlsverify: bool | None = TLSVERIFY_OPTION,
    compose: list[str] | None = COMPOSE_OPTION,
    stack_name: str | None = STACK_NAME_OPTION,
    prune: bool | None = PRUNE_OPTION,
    registry: str | None = REGISTRY_OPTION,
    username: str | None = USERNAME_OPTION,
    password: str | None = PASSWORD_OPTION,
    email: str | None = EMAIL_OPTION,
    docker_bin: str | None = DOCKER_BIN_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(BuildInfo.from_env().render(), markup=False, highlight=False)
        raise typer.Exit(code=0)

    runtime = _get_runtime(ctx)
    runtime.config_file = config_file
    runtime.env_file = env_file
    runtime.overrides = _build_overrides(
        host=host,
        tls=tls,
        tlsverify=tlsverify,
        compose=compose,
        stack_name=stack_name,
        prune=prune,
        registry=registry,
        username=username,
        password=password,
        email=email,
        docker_bin=docker_bin,
    )

    if ctx.invoked_subcommand is None:
        _run_deploy(runtime)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int,
    context: Mapping[str, object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    err_console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=[message], rc=rc, context=dict(context or {}))
    raise typer.Exit(code=rc)


def _run_deploy(runtime: RuntimeContext) -> None:
    config, logger = runtime.load()
    args = {
        "host": config.host.host,
        "tls": config.host.use_tls,
        "tlsverify": config.host.tls_verify,
        "compose": list(config.deploy.compose),
        "prune": config.deploy.prune,
        "registry": config.login.registry,
        "guest": not config.login.enabled,
    }
    target = {"kind": "stack", "name": config.deploy.name}

    with logger.operation("deploy", args=args, target=target) as op:
        deployer = StackDeployer(config=config, console=console, err_console=err_console)
        try:
            result = deployer.run(op)
        except ConfigurationError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.CONFIGURATION))
        except ValidationError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))
        except AuthenticationError as exc:
            _command_error(
                op,
                str(exc),
                rc=from_returncode(exc.returncode, ExitCode.AUTHENTICATION),
            )
        except ExecutionError as exc:
            _command_error(
                op,
                str(exc),
                rc=from_returncode(exc.returncode, ExitCode.EXECUTION),
                context={"command": exc.command},
            )

        summary = f"Deployed stack '{config.deploy.name}'."
        if result.warnings:
            op.warning(
                summary,
                warnings=list(result.warnings),
                changed=1,
                context=result.to_dict(),
            )
        else:
            op.success(summary, changed=1, context=result.to_dict())


@app.command()
def deploy(ctx: typer.Context) -> None:
    """Log in, prepare the docker host connection and deploy the stack."""
    _run_deploy(_get_runtime(ctx))


@app.command("version")
def version_command() -> None:
    """Print version, commit and build time."""
    console.print(BuildInfo.from_env().render(), markup=False, highlight=False)


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration with secrets redacted."""
    config, logger = _get_runtime(ctx).load()
    data = config.to_dict()

    with logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, (dict, list)):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, escape(rendered))

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
