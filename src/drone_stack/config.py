"""Configuration loader for drone-stack.

This module centralises the logic for reading plugin settings from multiple
sources, lowest precedence first:

1. Built-in defaults.
2. An optional YAML config file (``--config-file`` or ``PLUGIN_CONFIG_FILE``).
3. An optional dotenv file named by ``PLUGIN_ENV_FILE``. Its values only fill
   variables that are not already present in the real environment.
4. Environment variables set by the CI runner (``PLUGIN_*`` plus the
   ``DOCKER_*`` aliases understood by other docker plugins).
5. Explicit overrides supplied programmatically (CLI flags).

The resulting configuration is exposed as immutable ``dataclasses`` that are
built once at startup and passed explicitly to the later stages.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from dotenv import dotenv_values

ENV_PREFIX = "PLUGIN_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
ENV_FILE_ENV_VAR = f"{ENV_PREFIX}ENV_FILE"
DEFAULT_REGISTRY = "https://index.docker.io/v1/"
DEFAULT_COMPOSE = "docker-compose.yml"
REDACTED = "********"


class ConfigurationError(RuntimeError):
    """Raised when configuration is missing, malformed or inconsistent."""


@dataclass(frozen=True)
class HostConfig:
    """Docker engine the stack is deployed to."""

    host: str = ""
    use_tls: bool = False
    tls_verify: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"host": self.host, "use_tls": self.use_tls, "tls_verify": self.tls_verify}


@dataclass(frozen=True)
class DeployConfig:
    """Arguments for ``docker stack deploy``."""

    name: str = ""
    compose: tuple[str, ...] = (DEFAULT_COMPOSE,)
    prune: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"name": self.name, "compose": list(self.compose), "prune": self.prune}


@dataclass(frozen=True)
class LoginConfig:
    """Registry credentials used by ``docker login``."""

    registry: str = DEFAULT_REGISTRY
    username: str = ""
    password: str = ""
    email: str = ""

    @property
    def enabled(self) -> bool:
        """Login only happens when a password was supplied."""
        return bool(self.password)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation with the password redacted."""
        return {
            "registry": self.registry,
            "username": self.username,
            "password": _redact(self.password),
            "email": self.email,
        }


@dataclass(frozen=True)
class CertsConfig:
    """Client TLS material, each value PEM text or base64 encoded PEM."""

    key: str = ""
    cert: str = ""
    cacert: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation with the key redacted."""
        return {
            "key": _redact(self.key),
            "cert": "<set>" if self.cert else "",
            "cacert": "<set>" if self.cacert else "",
        }


@dataclass(frozen=True)
class SSHConfig:
    """Private key used to reach an ``ssh://`` docker host."""

    key: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation with the key redacted."""
        return {"key": _redact(self.key)}


@dataclass(frozen=True)
class PluginConfig:
    """Resolved configuration values for a single plugin run."""

    host: HostConfig
    deploy: DeployConfig
    login: LoginConfig
    certs: CertsConfig
    ssh: SSHConfig
    docker_bin: str
    cert_dir: Path
    ssh_dir: Path
    log_dir: Path | None
    config_file: Path | None = None
    env_file: Path | None = None
    extra_env: Mapping[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation with secrets redacted."""
        return {
            "host": self.host.to_dict(),
            "deploy": self.deploy.to_dict(),
            "login": self.login.to_dict(),
            "certs": self.certs.to_dict(),
            "ssh": self.ssh.to_dict(),
            "docker_bin": self.docker_bin,
            "cert_dir": str(self.cert_dir),
            "ssh_dir": str(self.ssh_dir),
            "log_dir": str(self.log_dir) if self.log_dir is not None else None,
            "config_file": str(self.config_file) if self.config_file is not None else None,
            "env_file": str(self.env_file) if self.env_file is not None else None,
            "extra_env": sorted(self.extra_env),
        }


DEFAULTS: dict[str, object] = {
    "docker_bin": "docker",
    "cert_dir": "~/.docker/certs",
    "ssh_dir": "~/.ssh",
    "log_dir": None,
    "host": {
        "host": "",
        "use_tls": False,
        "tls_verify": False,
    },
    "deploy": {
        "name": "",
        "compose": [DEFAULT_COMPOSE],
        "prune": False,
    },
    "login": {
        "registry": DEFAULT_REGISTRY,
        "username": "",
        "password": "",
        "email": "",
    },
    "certs": {
        "key": "",
        "cert": "",
        "cacert": "",
    },
    "ssh": {
        "key": "",
    },
}

# Setting path -> environment variables, first non-empty value wins.
ENV_BINDINGS: tuple[tuple[tuple[str, ...], tuple[str, ...]], ...] = (
    (("host", "host"), ("PLUGIN_HOST",)),
    (("host", "use_tls"), ("PLUGIN_TLS",)),
    (("host", "tls_verify"), ("PLUGIN_TLSVERIFY",)),
    (("deploy", "compose"), ("PLUGIN_COMPOSE",)),
    (("deploy", "name"), ("PLUGIN_STACK_NAME",)),
    (("deploy", "prune"), ("PLUGIN_PRUNE",)),
    (("login", "registry"), ("PLUGIN_REGISTRY", "DOCKER_REGISTRY")),
    (("login", "username"), ("PLUGIN_USERNAME", "DOCKER_USERNAME")),
    (("login", "password"), ("PLUGIN_PASSWORD", "DOCKER_PASSWORD")),
    (("login", "email"), ("PLUGIN_EMAIL", "DOCKER_EMAIL")),
    (("certs", "cacert"), ("PLUGIN_CACERT", "DOCKER_CACERT")),
    (("certs", "key"), ("PLUGIN_KEY", "DOCKER_KEY")),
    (("certs", "cert"), ("PLUGIN_CERT", "DOCKER_CERT")),
    (("ssh", "key"), ("PLUGIN_SSH_KEY", "DOCKER_SSH_KEY")),
    (("docker_bin",), ("PLUGIN_DOCKER_BIN",)),
    (("log_dir",), ("PLUGIN_LOG_DIR",)),
)

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    key: set(value.keys())
    for key, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}

_TRUE_STRINGS = {"1", "t", "true", "y", "yes", "on"}
_FALSE_STRINGS = {"", "0", "f", "false", "n", "no", "off"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    env_file: str | os.PathLike[str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> PluginConfig:
    """Load and merge configuration sources into a :class:`PluginConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    env_file_path = _determine_env_file(env_file, resolved_env)
    extra_env = _load_env_file(env_file_path) if env_file_path is not None else {}
    # Real environment wins over the env-file.
    lookup_env = {**extra_env, **resolved_env}

    config_path = _determine_config_path(config_file, lookup_env)
    if config_path is not None:
        file_values = _load_yaml_file(config_path)
        if file_values:
            _validate_structure(file_values, f"file:{config_path}")
            _deep_merge(merged, file_values)

    env_values = _build_env_overrides(lookup_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        cleaned = _drop_none(overrides)
        _validate_structure(cleaned, "overrides")
        _deep_merge(merged, cleaned)

    return _build_plugin_config(
        merged,
        config_file=config_path,
        env_file=env_file_path,
        extra_env=extra_env,
    )


def validate_config(config: PluginConfig) -> None:
    """Check deploy preconditions that do not depend on the docker host."""
    if not config.deploy.name.strip():
        raise ConfigurationError("Docker stack name must be present (PLUGIN_STACK_NAME).")
    if not config.deploy.compose:
        raise ConfigurationError("At least one compose file must be given (PLUGIN_COMPOSE).")
    if not config.docker_bin.strip():
        raise ConfigurationError("docker_bin must not be empty.")


def _determine_config_path(
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path | None:
    if cli_override:
        return Path(cli_override).expanduser()
    raw = env.get(CONFIG_ENV_VAR, "").strip()
    if raw:
        return Path(raw).expanduser()
    return None


def _determine_env_file(
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path | None:
    if cli_override:
        return Path(cli_override).expanduser()
    raw = env.get(ENV_FILE_ENV_VAR, "").strip()
    if raw:
        return Path(raw).expanduser()
    return None


def _load_env_file(path: Path) -> dict[str, str]:
    if not path.is_file():
        raise ConfigurationError(f"Env file {path} does not exist.")
    values = dotenv_values(path)
    return {key: value for key, value in values.items() if value is not None}


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        raise ConfigurationError(f"Config file {path} does not exist.")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigurationError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object], source: str) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigurationError(f"Unknown configuration keys in {source}: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        if section not in raw:
            continue
        section_map = _as_dict(raw[section], section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigurationError(f"Unknown {section} configuration keys in {source}: {joined}.")


def _build_plugin_config(
    raw: Mapping[str, object],
    *,
    config_file: Path | None,
    env_file: Path | None,
    extra_env: Mapping[str, str],
) -> PluginConfig:
    host_map = _as_dict(raw.get("host"), "host")
    deploy_map = _as_dict(raw.get("deploy"), "deploy")
    login_map = _as_dict(raw.get("login"), "login")
    certs_map = _as_dict(raw.get("certs"), "certs")
    ssh_map = _as_dict(raw.get("ssh"), "ssh")

    host = HostConfig(
        host=_expect_str(host_map.get("host"), "host.host").strip(),
        use_tls=_expect_bool(host_map.get("use_tls"), "host.use_tls"),
        tls_verify=_expect_bool(host_map.get("tls_verify"), "host.tls_verify"),
    )
    deploy = DeployConfig(
        name=_expect_str(deploy_map.get("name"), "deploy.name").strip(),
        compose=_expect_compose(deploy_map.get("compose")),
        prune=_expect_bool(deploy_map.get("prune"), "deploy.prune"),
    )
    registry = _expect_str(login_map.get("registry"), "login.registry").strip()
    login = LoginConfig(
        registry=registry or DEFAULT_REGISTRY,
        username=_expect_str(login_map.get("username"), "login.username"),
        password=_expect_str(login_map.get("password"), "login.password"),
        email=_expect_str(login_map.get("email"), "login.email").strip(),
    )
    certs = CertsConfig(
        key=_expect_str(certs_map.get("key"), "certs.key"),
        cert=_expect_str(certs_map.get("cert"), "certs.cert"),
        cacert=_expect_str(certs_map.get("cacert"), "certs.cacert"),
    )
    ssh = SSHConfig(key=_expect_str(ssh_map.get("key"), "ssh.key"))

    log_dir_raw = raw.get("log_dir")
    return PluginConfig(
        host=host,
        deploy=deploy,
        login=login,
        certs=certs,
        ssh=ssh,
        docker_bin=_expect_str(raw.get("docker_bin"), "docker_bin").strip(),
        cert_dir=_to_path(raw.get("cert_dir")),
        ssh_dir=_to_path(raw.get("ssh_dir")),
        log_dir=_to_path(log_dir_raw) if log_dir_raw not in (None, "") else None,
        config_file=config_file,
        env_file=env_file,
        extra_env=dict(extra_env),
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for path, names in ENV_BINDINGS:
        for name in names:
            value = env.get(name)
            if value is None or value == "":
                continue
            _assign_nested(overrides, list(path), value)
            break
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = existing
            continue
        raise ConfigurationError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _drop_none(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if value is None:
            continue
        if isinstance(value, Mapping):
            nested = _drop_none(_as_dict(value, f"overrides.{key}"))
            if nested:
                result[key] = nested
            continue
        result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _expect_bool(value: object | None, label: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
        coerced = _coerce_value(value)
        if isinstance(coerced, bool):
            return coerced
    raise ConfigurationError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object | None, label: str) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    raise ConfigurationError(f"Expected {label} to resolve to a string. Got {value!r}.")


def _expect_compose(value: object | None) -> tuple[str, ...]:
    if value is None:
        return (DEFAULT_COMPOSE,)
    items: Sequence[object]
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, Sequence):
        items = value
    else:
        raise ConfigurationError(
            f"Expected deploy.compose to be a list or comma separated string. Got {value!r}."
        )
    compose: list[str] = []
    for item in items:
        text = _expect_str(item, "deploy.compose").strip()
        if text:
            compose.append(text)
    return tuple(compose)


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigurationError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigurationError(f"Cannot convert value {value!r} to Path.")


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigurationError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


def _redact(secret: str) -> str:
    return REDACTED if secret else ""


__all__ = [
    "CertsConfig",
    "ConfigurationError",
    "DeployConfig",
    "HostConfig",
    "LoginConfig",
    "PluginConfig",
    "SSHConfig",
    "load_config",
    "validate_config",
]
