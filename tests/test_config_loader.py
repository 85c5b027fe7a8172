"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from drone_stack.config import (
    DEFAULT_REGISTRY,
    REDACTED,
    ConfigurationError,
    PluginConfig,
    load_config,
    validate_config,
)


def test_load_config_defaults(tmp_path: Path) -> None:
    """Defaults apply when nothing is configured."""
    config = load_config(env={})

    assert isinstance(config, PluginConfig)
    assert config.host.host == ""
    assert config.host.use_tls is False
    assert config.deploy.compose == ("docker-compose.yml",)
    assert config.deploy.prune is False
    assert config.login.registry == DEFAULT_REGISTRY
    assert config.login.enabled is False
    assert config.docker_bin == "docker"
    assert config.cert_dir == Path("~/.docker/certs").expanduser()
    assert config.ssh_dir == Path("~/.ssh").expanduser()
    assert config.log_dir is None
    assert config.extra_env == {}


def test_plugin_env_vars_are_read() -> None:
    """PLUGIN_* variables populate every section."""
    env = {
        "PLUGIN_HOST": "tcp://swarm.example.com:2376",
        "PLUGIN_TLS": "true",
        "PLUGIN_TLSVERIFY": "1",
        "PLUGIN_COMPOSE": "a.yml, b.yml,,",
        "PLUGIN_STACK_NAME": "web",
        "PLUGIN_PRUNE": "yes",
        "PLUGIN_REGISTRY": "registry.example.com",
        "PLUGIN_USERNAME": "ci",
        "PLUGIN_PASSWORD": "s3cret",
        "PLUGIN_EMAIL": "ci@example.com",
        "PLUGIN_CACERT": "ca",
        "PLUGIN_KEY": "key",
        "PLUGIN_CERT": "cert",
        "PLUGIN_SSH_KEY": "sshkey",
        "PLUGIN_DOCKER_BIN": "/usr/bin/docker",
    }

    config = load_config(env=env)

    assert config.host.host == "tcp://swarm.example.com:2376"
    assert config.host.use_tls is True
    assert config.host.tls_verify is True
    assert config.deploy.compose == ("a.yml", "b.yml")
    assert config.deploy.name == "web"
    assert config.deploy.prune is True
    assert config.login.registry == "registry.example.com"
    assert config.login.username == "ci"
    assert config.login.password == "s3cret"
    assert config.login.email == "ci@example.com"
    assert config.login.enabled is True
    assert config.certs.cacert == "ca"
    assert config.certs.key == "key"
    assert config.certs.cert == "cert"
    assert config.ssh.key == "sshkey"
    assert config.docker_bin == "/usr/bin/docker"


def test_docker_aliases_fill_in_when_plugin_vars_missing() -> None:
    """Vendor DOCKER_* aliases are used when the PLUGIN_* name is unset."""
    env = {
        "DOCKER_USERNAME": "alias-user",
        "DOCKER_PASSWORD": "alias-pass",
        "PLUGIN_USERNAME": "",
        "DOCKER_CACERT": "alias-ca",
    }

    config = load_config(env=env)

    assert config.login.username == "alias-user"
    assert config.login.password == "alias-pass"
    assert config.certs.cacert == "alias-ca"


def test_plugin_var_wins_over_alias() -> None:
    """The PLUGIN_* name takes precedence over its alias."""
    config = load_config(env={"PLUGIN_PASSWORD": "plugin", "DOCKER_PASSWORD": "docker"})

    assert config.login.password == "plugin"


def test_secrets_are_not_coerced() -> None:
    """Numeric or boolean looking secrets stay strings."""
    config = load_config(env={"PLUGIN_PASSWORD": "0123", "PLUGIN_USERNAME": "yes"})

    assert config.login.password == "0123"
    assert config.login.username == "yes"


def test_invalid_boolean_raises() -> None:
    """Unrecognised boolean strings are rejected."""
    with pytest.raises(ConfigurationError, match="host.use_tls"):
        load_config(env={"PLUGIN_TLS": "maybe"})


def test_env_file_fills_missing_values(tmp_path: Path) -> None:
    """The env-file provides values without overriding the real environment."""
    env_file = tmp_path / "plugin.env"
    env_file.write_text(
        "PLUGIN_STACK_NAME=from-file\n"
        "PLUGIN_PRUNE=true\n"
        "DEPLOY_TAG=v1.2.3\n",
        encoding="utf-8",
    )
    env = {"PLUGIN_ENV_FILE": str(env_file), "PLUGIN_PRUNE": "false"}

    config = load_config(env=env)

    assert config.env_file == env_file
    assert config.deploy.name == "from-file"
    assert config.deploy.prune is False
    assert config.extra_env["DEPLOY_TAG"] == "v1.2.3"


def test_env_file_cli_override(tmp_path: Path) -> None:
    """An explicit env-file argument wins over PLUGIN_ENV_FILE."""
    preferred = tmp_path / "preferred.env"
    preferred.write_text("PLUGIN_STACK_NAME=preferred\n", encoding="utf-8")

    config = load_config(
        env={"PLUGIN_ENV_FILE": str(tmp_path / "ignored.env")},
        env_file=preferred,
    )

    assert config.deploy.name == "preferred"


def test_missing_env_file_raises(tmp_path: Path) -> None:
    """A named env-file that does not exist is a configuration error."""
    with pytest.raises(ConfigurationError, match="does not exist"):
        load_config(env={"PLUGIN_ENV_FILE": str(tmp_path / "missing.env")})


def test_yaml_config_file_is_layered_under_env(tmp_path: Path) -> None:
    """Config file values apply unless the environment overrides them."""
    cfg = tmp_path / "stack.yml"
    cfg.write_text(
        "host:\n"
        "  host: ssh://deploy@swarm.example.com:2222\n"
        "deploy:\n"
        "  name: from-yaml\n"
        "  compose:\n"
        "    - base.yml\n"
        "    - prod.yml\n"
        "  prune: true\n"
        f"log_dir: {tmp_path / 'logs'}\n",
        encoding="utf-8",
    )

    config = load_config(config_file=cfg, env={"PLUGIN_STACK_NAME": "from-env"})

    assert config.config_file == cfg
    assert config.host.host == "ssh://deploy@swarm.example.com:2222"
    assert config.deploy.name == "from-env"
    assert config.deploy.compose == ("base.yml", "prod.yml")
    assert config.deploy.prune is True
    assert config.log_dir == tmp_path / "logs"


def test_config_file_from_env_var(tmp_path: Path) -> None:
    """PLUGIN_CONFIG_FILE names the YAML file when no argument is given."""
    cfg = tmp_path / "stack.yml"
    cfg.write_text("deploy:\n  name: env-named\n", encoding="utf-8")

    config = load_config(env={"PLUGIN_CONFIG_FILE": str(cfg)})

    assert config.deploy.name == "env-named"


def test_unknown_config_keys_raise(tmp_path: Path) -> None:
    """Unknown keys in the config file are rejected."""
    cfg = tmp_path / "stack.yml"
    cfg.write_text("deploy:\n  name: web\n  replicas: 3\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="replicas"):
        load_config(config_file=cfg, env={})


def test_missing_config_file_raises(tmp_path: Path) -> None:
    """An explicitly named config file must exist."""
    with pytest.raises(ConfigurationError, match="does not exist"):
        load_config(config_file=tmp_path / "nope.yml", env={})


def test_overrides_take_precedence_and_skip_none() -> None:
    """Programmatic overrides win; ``None`` values leave lower layers intact."""
    env = {"PLUGIN_STACK_NAME": "env", "PLUGIN_HOST": "tcp://a:2375"}
    overrides = {
        "deploy": {"name": "flag", "compose": ["x.yml"], "prune": None},
        "host": {"host": None},
    }

    config = load_config(env=env, overrides=overrides)

    assert config.deploy.name == "flag"
    assert config.deploy.compose == ("x.yml",)
    assert config.host.host == "tcp://a:2375"


def test_empty_registry_falls_back_to_default() -> None:
    """A blank registry setting still logs in to Docker Hub."""
    config = load_config(env={}, overrides={"login": {"registry": "  "}})

    assert config.login.registry == DEFAULT_REGISTRY


def test_to_dict_redacts_secrets() -> None:
    """Serialised configuration never exposes secrets."""
    env = {
        "PLUGIN_PASSWORD": "hunter2",
        "PLUGIN_KEY": "private",
        "PLUGIN_CERT": "public",
        "PLUGIN_SSH_KEY": "ssh-private",
    }

    data = load_config(env=env).to_dict()

    rendered = repr(data)
    assert "hunter2" not in rendered
    assert "private" not in rendered
    assert data["login"]["password"] == REDACTED  # type: ignore[index]
    assert data["ssh"]["key"] == REDACTED  # type: ignore[index]
    assert data["certs"]["cert"] == "<set>"  # type: ignore[index]


def test_validate_config_requires_stack_name() -> None:
    """An empty or blank stack name is a configuration error."""
    config = load_config(env={"PLUGIN_STACK_NAME": "   "})

    with pytest.raises(ConfigurationError, match="stack name"):
        validate_config(config)


def test_validate_config_requires_compose_file() -> None:
    """At least one compose file must remain after parsing."""
    config = load_config(env={"PLUGIN_STACK_NAME": "web", "PLUGIN_COMPOSE": " , "})

    with pytest.raises(ConfigurationError, match="compose"):
        validate_config(config)


def test_validate_config_accepts_complete_settings() -> None:
    """A named stack with compose files passes validation."""
    validate_config(load_config(env={"PLUGIN_STACK_NAME": "web"}))
