"""Credential staging for the docker client.

TLS material is written to ``key.pem``/``cert.pem``/``ca.pem`` under the
docker cert directory, SSH material to a private key plus a generated
``~/.ssh/config`` host alias. All preconditions are checked before anything
is written so a rejected bundle leaves the filesystem untouched.
"""
from __future__ import annotations

import base64
import binascii
import logging
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Protocol, cast

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

from .config import CertsConfig, HostConfig, SSHConfig
from .connection import SSH_HOST_ALIAS, ConnectionTarget

LOGGER = logging.getLogger(__name__)

DIR_MODE = 0o755
SECRET_MODE = 0o600
PUBLIC_MODE = 0o644
KEY_FILE = "key.pem"
CERT_FILE = "cert.pem"
CA_FILE = "ca.pem"
SSH_KEY_FILE = "key.pem"
SSH_CONFIG_FILE = "config"
WARN_EXPIRY_DAYS = 30


class ValidationError(RuntimeError):
    """Raised when credential material fails its presence or pairing rules."""


@dataclass(frozen=True)
class StagedTLS:
    """Files written for a TLS connection."""

    directory: Path
    key: Path | None = None
    cert: Path | None = None
    ca: Path | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "directory": str(self.directory),
            "key": str(self.key) if self.key is not None else None,
            "cert": str(self.cert) if self.cert is not None else None,
            "ca": str(self.ca) if self.ca is not None else None,
        }


@dataclass(frozen=True)
class StagedSSH:
    """Files written for an SSH connection."""

    config_path: Path
    content: str
    key_path: Path | None = None
    alias: str = SSH_HOST_ALIAS

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "config": str(self.config_path),
            "key": str(self.key_path) if self.key_path is not None else None,
            "alias": self.alias,
        }


class FindingSeverity(Enum):
    """Severities reported by :func:`inspect_tls_material`."""

    OK = "ok"
    WARNING = "warning"


@dataclass(frozen=True)
class MaterialFinding:
    """Individual inspection outcome for staged TLS material."""

    scope: str
    check: str
    severity: FindingSeverity
    message: str
    path: Path | None = None

    def describe(self) -> str:
        """Return a single line summary."""
        return f"{self.scope}:{self.check} {self.message}"


class PublicKeyProtocol(Protocol):
    """Protocol covering public keys exposing ``public_bytes``."""

    def public_bytes(
        self,
        *,
        encoding: serialization.Encoding,
        format: serialization.PublicFormat,
    ) -> bytes:
        """Return the public key bytes in the requested encoding/format."""


class PrivateKeyProtocol(Protocol):
    """Protocol for private keys that can provide a matching public key."""

    def public_key(self) -> PublicKeyProtocol:
        """Return the associated public key object."""


def decode_material(value: str) -> bytes:
    """Return base64-decoded *value*, or the raw text when it is not base64."""
    try:
        return base64.b64decode(value.replace("\r", "").replace("\n", ""), validate=True)
    except (binascii.Error, ValueError):
        return value.encode("utf-8")


def stage_tls(certs: CertsConfig, host: HostConfig, cert_dir: Path) -> StagedTLS | None:
    """Write the TLS bundle into *cert_dir*.

    Returns ``None`` when neither TLS nor verification was requested.
    """
    if not (host.use_tls or host.tls_verify):
        return None

    has_key = bool(certs.key)
    has_cert = bool(certs.cert)
    if has_key and not has_cert:
        raise ValidationError("The client certificate must be present when a client key is given.")
    if has_cert and not has_key:
        raise ValidationError("The client key must be present when a client certificate is given.")
    if host.tls_verify and not certs.cacert:
        raise ValidationError("Cannot use tlsverify without a given CA.")

    key_path: Path | None = None
    cert_path: Path | None = None
    ca_path: Path | None = None
    try:
        _ensure_directory(cert_dir)
        if has_key and has_cert:
            key_path = _write_file(cert_dir / KEY_FILE, decode_material(certs.key), SECRET_MODE)
            cert_path = _write_file(cert_dir / CERT_FILE, decode_material(certs.cert), SECRET_MODE)
        if host.tls_verify:
            ca_path = _write_file(cert_dir / CA_FILE, decode_material(certs.cacert), PUBLIC_MODE)
    except OSError as exc:
        raise ValidationError(f"Cannot set up certificates in {cert_dir}: {exc}") from exc

    LOGGER.debug("Staged TLS material in %s", cert_dir)
    return StagedTLS(directory=cert_dir, key=key_path, cert=cert_path, ca=ca_path)


def render_ssh_config(target: ConnectionTarget, key_path: Path | None) -> str:
    """Render the ``Host remote`` block for *target*."""
    lines = [f"Host {SSH_HOST_ALIAS}", f"  HostName {target.hostname}"]
    if target.user:
        lines.append(f"  User {target.user}")
    if target.port is not None:
        lines.append(f"  Port {target.port}")
    if key_path is not None:
        lines.append(f"  IdentityFile {key_path}")
    lines.append("  StrictHostKeyChecking no")
    return "\n".join(lines) + "\n"


def stage_ssh(ssh: SSHConfig, target: ConnectionTarget, ssh_dir: Path) -> StagedSSH:
    """Write the SSH key and client config for *target* into *ssh_dir*."""
    config_path = ssh_dir / SSH_CONFIG_FILE
    try:
        exists = config_path.exists() or config_path.is_symlink()
    except OSError as exc:
        raise ValidationError(f"SSH config file {config_path} cannot be checked: {exc}") from exc
    if exists:
        raise ValidationError(
            f"SSH config file {config_path} already exists; refusing to overwrite it."
        )

    key_path: Path | None = None
    try:
        _ensure_directory(ssh_dir)
        if ssh.key:
            key_path = _write_file(ssh_dir / SSH_KEY_FILE, decode_material(ssh.key), SECRET_MODE)
        content = render_ssh_config(target, key_path)
        _write_file(config_path, content.encode("utf-8"), SECRET_MODE)
    except OSError as exc:
        raise ValidationError(f"Cannot set up SSH config in {ssh_dir}: {exc}") from exc
    LOGGER.debug("Wrote SSH config %s", config_path)
    return StagedSSH(config_path=config_path, content=content, key_path=key_path)


def inspect_tls_material(
    staged: StagedTLS,
    *,
    now: datetime | None = None,
    warn_expiry_days: int = WARN_EXPIRY_DAYS,
) -> tuple[MaterialFinding, ...]:
    """Parse staged material and report problems the docker client will hit."""
    now = now or datetime.now(UTC)
    findings: list[MaterialFinding] = []

    cert_obj: x509.Certificate | None = None
    key_obj: PrivateKeyProtocol | None = None
    if staged.cert is not None:
        try:
            cert_obj = _load_certificate(staged.cert)
        except ValueError as exc:
            findings.append(
                MaterialFinding(
                    scope="cert",
                    check="parse",
                    severity=FindingSeverity.WARNING,
                    message=f"Failed to parse client certificate: {exc}",
                    path=staged.cert,
                )
            )
    if staged.key is not None:
        try:
            key_obj = _load_private_key(staged.key)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            findings.append(
                MaterialFinding(
                    scope="key",
                    check="parse",
                    severity=FindingSeverity.WARNING,
                    message=f"Failed to parse client key: {exc}",
                    path=staged.key,
                )
            )

    if cert_obj is not None and key_obj is not None:
        matched = _public_keys_match(cert_obj, key_obj)
        findings.append(
            MaterialFinding(
                scope="cert",
                check="match",
                severity=FindingSeverity.OK if matched else FindingSeverity.WARNING,
                message=(
                    "Client certificate and key match."
                    if matched
                    else "Client certificate does not match the provided key."
                ),
                path=staged.cert,
            )
        )

    if cert_obj is not None:
        findings.append(_expiry_finding(cert_obj, "cert", staged.cert, now, warn_expiry_days))

    if staged.ca is not None:
        try:
            ca_obj = _load_certificate(staged.ca)
        except ValueError as exc:
            findings.append(
                MaterialFinding(
                    scope="ca",
                    check="parse",
                    severity=FindingSeverity.WARNING,
                    message=f"Failed to parse CA certificate: {exc}",
                    path=staged.ca,
                )
            )
        else:
            findings.append(_expiry_finding(ca_obj, "ca", staged.ca, now, warn_expiry_days))

    return tuple(findings)


def _expiry_finding(
    cert: x509.Certificate,
    scope: str,
    path: Path | None,
    now: datetime,
    warn_expiry_days: int,
) -> MaterialFinding:
    not_after = _as_utc(cert.not_valid_after_utc)
    if not_after <= now:
        return MaterialFinding(
            scope=scope,
            check="expiry",
            severity=FindingSeverity.WARNING,
            message=f"Certificate expired on {not_after.isoformat()}",
            path=path,
        )
    days_remaining = (not_after - now).days
    if days_remaining <= warn_expiry_days:
        return MaterialFinding(
            scope=scope,
            check="expiry",
            severity=FindingSeverity.WARNING,
            message=(
                "Certificate expires soon "
                f"({not_after.isoformat()}, {days_remaining} day(s) remaining)"
            ),
            path=path,
        )
    return MaterialFinding(
        scope=scope,
        check="expiry",
        severity=FindingSeverity.OK,
        message=f"Certificate valid until {not_after.isoformat()}",
        path=path,
    )


def _ensure_directory(path: Path) -> None:
    if path.is_dir():
        return
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, DIR_MODE)


def _write_file(path: Path, data: bytes, mode: int) -> Path:
    # Created with the final mode; chmod covers files that already existed.
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)
    os.chmod(path, mode)
    return path


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _load_private_key(path: Path) -> PrivateKeyProtocol:
    data = path.read_bytes()
    private_key = serialization.load_pem_private_key(data, password=None)
    return cast(PrivateKeyProtocol, private_key)


def _public_keys_match(cert: x509.Certificate, private_key: PrivateKeyProtocol) -> bool:
    cert_key = cert.public_key()
    try:
        key_public = private_key.public_key()
    except AttributeError:  # pragma: no cover - defensive
        return False
    cert_bytes = cert_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    key_bytes = key_public.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return cert_bytes == key_bytes


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


__all__ = [
    "FindingSeverity",
    "MaterialFinding",
    "StagedSSH",
    "StagedTLS",
    "ValidationError",
    "decode_material",
    "inspect_tls_material",
    "render_ssh_config",
    "stage_ssh",
    "stage_tls",
]
