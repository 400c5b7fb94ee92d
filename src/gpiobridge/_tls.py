"""TLS context construction for the broker connection."""

from __future__ import annotations

import logging
import ssl
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from gpiobridge.config import BridgeConfig
from gpiobridge.exceptions import ConfigFault

_logger = logging.getLogger(__name__)


def _read_pem(label: str, path: str) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as exc:
        raise ConfigFault(f"Cannot read {label} {path}: {exc.strerror or exc}") from exc


def _check_certificates(label: str, path: str, data: bytes) -> None:
    try:
        certs = x509.load_pem_x509_certificates(data)
    except ValueError as exc:
        raise ConfigFault(f"{label} {path} is not a valid PEM certificate bundle") from exc
    for cert in certs:
        _logger.debug("Loaded %s subject=%s expires=%s", label, cert.subject.rfc4514_string(), cert.not_valid_after_utc)


def _check_private_key(path: str, data: bytes) -> None:
    try:
        serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError) as exc:
        raise ConfigFault(f"Private key {path} is not an unencrypted PEM key") from exc


def build_tls_context(config: BridgeConfig) -> ssl.SSLContext | None:
    """Build the client TLS context, or ``None`` when no CA is configured.

    Raises
    ------
    ConfigFault
        When a certificate or key is missing, unreadable or malformed.
    """
    if config.ca_cert_path is None:
        return None

    _logger.debug("Loading CA bundle from %s", config.ca_cert_path)
    ca_pem = _read_pem("CA bundle", config.ca_cert_path)
    _check_certificates("CA bundle", config.ca_cert_path, ca_pem)

    try:
        context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH, cadata=ca_pem.decode("ascii"))
    except (ssl.SSLError, UnicodeDecodeError) as exc:
        raise ConfigFault(f"CA bundle {config.ca_cert_path} was rejected: {exc}") from exc

    if config.mtls_cert_path is not None and config.mtls_pkey_path is not None:
        _logger.debug("Using mutual TLS cert=%s", config.mtls_cert_path)
        cert_pem = _read_pem("client certificate", config.mtls_cert_path)
        _check_certificates("client certificate", config.mtls_cert_path, cert_pem)
        key_pem = _read_pem("client key", config.mtls_pkey_path)
        _check_private_key(config.mtls_pkey_path, key_pem)
        try:
            context.load_cert_chain(config.mtls_cert_path, config.mtls_pkey_path)
        except ssl.SSLError as exc:
            raise ConfigFault(f"Client certificate and key do not match: {exc}") from exc

    return context
