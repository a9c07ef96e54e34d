"""Self-signed certificate issuing and TLS context construction.

Client integrations frequently insist on talking TLS to a fixed host. When no
certificate and key are configured we manufacture an ephemeral self-signed
certificate for ``localhost`` at startup. The material only lives in process
memory and is never reissued while the process runs.
"""
from __future__ import annotations

import logging
import ssl
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from .config import ConfigError
from .errors import CertificateGenerationError
from .log import component_logger

COMMON_NAME = "localhost"
KEY_SIZE = 2048
VALIDITY_YEARS = 30


@dataclass(frozen=True, slots=True)
class IssuedCertificate:
    certificate: x509.Certificate
    cert_pem: bytes
    key_pem: bytes

    @property
    def not_before(self) -> datetime:
        return self.certificate.not_valid_before_utc

    @property
    def not_after(self) -> datetime:
        return self.certificate.not_valid_after_utc


def _add_years(moment: datetime, years: int) -> datetime:
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        # 29 February in a non-leap target year
        return moment.replace(year=moment.year + years, day=28)


class CertificateIssuer:
    """Creates a minimal self-signed server certificate."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._log = component_logger("certs", logger)

    def issue_self_signed(self, now: Optional[datetime] = None) -> IssuedCertificate:
        not_before = (now or datetime.now(timezone.utc)).replace(microsecond=0)
        not_after = _add_years(not_before, VALIDITY_YEARS)
        try:
            key = rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)
            name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, COMMON_NAME)])
            certificate = (
                x509.CertificateBuilder()
                .subject_name(name)
                .issuer_name(name)
                .public_key(key.public_key())
                .serial_number(1)
                .not_valid_before(not_before)
                .not_valid_after(not_after)
                .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
                .add_extension(
                    x509.KeyUsage(
                        digital_signature=True,
                        content_commitment=False,
                        key_encipherment=True,
                        data_encipherment=False,
                        key_agreement=False,
                        key_cert_sign=True,
                        crl_sign=False,
                        encipher_only=False,
                        decipher_only=False,
                    ),
                    critical=True,
                )
                .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
                .sign(key, hashes.SHA256())
            )
            cert_pem = certificate.public_bytes(serialization.Encoding.PEM)
            key_pem = key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.TraditionalOpenSSL,
                encryption_algorithm=serialization.NoEncryption(),
            )
        except (ValueError, TypeError) as exc:
            raise CertificateGenerationError(f"Unable to issue self-signed certificate: {exc}") from exc

        self._log.info(
            "Issued self-signed certificate for %s valid until %s",
            COMMON_NAME,
            not_after.isoformat(),
        )
        return IssuedCertificate(certificate=certificate, cert_pem=cert_pem, key_pem=key_pem)


def build_server_ssl_context(
    *,
    certificate: Optional[IssuedCertificate] = None,
    certfile: Optional[str] = None,
    keyfile: Optional[str] = None,
) -> ssl.SSLContext:
    """Build a TLS 1.3 server context.

    Configured ``certfile``/``keyfile`` take precedence. In-memory material is
    spooled through a private temporary directory because :mod:`ssl` can only
    load certificate chains from files; the directory is gone before this
    function returns.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_3

    if certfile and keyfile:
        try:
            context.load_cert_chain(certfile=certfile, keyfile=keyfile)
        except (OSError, ssl.SSLError) as exc:
            raise ConfigError(f"Unable to load TLS certificate {certfile}: {exc}") from exc
        return context

    if certificate is None:
        raise ValueError("Either certfile/keyfile or an issued certificate is required")

    with tempfile.TemporaryDirectory(prefix="copilotgw-") as tmp:
        cert_path = Path(tmp) / "cert.pem"
        key_path = Path(tmp) / "key.pem"
        cert_path.write_bytes(certificate.cert_pem)
        key_path.write_bytes(certificate.key_pem)
        key_path.chmod(0o600)
        try:
            context.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path))
        except ssl.SSLError as exc:
            raise CertificateGenerationError(f"Issued certificate is unusable: {exc}") from exc
    return context


__all__ = [
    "COMMON_NAME",
    "CertificateIssuer",
    "IssuedCertificate",
    "VALIDITY_YEARS",
    "build_server_ssl_context",
]
