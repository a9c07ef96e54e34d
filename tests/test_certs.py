import asyncio
import ssl
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from copilotgw.certs import CertificateIssuer, build_server_ssl_context


@pytest.fixture(scope="module")
def issued():
    return CertificateIssuer().issue_self_signed()


def test_certificate_fields(issued):
    cert = issued.certificate
    common_names = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    assert [attr.value for attr in common_names] == ["localhost"]
    assert cert.issuer == cert.subject
    assert cert.serial_number == 1
    assert cert.public_key().key_size == 2048

    key_usage = cert.extensions.get_extension_for_class(x509.KeyUsage).value
    assert key_usage.key_encipherment
    assert key_usage.digital_signature
    assert key_usage.key_cert_sign
    extended = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    assert list(extended) == [ExtendedKeyUsageOID.SERVER_AUTH]


def test_certificate_valid_for_thirty_years(issued):
    lifetime = issued.not_after - issued.not_before
    assert timedelta(days=365 * 30) <= lifetime <= timedelta(days=365 * 30 + 8)
    assert issued.not_before <= datetime.now(timezone.utc)


def test_leap_day_start_is_clamped():
    issuer = CertificateIssuer()
    issued = issuer.issue_self_signed(now=datetime(2028, 2, 29, 12, 0, tzinfo=timezone.utc))
    assert issued.not_after == datetime(2058, 2, 28, 12, 0, tzinfo=timezone.utc)


def test_pem_material(issued):
    assert issued.cert_pem.startswith(b"-----BEGIN CERTIFICATE-----")
    assert b"PRIVATE KEY" in issued.key_pem
    assert x509.load_pem_x509_certificate(issued.cert_pem) == issued.certificate


@pytest.mark.asyncio
async def test_tls_handshake_with_unverifying_client(issued):
    server_context = build_server_ssl_context(certificate=issued)
    assert server_context.minimum_version == ssl.TLSVersion.TLSv1_3

    async def echo(reader, writer):
        writer.write(await reader.readline())
        await writer.drain()
        writer.close()

    server = await asyncio.start_server(echo, "127.0.0.1", 0, ssl=server_context)
    port = server.sockets[0].getsockname()[1]
    client_context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    client_context.check_hostname = False
    client_context.verify_mode = ssl.CERT_NONE
    try:
        reader, writer = await asyncio.open_connection("127.0.0.1", port, ssl=client_context)
        writer.write(b"hello\n")
        await writer.drain()
        assert await reader.readline() == b"hello\n"
        peer = writer.get_extra_info("ssl_object").getpeercert(binary_form=True)
        assert x509.load_der_x509_certificate(peer) == issued.certificate
        writer.close()
    finally:
        server.close()
        await server.wait_closed()


def test_configured_files_take_precedence(tmp_path, issued):
    cert_path = tmp_path / "server.crt"
    key_path = tmp_path / "server.key"
    cert_path.write_bytes(issued.cert_pem)
    key_path.write_bytes(issued.key_pem)
    context = build_server_ssl_context(certfile=str(cert_path), keyfile=str(key_path))
    assert isinstance(context, ssl.SSLContext)


def test_requires_some_material():
    with pytest.raises(ValueError):
        build_server_ssl_context()
