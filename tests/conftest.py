# conftest.py
import sys
import os
import asyncio
import datetime
import ipaddress
import socket
import ssl
from typing import Dict, List, Optional, Tuple
from unittest.mock import MagicMock, AsyncMock

import pytest
import pytest_asyncio
from cryptography import x509
from cryptography.x509.oid import NameOID, ExtendedKeyUsageOID
from cryptography.hazmat.primitives import serialization, hashes
from cryptography.hazmat.primitives.asymmetric import ec

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from proxy_common import HandlerOptions


# -- Scripted Upstream --

class RecordedRequest:
    """What the upstream stub received."""
    def __init__(self, request_line: str, headers: Dict[str, str], body: bytes, raw_head: bytes):
        self.request_line = request_line
        self.headers = headers
        self.body = body
        self.raw_head = raw_head


class UpstreamStub:
    """
    A real TCP (optionally TLS) server that records each request and answers
    with a canned raw HTTP/1.1 response, then closes the connection.
    """
    def __init__(
        self,
        status: int = 200,
        body: bytes = b"",
        headers: Optional[List[Tuple[str, str]]] = None,
        raw: Optional[bytes] = None,
        ssl_context: Optional[ssl.SSLContext] = None
    ):
        if raw is None:
            lines = [f"HTTP/1.1 {status} Stub\r\n"]
            for k, v in (headers if headers is not None else [("Content-Length", str(len(body)))]):
                lines.append(f"{k}: {v}\r\n")
            raw = "".join(lines).encode('latin-1') + b"\r\n" + body
        self.raw = raw
        self.ssl_context = ssl_context
        self.requests: List[RecordedRequest] = []
        self.server: Optional[asyncio.AbstractServer] = None

    @property
    def port(self) -> int:
        return self.server.sockets[0].getsockname()[1]

    @property
    def url(self) -> str:
        scheme = "https" if self.ssl_context else "http"
        return f"{scheme}://127.0.0.1:{self.port}"

    async def start(self) -> None:
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0, ssl=self.ssl_context)

    async def stop(self) -> None:
        self.server.close()
        await self.server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            self.requests.append(await self._read_request(reader))
            writer.write(self.raw)
            await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()

    async def _read_request(self, reader: asyncio.StreamReader) -> RecordedRequest:
        head = await reader.readuntil(b"\r\n\r\n")
        lines = head[:-4].decode('latin-1').split("\r\n")
        headers = {}
        for line in lines[1:]:
            k, v = line.split(':', 1)
            headers[k.strip().lower()] = v.strip()

        if 'content-length' in headers:
            body = await reader.readexactly(int(headers['content-length']))
        elif headers.get('transfer-encoding', '').lower() == 'chunked':
            parts = []
            while True:
                size = int((await reader.readline()).strip(), 16)
                if size == 0:
                    await reader.readline()
                    break
                parts.append(await reader.readexactly(size))
                await reader.readline()
            body = b"".join(parts)
        else:
            body = b""
        return RecordedRequest(lines[0], headers, body, head)


@pytest_asyncio.fixture
async def upstream():
    """Factory fixture: `stub = await upstream(status=..., body=...)`."""
    stubs = []

    async def _start(**kwargs) -> UpstreamStub:
        stub = UpstreamStub(**kwargs)
        await stub.start()
        stubs.append(stub)
        return stub

    yield _start
    for stub in stubs:
        await stub.stop()


@pytest.fixture
def unused_tcp_port():
    """A local port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


# -- TLS --

@pytest.fixture(scope="session")
def tls_files(tmp_path_factory):
    """
    Throwaway CA plus a leaf certificate for 127.0.0.1/localhost.
    Returns (ca_cert_path, leaf_cert_path, leaf_key_path).
    """
    out = tmp_path_factory.mktemp("tls")
    now = datetime.datetime.now(datetime.timezone.utc)

    ca_key = ec.generate_private_key(ec.SECP256R1())
    ca_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "mockwire test CA")])
    ca_cert = x509.CertificateBuilder().subject_name(
        ca_name
    ).issuer_name(
        ca_name
    ).public_key(
        ca_key.public_key()
    ).serial_number(
        x509.random_serial_number()
    ).not_valid_before(
        now - datetime.timedelta(days=1)
    ).not_valid_after(
        now + datetime.timedelta(days=1)
    ).add_extension(
        x509.BasicConstraints(ca=True, path_length=None), critical=True,
    ).add_extension(
        x509.KeyUsage(
            digital_signature=False, content_commitment=False, key_encipherment=False,
            data_encipherment=False, key_agreement=False, key_cert_sign=True,
            crl_sign=True, encipher_only=False, decipher_only=False
        ), critical=True,
    ).add_extension(
        x509.SubjectKeyIdentifier.from_public_key(ca_key.public_key()), critical=False,
    ).sign(ca_key, hashes.SHA256())

    leaf_key = ec.generate_private_key(ec.SECP256R1())
    leaf_cert = x509.CertificateBuilder().subject_name(
        x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "localhost")])
    ).issuer_name(
        ca_name
    ).public_key(
        leaf_key.public_key()
    ).serial_number(
        x509.random_serial_number()
    ).not_valid_before(
        now - datetime.timedelta(days=1)
    ).not_valid_after(
        now + datetime.timedelta(days=1)
    ).add_extension(
        x509.BasicConstraints(ca=False, path_length=None), critical=True,
    ).add_extension(
        x509.KeyUsage(
            digital_signature=True, content_commitment=False, key_encipherment=False,
            data_encipherment=False, key_agreement=False, key_cert_sign=False,
            crl_sign=False, encipher_only=False, decipher_only=False
        ), critical=True,
    ).add_extension(
        x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False,
    ).add_extension(
        x509.SubjectAlternativeName([
            x509.DNSName("localhost"),
            x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
        ]), critical=False,
    ).add_extension(
        x509.SubjectKeyIdentifier.from_public_key(leaf_key.public_key()), critical=False,
    ).add_extension(
        x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()), critical=False,
    ).sign(ca_key, hashes.SHA256())

    ca_path = out / "ca.pem"
    cert_path = out / "leaf.pem"
    key_path = out / "leaf.key"
    ca_path.write_bytes(ca_cert.public_bytes(serialization.Encoding.PEM))
    cert_path.write_bytes(leaf_cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(leaf_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ))
    return str(ca_path), str(cert_path), str(key_path)


@pytest.fixture
def server_ssl_context(tls_files):
    _, cert_path, key_path = tls_files
    ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    ctx.load_cert_chain(cert_path, key_path)
    return ctx


# -- Handler Plumbing --

@pytest.fixture
def log_records():
    return []


@pytest.fixture
def options(log_records):
    """HandlerOptions whose diagnostics land in `log_records` as (level, msg)."""
    return HandlerOptions(log_callback=lambda level, msg: log_records.append((level, str(msg))))


@pytest.fixture
def capture_writer():
    """A StreamWriter stand-in that accumulates everything written in `.sent`."""
    writer = MagicMock()
    writer.sent = bytearray()
    writer.write.side_effect = writer.sent.extend
    writer.drain = AsyncMock()
    writer.wait_closed = AsyncMock()
    writer.is_closing.return_value = False
    return writer


def _dechunk(data: bytes) -> bytes:
    out = bytearray()
    while True:
        line, _, data = data.partition(b"\r\n")
        size = int(line.split(b";")[0], 16)
        if size == 0:
            return bytes(out)
        out.extend(data[:size])
        data = data[size + 2:]


@pytest.fixture
def parse_response():
    """
    Parses raw HTTP/1.1 response bytes into (status, reason, headers, body).
    Chunked bodies are decoded; header names are lower-cased.
    """
    def _parse(raw: bytes):
        head, _, body = bytes(raw).partition(b"\r\n\r\n")
        lines = head.decode('latin-1').split("\r\n")
        _, status, reason = lines[0].split(" ", 2)
        headers = []
        for line in lines[1:]:
            k, v = line.split(":", 1)
            headers.append((k.lower(), v.strip()))
        te = dict(headers).get("transfer-encoding", "")
        if te.split(",")[-1].strip().lower() == "chunked":
            body = _dechunk(body)
        return int(status), reason, headers, body
    return _parse
