from __future__ import annotations

import datetime
import gzip
import ipaddress
import json
import ssl
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Iterator
from urllib.parse import urlsplit

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID


def _new_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


def _key_pem(key: ec.EllipticCurvePrivateKey) -> str:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")


def _cert_pem(cert: x509.Certificate) -> str:
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _issue(
    common_name: str,
    key: ec.EllipticCurvePrivateKey,
    issuer_name: str,
    issuer_key: ec.EllipticCurvePrivateKey,
    *,
    ca: bool = False,
    usage: x509.ObjectIdentifier | None = None,
) -> x509.Certificate:
    now = datetime.datetime.now(datetime.timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(common_name))
        .issuer_name(_name(issuer_name))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(
            x509.BasicConstraints(ca=ca, path_length=None), critical=True
        )
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=ca,
                crl_sign=ca,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()),
            critical=False,
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(
                issuer_key.public_key()
            ),
            critical=False,
        )
    )
    if usage is not None:
        builder = builder.add_extension(
            x509.ExtendedKeyUsage([usage]), critical=False
        )
    if usage == ExtendedKeyUsageOID.SERVER_AUTH:
        builder = builder.add_extension(
            x509.SubjectAlternativeName(
                [
                    x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
                    x509.DNSName("localhost"),
                ]
            ),
            critical=False,
        )
    return builder.sign(issuer_key, hashes.SHA256())


@dataclass(frozen=True)
class Pki:
    ca_pem: str
    other_ca_pem: str
    server_cert_pem: str
    server_key_pem: str
    client_cert_pem: str
    client_key_pem: str
    stray_key_pem: str


@pytest.fixture(scope="session")
def pki() -> Pki:
    ca_key = _new_key()
    ca_cert = _issue("httpexec test CA", ca_key, "httpexec test CA", ca_key, ca=True)
    other_key = _new_key()
    other_cert = _issue("other CA", other_key, "other CA", other_key, ca=True)
    server_key = _new_key()
    server_cert = _issue(
        "127.0.0.1",
        server_key,
        "httpexec test CA",
        ca_key,
        usage=ExtendedKeyUsageOID.SERVER_AUTH,
    )
    client_key = _new_key()
    client_cert = _issue(
        "httpexec client",
        client_key,
        "httpexec test CA",
        ca_key,
        usage=ExtendedKeyUsageOID.CLIENT_AUTH,
    )
    return Pki(
        ca_pem=_cert_pem(ca_cert),
        other_ca_pem=_cert_pem(other_cert),
        server_cert_pem=_cert_pem(server_cert),
        server_key_pem=_key_pem(server_key),
        client_cert_pem=_cert_pem(client_cert),
        client_key_pem=_key_pem(client_key),
        stray_key_pem=_key_pem(_new_key()),
    )


GZIP_PAYLOAD = b'{"ok":true}'
GZIP_BODY = gzip.compress(GZIP_PAYLOAD, mtime=0)


class _Handler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"

    def log_message(self, format, *args):  # noqa: A002
        pass

    def _reply(
        self,
        status: int,
        body: bytes = b"",
        headers: tuple[tuple[str, str], ...] = (),
    ) -> None:
        self.send_response(status)
        for name, value in headers:
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _trickle(self, data: bytes) -> None:
        for index in range(0, len(data), 2):
            self.wfile.write(data[index : index + 2])
            time.sleep(0.1)

    def _route(self) -> None:
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length else b""
        path = urlsplit(self.path).path

        if path == "/ok":
            self._reply(
                200,
                b'{"ok":true}',
                (("Content-Type", "application/json"),),
            )
        elif path.startswith("/status/"):
            self._reply(int(path.rsplit("/", 1)[1]), b"status")
        elif path.startswith("/redirect/"):
            hops = int(path.rsplit("/", 1)[1])
            if hops == 0:
                self._reply(200, b"landed")
            else:
                self._reply(302, headers=(("Location", f"/redirect/{hops - 1}"),))
        elif path == "/gzip":
            self._reply(
                200,
                GZIP_BODY,
                (("Content-Type", "application/json"), ("Content-Encoding", "gzip")),
            )
        elif path == "/trickle-headers":
            head = b"HTTP/1.1 200 OK\r\nContent-Length: 4\r\nX-Pad: " + b"x" * 40 + b"\r\n\r\n"
            self._trickle(head)
            self.wfile.write(b"late")
        elif path == "/trickle-body":
            self.send_response(200)
            self.send_header("Content-Length", "40")
            self.end_headers()
            self._trickle(b"y" * 40)
        elif path == "/slow":
            time.sleep(1.0)
            self._reply(200, b"late")
        elif path == "/echo":
            payload = {
                "method": self.command,
                "body": body.decode("utf-8"),
                "headers": dict(self.headers.items()),
            }
            self._reply(
                200,
                json.dumps(payload).encode("utf-8"),
                (("Content-Type", "application/json"),),
            )
        elif path == "/multi":
            self._reply(200, b"", (("X-Multi", "a"), ("X-Multi", "b")))
        else:
            self._reply(404, b"missing")

    do_GET = do_POST = do_PUT = do_PATCH = do_DELETE = _route


class _Server(ThreadingHTTPServer):
    daemon_threads = True

    def handle_error(self, request, client_address):
        # Clients that time out or abort the handshake close early.
        pass


@dataclass(frozen=True)
class LocalServer:
    base_url: str

    def url(self, path: str) -> str:
        return self.base_url + path


@contextmanager
def _serve(scheme: str, context: ssl.SSLContext | None = None) -> Iterator[LocalServer]:
    server = _Server(("127.0.0.1", 0), _Handler)
    if context is not None:
        server.socket = context.wrap_socket(server.socket, server_side=True)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield LocalServer(f"{scheme}://127.0.0.1:{server.server_address[1]}")
    finally:
        server.shutdown()
        server.server_close()


def _server_context(pki: Pki, tmp_path_factory, *, require_client_cert: bool) -> ssl.SSLContext:
    workdir = tmp_path_factory.mktemp("server-tls")
    cert_path = workdir / "server.crt"
    key_path = workdir / "server.key"
    cert_path.write_text(pki.server_cert_pem)
    key_path.write_text(pki.server_key_pem)
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    context.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path))
    if require_client_cert:
        context.verify_mode = ssl.CERT_REQUIRED
        context.load_verify_locations(cadata=pki.ca_pem)
    return context


@pytest.fixture
def http_server() -> Iterator[LocalServer]:
    with _serve("http") as server:
        yield server


@pytest.fixture
def https_server(pki: Pki, tmp_path_factory) -> Iterator[LocalServer]:
    context = _server_context(pki, tmp_path_factory, require_client_cert=False)
    with _serve("https", context) as server:
        yield server


@pytest.fixture
def mtls_server(pki: Pki, tmp_path_factory) -> Iterator[LocalServer]:
    context = _server_context(pki, tmp_path_factory, require_client_cert=True)
    with _serve("https", context) as server:
        yield server
