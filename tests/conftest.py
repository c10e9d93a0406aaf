"""
Shared test fixtures for the sysupdate_dl test suite.

Provides generated client certificates, an in-memory CDN (FakeSession) that
stands in for requests.Session, a local mutual-TLS HTTPS server for driving the
real transport, a dictionary-backed container decoder and a builder for
plaintext .cnmt files.
"""

from __future__ import annotations

import datetime
import gzip
import io
import ssl
import struct
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Dict, Iterable, List, Optional, Tuple

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from requests.structures import CaseInsensitiveDict

from sysupdate_dl import constants
from sysupdate_dl.api import CdnClient
from sysupdate_dl.certs import PemBundle
from sysupdate_dl.errors import ContainerDecodeError
from sysupdate_dl.models import EndpointConfig

CDN = "https://atumn.hac.lp1.d4c.nintendo.net"
SUN = "https://sun.hac.lp1.d4c.nintendo.net/v1"
DEVICE_ID = "DEADCAFEBABEBEEF"
SYSTEM_UPDATE_TITLE = "0100000000000816"

# ─────────────────────── Certificates ───────────────────────


def make_key():
    return ec.generate_private_key(ec.SECP256R1())


def make_cert(key, common_name: str = "test-client", issuer_key=None,
              issuer_name: Optional[x509.Name] = None, ca: bool = False) -> x509.Certificate:
    """Create a certificate for key, self-signed unless an issuer is given."""
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_name or subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
    )
    if ca:
        builder = builder.add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
    return builder.sign(issuer_key or key, hashes.SHA256())


def key_pem(key) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def cert_pem(cert: x509.Certificate) -> str:
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


@pytest.fixture(scope="session")
def client_key():
    return make_key()


@pytest.fixture(scope="session")
def client_cert(client_key) -> x509.Certificate:
    return make_cert(client_key)


@pytest.fixture(scope="session")
def client_pem(client_key, client_cert) -> str:
    """PEM text with the PKCS#8 key followed by the certificate."""
    return key_pem(client_key) + cert_pem(client_cert)


@pytest.fixture(scope="session")
def identity(client_pem):
    return PemBundle(client_pem).assemble()


# ─────────────────────── Fake CDN ───────────────────────


class RawStream(io.BytesIO):
    """BytesIO that accepts the decode_content flag urllib3 streams have."""
    decode_content = False


_NO_JSON = object()


class FakeResponse:
    def __init__(self, url: str, status_code: int = 200, content: bytes = b"",
                 headers: Optional[Dict[str, str]] = None, json_data=_NO_JSON):
        self.url = url
        self.status_code = status_code
        self.content = content
        self.headers = CaseInsensitiveDict(headers or {})
        self.raw = RawStream(content)
        self._json = json_data
        self.closed = False

    def json(self):
        if self._json is _NO_JSON:
            raise ValueError("Response body is not JSON")
        return self._json

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """
    Minimal stand-in for requests.Session serving canned responses by URL.

    Records every requested URL and the peak number of concurrent requests.
    """

    def __init__(self, delay: float = 0.0):
        self.routes: Dict[str, object] = {}
        self.headers: Dict[str, str] = {}
        self.verify = True
        self.mounted: Dict[str, object] = {}
        self.requests: List[Tuple[str, bool]] = []
        self.verify_args: List[object] = []
        self.responses: List[FakeResponse] = []
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False
        self._lock = threading.Lock()

    def add(self, url: str, **kwargs) -> None:
        self.routes[url] = kwargs

    def fail(self, url: str, error: Exception) -> None:
        self.routes[url] = error

    def mount(self, prefix: str, adapter) -> None:
        self.mounted[prefix] = adapter

    def get(self, url: str, timeout=None, stream: bool = False, verify=None) -> FakeResponse:
        with self._lock:
            self.requests.append((url, stream))
            self.verify_args.append(verify)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            route = self.routes.get(url)
            if isinstance(route, Exception):
                raise route
            response = FakeResponse(url, **route) if route is not None else FakeResponse(url, status_code=404)
            with self._lock:
                self.responses.append(response)
            return response
        finally:
            with self._lock:
                self.in_flight -= 1

    def urls(self) -> List[str]:
        with self._lock:
            return [url for url, _ in self.requests]

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture()
def client(session, identity) -> CdnClient:
    return CdnClient(EndpointConfig(), identity, session=session)


def index_json(title_id: str = SYSTEM_UPDATE_TITLE, title_version: int = 1, timestamp: int = 1600000000) -> dict:
    return {
        "timestamp": timestamp,
        "system_update_metas": [{"title_id": title_id, "title_version": title_version}],
    }


def add_index(session: FakeSession, title_id: str = SYSTEM_UPDATE_TITLE, title_version: int = 1) -> None:
    session.add(f"{SUN}/system_update_meta?device_id={DEVICE_ID}",
                json_data=index_json(title_id, title_version))


def add_root(session: FakeSession, data: bytes, content_id: str,
             title_id: str = SYSTEM_UPDATE_TITLE, title_version: int = 1) -> None:
    """Serve the system update meta container from the /t/s/ endpoint."""
    add_index(session, title_id, title_version)
    session.add(f"{CDN}/t/s/{title_id}/{title_version}?device_id={DEVICE_ID}",
                content=data, headers={"X-Nintendo-Content-ID": content_id})


def add_title(session: FakeSession, title_id: str, version: str, content_id: str, data: bytes) -> None:
    """Serve a regular title's meta container via the two-step /t/a/ + /c/a/ lookup."""
    session.add(f"{CDN}/t/a/{title_id}/{version}?device_id={DEVICE_ID}",
                content=b"", headers={"X-Nintendo-Content-ID": content_id})
    session.add(f"{CDN}/c/a/{content_id}?device_id={DEVICE_ID}",
                content=data, headers={"X-Nintendo-Content-ID": content_id})


def add_content(session: FakeSession, content_id: str, data: bytes) -> None:
    session.add(f"{CDN}/c/c/{content_id}", content=data, headers={"Content-Length": str(len(data))})


# ─────────────────────── Fake decoder ───────────────────────


class FakeDecoder:
    """Container decoder returning canned records per blob."""

    def __init__(self, records: Optional[Dict[bytes, list]] = None):
        self.records = dict(records or {})
        self.calls: List[Tuple[bytes, object]] = []

    def decode(self, data: bytes, keyset) -> Iterable:
        self.calls.append((data, keyset))
        if data not in self.records:
            raise ContainerDecodeError(f"Unknown container {data!r}")
        return list(self.records[data])


# ─────────────────────── CNMT builder ───────────────────────


def build_cnmt(title_id: int, version: int, content_ids: Iterable[bytes] = (),
               metas: Iterable[Tuple[int, int]] = (), meta_type: int = 0x80,
               extended_header: bytes = b"") -> bytes:
    """Build a plaintext packaged content-meta file."""
    content_ids = list(content_ids)
    metas = list(metas)
    header = struct.pack("<QIBBHHH", title_id, version, meta_type, 0,
                         len(extended_header), len(content_ids), len(metas))
    data = header + bytes(0x20 - len(header)) + extended_header
    for content_id in content_ids:
        data += bytes(0x20) + content_id + (1234).to_bytes(6, "little") + bytes([1, 0])
    for meta_title, meta_version in metas:
        data += struct.pack("<QIBB2x", meta_title, meta_version, 0, 0)
    return data


# ─────────────────────── Local TLS CDN ───────────────────────


class TlsCdn:
    """
    Local HTTPS server that requires a client certificate issued by its CA.

    Bodies are served gzip-encoded. Every request records its path, user agent
    and the DER of the client certificate presented.
    """

    def __init__(self, server_pem: str, ca_pem: str):
        self.routes: Dict[str, Tuple[bytes, Dict[str, str]]] = {}
        self.requests: List[Tuple[str, Optional[str], Optional[bytes]]] = []
        self._lock = threading.Lock()

        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.load_cert_chain(server_pem)
        context.verify_mode = ssl.CERT_REQUIRED
        context.load_verify_locations(cadata=ca_pem)

        self.httpd = ThreadingHTTPServer(("127.0.0.1", 0), _tls_cdn_handler(self))
        self.httpd.socket = context.wrap_socket(self.httpd.socket, server_side=True)
        self.url = f"https://127.0.0.1:{self.httpd.server_address[1]}"
        self._thread = threading.Thread(target=self.httpd.serve_forever, daemon=True)

    def add(self, path: str, body: bytes, headers: Optional[Dict[str, str]] = None) -> None:
        self.routes[path] = (body, headers or {})

    def record(self, path: str, user_agent: Optional[str], peer: Optional[bytes]) -> None:
        with self._lock:
            self.requests.append((path, user_agent, peer))

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self.httpd.shutdown()
        self.httpd.server_close()
        self._thread.join(10)


def _tls_cdn_handler(cdn: TlsCdn):
    class Handler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:
            cdn.record(self.path, self.headers.get("User-Agent"), self.connection.getpeercert(binary_form=True))
            route = cdn.routes.get(self.path)
            if route is None:
                self.send_response(404)
                self.send_header("Content-Length", "0")
                self.end_headers()
                return

            body, headers = route
            data = gzip.compress(body)
            self.send_response(200)
            self.send_header("Content-Encoding", "gzip")
            self.send_header("Content-Length", str(len(data)))
            for name, value in headers.items():
                self.send_header(name, value)
            self.end_headers()
            self.wfile.write(data)

        def log_message(self, format, *args) -> None:
            pass

    return Handler


@pytest.fixture()
def tls_cdn(tmp_path, monkeypatch):
    """
    Running TlsCdn with the CDN host pointed at it.

    The fixture carries the matching client identity as .identity and its
    certificate DER as .client_der.
    """
    ca_key = make_key()
    ca_cert = make_cert(ca_key, "test-ca", ca=True)
    leaf_key = make_key()
    leaf_cert = make_cert(leaf_key, "test-device", issuer_key=ca_key, issuer_name=ca_cert.subject)

    server_key = make_key()
    server_pem = tmp_path / "server.pem"
    server_pem.write_text(key_pem(server_key) + cert_pem(make_cert(server_key, "test-server")))

    cdn = TlsCdn(str(server_pem), cert_pem(ca_cert))
    cdn.identity = PemBundle(key_pem(leaf_key) + cert_pem(leaf_cert)).assemble()
    cdn.client_der = leaf_cert.public_bytes(serialization.Encoding.DER)

    monkeypatch.setattr(constants, "CDN_HOST_TEMPLATE", cdn.url)
    for name in ("HTTPS_PROXY", "https_proxy", "ALL_PROXY", "all_proxy"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("NO_PROXY", "127.0.0.1,localhost")
    monkeypatch.setenv("no_proxy", "127.0.0.1,localhost")

    cdn.start()
    yield cdn
    cdn.stop()
