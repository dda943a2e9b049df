"""Protocol-specific transports.

Each transport wraps one HTTP library: requests for HTTP/1.1, httpx for
HTTP/2 and niquests for HTTP/3 over QUIC. A transport is built once per call
by :func:`build_transport`, opens its own client for :meth:`Transport.send`
and maps the library's exceptions onto :mod:`.errors`.

Bodies are read as sent on the wire: ``Content-Encoding`` is not undone, so
the returned body always matches the returned headers.
"""

from __future__ import annotations

import enum
import logging
import ssl
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from time import monotonic
from typing import TYPE_CHECKING, Any, Iterable, Iterator, Mapping

import httpx
import niquests
import requests
import urllib3
from requests.adapters import HTTPAdapter

from .errors import (
    InvalidHTTPVersionError,
    ProtocolPrerequisiteError,
    RequestTimeoutError,
    ResponseReadError,
    TooManyRedirectsError,
    TransportError,
)
from .tls import TLSSettings, build_ssl_context

if TYPE_CHECKING:
    from urllib3.connectionpool import HTTPConnectionPool

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class HttpVersion(str, enum.Enum):
    HTTP1_1 = "HTTP/1.1"
    HTTP2 = "HTTP/2"
    HTTP3 = "HTTP/3"


HTTP_VERSION_NAMES: dict[str, HttpVersion] = {
    "": HttpVersion.HTTP1_1,
    "HTTP1.1": HttpVersion.HTTP1_1,
    "HTTP/1.1": HttpVersion.HTTP1_1,
    "HTTP2": HttpVersion.HTTP2,
    "HTTP/2": HttpVersion.HTTP2,
    "HTTP3": HttpVersion.HTTP3,
    "HTTP/3": HttpVersion.HTTP3,
}


def parse_http_version(name: str) -> HttpVersion:
    """Resolve a protocol name; empty means HTTP/1.1."""
    try:
        return HTTP_VERSION_NAMES[name.strip().upper()]
    except KeyError:
        valid = [key for key in HTTP_VERSION_NAMES if key]
        raise InvalidHTTPVersionError(name, valid) from None


@dataclass(frozen=True)
class OutgoingRequest:
    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""


@dataclass(frozen=True)
class RedirectPolicy:
    follow: bool = True
    max_hops: int = 10


@dataclass(frozen=True)
class TransportResponse:
    status_code: int
    headers: Mapping[str, str]
    body: bytes
    url: str
    reason: str
    http_version: str


def join_header_values(items: Iterable[tuple[str, str]]) -> dict[str, str]:
    """Collapse repeated header fields into one ``", "``-joined value.

    Names are grouped case-insensitively under the first spelling seen.
    """
    names: dict[str, str] = {}
    values: dict[str, list[str]] = {}
    for name, value in items:
        key = names.setdefault(name.lower(), name)
        values.setdefault(key, []).append(value)
    return {name: ", ".join(parts) for name, parts in values.items()}


def _remaining(deadline: float) -> float:
    remaining = deadline - monotonic()
    if remaining <= 0:
        raise RequestTimeoutError("deadline exceeded before the request was sent")
    return remaining


def _read_body(
    chunks: Iterator[bytes],
    deadline: float,
    *,
    timeout_errors: tuple[type[BaseException], ...],
    read_errors: tuple[type[BaseException], ...],
) -> bytes:
    """Drain a streamed body, enforcing the overall deadline between chunks."""
    buffer = bytearray()
    while True:
        try:
            chunk = next(chunks, None)
        except timeout_errors as exc:
            raise RequestTimeoutError(
                f"timed out reading response body: {exc}"
            ) from exc
        except read_errors as exc:
            raise ResponseReadError(
                f"failed to read response body: {exc}"
            ) from exc
        if chunk is None:
            return bytes(buffer)
        buffer.extend(chunk)
        if monotonic() > deadline:
            raise RequestTimeoutError("deadline exceeded while reading response body")


class Transport(ABC):
    """One-shot transport bound to a TLS configuration and a timeout."""

    http_version: HttpVersion

    def __init__(self, tls: TLSSettings, timeout_seconds: float) -> None:
        self._tls = tls
        self._timeout_seconds = timeout_seconds

    @property
    def tls(self) -> TLSSettings:
        return self._tls

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    def send(
        self,
        request: OutgoingRequest,
        *,
        redirects: RedirectPolicy,
        deadline: float,
    ) -> TransportResponse:
        """Perform the call and return the fully read response.

        The exchange runs on a worker thread and the caller waits at most
        until ``deadline``. On expiry the transport is aborted and the
        worker is left to unwind on its own.

        Raises:
            RequestTimeoutError: The deadline or a socket timeout expired.
            TooManyRedirectsError: More than ``redirects.max_hops`` hops.
            TransportError: Any other network level failure.
            ResponseReadError: The body could not be read.
        """
        remaining = _remaining(deadline)
        future: Future[TransportResponse] = Future()
        worker = threading.Thread(
            target=self._run,
            args=(future, request, redirects, deadline),
            name=f"httpexec-{self.http_version.name.lower()}",
            daemon=True,
        )
        worker.start()
        try:
            return future.result(timeout=remaining)
        except FutureTimeoutError:
            logger.debug(
                "Aborting %s %s after %.3fs deadline",
                request.method,
                request.url,
                self._timeout_seconds,
            )
            self.abort()
            raise RequestTimeoutError(
                f"request did not complete within {self._timeout_seconds:g}s"
            ) from None

    def _run(
        self,
        future: Future[TransportResponse],
        request: OutgoingRequest,
        redirects: RedirectPolicy,
        deadline: float,
    ) -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(self._exchange(request, redirects, deadline))
        except Exception as exc:
            future.set_exception(exc)

    @abstractmethod
    def _exchange(
        self,
        request: OutgoingRequest,
        redirects: RedirectPolicy,
        deadline: float,
    ) -> TransportResponse:
        """Blocking request/response exchange with the library."""

    def abort(self) -> None:
        """Tear down in-flight I/O; called from the waiting thread."""
        self.close()

    def close(self) -> None:
        """Release library resources."""

    def __enter__(self) -> Transport:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class _SSLContextAdapter(HTTPAdapter):
    """requests adapter whose pools use a prepared ``SSLContext``.

    Trust and client identity come from the context alone; requests' own
    CA bundle and certificate files are never loaded into it.
    """

    def __init__(self, ssl_context: ssl.SSLContext, **kwargs: Any) -> None:
        self._ssl_context = ssl_context
        super().__init__(**kwargs)

    @property
    def ssl_context(self) -> ssl.SSLContext:
        return self._ssl_context

    def init_poolmanager(
        self,
        connections: int,
        maxsize: int,
        block: bool = False,
        **pool_kwargs: Any,
    ) -> None:
        pool_kwargs["ssl_context"] = self._ssl_context
        super().init_poolmanager(connections, maxsize, block=block, **pool_kwargs)

    def cert_verify(
        self,
        conn: HTTPConnectionPool,
        url: str,
        verify: bool | str,
        cert: Any,
    ) -> None:
        if not url.lower().startswith("https"):
            return
        conn.cert_reqs = "CERT_REQUIRED" if verify else "CERT_NONE"
        conn.ca_certs = None
        conn.ca_cert_dir = None
        conn.cert_file = None
        conn.key_file = None


class Http11Transport(Transport):
    """HTTP/1.1 only, backed by a requests adapter."""

    http_version = HttpVersion.HTTP1_1

    def __init__(self, tls: TLSSettings, timeout_seconds: float) -> None:
        super().__init__(tls, timeout_seconds)
        self._adapter = _SSLContextAdapter(build_ssl_context(tls))
        self._response: requests.Response | None = None

    @property
    def ssl_context(self) -> ssl.SSLContext:
        return self._adapter.ssl_context

    def _exchange(
        self,
        request: OutgoingRequest,
        redirects: RedirectPolicy,
        deadline: float,
    ) -> TransportResponse:
        with requests.Session() as session:
            session.trust_env = False
            session.max_redirects = redirects.max_hops
            session.mount("https://", self._adapter)
            session.mount("http://", self._adapter)
            timeout = min(self._timeout_seconds, _remaining(deadline))
            try:
                response = session.request(
                    request.method,
                    request.url,
                    headers=dict(request.headers),
                    data=request.body,
                    timeout=(timeout, timeout),
                    allow_redirects=redirects.follow,
                    verify=self._tls.verify,
                    stream=True,
                )
            except requests.exceptions.TooManyRedirects as exc:
                raise TooManyRedirectsError(redirects.max_hops) from exc
            except requests.exceptions.Timeout as exc:
                raise RequestTimeoutError(str(exc)) from exc
            except requests.exceptions.RequestException as exc:
                raise TransportError(str(exc)) from exc

            self._response = response
            with response:
                body = _read_body(
                    response.raw.stream(CHUNK_SIZE, decode_content=False),
                    deadline,
                    timeout_errors=(
                        requests.exceptions.Timeout,
                        urllib3.exceptions.TimeoutError,
                    ),
                    read_errors=(
                        requests.exceptions.RequestException,
                        urllib3.exceptions.HTTPError,
                        OSError,
                    ),
                )
            return TransportResponse(
                status_code=response.status_code,
                headers=join_header_values(response.headers.items()),
                body=body,
                url=response.url,
                reason=response.reason or "",
                http_version=self.http_version.value,
            )

    def abort(self) -> None:
        if self._response is not None:
            self._response.close()
        self.close()

    def close(self) -> None:
        self._adapter.close()


class Http2Transport(Transport):
    """HTTP/2 via ALPN with HTTP/1.1 fallback, backed by httpx."""

    http_version = HttpVersion.HTTP2

    def __init__(self, tls: TLSSettings, timeout_seconds: float) -> None:
        super().__init__(tls, timeout_seconds)
        context = build_ssl_context(tls)
        context.set_alpn_protocols(["h2", "http/1.1"])
        self._transport: httpx.BaseTransport = httpx.HTTPTransport(
            verify=context, http2=True, trust_env=False
        )

    def _exchange(
        self,
        request: OutgoingRequest,
        redirects: RedirectPolicy,
        deadline: float,
    ) -> TransportResponse:
        timeout = min(self._timeout_seconds, _remaining(deadline))
        with httpx.Client(
            transport=self._transport,
            timeout=httpx.Timeout(timeout),
            follow_redirects=redirects.follow,
            max_redirects=redirects.max_hops,
            trust_env=False,
        ) as client:
            try:
                outgoing = client.build_request(
                    request.method,
                    request.url,
                    headers=dict(request.headers),
                    content=request.body,
                )
                response = client.send(outgoing, stream=True)
            except httpx.TooManyRedirects as exc:
                raise TooManyRedirectsError(redirects.max_hops) from exc
            except httpx.TimeoutException as exc:
                raise RequestTimeoutError(str(exc) or type(exc).__name__) from exc
            except httpx.HTTPError as exc:
                raise TransportError(str(exc) or type(exc).__name__) from exc

            try:
                body = _read_body(
                    response.iter_raw(CHUNK_SIZE),
                    deadline,
                    timeout_errors=(httpx.TimeoutException,),
                    read_errors=(httpx.HTTPError, httpx.StreamError),
                )
            finally:
                response.close()
        return TransportResponse(
            status_code=response.status_code,
            headers=join_header_values(
                (name.decode("latin-1"), value.decode("latin-1"))
                for name, value in response.headers.raw
            ),
            body=body,
            url=str(response.url),
            reason=response.reason_phrase,
            http_version=response.http_version,
        )

    def close(self) -> None:
        # Closes every pooled connection, including one mid-exchange.
        self._transport.close()


class Http3Transport(Transport):
    """HTTP/3 over QUIC, backed by niquests with HTTP/1.1 and HTTP/2 disabled.

    QUIC mandates TLS 1.3, so only verification, the CA pool and the client
    identity are forwarded; niquests takes the PEM material in memory.
    """

    http_version = HttpVersion.HTTP3

    def __init__(self, tls: TLSSettings, timeout_seconds: float) -> None:
        super().__init__(tls, timeout_seconds)
        if not tls.verify:
            self._verify: bool | str = False
        elif tls.trusted_cas is not None:
            self._verify = tls.trusted_cas.to_pem()
        else:
            self._verify = True
        identity = tls.client_identity
        self._cert = (identity.cert_pem, identity.key_pem) if identity else None
        self._session: niquests.Session | None = None
        self._response: niquests.Response | None = None

    def _exchange(
        self,
        request: OutgoingRequest,
        redirects: RedirectPolicy,
        deadline: float,
    ) -> TransportResponse:
        with niquests.Session(disable_http1=True, disable_http2=True) as session:
            self._session = session
            session.trust_env = False
            session.max_redirects = redirects.max_hops
            timeout = min(self._timeout_seconds, _remaining(deadline))
            try:
                response = session.request(
                    request.method,
                    request.url,
                    headers=dict(request.headers),
                    data=request.body,
                    timeout=timeout,
                    allow_redirects=redirects.follow,
                    verify=self._verify,
                    cert=self._cert,
                    stream=True,
                )
            except niquests.exceptions.TooManyRedirects as exc:
                raise TooManyRedirectsError(redirects.max_hops) from exc
            except niquests.exceptions.Timeout as exc:
                raise RequestTimeoutError(str(exc)) from exc
            except niquests.exceptions.RequestException as exc:
                raise TransportError(str(exc)) from exc

            self._response = response
            try:
                # urllib3-future raises its own exception tree from the raw
                # stream; anything escaping it is a failed body read.
                body = _read_body(
                    response.raw.stream(CHUNK_SIZE, decode_content=False),
                    deadline,
                    timeout_errors=(niquests.exceptions.Timeout,),
                    read_errors=(Exception,),
                )
            finally:
                response.close()
            return TransportResponse(
                status_code=response.status_code,
                headers=join_header_values(response.headers.items()),
                body=body,
                url=response.url or request.url,
                reason=response.reason or "",
                http_version=self.http_version.value,
            )

    def abort(self) -> None:
        if self._response is not None:
            self._response.close()
        if self._session is not None:
            self._session.close()


_TRANSPORTS: dict[HttpVersion, type[Transport]] = {
    HttpVersion.HTTP1_1: Http11Transport,
    HttpVersion.HTTP2: Http2Transport,
    HttpVersion.HTTP3: Http3Transport,
}


def build_transport(
    http_version: str, tls: TLSSettings, timeout_seconds: float
) -> Transport:
    """Build a fresh transport for the requested protocol.

    Raises:
        InvalidHTTPVersionError: Unknown protocol name.
        ProtocolPrerequisiteError: HTTP/3 with a TLS floor below 1.3.
    """
    version = parse_http_version(http_version)
    if version is HttpVersion.HTTP3 and tls.min_version < ssl.TLSVersion.TLSv1_3:
        raise ProtocolPrerequisiteError(
            f"HTTP/3 requires TLS 1.3 (configured minimum: {tls.min_version.name})"
        )
    logger.debug("Selected %s transport", version.value)
    return _TRANSPORTS[version](tls, timeout_seconds)
