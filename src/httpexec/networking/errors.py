"""Error taxonomy for request execution.

Errors fall into two families. ``ConfigurationError`` means the request
description itself is unusable and must be fixed by the caller.
``RequestFailedError`` means the description was fine but the remote call
did not produce an acceptable response.
"""

from __future__ import annotations

from typing import Iterable


class HttpClientError(Exception):
    """Base class for every error produced by the engine."""


class ConfigurationError(HttpClientError):
    """The request configuration is invalid."""


class InvalidTLSVersionError(ConfigurationError):
    def __init__(self, value: str, valid: Iterable[str]) -> None:
        self.value = value
        self.valid = tuple(valid)
        super().__init__(
            f"invalid TLS version: {value} "
            f"(valid values: {', '.join(self.valid)})"
        )


class InvalidHTTPVersionError(ConfigurationError):
    def __init__(self, value: str, valid: Iterable[str]) -> None:
        self.value = value
        self.valid = tuple(valid)
        super().__init__(
            f"invalid HTTP version: {value} "
            f"(valid values: {', '.join(self.valid)})"
        )


class ProtocolPrerequisiteError(ConfigurationError):
    """A protocol was requested without what it needs, e.g. HTTP/3 below TLS 1.3."""


class CertificateParseError(ConfigurationError):
    """Client certificate or key could not be loaded."""


class CAParseError(ConfigurationError):
    """CA bundle could not be loaded."""


class RequestBuildError(ConfigurationError):
    """Malformed URL or method."""


class RequestFailedError(HttpClientError):
    """The call was attempted and did not succeed."""


class TransportError(RequestFailedError):
    """Connection, DNS, TLS handshake or protocol failure."""


class RequestTimeoutError(TransportError):
    """The call did not complete within its deadline."""


class TooManyRedirectsError(RequestFailedError):
    def __init__(self, max_redirects: int) -> None:
        self.max_redirects = max_redirects
        super().__init__(f"stopped after {max_redirects} redirects")


class ResponseReadError(RequestFailedError):
    """Response headers arrived but the body could not be read."""


class UnexpectedStatusCodeError(RequestFailedError):
    def __init__(self, status_code: int, expected: Iterable[int]) -> None:
        self.status_code = status_code
        self.expected = frozenset(expected)
        super().__init__(
            f"unexpected HTTP status code {status_code} "
            f"(expected one of: {', '.join(map(str, sorted(self.expected)))})"
        )
