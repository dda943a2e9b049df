"""Outbound HTTP execution: TLS, transports and the request executor."""

from .client import RequestExecutor, execute_request
from .config import RequestConfig, RequestResult
from .errors import (
    CAParseError,
    CertificateParseError,
    ConfigurationError,
    HttpClientError,
    InvalidHTTPVersionError,
    InvalidTLSVersionError,
    ProtocolPrerequisiteError,
    RequestBuildError,
    RequestFailedError,
    RequestTimeoutError,
    ResponseReadError,
    TooManyRedirectsError,
    TransportError,
    UnexpectedStatusCodeError,
)
from .types import Err, Ok, Result

__all__ = [
    "CAParseError",
    "CertificateParseError",
    "ConfigurationError",
    "Err",
    "HttpClientError",
    "InvalidHTTPVersionError",
    "InvalidTLSVersionError",
    "Ok",
    "ProtocolPrerequisiteError",
    "RequestBuildError",
    "RequestConfig",
    "RequestExecutor",
    "RequestFailedError",
    "RequestResult",
    "RequestTimeoutError",
    "ResponseReadError",
    "Result",
    "TooManyRedirectsError",
    "TransportError",
    "UnexpectedStatusCodeError",
    "execute_request",
]
