"""Configuration and result models for one request execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_REDIRECTS = 10
DEFAULT_METHOD = "GET"
DEFAULT_TLS_MIN_VERSION = "TLS12"


def _empty_mapping() -> Mapping[str, str]:
    """Return immutable empty mapping."""

    return MappingProxyType({})


@dataclass(frozen=True)
class RequestConfig:
    """Declarative description of a single outbound HTTP call.

    Empty strings stand for "not set" on the optional string fields; the
    executor substitutes defaults for ``tls_min_version`` and
    ``http_version``.
    """

    url: str
    method: str = DEFAULT_METHOD
    headers: Mapping[str, str] = field(default_factory=_empty_mapping)
    body: bytes = b""
    username: str = ""
    password: str = ""
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    insecure_skip_verify: bool = False
    tls_min_version: str = ""
    client_cert_pem: str = ""
    client_key_pem: str = ""
    ca_cert_pem: str = ""
    http_version: str = ""
    expected_status_codes: Iterable[int] = frozenset()
    fail_on_http_error: bool = False
    follow_redirects: bool = True
    max_redirects: int = DEFAULT_MAX_REDIRECTS

    def __post_init__(self) -> None:
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.max_redirects < 0:
            raise ValueError("max_redirects must be >= 0")

        if not self.method:
            object.__setattr__(self, "method", DEFAULT_METHOD)
        if isinstance(self.body, str):
            object.__setattr__(self, "body", self.body.encode("utf-8"))
        else:
            object.__setattr__(self, "body", bytes(self.body))

        # Freeze copied inputs to avoid post-init mutation side effects.
        object.__setattr__(
            self,
            "headers",
            MappingProxyType(dict(self.headers)),
        )
        object.__setattr__(
            self,
            "expected_status_codes",
            frozenset(int(code) for code in self.expected_status_codes),
        )

    @property
    def has_client_identity(self) -> bool:
        """mTLS is configured only when both halves are present."""
        return bool(self.client_cert_pem) and bool(self.client_key_pem)


@dataclass(frozen=True)
class RequestResult:
    """Normalized outcome of a successful call."""

    response_code: int
    response_headers: Mapping[str, str] = field(default_factory=_empty_mapping)
    response_body: bytes = b""

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "response_headers",
            MappingProxyType(dict(self.response_headers)),
        )
