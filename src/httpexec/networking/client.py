"""Request executor for the httpexec networking layer.

This module turns a :class:`RequestConfig` into exactly one outbound call
and returns a Result holding either a normalized :class:`RequestResult` or a
classified error. Nothing is shared between calls: every execution builds
its own TLS context, transport and client.
"""

from __future__ import annotations

import base64
import logging
import re
from time import monotonic
from typing import Any
from urllib.parse import urlsplit

from .certs import load_client_identity, load_trusted_cas
from .config import DEFAULT_TLS_MIN_VERSION, RequestConfig, RequestResult
from .errors import HttpClientError, RequestBuildError, UnexpectedStatusCodeError
from .tls import TLSSettings, resolve_tls_version
from .transport import (
    OutgoingRequest,
    RedirectPolicy,
    TransportResponse,
    build_transport,
)
from .types import Err, Ok, Result

logger = logging.getLogger(__name__)

_METHOD_TOKEN = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")


def basic_auth_header(username: str, password: str) -> str:
    credentials = f"{username}:{password}".encode("utf-8")
    return "Basic " + base64.b64encode(credentials).decode("ascii")


class RequestExecutor:
    """Stateless executor; one instance may serve concurrent callers."""

    def _tls_settings(self, config: RequestConfig) -> TLSSettings:
        """Resolve the TLS floor and load certificate material."""
        min_version = resolve_tls_version(
            config.tls_min_version or DEFAULT_TLS_MIN_VERSION
        )
        identity = None
        if config.has_client_identity:
            identity = load_client_identity(
                config.client_cert_pem, config.client_key_pem
            )
        trusted_cas = None
        if config.ca_cert_pem:
            trusted_cas = load_trusted_cas(config.ca_cert_pem)
        return TLSSettings(
            min_version=min_version,
            verify=not config.insecure_skip_verify,
            client_identity=identity,
            trusted_cas=trusted_cas,
        )

    def _build_request(self, config: RequestConfig) -> OutgoingRequest:
        """Validate URL and method and assemble headers."""
        if not config.url:
            raise RequestBuildError("url must not be empty")
        try:
            parts = urlsplit(config.url)
            has_host = bool(parts.hostname)
        except ValueError as exc:
            raise RequestBuildError(f"invalid url {config.url!r}: {exc}") from exc
        if parts.scheme.lower() not in {"http", "https"} or not has_host:
            raise RequestBuildError(
                f"invalid url {config.url!r}: expected an absolute http(s) URL"
            )
        if not _METHOD_TOKEN.match(config.method):
            raise RequestBuildError(f"invalid method {config.method!r}")

        headers = dict(config.headers)
        if config.username:
            for name in [key for key in headers if key.lower() == "authorization"]:
                del headers[name]
            headers["Authorization"] = basic_auth_header(
                config.username, config.password
            )
        return OutgoingRequest(
            method=config.method,
            url=config.url,
            headers=headers,
            body=config.body,
        )

    @staticmethod
    def _check_status(config: RequestConfig, status_code: int) -> None:
        # An empty expectation set disables the check.
        if not config.fail_on_http_error or not config.expected_status_codes:
            return
        if status_code not in config.expected_status_codes:
            raise UnexpectedStatusCodeError(
                status_code, config.expected_status_codes
            )

    def _build_meta(
        self,
        config: RequestConfig,
        started: float,
        response: TransportResponse | None,
        final_error: str | None = None,
    ) -> dict[str, Any]:
        """Construct metadata dictionary from config and response."""
        meta: dict[str, Any] = {}
        meta["method"] = config.method
        meta["url"] = config.url
        meta["http_version"] = config.http_version or "HTTP/1.1"
        meta["attempts"] = 1
        meta["timeout_s"] = config.timeout_seconds
        meta["elapsed_s"] = monotonic() - started

        if response is not None:
            meta["status"] = response.status_code
            meta["status_code"] = response.status_code
            meta["url"] = response.url
            meta["reason"] = response.reason
            meta["http_version"] = response.http_version
        if final_error is not None:
            meta["final_error"] = final_error

        return meta

    def execute(
        self, config: RequestConfig
    ) -> Result[RequestResult, HttpClientError]:
        """Perform the call described by ``config``.

        Args:
            config: Immutable description of the call.

        Returns:
            ``Ok`` with the normalized result, or ``Err`` with the
            classified error. Both carry request metadata.
        """
        started = monotonic()
        deadline = started + config.timeout_seconds
        response: TransportResponse | None = None
        try:
            tls = self._tls_settings(config)
            request = self._build_request(config)
            redirects = RedirectPolicy(
                follow=config.follow_redirects,
                max_hops=config.max_redirects,
            )
            with build_transport(
                config.http_version, tls, config.timeout_seconds
            ) as transport:
                logger.debug(
                    "Executing %s %s over %s",
                    request.method,
                    request.url,
                    transport.http_version.value,
                )
                response = transport.send(
                    request, redirects=redirects, deadline=deadline
                )
            self._check_status(config, response.status_code)
        except HttpClientError as exc:
            logger.warning(
                "%s %s failed: %s: %s",
                config.method,
                config.url,
                type(exc).__name__,
                exc,
            )
            return Err(
                exc,
                meta=self._build_meta(
                    config, started, response, final_error=type(exc).__name__
                ),
            )

        logger.debug(
            "%s %s returned %d (%d bytes)",
            config.method,
            config.url,
            response.status_code,
            len(response.body),
        )
        return Ok(
            RequestResult(
                response_code=response.status_code,
                response_headers=response.headers,
                response_body=response.body,
            ),
            meta=self._build_meta(config, started, response),
        )


def execute_request(
    config: RequestConfig,
) -> Result[RequestResult, HttpClientError]:
    """Execute ``config`` with a fresh :class:`RequestExecutor`."""
    return RequestExecutor().execute(config)

