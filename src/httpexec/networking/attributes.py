"""Marshal host attribute maps to and from the engine's models.

Plugin hosts describe a request as a flat mapping of attribute names where
``None`` means "not set". Defaults are applied here, once, before the
engine sees the request.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from .client import RequestExecutor
from .config import (
    DEFAULT_MAX_REDIRECTS,
    DEFAULT_METHOD,
    DEFAULT_TIMEOUT_SECONDS,
    RequestConfig,
    RequestResult,
)
from .errors import HttpClientError, RequestBuildError
from .types import Err, Ok, Result

COMPUTED_ATTRIBUTES = ("response_code", "response_headers", "response_body")


def _get(attributes: Mapping[str, Any], name: str, kind: type, default: Any) -> Any:
    value = attributes.get(name)
    if value is None:
        return default
    # bool is an int subclass; keep flags and numbers apart.
    if (kind is int and isinstance(value, bool)) or not isinstance(value, kind):
        raise TypeError(
            f"attribute {name!r} must be {kind.__name__}, "
            f"got {type(value).__name__}"
        )
    return value


def config_from_attributes(attributes: Mapping[str, Any]) -> RequestConfig:
    """Build a :class:`RequestConfig` from host attributes.

    Raises:
        RequestBuildError: ``url`` is missing or empty.
        TypeError: An attribute has the wrong type.
        ValueError: ``timeout`` is not positive or ``max_redirects`` is
            negative.
    """
    url = _get(attributes, "url", str, "")
    if not url:
        raise RequestBuildError("attribute 'url' is required")

    timeout = _get(attributes, "timeout", int, None)
    headers = _get(attributes, "request_headers", Mapping, {})
    for name, value in headers.items():
        if not isinstance(value, str):
            raise TypeError(f"request header {name!r} must be str")

    codes = attributes.get("expected_status_codes") or []
    if not isinstance(codes, (list, tuple)):
        raise TypeError("attribute 'expected_status_codes' must be a list")
    for code in codes:
        if isinstance(code, bool) or not isinstance(code, int):
            raise TypeError("expected_status_codes must contain integers")

    return RequestConfig(
        url=url,
        method=_get(attributes, "request_method", str, DEFAULT_METHOD),
        headers=headers,
        body=_get(attributes, "request_body", str, "").encode("utf-8"),
        username=_get(attributes, "username", str, ""),
        password=_get(attributes, "password", str, ""),
        timeout_seconds=(
            float(timeout) if timeout is not None else DEFAULT_TIMEOUT_SECONDS
        ),
        insecure_skip_verify=_get(attributes, "insecure", bool, False),
        tls_min_version=_get(attributes, "tls_min_version", str, ""),
        client_cert_pem=_get(attributes, "client_cert", str, ""),
        client_key_pem=_get(attributes, "client_key", str, ""),
        ca_cert_pem=_get(attributes, "ca_cert", str, ""),
        http_version=_get(attributes, "http_version", str, ""),
        expected_status_codes=codes,
        fail_on_http_error=_get(attributes, "fail_on_http_error", bool, False),
        follow_redirects=_get(attributes, "follow_redirects", bool, True),
        max_redirects=_get(
            attributes, "max_redirects", int, DEFAULT_MAX_REDIRECTS
        ),
    )


def result_to_attributes(result: RequestResult) -> dict[str, Any]:
    """Render the computed attributes of a successful call."""
    return {
        "response_code": result.response_code,
        "response_headers": dict(result.response_headers),
        "response_body": result.response_body.decode("utf-8", errors="replace"),
    }


def read_attributes(
    attributes: Mapping[str, Any],
    executor: RequestExecutor | None = None,
) -> Result[dict[str, Any], HttpClientError]:
    """Run one host read cycle: marshal, execute, merge computed attributes.

    The returned mapping is a copy of ``attributes`` with the computed
    attributes filled in; on failure nothing is computed. Attributes of the
    wrong type or out of range come back as ``RequestBuildError``.
    """
    try:
        config = config_from_attributes(attributes)
    except RequestBuildError as exc:
        return Err(exc, meta={"final_error": type(exc).__name__})
    except (TypeError, ValueError) as exc:
        error = RequestBuildError(f"invalid attributes: {exc}")
        error.__cause__ = exc
        return Err(error, meta={"final_error": type(error).__name__})

    result = (executor or RequestExecutor()).execute(config)
    if not result.ok:
        return Err(result.error, meta=result.meta)

    state = {
        name: value
        for name, value in attributes.items()
        if name not in COMPUTED_ATTRIBUTES
    }
    state.update(result_to_attributes(result.value))
    return Ok(state, meta=result.meta)
