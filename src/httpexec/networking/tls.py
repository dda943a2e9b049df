"""TLS version resolution and SSL context assembly."""

from __future__ import annotations

import logging
import os
import ssl
import tempfile
from dataclasses import dataclass

from .certs import CertificatePool, ClientIdentity
from .errors import CertificateParseError, InvalidTLSVersionError

logger = logging.getLogger(__name__)

TLS_VERSIONS: dict[str, ssl.TLSVersion] = {
    "TLS10": ssl.TLSVersion.TLSv1,
    "TLS11": ssl.TLSVersion.TLSv1_1,
    "TLS12": ssl.TLSVersion.TLSv1_2,
    "TLS13": ssl.TLSVersion.TLSv1_3,
}


def resolve_tls_version(name: str) -> ssl.TLSVersion:
    """Map ``TLS10``..``TLS13`` (any case) to a protocol floor."""
    try:
        return TLS_VERSIONS[name.upper()]
    except KeyError:
        raise InvalidTLSVersionError(name, TLS_VERSIONS) from None


@dataclass(frozen=True)
class TLSSettings:
    """Library-neutral TLS configuration for one call."""

    min_version: ssl.TLSVersion = ssl.TLSVersion.TLSv1_2
    verify: bool = True
    client_identity: ClientIdentity | None = None
    trusted_cas: CertificatePool | None = None


def _load_identity(context: ssl.SSLContext, identity: ClientIdentity) -> None:
    # SSLContext only loads key material from files; keep them private and
    # short-lived.
    with tempfile.TemporaryDirectory(prefix="httpexec-") as workdir:
        cert_path = os.path.join(workdir, "client.crt")
        key_path = os.path.join(workdir, "client.key")
        for path, content in ((cert_path, identity.cert_pem), (key_path, identity.key_pem)):
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
        try:
            context.load_cert_chain(certfile=cert_path, keyfile=key_path)
        except ssl.SSLError as exc:
            raise CertificateParseError(
                f"failed to load client certificate: {exc}"
            ) from exc


def build_ssl_context(settings: TLSSettings) -> ssl.SSLContext:
    """Build a client ``SSLContext`` from the given settings.

    With a trusted CA pool only those CAs are trusted; otherwise the
    system trust store is used.
    """
    cadata = settings.trusted_cas.to_pem() if settings.trusted_cas else None
    context = ssl.create_default_context(cadata=cadata)
    context.minimum_version = settings.min_version
    if not settings.verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    if settings.client_identity is not None:
        _load_identity(context, settings.client_identity)
    logger.debug(
        "Built SSL context (min=%s, verify=%s, mtls=%s, cas=%d)",
        settings.min_version.name,
        settings.verify,
        settings.client_identity is not None,
        len(settings.trusted_cas) if settings.trusted_cas else 0,
    )
    return context
