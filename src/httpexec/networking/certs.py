"""Parse PEM client identities and CA bundles.

Inputs are PEM text already held in memory; nothing here touches the disk
or the network.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass
from typing import Iterator

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.types import PublicKeyTypes

from .errors import CAParseError, CertificateParseError

logger = logging.getLogger(__name__)

_PEM_BLOCK = re.compile(
    r"-----BEGIN (?P<label>[A-Z0-9 ]+)-----"
    r"(?P<body>.*?)"
    r"-----END (?P=label)-----",
    re.DOTALL,
)


@dataclass(frozen=True)
class ClientIdentity:
    """Client certificate and matching private key for mTLS."""

    certificate: x509.Certificate
    cert_pem: str
    key_pem: str

    @property
    def subject(self) -> str:
        return self.certificate.subject.rfc4514_string()


@dataclass(frozen=True)
class CertificatePool:
    """Trusted CA certificates used to verify the server."""

    certificates: tuple[x509.Certificate, ...]

    def __len__(self) -> int:
        return len(self.certificates)

    def to_pem(self) -> str:
        return "".join(
            cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
            for cert in self.certificates
        )


def _public_key_der(public_key: PublicKeyTypes) -> bytes:
    return public_key.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def load_client_identity(cert_pem: str, key_pem: str) -> ClientIdentity:
    """Load a certificate/key pair and check that they belong together.

    Args:
        cert_pem: PEM certificate; a chain may follow the leaf.
        key_pem: Unencrypted PEM private key for the leaf certificate.

    Returns:
        The parsed identity.

    Raises:
        CertificateParseError: Either block is malformed or the key does not
            match the certificate.
    """
    try:
        certificate = x509.load_pem_x509_certificate(cert_pem.encode("utf-8"))
    except ValueError as exc:
        raise CertificateParseError(
            f"failed to parse client certificate: {exc}"
        ) from exc

    try:
        private_key = serialization.load_pem_private_key(
            key_pem.encode("utf-8"), password=None
        )
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise CertificateParseError(
            f"failed to parse client private key: {exc}"
        ) from exc

    if _public_key_der(private_key.public_key()) != _public_key_der(
        certificate.public_key()
    ):
        raise CertificateParseError(
            "client private key does not match certificate public key"
        )

    identity = ClientIdentity(
        certificate=certificate, cert_pem=cert_pem, key_pem=key_pem
    )
    logger.debug("Loaded client identity %s", identity.subject)
    return identity


def _pem_blocks(text: str) -> Iterator[tuple[str, str]]:
    for match in _PEM_BLOCK.finditer(text):
        yield match.group("label"), match.group("body")


def load_trusted_cas(ca_pem: str) -> CertificatePool:
    """Load every ``CERTIFICATE`` block of a PEM bundle.

    Blocks of other types are skipped. A certificate block that fails to
    decode fails the whole bundle.

    Raises:
        CAParseError: No PEM block was found, a certificate block is
            malformed, or the bundle holds no certificate.
    """
    certificates: list[x509.Certificate] = []
    found_block = False
    for index, (label, body) in enumerate(_pem_blocks(ca_pem)):
        found_block = True
        if label != "CERTIFICATE":
            logger.debug("Skipping PEM block %d of type %s", index, label)
            continue
        try:
            der = base64.b64decode("".join(body.split()), validate=True)
            certificates.append(x509.load_der_x509_certificate(der))
        except (binascii.Error, ValueError) as exc:
            raise CAParseError(
                f"failed to parse CA certificate (block {index}): {exc}"
            ) from exc

    if not found_block:
        raise CAParseError("failed to decode PEM block from CA certificate")
    if not certificates:
        raise CAParseError("no CERTIFICATE block found in CA certificate")

    return CertificatePool(certificates=tuple(certificates))
