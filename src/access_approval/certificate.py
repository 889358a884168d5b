"""The identity provider's pinned signing certificate."""

from __future__ import annotations

import logging
import textwrap
from dataclasses import dataclass, field

from cryptography import x509
from cryptography.hazmat.primitives import hashes

from access_approval.errors import ConfigurationError

logger = logging.getLogger(__name__)

PEM_HEADER = "-----BEGIN CERTIFICATE-----"
PEM_FOOTER = "-----END CERTIFICATE-----"


def normalize_pem(text: str) -> str:
    """Return `text` as a PEM-encoded certificate.

    IdP admin consoles commonly export the signing certificate as a
    bare base64 blob, sometimes on one line.  Wrap such values in the
    PEM armour that :mod:`cryptography` expects; leave real PEM alone.

    """
    text = text.strip()
    if PEM_HEADER in text:
        return text + "\n"
    body = "".join(text.split())
    return "\n".join([PEM_HEADER, *textwrap.wrap(body, 64), PEM_FOOTER]) + "\n"


@dataclass(frozen=True)
class TrustCertificate:
    """The only key material used to verify response signatures.

    Loaded once at process start and never mutated, so instances are
    safe to share between threads.

    """

    pem: str
    certificate: x509.Certificate = field(repr=False, compare=False)

    @classmethod
    def from_pem(cls, text: str) -> "TrustCertificate":
        """Parse a PEM (or bare base64) certificate.

        :raises ConfigurationError: The value is not an X.509
            certificate.

        """
        if not text or not text.strip():
            raise ConfigurationError("the trust certificate is empty")
        pem = normalize_pem(text)
        try:
            certificate = x509.load_pem_x509_certificate(pem.encode("ascii"))
        except (ValueError, UnicodeEncodeError) as exc:
            # Don't echo the value back; it ends up in user-visible
            # startup errors.
            raise ConfigurationError("the trust certificate is not valid PEM") from exc
        trust = cls(pem=pem, certificate=certificate)
        logger.debug("Loaded trust certificate %s", trust.fingerprint)
        return trust

    @property
    def fingerprint(self) -> str:
        """SHA-256 fingerprint, colon-separated, for operator logs."""
        digest = self.certificate.fingerprint(hashes.SHA256())
        return ":".join(f"{b:02X}" for b in digest)
