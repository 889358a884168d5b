"""Build SAML 2.0 authentication requests for the HTTP-Redirect binding."""

from __future__ import annotations

import logging
import zlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from saml2 import VERSION, saml, samlp
from saml2.s_utils import decode_base64_and_inflate, deflate_and_base64_encode, sid
from saml2.time_util import TIME_FORMAT

from access_approval.errors import EncodingError

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AuthnRequest:
    """A single login attempt's authentication request.

    Never persisted; it only lives long enough to be encoded into the
    IdP redirect URL.

    """

    id: str
    issue_instant: datetime
    issuer: str
    destination: Optional[str] = None
    assertion_consumer_service_url: Optional[str] = None

    @classmethod
    def create(
        cls,
        issuer: str,
        destination: Optional[str] = None,
        acs_url: Optional[str] = None,
        clock: Clock = utc_now,
    ) -> "AuthnRequest":
        """Start a new request with a fresh identifier.

        :param issuer: This service provider's entity ID.
        :param destination: The IdP login URL, if it should be stated
            in the request.
        :param acs_url: Where the IdP should post its response.
        :param clock: Source of the issue instant.

        """
        if not issuer:
            raise ValueError("issuer must be a non-empty string")
        return cls(
            id=sid(),
            issue_instant=clock(),
            issuer=issuer,
            destination=destination,
            assertion_consumer_service_url=acs_url,
        )

    def to_element(self) -> samlp.AuthnRequest:
        return samlp.AuthnRequest(
            id=self.id,
            version=VERSION,
            issue_instant=self.issue_instant.astimezone(timezone.utc).strftime(TIME_FORMAT),
            destination=self.destination,
            assertion_consumer_service_url=self.assertion_consumer_service_url,
            issuer=saml.Issuer(text=self.issuer, format=saml.NAMEID_FORMAT_ENTITY),
        )

    def to_xml(self) -> str:
        """Serialize to XML text under the ``samlp``/``saml`` prefixes."""
        xml = self.to_element().to_string(
            nspair={"samlp": samlp.NAMESPACE, "saml": saml.NAMESPACE}
        )
        return xml.decode("utf-8")

    def encode(self) -> str:
        """Return the transport form: raw DEFLATE, then base64.

        :raises EncodingError: Compression or encoding failed.

        """
        try:
            encoded = deflate_and_base64_encode(self.to_xml())
        except (zlib.error, UnicodeError) as exc:
            raise EncodingError(f"cannot encode authentication request {self.id}") from exc
        logger.debug("Encoded authentication request %s for %s", self.id, self.issuer)
        return encoded.decode("ascii")

    def __str__(self) -> str:
        return self.encode()


def build_authn_request(issuer: str, destination: Optional[str] = None, **kwargs) -> str:
    """Shortcut for ``AuthnRequest.create(...).encode()``."""
    return AuthnRequest.create(issuer, destination, **kwargs).encode()


def inflate_authn_request(encoded: str) -> bytes:
    """Undo :meth:`AuthnRequest.encode`, returning the XML document.

    Bytes are returned because the document carries its own encoding
    declaration.

    :raises EncodingError: The value is not base64 or not a raw DEFLATE
        stream.

    """
    try:
        return decode_base64_and_inflate(encoded)
    except (ValueError, zlib.error) as exc:
        raise EncodingError("cannot decode authentication request") from exc
