"""Validate SAML 2.0 responses posted by the identity provider.

Nothing inside a response is trusted until its XML signature has been
checked against the pinned :class:`~access_approval.certificate.TrustCertificate`.
After that, conditions and attributes are read only from the subtree
the signature actually covers, so content wrapped around a genuine
signed assertion is ignored.

"""

from __future__ import annotations

import calendar
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple, Union

from lxml import etree
from saml2 import saml, samlp
from saml2.time_util import str_to_time
from signxml import XMLVerifier
from signxml.exceptions import InvalidCertificate, InvalidDigest, InvalidSignature

from access_approval.certificate import TrustCertificate
from access_approval.config import DEFAULT_CLOCK_SKEW
from access_approval.errors import (
    AudienceMismatch,
    MalformedResponse,
    ResponseExpired,
    ResponseNotYetValid,
    SignatureInvalid,
    SignatureMissing,
    UnsuccessfulStatus,
)
from access_approval.request import Clock, utc_now

logger = logging.getLogger(__name__)

DSIG_NAMESPACE = "http://www.w3.org/2000/09/xmldsig#"
NS = {"samlp": samlp.NAMESPACE, "saml": saml.NAMESPACE, "ds": DSIG_NAMESPACE}

STATUS_SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"

RESPONSE_TAG = f"{{{samlp.NAMESPACE}}}Response"
ASSERTION_TAG = f"{{{saml.NAMESPACE}}}Assertion"


@dataclass(frozen=True)
class Conditions:
    not_before: Optional[datetime] = None
    not_on_or_after: Optional[datetime] = None
    # One tuple per AudienceRestriction element.
    audiences: Tuple[Tuple[str, ...], ...] = ()


@dataclass(frozen=True)
class SamlResponse:
    """The trusted content of a validated response.

    Only :class:`ResponseValidator` builds these, and only after the
    signature has been verified.

    """

    issuer: str
    name_id: str
    conditions: Conditions
    attributes: Mapping[str, FrozenSet[str]] = field(default_factory=dict)
    signed_reference: str = ""

    def __post_init__(self):
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))

    def values(self, name: str) -> FrozenSet[str]:
        """Return every value of attribute `name` (empty if absent)."""
        return self.attributes.get(name, frozenset())


def _parser() -> etree.XMLParser:
    # No DTD entity expansion, no network fetches.
    return etree.XMLParser(
        resolve_entities=False, no_network=True, remove_comments=False, huge_tree=False
    )


_FRACTION = re.compile(r"\.(\d+)Z$")


def _parse_instant(value: Optional[str]) -> Optional[datetime]:
    """Parse an xs:dateTime in UTC, keeping fractional seconds.

    pysaml2's :func:`~saml2.time_util.str_to_time` accepts fractions
    but discards them; they are added back at microsecond precision.

    """
    if not value:
        return None
    try:
        instant = datetime.fromtimestamp(calendar.timegm(str_to_time(value)), tz=timezone.utc)
    except (ValueError, AttributeError, OverflowError) as exc:
        # pysaml2 raises AttributeError for values that match neither
        # of its timestamp formats.
        raise MalformedResponse(f"unparseable timestamp {value!r}") from exc
    fraction = _FRACTION.search(value)
    if fraction:
        instant += timedelta(microseconds=int(fraction.group(1).ljust(6, "0")[:6]))
    return instant


class ResponseValidator:
    """Check responses against one trust certificate and SP identity.

    Instances hold no per-request state and may be shared freely.

    :param certificate: The IdP signing certificate.  Certificates
        embedded in responses are never used as verification keys.
    :param issuer: This service provider's entity ID, the expected
        audience.
    :param clock: Returns the current time as an aware datetime.
    :param clock_skew: Tolerance applied to both ends of the validity
        window.
    :param expect_config: A :class:`signxml.SignatureConfiguration`
        restricting the accepted algorithms; signxml's defaults
        (no SHA-1) apply when omitted.

    """

    def __init__(
        self,
        certificate: TrustCertificate,
        issuer: str,
        clock: Clock = utc_now,
        clock_skew: timedelta = DEFAULT_CLOCK_SKEW,
        expect_config: Any = None,
    ):
        self.certificate = certificate
        self.issuer = issuer
        self.clock = clock
        self.clock_skew = clock_skew
        self.expect_config = expect_config

    def validate(self, xml: Union[str, bytes]) -> SamlResponse:
        """Return the trusted content of `xml` or raise.

        :raises MalformedResponse: Not a well-formed SAML response.
        :raises SignatureMissing: No enveloped signature.
        :raises SignatureInvalid: Digest or signature mismatch, or a
            signature made with a key other than the trusted one.
        :raises UnsuccessfulStatus: The IdP reported a failure.
        :raises ResponseNotYetValid: ``NotBefore`` is in the future.
        :raises ResponseExpired: ``NotOnOrAfter`` has passed.
        :raises AudienceMismatch: An audience restriction excludes us.

        """
        data = xml.encode("utf-8") if isinstance(xml, str) else xml
        root = self._parse(data)
        self._require_signature(root)
        signed = self._verify(data)
        assertion_element = self._signed_assertion(root, signed)
        self._check_status(signed if signed.tag == RESPONSE_TAG else root)

        assertion = saml.assertion_from_string(etree.tostring(assertion_element))
        if assertion is None:
            raise MalformedResponse("signed assertion could not be read")
        conditions = self._conditions(assertion)
        self._check_validity_window(conditions)
        self._check_audience(conditions)

        response = self._extract(assertion, conditions, signed)
        logger.info("Validated SAML response for %s from %s", response.name_id, response.issuer)
        return response

    def _parse(self, data: bytes) -> etree._Element:
        if not data or not data.strip():
            raise MalformedResponse("response is empty")
        try:
            root = etree.fromstring(data, parser=_parser())
        except etree.XMLSyntaxError as exc:
            logger.warning("Rejected SAML response: %s", exc)
            raise MalformedResponse("response is not well-formed XML") from exc
        if root is None or root.tag != RESPONSE_TAG:
            raise MalformedResponse("document is not a SAML Response")
        return root

    def _require_signature(self, root: etree._Element) -> None:
        if root.find("ds:Signature", NS) is not None:
            return
        if root.find("saml:Assertion/ds:Signature", NS) is not None:
            return
        logger.warning("Rejected unsigned SAML response")
        raise SignatureMissing("response carries no enveloped signature")

    def _verify(self, data: bytes) -> etree._Element:
        kwargs: Dict[str, Any] = {"x509_cert": self.certificate.certificate}
        if self.expect_config is not None:
            kwargs["expect_config"] = self.expect_config
        try:
            result = XMLVerifier().verify(data, **kwargs)
        except InvalidDigest as exc:
            logger.warning("Rejected SAML response, digest mismatch: %s", exc)
            raise SignatureInvalid("signed content was modified") from exc
        except (InvalidSignature, InvalidCertificate) as exc:
            logger.warning(
                "Rejected SAML response, not signed by %s: %s",
                self.certificate.fingerprint,
                exc,
            )
            raise SignatureInvalid("signature does not match the trusted certificate") from exc
        except (ValueError, etree.DocumentInvalid, etree.XMLSyntaxError) as exc:
            # InvalidInput is a ValueError; DocumentInvalid comes from the
            # XML-DSig schema check on a malformed ds:Signature.
            logger.warning("Rejected SAML response, unusable signature: %s", exc)
            raise SignatureInvalid("signature could not be verified") from exc
        return result.signed_xml

    def _signed_assertion(self, root: etree._Element, signed: etree._Element) -> etree._Element:
        if root.find("saml:EncryptedAssertion", NS) is not None:
            raise MalformedResponse("encrypted assertions are not supported")
        assertions = root.findall("saml:Assertion", NS)
        if len(assertions) != 1:
            raise MalformedResponse(f"expected one assertion, found {len(assertions)}")

        if signed.tag == RESPONSE_TAG:
            inner = signed.findall("saml:Assertion", NS)
            if len(inner) != 1:
                raise MalformedResponse("signed response does not hold exactly one assertion")
            return inner[0]
        if signed.tag == ASSERTION_TAG:
            # The signed assertion has to be the one the response
            # actually delivers, not a copy tucked away elsewhere.
            if signed.get("ID") != assertions[0].get("ID"):
                raise MalformedResponse("signature does not cover the delivered assertion")
            return signed
        raise MalformedResponse(f"signature covers an unexpected element {signed.tag}")

    def _check_status(self, response: etree._Element) -> None:
        code = response.find("samlp:Status/samlp:StatusCode", NS)
        if code is None:
            return
        value = code.get("Value", "")
        if value != STATUS_SUCCESS:
            logger.warning("Identity provider reported status %s", value)
            raise UnsuccessfulStatus("identity provider did not authenticate the user")

    def _conditions(self, assertion: saml.Assertion) -> Conditions:
        conditions = assertion.conditions
        if conditions is None:
            return Conditions()
        audiences = tuple(
            tuple((audience.text or "").strip() for audience in restriction.audience)
            for restriction in conditions.audience_restriction
        )
        return Conditions(
            not_before=_parse_instant(conditions.not_before),
            not_on_or_after=_parse_instant(conditions.not_on_or_after),
            audiences=audiences,
        )

    def _check_validity_window(self, conditions: Conditions) -> None:
        now = self.clock()
        if conditions.not_before and now + self.clock_skew < conditions.not_before:
            logger.warning("Rejected SAML response valid from %s", conditions.not_before)
            raise ResponseNotYetValid("response is not valid yet")
        if conditions.not_on_or_after and now - self.clock_skew >= conditions.not_on_or_after:
            logger.warning("Rejected SAML response expired at %s", conditions.not_on_or_after)
            raise ResponseExpired("response has expired")

    def _check_audience(self, conditions: Conditions) -> None:
        for audiences in conditions.audiences:
            if self.issuer not in audiences:
                logger.warning("Rejected SAML response for audience %s", ", ".join(audiences))
                raise AudienceMismatch("response is intended for another service")

    def _extract(
        self, assertion: saml.Assertion, conditions: Conditions, signed: etree._Element
    ) -> SamlResponse:
        subject = assertion.subject
        if subject is None or subject.name_id is None or not subject.name_id.text:
            raise MalformedResponse("assertion has no NameID")

        attributes: Dict[str, set] = {}
        for statement in assertion.attribute_statement:
            for attribute in statement.attribute:
                values = attributes.setdefault(attribute.name, set())
                for value in attribute.attribute_value:
                    if value.text is not None:
                        values.add(value.text.strip())

        return SamlResponse(
            issuer=(assertion.issuer.text or "").strip() if assertion.issuer else "",
            name_id=subject.name_id.text.strip(),
            conditions=conditions,
            attributes={name: frozenset(values) for name, values in attributes.items()},
            signed_reference=signed.get("ID", ""),
        )
