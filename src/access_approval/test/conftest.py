"""Configure test fixtures."""

from __future__ import annotations

import copy
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

import pytest
from _pytest.assertion import truncate
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from faker import Faker
from lxml import etree
from signxml import CanonicalizationMethod, XMLSigner

from access_approval.certificate import TrustCertificate
from access_approval.config import DEFAULT_GROUP_ATTRIBUTE, Settings
from access_approval.response import ResponseValidator

# Increase the long string truncation limit when running pytest in
# verbose mode; cf. https://stackoverflow.com/a/60321834.
truncate.DEFAULT_MAX_LINES = 999999
truncate.DEFAULT_MAX_CHARS = 999999

SAMLP = "urn:oasis:names:tc:SAML:2.0:protocol"
SAML = "urn:oasis:names:tc:SAML:2.0:assertion"
STATUS_SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"
TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def generate_key_pair() -> Dict[str, str]:
    """Return a self-signed X.509 certificate and private key."""

    # Generate the key pair first.
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    # SAML does not use certificate name attributes.
    subject = issuer = x509.Name([])

    # Now generate an X.509 certificate.
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_valid_before := datetime.now(timezone.utc))
        .not_valid_after(not_valid_before + timedelta(days=3650))
        .sign(key, hashes.SHA256())
    )

    # Return the certificate and key in PEM format.
    return {
        "cert": cert.public_bytes(serialization.Encoding.PEM).decode("utf-8"),
        "key": key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("utf-8"),
    }


def sign(element: etree._Element, keymat: Dict[str, str]) -> etree._Element:
    """Return a copy of `element` with an enveloped signature over it."""
    signer = XMLSigner(c14n_algorithm=CanonicalizationMethod.EXCLUSIVE_XML_CANONICALIZATION_1_0)
    return signer.sign(
        copy.deepcopy(element),
        key=keymat["key"].encode("ascii"),
        cert=keymat["cert"].encode("ascii"),
        reference_uri=f"#{element.get('ID')}",
    )


def saml_timestamp(when: datetime) -> str:
    when = when.astimezone(timezone.utc)
    if when.microsecond:
        return f"{when:%Y-%m-%dT%H:%M:%S}.{when.microsecond:06d}Z"
    return when.strftime(TIME_FORMAT)


@pytest.fixture
def saml2_idp_entityid(faker: Faker) -> str:
    """Uniquely identify a mock SAML 2.0 identity provider."""
    return f"https://{faker.hostname()}/"


@pytest.fixture
def saml2_sp_entityid(faker: Faker) -> str:
    """Uniquely identify the SAML 2.0 service provider under test."""
    return f"https://{faker.hostname()}/"


@pytest.fixture(scope="session")
def idp_keymat() -> Dict[str, str]:
    """The mock identity provider's signing key pair.  Generating RSA
    keys is slow, so share one across the session.

    """
    return generate_key_pair()


@pytest.fixture(scope="session")
def rogue_keymat() -> Dict[str, str]:
    """A key pair the service provider does not trust."""
    return generate_key_pair()


@pytest.fixture
def trust_certificate(idp_keymat: Dict[str, str]) -> TrustCertificate:
    return TrustCertificate.from_pem(idp_keymat["cert"])


@pytest.fixture
def now() -> datetime:
    """A fixed "current" time, so validity windows are deterministic."""
    return datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture
def validator(
    trust_certificate: TrustCertificate, saml2_sp_entityid: str, now: datetime
) -> ResponseValidator:
    return ResponseValidator(
        trust_certificate,
        saml2_sp_entityid,
        clock=lambda: now,
        clock_skew=timedelta(seconds=60),
    )


@pytest.fixture
def settings(
    trust_certificate: TrustCertificate, saml2_sp_entityid: str, faker: Faker
) -> Settings:
    return Settings(
        issuer_entity_id=saml2_sp_entityid,
        login_url=f"https://{faker.hostname()}/saml2",
        access_group=str(uuid.uuid4()),
        trust_certificate=trust_certificate,
        logout_url=f"https://{faker.hostname()}/logout",
    )


@pytest.fixture
def make_response(
    saml2_idp_entityid: str,
    saml2_sp_entityid: str,
    idp_keymat: Dict[str, str],
    now: datetime,
    faker: Faker,
) -> Callable[..., etree._Element]:
    """Build SAML responses as the mock identity provider would.

    The returned factory accepts keyword arguments to vary the parts
    each test cares about.  `sign` is one of ``"response"``,
    ``"assertion"`` or ``None``.

    """

    def factory(
        name_id: Optional[str] = None,
        attributes: Optional[Mapping[str, Iterable[str]]] = None,
        not_before: Optional[datetime] = None,
        not_on_or_after: Optional[datetime] = None,
        audiences: Optional[Iterable[str]] = None,
        status: str = STATUS_SUCCESS,
        sign_with: Optional[Dict[str, str]] = None,
        signed: Optional[str] = "response",
        in_response_to: Optional[str] = None,
    ) -> etree._Element:
        nsmap = {"samlp": SAMLP, "saml": SAML}
        response = etree.Element(
            f"{{{SAMLP}}}Response",
            nsmap=nsmap,
            ID=f"_{uuid.uuid4().hex}",
            Version="2.0",
            IssueInstant=saml_timestamp(now),
        )
        if in_response_to:
            response.set("InResponseTo", in_response_to)
        etree.SubElement(response, f"{{{SAML}}}Issuer").text = saml2_idp_entityid
        status_element = etree.SubElement(response, f"{{{SAMLP}}}Status")
        etree.SubElement(status_element, f"{{{SAMLP}}}StatusCode", Value=status)

        assertion = etree.SubElement(
            response,
            f"{{{SAML}}}Assertion",
            ID=f"_{uuid.uuid4().hex}",
            Version="2.0",
            IssueInstant=saml_timestamp(now),
        )
        etree.SubElement(assertion, f"{{{SAML}}}Issuer").text = saml2_idp_entityid
        subject = etree.SubElement(assertion, f"{{{SAML}}}Subject")
        etree.SubElement(subject, f"{{{SAML}}}NameID").text = name_id or faker.email()

        conditions = etree.SubElement(
            assertion,
            f"{{{SAML}}}Conditions",
            NotBefore=saml_timestamp(not_before or now - timedelta(minutes=5)),
            NotOnOrAfter=saml_timestamp(not_on_or_after or now + timedelta(minutes=5)),
        )
        restriction = etree.SubElement(conditions, f"{{{SAML}}}AudienceRestriction")
        for audience in [saml2_sp_entityid] if audiences is None else audiences:
            etree.SubElement(restriction, f"{{{SAML}}}Audience").text = audience

        statement = etree.SubElement(assertion, f"{{{SAML}}}AttributeStatement")
        for name, values in (attributes or {}).items():
            attribute = etree.SubElement(statement, f"{{{SAML}}}Attribute", Name=name)
            for value in values:
                etree.SubElement(attribute, f"{{{SAML}}}AttributeValue").text = value

        keymat = sign_with or idp_keymat
        if signed == "assertion":
            response.replace(assertion, sign(assertion, keymat))
        elif signed == "response":
            response = sign(response, keymat)
        return response

    return factory


@pytest.fixture
def group_attributes() -> Dict[str, Any]:
    """Attributes naming two directory groups, Azure AD style."""
    return {
        DEFAULT_GROUP_ATTRIBUTE: [str(uuid.uuid4()), str(uuid.uuid4())],
        "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/givenname": ["Ada"],
    }
