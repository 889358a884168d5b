"""SAML 2.0 service-provider core for the access-approval front end."""

import logging

from access_approval.certificate import TrustCertificate
from access_approval.config import Settings, configure_logging, load_settings
from access_approval.errors import (
    AudienceMismatch,
    ConfigurationError,
    EncodingError,
    MalformedResponse,
    NotAuthenticated,
    ResponseExpired,
    ResponseNotYetValid,
    SamlError,
    SignatureInvalid,
    SignatureMissing,
    UnsuccessfulStatus,
    ValidationError,
)
from access_approval.flow import DirectoryClient, ServiceProvider, decode_post_response
from access_approval.request import AuthnRequest, build_authn_request, inflate_authn_request
from access_approval.response import Conditions, ResponseValidator, SamlResponse
from access_approval.session import SessionAuthState, SessionIdentity

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "AudienceMismatch",
    "AuthnRequest",
    "Conditions",
    "ConfigurationError",
    "DirectoryClient",
    "EncodingError",
    "MalformedResponse",
    "NotAuthenticated",
    "ResponseExpired",
    "ResponseNotYetValid",
    "ResponseValidator",
    "SamlError",
    "SamlResponse",
    "ServiceProvider",
    "SessionAuthState",
    "SessionIdentity",
    "Settings",
    "SignatureInvalid",
    "SignatureMissing",
    "TrustCertificate",
    "UnsuccessfulStatus",
    "ValidationError",
    "build_authn_request",
    "configure_logging",
    "decode_post_response",
    "inflate_authn_request",
    "load_settings",
]
