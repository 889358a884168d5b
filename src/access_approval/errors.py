"""Exceptions raised by the SAML service-provider core."""

from __future__ import annotations


class SamlError(Exception):
    """Base class for every error raised by this package."""


class EncodingError(SamlError):
    """An authentication request could not be encoded or decoded for
    the HTTP-Redirect binding.

    """


class ConfigurationError(SamlError):
    """The process configuration is missing or unusable."""


class NotAuthenticated(SamlError):
    """A session-bound action was attempted by an anonymous session."""


class ValidationError(SamlError):
    """A SAML response was rejected.

    Rejections are terminal for the authentication attempt.  Only
    :attr:`category` is meant for end users; the exception message may
    carry operator diagnostics but never key or certificate material.

    """

    category = "invalid_response"


class MalformedResponse(ValidationError):
    category = "malformed_response"


class SignatureMissing(ValidationError):
    category = "signature_missing"


class SignatureInvalid(ValidationError):
    category = "signature_invalid"


class ResponseExpired(ValidationError):
    category = "response_expired"


class ResponseNotYetValid(ValidationError):
    category = "response_not_yet_valid"


class AudienceMismatch(ValidationError):
    category = "audience_mismatch"


class UnsuccessfulStatus(ValidationError):
    category = "unsuccessful_status"
