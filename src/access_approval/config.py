"""Process-wide configuration.

Everything is read from the environment exactly once, at process
start, into an immutable :class:`Settings` value that is then passed
down explicitly.

"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping, Optional

from dotenv import load_dotenv

from access_approval.certificate import TrustCertificate
from access_approval.errors import ConfigurationError

logger = logging.getLogger(__name__)

REQUIRED_VARIABLES = (
    "ISSUER_ENTITY_ID",
    "LOGIN_URL",
    "ACCESS_GROUP",
    "SAML_CERT",
)

# Azure AD emits group object IDs under this claim.
DEFAULT_GROUP_ATTRIBUTE = "http://schemas.microsoft.com/ws/2008/06/identity/claims/groups"
DEFAULT_CLOCK_SKEW = timedelta(seconds=60)
DEFAULT_REQUEST_PARAMETER = "SAMLRequest"


@dataclass(frozen=True)
class Settings:
    """Immutable service-provider configuration."""

    issuer_entity_id: str
    login_url: str
    access_group: str
    trust_certificate: TrustCertificate
    logout_url: str = ""
    group_attribute: str = DEFAULT_GROUP_ATTRIBUTE
    clock_skew: timedelta = DEFAULT_CLOCK_SKEW
    request_parameter: str = DEFAULT_REQUEST_PARAMETER
    debug: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from environment variables.

        :param environ: The variables to read; defaults to
            :data:`os.environ`.
        :raises ConfigurationError: One or more required variables are
            unset or blank, or a value cannot be parsed.  The message
            names the variables but never echoes their values.

        """
        if environ is None:
            environ = os.environ

        def env(key: str) -> str:
            return str(environ.get(key, "")).strip()

        missing = [key for key in REQUIRED_VARIABLES if not env(key)]
        if missing:
            raise ConfigurationError(
                "Missing one or more required environment variable(s): "
                + ", ".join(missing)
            )

        skew = env("SAML_CLOCK_SKEW")
        try:
            clock_skew = timedelta(seconds=int(skew)) if skew else DEFAULT_CLOCK_SKEW
        except ValueError as exc:
            raise ConfigurationError("SAML_CLOCK_SKEW must be a whole number of seconds") from exc
        if clock_skew < timedelta(0):
            raise ConfigurationError("SAML_CLOCK_SKEW must not be negative")

        return cls(
            issuer_entity_id=env("ISSUER_ENTITY_ID"),
            login_url=env("LOGIN_URL"),
            access_group=env("ACCESS_GROUP"),
            trust_certificate=TrustCertificate.from_pem(env("SAML_CERT")),
            logout_url=env("LOGOUT_URL"),
            group_attribute=env("SAML_GROUP_ATTRIBUTE") or DEFAULT_GROUP_ATTRIBUTE,
            clock_skew=clock_skew,
            request_parameter=env("SAML_REQUEST_PARAMETER") or DEFAULT_REQUEST_PARAMETER,
            debug=env("DEBUG") == "1",
        )


def load_settings(dotenv_path: Optional[str] = None, *, setup_logging: bool = False) -> Settings:
    """Load a ``.env`` file (if any) and build :class:`Settings`.

    Variables already present in the real environment win over the
    file.

    :param setup_logging: Also call :func:`configure_logging` with the
        loaded ``DEBUG`` flag.  Applications set this; libraries don't.

    """
    load_dotenv(dotenv_path, override=False)
    settings = Settings.from_env()
    if setup_logging:
        configure_logging(settings.debug)
    logger.info("Service provider %s configured", settings.issuer_entity_id)
    return settings


def configure_logging(debug: bool = False) -> logging.Handler:
    """Send package log records to stderr.

    Meant for applications embedding the package; libraries importing
    it should leave logging configuration alone.  Calling it again
    replaces the handler installed by the previous call.

    """
    package_logger = logging.getLogger("access_approval")
    for existing in list(package_logger.handlers):
        if getattr(existing, "_access_approval", False):
            package_logger.removeHandler(existing)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(name)s %(levelname)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    handler._access_approval = True  # type: ignore[attr-defined]
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG if debug else logging.INFO)
    return handler
