"""Framework-agnostic service-provider glue.

A web layer maps its routes onto :class:`ServiceProvider`: a login
route redirects to :meth:`~ServiceProvider.login_redirect_url`, the
assertion consumer service posts the ``SAMLResponse`` form value to
:meth:`~ServiceProvider.assertion_consumer`, and so on.  Sessions and
the directory API client are supplied by the caller.

"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, MutableMapping, Optional, Protocol
from urllib.parse import urlencode, urlsplit, urlunsplit

from access_approval.config import Settings
from access_approval.errors import MalformedResponse, ValidationError
from access_approval.request import AuthnRequest, Clock, utc_now
from access_approval.response import ResponseValidator
from access_approval.session import SessionAuthState, SessionIdentity

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "An error occurred"


class DirectoryClient(Protocol):
    """The bits of the directory API used to toggle group membership."""

    def is_group_member(self, group_id: str, user_principal_name: str) -> bool:
        ...

    def add_group_member(self, group_id: str, user_principal_name: str) -> None:
        ...

    def remove_group_member(self, group_id: str, user_principal_name: str) -> None:
        ...


def decode_post_response(value: str) -> bytes:
    """Decode the base64 ``SAMLResponse`` form value of the POST binding.

    :raises MalformedResponse: The value is empty or not base64.

    """
    if not value or not value.strip():
        raise MalformedResponse("no SAMLResponse was posted")
    try:
        return base64.b64decode("".join(value.split()), validate=True)
    except binascii.Error as exc:
        raise MalformedResponse("SAMLResponse is not base64") from exc


class ServiceProvider:
    """Login, assertion consumer, logout and membership toggling.

    :param settings: Process configuration.
    :param validator: Defaults to one built from `settings`.
    :param clock: Time source shared with the default validator.

    """

    def __init__(
        self,
        settings: Settings,
        validator: Optional[ResponseValidator] = None,
        clock: Clock = utc_now,
    ):
        self.settings = settings
        self.clock = clock
        self.validator = validator or ResponseValidator(
            settings.trust_certificate,
            settings.issuer_entity_id,
            clock=clock,
            clock_skew=settings.clock_skew,
        )

    def state(self, session: MutableMapping[str, Any]) -> SessionAuthState:
        return SessionAuthState(session, self.settings.group_attribute)

    def login_redirect_url(self, relay_state: Optional[str] = None) -> str:
        """Return the IdP login URL carrying a fresh encoded request."""
        request = AuthnRequest.create(self.settings.issuer_entity_id, clock=self.clock)
        params = {self.settings.request_parameter: request.encode()}
        if relay_state:
            params["RelayState"] = relay_state

        # Keep whatever query the configured URL already has.
        parts = urlsplit(self.settings.login_url)
        query = "&".join(q for q in (parts.query, urlencode(params)) if q)
        logger.debug("Redirecting to the identity provider with request %s", request.id)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))

    def assertion_consumer(
        self, session: MutableMapping[str, Any], saml_response: str
    ) -> SessionIdentity:
        """Sign the session in from a posted ``SAMLResponse`` value.

        :raises ValidationError: The response was rejected; the session
            is anonymous afterwards.

        """
        return self.state(session).authenticate(self.validator, decode_post_response(saml_response))

    def logout(self, session: MutableMapping[str, Any]) -> str:
        """Clear the session and return where to send the browser."""
        self.state(session).logout()
        return self.settings.logout_url

    def toggle_membership(
        self, session: MutableMapping[str, Any], directory: DirectoryClient
    ) -> bool:
        """Flip the signed-in user's membership of the access group.

        :return: Whether the user is a member afterwards.
        :raises NotAuthenticated: The session is anonymous.

        """
        state = self.state(session)
        identity = state.require_identity()
        group = self.settings.access_group
        user = identity.user_principal_name

        if directory.is_group_member(group, user):
            directory.remove_group_member(group, user)
            state.update_groups(identity.groups - {group})
            logger.info("Removed %s from %s", user, group)
            return False

        directory.add_group_member(group, user)
        state.update_groups(identity.groups | {group})
        logger.info("Added %s to %s", user, group)
        return True

    def error_message(self, exc: Exception) -> str:
        """Return what an error page may show for `exc`.

        With ``DEBUG=1`` that is the full exception message; otherwise
        a rejected response shows only its category and anything else
        a generic message.

        """
        if self.settings.debug:
            return str(exc)
        if isinstance(exc, ValidationError):
            return exc.category
        return GENERIC_ERROR_MESSAGE
