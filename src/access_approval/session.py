"""Per-browser-session authentication state."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, MutableMapping, Optional, Union

from access_approval.errors import NotAuthenticated, ValidationError
from access_approval.response import ResponseValidator, SamlResponse

logger = logging.getLogger(__name__)

SESSION_KEY = "saml_identity"


@dataclass(frozen=True)
class SessionIdentity:
    user_principal_name: str
    groups: FrozenSet[str] = field(default_factory=frozenset)
    authenticated: bool = True

    @classmethod
    def from_response(cls, response: SamlResponse, group_attribute: str) -> "SessionIdentity":
        return cls(user_principal_name=response.name_id, groups=response.values(group_attribute))

    def is_member(self, group_id: str) -> bool:
        return group_id in self.groups

    def to_session(self) -> Dict[str, Any]:
        # Plain types only, so any session backend can serialize it.
        return {
            "authenticated": self.authenticated,
            "user": self.user_principal_name,
            "groups": sorted(self.groups),
        }

    @classmethod
    def from_session(cls, data: Any) -> Optional["SessionIdentity"]:
        if not isinstance(data, dict) or not data.get("authenticated") or not data.get("user"):
            return None
        return cls(user_principal_name=str(data["user"]), groups=frozenset(data.get("groups") or ()))


class SessionAuthState:
    """Anonymous/Authenticated state machine stored in a session.

    The session mapping belongs to whatever session store the HTTP
    layer uses; it is read on every access, so expiry by the store
    shows up here as the Anonymous state.  The only way into the
    Authenticated state is :meth:`authenticate`, which runs the
    validator itself.

    :param session: The session's mutable mapping.
    :param group_attribute: Name of the SAML attribute listing group
        identifiers.

    """

    def __init__(self, session: MutableMapping[str, Any], group_attribute: str):
        self.session = session
        self.group_attribute = group_attribute

    @property
    def identity(self) -> Optional[SessionIdentity]:
        return SessionIdentity.from_session(self.session.get(SESSION_KEY))

    @property
    def is_authenticated(self) -> bool:
        return self.identity is not None

    def require_identity(self) -> SessionIdentity:
        identity = self.identity
        if identity is None:
            raise NotAuthenticated("sign in first")
        return identity

    def authenticate(self, validator: ResponseValidator, xml: Union[str, bytes]) -> SessionIdentity:
        """Validate `xml` and, only if that succeeds, sign the session in.

        Any existing identity is dropped first so a failed attempt
        always leaves the session anonymous.

        :raises ValidationError: From the validator; the session stays
            anonymous.

        """
        self.logout()
        try:
            response = validator.validate(xml)
        except ValidationError as exc:
            logger.info("Login failed (%s)", exc.category)
            raise
        identity = SessionIdentity.from_response(response, self.group_attribute)
        self.session[SESSION_KEY] = identity.to_session()
        logger.info("%s signed in", identity.user_principal_name)
        return identity

    def logout(self) -> None:
        """Return to Anonymous, whatever the current state."""
        identity = self.identity
        self.session.pop(SESSION_KEY, None)
        if identity is not None:
            logger.info("%s signed out", identity.user_principal_name)

    def update_groups(self, groups: FrozenSet[str]) -> SessionIdentity:
        """Refresh the group list of an authenticated session."""
        identity = self.require_identity()
        updated = SessionIdentity(identity.user_principal_name, frozenset(groups))
        self.session[SESSION_KEY] = updated.to_session()
        return updated
