"""Actor identity handed to the mutation engine.

Tokens are issued by the authentication collaborator; this module only decodes
them. The engine trusts the resulting identity completely.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from jose import JWTError, jwt

from forum_stage.core.settings import Settings


class InvalidTokenError(ValueError):
    """Raised when a bearer token cannot be decoded into an actor."""


@dataclass(frozen=True)
class ActiveUser:
    """Authenticated actor as supplied by the session collaborator."""

    user_id: str
    roles: tuple[str, ...] = field(default_factory=tuple)

    def has_role(self, role: str) -> bool:
        """Return True if the actor carries ``role``."""
        return role in self.roles


def decode_access_token(token: str, settings: Settings) -> ActiveUser:
    """Decode a bearer token into an :class:`ActiveUser`.

    Raises:
        InvalidTokenError: If the signature, expiry or subject is invalid.
    """
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as err:
        raise InvalidTokenError("Could not validate credentials") from err

    subject = payload.get("sub")
    if not subject or not isinstance(subject, str):
        raise InvalidTokenError("Could not validate credentials")

    roles = payload.get("roles") or ()
    if isinstance(roles, str):
        roles = (roles,)
    return ActiveUser(user_id=subject, roles=tuple(str(role) for role in roles))
