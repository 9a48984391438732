"""Shared API dependencies for authentication and service lookup."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from forum_stage.core.errors import ForumError
from forum_stage.core.security import ActiveUser, InvalidTokenError, decode_access_token
from forum_stage.services.container import ServiceContainer
from forum_stage.services.notifications import NotificationService
from forum_stage.services.threads import ThreadService

MODERATOR_ROLES = ("moderator", "admin")

# HTTP Bearer scheme for JWT authentication
bearer_scheme = HTTPBearer()


def get_services(request: Request) -> ServiceContainer:
    """Return the service container built at startup."""
    return request.app.state.services


ServicesDep = Annotated[ServiceContainer, Depends(get_services)]


def get_thread_service(services: ServicesDep) -> ThreadService:
    return services.threads


def get_notification_service(services: ServicesDep) -> NotificationService:
    return services.notifications


ThreadServiceDep = Annotated[ThreadService, Depends(get_thread_service)]
NotificationServiceDep = Annotated[NotificationService, Depends(get_notification_service)]


def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
    services: ServicesDep,
) -> ActiveUser:
    """Get the current actor from the bearer token.

    Raises:
        HTTPException: If the token is invalid.
    """
    try:
        return decode_access_token(credentials.credentials, services.settings)
    except InvalidTokenError as err:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        ) from err


# Type alias for current user dependency
CurrentUserDep = Annotated[ActiveUser, Depends(get_current_user)]


def require_moderator(user: CurrentUserDep) -> ActiveUser:
    """Allow only actors holding a moderator or admin role."""
    if not any(user.has_role(role) for role in MODERATOR_ROLES):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Moderator role required",
        )
    return user


ModeratorDep = Annotated[ActiveUser, Depends(require_moderator)]


def http_error(exc: ForumError) -> HTTPException:
    """Translate a domain error into the matching HTTP error."""
    return HTTPException(status_code=exc.status_code, detail=exc.detail)
