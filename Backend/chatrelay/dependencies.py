from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from chatrelay.middleware.rate_limit import auth_limiter
from chatrelay.schemas.auth import Principal
from chatrelay.services import identity_service
from chatrelay.services.connection_manager import ConnectionManager
from chatrelay.services.webhook_service import WebhookRelay

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Principal:
    """Resolve the bearer token to a Principal; rejected tokens spend the auth budget.

    Provider outages raise IdentityProviderError and leave the budget alone.
    """
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    await auth_limiter.check(request)
    try:
        return await identity_service.verify_access_token(credentials.credentials)
    except ValueError:
        await auth_limiter.hit(request)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_connection_manager(request: Request) -> ConnectionManager:
    return request.app.state.manager


def get_webhook_relay(request: Request) -> WebhookRelay:
    return request.app.state.relay
