import logging
import uuid
from datetime import datetime

import httpx
from jose import JWTError, jwt

from chatrelay.config import settings
from chatrelay.errors import IdentityProviderError
from chatrelay.schemas.auth import Principal

logger = logging.getLogger(__name__)

USER_ENDPOINT = "/auth/v1/user"
# Replies that mean the token itself is bad. Anything else non-200 is the
# provider failing.
REJECTED_STATUSES = {400, 401, 403, 404}


def decode_access_token(token: str) -> Principal:
    """Verify a provider-issued JWT locally with the shared signing secret."""
    try:
        claims = jwt.decode(
            token,
            settings.IDENTITY_JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.IDENTITY_JWT_AUDIENCE or None,
        )
    except JWTError:
        raise ValueError("Invalid token")

    try:
        user_id = uuid.UUID(claims["sub"])
    except (KeyError, ValueError):
        raise ValueError("Token has no valid subject")

    created_at = claims.get("created_at")
    return Principal(
        id=user_id,
        email=claims.get("email"),
        created_at=datetime.fromisoformat(created_at) if created_at else None,
    )


async def fetch_user(token: str, http_client: httpx.AsyncClient | None = None) -> Principal:
    """Look the token's user up at the identity provider.

    Raises ValueError when the provider rejects the token and
    IdentityProviderError when the provider itself is failing.
    """
    should_close = False
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=10.0)
        should_close = True

    try:
        resp = await http_client.get(
            settings.IDENTITY_PROVIDER_URL.rstrip("/") + USER_ENDPOINT,
            headers={
                "Authorization": f"Bearer {token}",
                "apikey": settings.IDENTITY_SERVICE_KEY,
            },
        )
    except httpx.HTTPError as exc:
        logger.warning("Identity provider unreachable: %s", exc)
        raise IdentityProviderError() from exc
    finally:
        if should_close:
            await http_client.aclose()

    if resp.status_code in REJECTED_STATUSES:
        raise ValueError("Invalid token")
    if resp.status_code != 200:
        logger.warning("Identity provider returned %d", resp.status_code)
        raise IdentityProviderError()

    try:
        data = resp.json()
        return Principal(
            id=uuid.UUID(data["id"]),
            email=data.get("email"),
            created_at=data.get("created_at"),
        )
    except (KeyError, TypeError, ValueError) as exc:
        logger.warning("Identity provider returned no user: %s", exc)
        raise IdentityProviderError() from exc


async def verify_access_token(token: str, http_client: httpx.AsyncClient | None = None) -> Principal:
    """Resolve a bearer token to the user it belongs to. Raises ValueError if it is rejected."""
    if settings.IDENTITY_JWT_SECRET:
        return decode_access_token(token)
    return await fetch_user(token, http_client=http_client)
