from fastapi import APIRouter, Depends

from chatrelay.config import settings
from chatrelay.dependencies import get_current_user
from chatrelay.schemas.auth import ClientConfigResponse, Principal, UserInfoResponse

router = APIRouter(tags=["auth"])


@router.get("/api/config", response_model=ClientConfigResponse)
async def client_config():
    """Identity provider settings the browser needs to sign in. Public key only."""
    return ClientConfigResponse(
        identity_url=settings.IDENTITY_PROVIDER_URL,
        identity_public_key=settings.IDENTITY_PUBLIC_KEY,
    )


@router.get("/user-info", response_model=UserInfoResponse)
async def get_user_info(user: Principal = Depends(get_current_user)):
    """Return the currently authenticated user."""
    return UserInfoResponse(user=user)
