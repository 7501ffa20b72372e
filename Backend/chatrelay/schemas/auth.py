import uuid
from datetime import datetime

from pydantic import BaseModel


class Principal(BaseModel):
    """Authenticated end user as reported by the identity provider."""

    id: uuid.UUID
    email: str | None = None
    created_at: datetime | None = None


class UserInfoResponse(BaseModel):
    user: Principal


class ClientConfigResponse(BaseModel):
    identity_url: str
    identity_public_key: str
