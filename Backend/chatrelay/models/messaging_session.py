import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from chatrelay.models.base import Base


class MessagingSession(Base):
    """Durable per-user record: connectivity flag plus webhook configuration."""

    __tablename__ = "messaging_sessions"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, unique=True, nullable=False)
    is_connected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    webhook_url: Mapped[str | None] = mapped_column(String(2048))
    webhook_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    webhook_secret: Mapped[str | None] = mapped_column(String(64))  # HMAC-SHA256 signing key
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
