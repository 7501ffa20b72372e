import uuid
from datetime import datetime

from sqlalchemy import JSON, DateTime, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from chatrelay.models.base import Base

DIRECTION_INCOMING = "incoming"  # system -> user's callback URL
DIRECTION_OUTGOING = "outgoing"  # external caller -> system


class WebhookLog(Base):
    __tablename__ = "webhook_logs"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True, nullable=False)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)  # HTTP status code or "failed"
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    response: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
