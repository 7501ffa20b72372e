import logging
import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.config import settings
from chatrelay.database import get_db
from chatrelay.dependencies import get_connection_manager, get_current_user, get_webhook_relay
from chatrelay.errors import RelayError
from chatrelay.middleware.rate_limit import webhook_limiter
from chatrelay.schemas.auth import Principal
from chatrelay.schemas.webhook import (
    WebhookConfigResponse,
    WebhookConfigUpdate,
    WebhookConfigUpdateResponse,
    WebhookSendRequest,
    WebhookSendResponse,
    WebhookTestResponse,
)
from chatrelay.services import webhook_service
from chatrelay.services.connection_manager import ConnectionManager
from chatrelay.services.webhook_service import EVENT_TEST, WebhookRelay

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["webhooks"])


def _outgoing_url(request: Request, user_id: uuid.UUID) -> str:
    base = settings.PUBLIC_BASE_URL or str(request.base_url)
    return f"{base.rstrip('/')}/webhook/send/{user_id}"


@router.get("/config", response_model=WebhookConfigResponse)
async def get_webhook_config(
    request: Request,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Current webhook configuration. The secret itself is never returned here."""
    config = await webhook_service.get_config(db, user.id)
    return WebhookConfigResponse(
        webhook_url=config.webhook_url if config else None,
        webhook_enabled=config.webhook_enabled if config else False,
        has_secret=bool(config and config.webhook_secret),
        outgoing_webhook_url=_outgoing_url(request, user.id),
    )


@router.post("/config", response_model=WebhookConfigUpdateResponse)
async def set_webhook_config(
    data: WebhookConfigUpdate,
    user: Principal = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    relay: WebhookRelay = Depends(get_webhook_relay),
):
    """Save the webhook configuration and issue a new secret, shown only in this response."""
    secret = await relay.configure(db, user.id, data.webhook_url, data.webhook_enabled)
    return WebhookConfigUpdateResponse(
        message="Webhook configured successfully",
        webhook_secret=secret,
    )


@router.post("/test", response_model=WebhookTestResponse)
async def test_webhook(
    user: Principal = Depends(get_current_user),
    relay: WebhookRelay = Depends(get_webhook_relay),
):
    """Send a test delivery to the configured webhook."""
    if await relay.target_for(user.id) is None:
        return WebhookTestResponse(success=False, message="No active webhook configured")

    test_payload = {
        "event": EVENT_TEST,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "message": "This is a test delivery from chatrelay.",
        "user_id": str(user.id),
    }
    delivered = await relay.deliver(user.id, test_payload)
    return WebhookTestResponse(
        success=delivered,
        message="Test webhook sent" if delivered else "Test webhook delivery failed",
    )


@router.post(
    "/send/{user_id}",
    response_model=WebhookSendResponse,
    dependencies=[Depends(webhook_limiter)],
)
async def send_via_webhook(
    user_id: uuid.UUID,
    data: WebhookSendRequest,
    db: AsyncSession = Depends(get_db),
    manager: ConnectionManager = Depends(get_connection_manager),
    relay: WebhookRelay = Depends(get_webhook_relay),
):
    """Public endpoint: send a message on behalf of ``user_id`` using its webhook secret."""
    logger.info("Incoming webhook send request for user %s", user_id)
    config = await webhook_service.get_config(db, user_id)

    if not webhook_service.secrets_match(data.secret, config.webhook_secret if config else None):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook credentials",
        )
    if not config.webhook_enabled:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Webhook not enabled",
        )

    chat_id = data.chat_id
    log_payload = {"to": chat_id, "message": data.message}
    try:
        await manager.send_text(user_id, chat_id, data.message)
    except RelayError as exc:
        await relay.record_outgoing(
            user_id, "failed", log_payload, {"status": exc.status_code, "error": exc.public_message}
        )
        raise

    await relay.record_outgoing(user_id, str(status.HTTP_200_OK), log_payload, {"status": 200})
    return WebhookSendResponse(message="Message sent successfully", to=chat_id)
