from fastapi import APIRouter, Depends, Path

from chatrelay.connectors.base import RemoteMedia
from chatrelay.dependencies import get_connection_manager, get_current_user
from chatrelay.middleware.rate_limit import message_limiter
from chatrelay.schemas.auth import Principal
from chatrelay.schemas.messaging import (
    ChatListResponse,
    ChatSummaryResponse,
    LogoutResponse,
    MediaResponse,
    MessageListResponse,
    MessageResponse,
    SendMediaRequest,
    SendMessageRequest,
    SendResponse,
    StatusResponse,
)
from chatrelay.services.connection_manager import ConnectionManager

router = APIRouter(tags=["messaging"])


@router.get("/qr", response_model=StatusResponse)
async def connection_status(
    user: Principal = Depends(get_current_user),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    """Connection state and pairing image. Starts a session if the user has none."""
    session = await manager.ensure_connection(user.id)
    return StatusResponse(
        pairing_image=session.pairing_image,
        ready=session.ready,
        state=session.state,
    )


@router.get("/chats", response_model=ChatListResponse)
async def list_chats(
    user: Principal = Depends(get_current_user),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    session = manager.registry.get(user.id)
    if session is None:
        return ChatListResponse(chats=[], connected=False)
    return ChatListResponse(
        chats=[ChatSummaryResponse.model_validate(c) for c in session.chats],
        connected=session.ready,
    )


@router.get("/messages/{chat_id}", response_model=MessageListResponse)
async def list_messages(
    chat_id: str = Path(min_length=1, max_length=128),
    user: Principal = Depends(get_current_user),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    """Most recent messages of a chat, with inline media where it could be fetched."""
    results = await manager.list_messages(user.id, chat_id)
    return MessageListResponse(
        messages=[
            MessageResponse(
                id=message.id,
                body=message.body,
                from_me=message.from_me,
                timestamp=message.timestamp,
                sender=message.author or message.from_,
                has_media=message.has_media,
                media=MediaResponse.model_validate(media) if media else None,
            )
            for message, media in results
        ]
    )


@router.post(
    "/send-message",
    response_model=SendResponse,
    dependencies=[Depends(message_limiter)],
)
async def send_message(
    data: SendMessageRequest,
    user: Principal = Depends(get_current_user),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    await manager.send_text(user.id, data.chat_id, data.message)
    return SendResponse(message="Message sent successfully")


@router.post(
    "/send-media",
    response_model=SendResponse,
    dependencies=[Depends(message_limiter)],
)
async def send_media(
    data: SendMediaRequest,
    user: Principal = Depends(get_current_user),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    media = RemoteMedia(mimetype=data.mime_type, data=data.media_data, filename=data.filename)
    await manager.send_media(user.id, data.chat_id, media, caption=data.caption or "")
    return SendResponse(message="Media sent successfully")


@router.post("/logout", response_model=LogoutResponse)
async def logout(
    user: Principal = Depends(get_current_user),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    """Disconnect the user's messaging session. Pairing is required afterwards."""
    await manager.teardown(user.id)
    return LogoutResponse(message="Session disconnected. You will need to scan the pairing code again.")
