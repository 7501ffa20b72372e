import base64
import binascii
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, field_validator
from pydantic.alias_generators import to_camel

from chatrelay.services.session_registry import ConnectionState

MAX_MESSAGE_LENGTH = 4096
CHAT_ID_PATTERN = r"^[0-9-]+@[cg]\.us$"

ChatId = Annotated[str, StringConstraints(strip_whitespace=True, pattern=CHAT_ID_PATTERN)]
MessageText = Annotated[
    str, StringConstraints(strip_whitespace=True, min_length=1, max_length=MAX_MESSAGE_LENGTH)
]


class CamelModel(BaseModel):
    """Serialized with camelCase keys, the shape the browser client reads."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class StatusResponse(CamelModel):
    pairing_image: str
    ready: bool
    state: ConnectionState


class ChatSummaryResponse(CamelModel):
    id: str
    name: str
    is_group: bool
    unread_count: int
    last_message: str
    timestamp: int


class ChatListResponse(CamelModel):
    chats: list[ChatSummaryResponse]
    connected: bool


class MediaResponse(BaseModel):
    mimetype: str
    data: str
    filename: str | None = None

    model_config = {"from_attributes": True}


class MessageResponse(CamelModel):
    id: str
    body: str
    from_me: bool
    timestamp: int
    sender: str
    has_media: bool
    media: MediaResponse | None = None


class MessageListResponse(BaseModel):
    messages: list[MessageResponse]


class SendMessageRequest(CamelModel):
    chat_id: ChatId
    message: MessageText


class SendMediaRequest(CamelModel):
    chat_id: ChatId
    media_data: str = Field(min_length=1)
    mime_type: str = Field(pattern=r"^[\w.+-]+/[\w.+-]+$", max_length=255)
    caption: str | None = Field(default=None, max_length=MAX_MESSAGE_LENGTH)
    filename: str | None = Field(default=None, max_length=255)

    @field_validator("media_data")
    @classmethod
    def must_be_base64(cls, value: str) -> str:
        if value.startswith("data:") and "," in value:
            value = value.split(",", 1)[1]
        try:
            base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("mediaData must be base64 encoded")
        return value


class SendResponse(BaseModel):
    success: bool = True
    message: str


class LogoutResponse(BaseModel):
    success: bool = True
    message: str
