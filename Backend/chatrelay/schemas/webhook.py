from typing import Annotated

from pydantic import BaseModel, Field, HttpUrl, StringConstraints, TypeAdapter, ValidationError, field_validator

from chatrelay.schemas.messaging import MessageText

RECIPIENT_PATTERN = r"^[0-9-]+(@[cg]\.us)?$"

_http_url = TypeAdapter(HttpUrl)


class WebhookConfigUpdate(BaseModel):
    webhook_url: str | None = Field(default=None, max_length=2048)
    webhook_enabled: bool = False

    @field_validator("webhook_url")
    @classmethod
    def must_be_absolute_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if not value:
            return None
        try:
            _http_url.validate_python(value)
        except ValidationError:
            raise ValueError("Invalid webhook URL")
        return value


class WebhookConfigResponse(BaseModel):
    success: bool = True
    webhook_url: str | None
    webhook_enabled: bool
    has_secret: bool
    outgoing_webhook_url: str


class WebhookConfigUpdateResponse(BaseModel):
    success: bool = True
    message: str
    webhook_secret: str
    note: str = "Save this secret! It will not be shown again."


class WebhookTestResponse(BaseModel):
    success: bool
    message: str


class WebhookSendRequest(BaseModel):
    to: Annotated[str, StringConstraints(strip_whitespace=True, pattern=RECIPIENT_PATTERN)]
    message: MessageText
    secret: str = Field(min_length=1)

    @property
    def chat_id(self) -> str:
        """Bare numbers address a direct chat."""
        return self.to if "@" in self.to else f"{self.to}@c.us"


class WebhookSendResponse(BaseModel):
    success: bool = True
    message: str
    to: str
