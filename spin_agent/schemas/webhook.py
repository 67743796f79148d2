from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

MESSAGE_RECEIVED_EVENT = "messages.upsert"


def normalize_event(value: Optional[str]) -> str:
    return (value or "").strip().lower().replace("_", ".")


class MessageKey(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: Optional[str] = None
    remote_jid: Optional[str] = Field(default=None, validation_alias=AliasChoices("remoteJid", "remote_jid"))
    from_me: bool = Field(default=False, validation_alias=AliasChoices("fromMe", "from_me"))


class ExtendedText(BaseModel):
    text: Optional[str] = None


class MessageContent(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    conversation: Optional[str] = None
    extended_text: Optional[ExtendedText] = Field(
        default=None,
        validation_alias=AliasChoices("extendedTextMessage", "extended_text"),
    )


class MessageData(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    key: MessageKey = Field(default_factory=MessageKey)
    push_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("pushName", "push_name"))
    message: Optional[MessageContent] = None
    message_timestamp: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("messageTimestamp", "message_timestamp"),
    )

    @property
    def text(self) -> Optional[str]:
        if self.message is None:
            return None
        if self.message.conversation:
            return self.message.conversation
        if self.message.extended_text and self.message.extended_text.text:
            return self.message.extended_text.text
        return None


class WebhookEvent(BaseModel):
    """Evolution API webhook envelope. Only ``messages.upsert`` carries inbound messages."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    event: str
    instance: Optional[str] = Field(default=None, validation_alias=AliasChoices("instance", "instanceId", "instance_id"))
    data: Any = None

    @property
    def is_message_received(self) -> bool:
        return normalize_event(self.event) == MESSAGE_RECEIVED_EVENT

    def message_data(self) -> MessageData:
        payload = self.data
        # some Evolution versions deliver upserts as a one-element list
        if isinstance(payload, list):
            payload = payload[0] if payload else {}
        return MessageData.model_validate(payload or {})


class WebhookResponse(BaseModel):
    success: bool
    correlation_id: str
    duplicate: bool = False
    ignored: Optional[str] = None
    session_id: Optional[UUID] = None
    batch_deadline: Optional[datetime] = None
