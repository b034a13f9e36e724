from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator


class MessageType(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    AUDIO = "AUDIO"
    PTT = "PTT"
    VIDEO = "VIDEO"
    DOCUMENT = "DOCUMENT"


class UnsupportedMessageType(ValueError):
    def __init__(self, value: object):
        self.value = value
        super().__init__(f"Unsupported message type: {value}")


def parse_message_type(value: object) -> MessageType:
    """Map a raw type label (any case) onto the closed MessageType set."""
    if isinstance(value, MessageType):
        return value
    label = str(value or "").strip().upper()
    try:
        return MessageType(label)
    except ValueError:
        raise UnsupportedMessageType(value) from None


class InboundEvent(BaseModel):
    """A raw inbound event as emitted by the transport layer."""

    conversationParticipantId: str = Field(
        validation_alias=AliasChoices("conversationParticipantId", "from", "remoteJid"),
    )
    externalId: str
    type: MessageType = MessageType.TEXT
    content: str = ""
    pushName: str = ""
    mediaBase64: Optional[str] = None
    mediaMimetype: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value: object) -> MessageType:
        return parse_message_type(value)
