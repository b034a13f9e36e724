from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class BatchMessage(BaseModel):
    messageId: str
    pushName: str = ""
    content: str = ""
    type: str
    timestamp: str
    externalId: str
    mediaBase64: Optional[str] = None
    mediaMimetype: Optional[str] = None


class SingleDeliveryPayload(BaseModel):
    botId: str
    botName: str
    apiKey: str = ""
    sessionId: str
    messageId: str
    sender: str = Field(alias="from")
    pushName: str = ""
    content: str = ""
    type: str
    timestamp: str
    externalId: str
    mediaBase64: Optional[str] = None
    mediaMimetype: Optional[str] = None
    isNewContact: Optional[bool] = None

    model_config = ConfigDict(populate_by_name=True)

    def to_batch_message(self) -> BatchMessage:
        return BatchMessage(
            messageId=self.messageId,
            pushName=self.pushName,
            content=self.content,
            type=self.type,
            timestamp=self.timestamp,
            externalId=self.externalId,
            mediaBase64=self.mediaBase64,
            mediaMimetype=self.mediaMimetype,
        )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class BatchDeliveryPayload(BaseModel):
    botId: str
    botName: str
    apiKey: str = ""
    sender: str = Field(alias="from")
    sessionId: str
    type: Literal["BATCH"] = "BATCH"
    messageCount: int
    messages: list[BatchMessage]
    timestamp: str
    isNewContact: Optional[bool] = None

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
