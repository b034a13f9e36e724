from typing import Optional

from pydantic import AliasChoices, BaseModel, Field


class IncomingWebhookRequest(BaseModel):
    botId: str
    sender: str = Field(validation_alias=AliasChoices("from", "sender"))
    content: str
    type: str = "text"
    externalId: Optional[str] = None
    pushName: Optional[str] = None
    timestamp: Optional[int] = None


class IncomingWebhookResponse(BaseModel):
    status: str
    messageId: Optional[str] = None
    bot: Optional[str] = None
