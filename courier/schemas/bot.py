from typing import Optional

from pydantic import BaseModel, Field


class BotCreate(BaseModel):
    name: str = Field(min_length=1)
    identifier: str = Field(min_length=1)


class BotResponse(BaseModel):
    id: str
    name: str
    identifier: str
    webhookUrl: Optional[str] = None
    apiKey: Optional[str] = None
    responseDelay: int = 0


class WebhookConfigUpdate(BaseModel):
    webhookUrl: Optional[str] = None
    responseDelay: Optional[int] = Field(default=None, ge=0)


class ClientUpsert(BaseModel):
    botId: str
    jid: str
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    status: Optional[str] = None


class ClientResponse(BaseModel):
    id: str
    botId: str
    jid: str
    name: Optional[str] = None
    status: str
