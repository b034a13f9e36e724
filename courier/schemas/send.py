from typing import Optional

from pydantic import BaseModel


class SendRequest(BaseModel):
    botId: str
    to: str
    type: str
    content: Optional[str] = None
    mediaUrl: Optional[str] = None
    caption: Optional[str] = None


class SendResponse(BaseModel):
    success: bool
    to: str
    type: str
