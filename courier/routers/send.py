from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from courier.database import get_db
from courier.dependencies import get_transport_registry
from courier.schemas.send import SendRequest, SendResponse
from courier.services.send_service import SendError, send_message

router = APIRouter(tags=["send"])


@router.post("/send", response_model=SendResponse)
async def send(
    request: SendRequest,
    x_api_key: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    registry=Depends(get_transport_registry),
):
    """Send a message to a participant on behalf of a bot."""
    try:
        return await send_message(db, request, x_api_key, registry)
    except SendError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
