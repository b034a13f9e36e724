from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from courier.database import get_db
from courier.dependencies import get_batcher, get_delivery_queue
from courier.logging_config import get_logger
from courier.schemas.message import InboundEvent, UnsupportedMessageType, parse_message_type
from courier.schemas.webhook import IncomingWebhookRequest, IncomingWebhookResponse
from courier.services.conversation_service import normalize_participant_id
from courier.services.ingestion_service import BotNotFoundError, get_bot, ingest_message
from courier.services.message_service import build_external_id

logger = get_logger("webhook")

router = APIRouter(prefix="/webhook", tags=["webhook"])


@router.post("/incoming", response_model=IncomingWebhookResponse)
async def incoming_webhook(
    request: IncomingWebhookRequest,
    db: Session = Depends(get_db),
    queue=Depends(get_delivery_queue),
    batcher=Depends(get_batcher),
):
    """Alternative intake for providers that push messages over HTTP."""
    if not request.botId.strip():
        raise HTTPException(status_code=400, detail="botId is required")

    try:
        message_type = parse_message_type(request.type)
    except UnsupportedMessageType as e:
        raise HTTPException(status_code=400, detail=str(e))

    participant_id = normalize_participant_id(request.sender)
    if participant_id is None:
        raise HTTPException(status_code=400, detail="from is required")

    bot = get_bot(db, request.botId)
    if bot is None:
        raise HTTPException(status_code=404, detail=f"Bot '{request.botId}' not found")
    bot_name = bot.name

    event = InboundEvent(
        conversationParticipantId=participant_id,
        externalId=build_external_id(request.externalId, participant_id, request.timestamp),
        type=message_type,
        content=request.content,
        pushName=request.pushName or "",
    )

    logger.info(
        "Incoming webhook",
        extra={"context": {"bot_id": request.botId, "from": participant_id, "type": message_type.value}},
    )

    try:
        result = await ingest_message(db, bot.id, event, queue=queue, batcher=batcher)
    except BotNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)

    return IncomingWebhookResponse(status=result.status, messageId=str(result.message_id), bot=bot_name)
