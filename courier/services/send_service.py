from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from courier.logging_config import get_logger
from courier.models import Bot
from courier.schemas.message import MessageType, UnsupportedMessageType, parse_message_type
from courier.schemas.send import SendRequest, SendResponse
from courier.services.conversation_service import find_conversation, normalize_participant_id
from courier.services.message_service import save_outbound_message

logger = get_logger("send_service")

MEDIA_TYPES = frozenset({MessageType.IMAGE, MessageType.AUDIO, MessageType.PTT, MessageType.VIDEO, MessageType.DOCUMENT})


class SendError(Exception):
    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


def build_send_payload(
    message_type: MessageType,
    *,
    content: str | None = None,
    media_url: str | None = None,
    caption: str | None = None,
) -> dict[str, Any]:
    """Translate a send request into the transport's message payload."""
    if message_type in MEDIA_TYPES and not media_url:
        raise SendError(400, f"mediaUrl is required for {message_type.value} type")

    if message_type == MessageType.TEXT:
        return {"text": content or ""}
    if message_type == MessageType.IMAGE:
        return {"image": {"url": media_url}, "caption": caption or content or ""}
    if message_type == MessageType.AUDIO:
        return {"audio": {"url": media_url}, "ptt": False}
    if message_type == MessageType.PTT:
        return {"audio": {"url": media_url}, "ptt": True}
    if message_type == MessageType.VIDEO:
        return {"video": {"url": media_url}, "caption": caption or content or ""}
    if message_type == MessageType.DOCUMENT:
        return {"document": {"url": media_url}, "fileName": caption or "document"}
    raise SendError(400, f"Unsupported message type: {message_type}")


def _get_bot(db: Session, bot_id: str) -> Bot | None:
    try:
        bot_uuid = UUID(str(bot_id))
    except (TypeError, ValueError):
        return None
    return db.query(Bot).filter(Bot.id == bot_uuid).first()


async def send_message(db: Session, request: SendRequest, api_key: str | None, registry) -> SendResponse:
    """Send a message through the bot's live session and log it.

    Raises SendError with the HTTP status to report.
    """
    if not api_key:
        raise SendError(401, "Missing X-API-Key header")

    bot = _get_bot(db, request.botId)
    if bot is None:
        raise SendError(404, "Bot not found")
    if bot.api_key != api_key:
        raise SendError(403, "Invalid API key for this bot")
    bot_id = bot.id

    try:
        message_type = parse_message_type(request.type)
    except UnsupportedMessageType:
        raise SendError(400, f"Unsupported message type: {request.type}") from None

    wa_payload = build_send_payload(
        message_type,
        content=request.content,
        media_url=request.mediaUrl,
        caption=request.caption,
    )

    jid = normalize_participant_id(request.to)
    if jid is None:
        raise SendError(400, f"Invalid recipient: {request.to}")

    session = registry.get(bot_id)
    if session is None or not session.is_ready:
        raise SendError(503, "Bot is not connected")

    try:
        await session.send(jid, wa_payload)
    except Exception as exc:
        logger.error(
            "Send failed",
            extra={"context": {"bot_id": str(bot_id), "to": jid, "type": message_type.value, "error": str(exc)}},
        )
        raise SendError(500, f"Failed to send: {exc}") from exc

    conversation = find_conversation(db, bot_id, jid)
    if conversation is not None:
        save_outbound_message(
            db,
            conversation.id,
            sender=bot.identifier,
            content=request.content or request.caption or "",
            message_type=message_type.value,
        )
        db.commit()

    logger.info(
        "Message sent",
        extra={"context": {"bot_id": str(bot_id), "to": jid, "type": message_type.value, "logged": conversation is not None}},
    )
    return SendResponse(success=True, to=jid, type=message_type.value)
