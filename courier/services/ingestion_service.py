from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy.orm import Session

from courier.logging_config import get_logger
from courier.models import Bot
from courier.schemas.delivery import SingleDeliveryPayload
from courier.schemas.message import InboundEvent
from courier.services.conversation_service import (
    is_handled_by_human,
    normalize_participant_id,
    resolve_conversation,
)
from courier.services.forward_service import FORWARD_SINGLE
from courier.services.message_service import persist_inbound_message

logger = get_logger("ingestion_service")

STATUS_ENQUEUED = "enqueued"
STATUS_BATCHED = "batched"
STATUS_DUPLICATE = "duplicate"
STATUS_HANDLED_BY_HUMAN = "handled_by_human"


class BotNotFoundError(Exception):
    def __init__(self, bot_id):
        self.bot_id = bot_id
        self.message = f"Bot '{bot_id}' not found"
        super().__init__(self.message)


class InvalidParticipantError(ValueError):
    pass


@dataclass
class IngestResult:
    status: str
    conversation_id: UUID
    message_id: UUID
    is_new_contact: bool = False


def get_bot(db: Session, bot_id) -> Bot | None:
    try:
        bot_uuid = bot_id if isinstance(bot_id, UUID) else UUID(str(bot_id))
    except (TypeError, ValueError):
        return None
    return db.query(Bot).filter(Bot.id == bot_uuid).first()


async def ingest_message(
    db: Session,
    bot_id,
    event: InboundEvent,
    *,
    queue,
    batcher,
) -> IngestResult:
    """Persist one inbound event and route it to delivery.

    The message is stored at most once per external id. New messages go to
    the batcher when the bot has a response delay, otherwise straight to the
    delivery queue. Duplicates and contacts handled by a person are stored
    but not delivered.
    """
    bot = get_bot(db, bot_id)
    if bot is None:
        raise BotNotFoundError(bot_id)

    participant_id = normalize_participant_id(event.conversationParticipantId)
    if participant_id is None:
        raise InvalidParticipantError(f"Invalid participant id: {event.conversationParticipantId!r}")

    context = {"bot_id": str(bot.id), "participant_id": participant_id, "external_id": event.externalId}

    conversation, is_new_contact = resolve_conversation(db, bot.id, participant_id, event.pushName)
    message, created = persist_inbound_message(
        db,
        conversation,
        external_id=event.externalId,
        sender=participant_id,
        content=event.content,
        message_type=event.type.value,
    )
    handled = created and is_handled_by_human(db, bot.id, participant_id)
    result = IngestResult(STATUS_DUPLICATE, conversation.id, message.id, is_new_contact)

    # Everything delivery needs is read before commit expires the rows.
    payload = SingleDeliveryPayload(
        botId=str(bot.id),
        botName=bot.name,
        apiKey=bot.api_key or "",
        sessionId=str(conversation.id),
        messageId=str(message.id),
        sender=participant_id,
        pushName=event.pushName or "",
        content=event.content or "",
        type=event.type.value,
        timestamp=datetime.now(timezone.utc).isoformat(),
        externalId=message.external_id,
        mediaBase64=event.mediaBase64,
        mediaMimetype=event.mediaMimetype,
        isNewContact=is_new_contact,
    )
    delay = bot.response_delay or 0
    db.commit()

    if not created:
        logger.info("Duplicate event, not delivering", extra={"context": context})
        return result

    if handled:
        logger.info("Contact handled by human, not delivering", extra={"context": context})
        result.status = STATUS_HANDLED_BY_HUMAN
        return result

    if delay > 0:
        await batcher.add(payload, delay)
        result.status = STATUS_BATCHED
    else:
        await queue.enqueue(FORWARD_SINGLE, payload.to_wire())
        result.status = STATUS_ENQUEUED

    logger.info(
        "Message ingested",
        extra={"context": {**context, "status": result.status, "message_id": payload.messageId, "new_contact": is_new_contact}},
    )
    return result
